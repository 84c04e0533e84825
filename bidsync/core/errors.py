"""
Error taxonomy.

- TransientFetchError: read failures and timeouts, retried by the next poll.
- ValidationError: malformed or out-of-range price signal, key skipped this cycle.
- SubmissionError: format/sign/submit/cancel failure, ledger left untouched.
- InvariantViolation: submit while a live bid already exists for the key.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BidSyncError(Exception):
    """Base class carrying the (collection, marketplace) context of the failure."""

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        marketplace: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(message)
        self.collection = collection
        self.marketplace = marketplace
        self.context = context

    def to_log(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "err": str(self),
            "collection": self.collection,
            "marketplace": self.marketplace,
            **self.context,
        }


class TransientFetchError(BidSyncError):
    pass


class ValidationError(BidSyncError):
    pass


class SubmissionError(BidSyncError):
    def __init__(self, message: str, step: str = "submit", **kwargs: Any) -> None:
        super().__init__(message, step=step, **kwargs)
        self.step = step


class InvariantViolation(BidSyncError):
    pass
