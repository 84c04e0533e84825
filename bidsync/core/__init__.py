"""
Core domain types, errors and numeric helpers shared by every component.
"""

from bidsync.core.errors import (
    BidSyncError,
    InvariantViolation,
    SubmissionError,
    TransientFetchError,
    ValidationError,
)
from bidsync.core.models import (
    BestOffer,
    BidDescriptor,
    Bid,
    BidKey,
    BidStatus,
    ChangeEvent,
    Collection,
    FormattedBid,
    InvalidationEvent,
    Marketplace,
    MarketParams,
    Operation,
    OperationType,
    PriceSignal,
)

__all__ = [
    "BestOffer",
    "BidDescriptor",
    "Bid",
    "BidKey",
    "BidStatus",
    "BidSyncError",
    "ChangeEvent",
    "Collection",
    "FormattedBid",
    "InvalidationEvent",
    "InvariantViolation",
    "Marketplace",
    "MarketParams",
    "Operation",
    "OperationType",
    "PriceSignal",
    "SubmissionError",
    "TransientFetchError",
    "ValidationError",
]
