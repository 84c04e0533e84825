from bidsync.execution.operation_queue import OperationOutcome, OperationQueue
from bidsync.execution.signing import (
    Signer,
    SigningSubmissionProtocol,
    TypedDataSigner,
    normalize_typed_data,
)

__all__ = [
    "OperationOutcome",
    "OperationQueue",
    "Signer",
    "SigningSubmissionProtocol",
    "TypedDataSigner",
    "normalize_typed_data",
]
