"""plank kernel: field types, ordering, fingerprints and errors."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps
from .errors import (
    ConcurrentMutationError,
    DuplicateNameError,
    ForeignKeyConflict,
    InvalidFormatError,
    NotAuthenticatedError,
    NotFoundError,
    PartialWriteFailure,
    PlankError,
    ProtectedFieldError,
    ReferentialConflict,
    RemoteError,
    ReorderError,
    SchemaError,
    StatusInUseError,
    TransportFailure,
    ValidationError,
    make_issue,
)
from .snapshot_hash import snapshot_hash

__all__ = [
    "CanonicalJsonTypeError",
    "ConcurrentMutationError",
    "DuplicateNameError",
    "ForeignKeyConflict",
    "InvalidFormatError",
    "NotAuthenticatedError",
    "NotFoundError",
    "PartialWriteFailure",
    "PlankError",
    "ProtectedFieldError",
    "ReferentialConflict",
    "RemoteError",
    "ReorderError",
    "SchemaError",
    "StatusInUseError",
    "TransportFailure",
    "ValidationError",
    "canonical_dumps",
    "make_issue",
    "snapshot_hash",
]
