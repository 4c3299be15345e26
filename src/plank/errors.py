"""Error taxonomy shared by the schema, record and sync layers.

Local errors (`ValidationError` and its subclasses) are raised before any
remote call is made. Remote errors (`RemoteError` and its subclasses) come from
a collaborator: the persistence store, file storage or identity provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


Issue = Dict[str, Any]


def make_issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass(eq=False)
class PlankError(Exception):
    message: str
    code: str = "PLANK_ERROR"
    path: str | None = None
    detail: dict | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base

    def to_issue(self) -> Issue:
        return make_issue(self.code, self.message, self.path, self.detail)


@dataclass(eq=False)
class ValidationError(PlankError):
    code: str = "VALIDATION_ERROR"
    issues: List[Issue] = field(default_factory=list)

    @classmethod
    def from_issues(cls, issues: List[Issue], message: str | None = None) -> "ValidationError":
        first = issues[0] if issues else make_issue("VALIDATION_ERROR", "invalid input")
        return cls(
            message=message or first["message"],
            code=first["code"],
            path=first.get("path"),
            issues=list(issues),
        )


@dataclass(eq=False)
class DuplicateNameError(ValidationError):
    code: str = "DUPLICATE_NAME"


@dataclass(eq=False)
class ProtectedFieldError(ValidationError):
    code: str = "PROTECTED_FIELD"


@dataclass(eq=False)
class InvalidFormatError(ValidationError):
    code: str = "INVALID_FORMAT"


@dataclass(eq=False)
class NotAuthenticatedError(ValidationError):
    code: str = "NOT_AUTHENTICATED"


@dataclass(eq=False)
class SchemaError(PlankError):
    code: str = "SCHEMA_ERROR"


@dataclass(eq=False)
class ReorderError(PlankError):
    code: str = "REORDER_INVALID"


@dataclass(eq=False)
class ConcurrentMutationError(PlankError):
    code: str = "MUTATION_PENDING"


@dataclass(eq=False)
class RemoteError(PlankError):
    code: str = "REMOTE_ERROR"


@dataclass(eq=False)
class ReferentialConflict(RemoteError):
    code: str = "REFERENTIAL_CONFLICT"


@dataclass(eq=False)
class ForeignKeyConflict(ReferentialConflict):
    code: str = "FOREIGN_KEY_CONFLICT"


@dataclass(eq=False)
class StatusInUseError(ReferentialConflict):
    code: str = "STATUS_IN_USE"


@dataclass(eq=False)
class NotFoundError(RemoteError):
    code: str = "NOT_FOUND"


@dataclass(eq=False)
class TransportFailure(RemoteError):
    code: str = "TRANSPORT_FAILURE"


@dataclass(eq=False)
class PartialWriteFailure(RemoteError):
    code: str = "PARTIAL_WRITE"
    entry: dict | None = None
