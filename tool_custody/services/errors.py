from __future__ import annotations

from typing import Any


class CustodyError(Exception):
    """Base for every error the custody core reports to its callers.

    ``kind`` is the stable category the boundary layer maps to a transport
    status; ``field`` and ``entity_id`` name the offending input or record.
    """

    kind = "Error"

    def __init__(self, message: str, *, field: str | None = None, entity_id: Any = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.entity_id = entity_id

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "detail": self.message}
        if self.field:
            payload["field"] = self.field
        if self.entity_id is not None:
            payload["id"] = self.entity_id
        return payload


class NotFoundError(CustodyError):
    kind = "NotFound"


class ConflictError(CustodyError):
    kind = "Conflict"


class InvalidStateError(CustodyError):
    kind = "InvalidState"


class ValidationFailedError(CustodyError):
    kind = "ValidationError"


class PermissionDeniedError(CustodyError):
    kind = "Forbidden"


class DuplicateCodeError(ConflictError):
    pass


class DuplicatePendingError(ConflictError):
    pass


class AlreadyInUseError(ConflictError):
    pass


class ToolUnavailableError(ConflictError):
    pass


class ToolInUseError(ConflictError):
    pass


class TargetUnavailableError(ConflictError):
    pass


class NoStockError(ConflictError):
    pass


class LineUnavailableError(ConflictError):
    pass


class StaleVersionError(ConflictError):
    pass


class NotPendingError(InvalidStateError):
    pass


class NotApprovedError(InvalidStateError):
    pass


class NotInUseError(InvalidStateError):
    pass


class NotHolderError(InvalidStateError):
    pass


class NotOwnerError(PermissionDeniedError):
    pass
