"""Exceptions raised by the e-log core.

Every error carries an HTTP-style ``status_code`` so a web collaborator can
map it without inspecting messages. None of these are retried by the core.
"""

from typing import Any, Dict, Iterable, List, Optional


class ELogError(Exception):
    """Base exception for all e-log operations."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable error body for API responses."""
        return {"error": self.__class__.__name__, "message": self.message}


class ValidationError(ELogError):
    """Malformed or missing input. Client-correctable."""

    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        self.field = field
        self.errors = errors or []
        super().__init__(message)

    @classmethod
    def from_pydantic(cls, exc: Any) -> "ValidationError":
        """Build from a ``pydantic.ValidationError``."""
        errors = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ())),
                "message": error.get("msg", ""),
            }
            for error in exc.errors()
        ]
        field = errors[0]["field"] if errors else None
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        return cls(f"Invalid input - {summary}", field=field, errors=errors)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        if self.errors:
            body["errors"] = self.errors
        return body


class InvalidTransitionError(ValidationError):
    """Raised when a log entry is not in the state a transition requires."""

    status_code = 409

    def __init__(self, entry_id: str, current: str, expected: str, action: str):
        self.entry_id = entry_id
        self.current = current
        self.expected = expected
        super().__init__(
            f"Cannot {action} log entry {entry_id}: status is {current}, "
            f"expected {expected}",
            field="status",
        )


class RecordLockedError(ValidationError):
    """Raised when editing a log entry that has left Draft."""

    status_code = 409

    def __init__(self, entry_id: str, current: str):
        self.entry_id = entry_id
        self.current = current
        super().__init__(
            f"Log entry {entry_id} is {current} and can no longer be edited",
            field="status",
        )


class AuthenticationError(ELogError):
    """Bad credentials or an unusable account."""

    status_code = 401

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class AccountInactiveError(AuthenticationError):
    """The account exists but has been deactivated."""

    status_code = 403

    def __init__(self, message: str = "Account is inactive"):
        super().__init__(message)


class AuthorizationError(ELogError):
    """A valid actor lacks the role an operation requires."""

    status_code = 403

    def __init__(self, message: str, required_roles: Iterable[str] = ()):
        self.required_roles = sorted(str(role) for role in required_roles)
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["required_roles"] = self.required_roles
        return body


class NotFoundError(ELogError):
    """Referenced entity does not exist."""

    status_code = 404

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class PersistenceError(ELogError):
    """Underlying store failure. The whole operation is rolled back."""

    status_code = 500


__all__ = [
    "ELogError",
    "ValidationError",
    "InvalidTransitionError",
    "RecordLockedError",
    "AuthenticationError",
    "AccountInactiveError",
    "AuthorizationError",
    "NotFoundError",
    "PersistenceError",
]
