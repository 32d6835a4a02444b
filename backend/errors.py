from typing import Any, Dict, Optional


class MessMateError(Exception):
    """Base error; carries the HTTP status and the ``error`` code sent to clients."""

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.details)
        return body


class InvalidSplit(MessMateError):
    code = "invalid_split"


class ValidationError(MessMateError):
    code = "validation_error"


class Unauthorized(MessMateError):
    """The caller is not a member of the mess."""

    status_code = 403
    code = "not_authorized"


class Forbidden(MessMateError):
    """The caller is a member but their role does not allow the action."""

    status_code = 403
    code = "forbidden"


class NotFound(MessMateError):
    status_code = 404
    code = "not_found"


class Conflict(MessMateError):
    status_code = 409
    code = "conflict"


class InsufficientFunds(MessMateError):
    status_code = 422
    code = "insufficient_funds"
