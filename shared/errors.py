"""
Shared error handling for the ticket cache.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel


DEFAULT_STATUS_MESSAGES: Dict[int, str] = {
    400: "Invalid request. Please check your input.",
    401: "Authentication required.",
    403: "You do not have permission to perform this action.",
    404: "The requested resource was not found.",
    409: "This action conflicts with existing data.",
    422: "The provided data is invalid.",
    429: "Too many requests. Please try again later.",
    500: "Internal server error. Please try again.",
    502: "Service temporarily unavailable.",
    503: "Service temporarily unavailable.",
}


class ErrorPayload(BaseModel):
    """Error body returned by the ticket API."""

    error: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Union[List[Any], Dict[str, Any]]] = None


def error_message_for(status_code: int, payload: Optional[ErrorPayload] = None) -> str:
    """Extract a human-readable message from an error response."""
    if payload is not None:
        if payload.message:
            return payload.message
        if payload.error:
            return payload.error
    return DEFAULT_STATUS_MESSAGES.get(status_code, "An unexpected error occurred.")


class TicketCacheException(Exception):
    """Base exception for the ticket cache."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view for UI error indicators."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationFailure(TicketCacheException):
    """Malformed filter or write request, rejected before reaching the cache."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class RemoteFailure(TicketCacheException):
    """The ticket API answered with a non-2xx status."""

    def __init__(
        self,
        status_code: int,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: str = "REMOTE_FAILURE",
    ):
        self.status_code = status_code
        super().__init__(code, message or error_message_for(status_code), details)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class TransportFailure(TicketCacheException):
    """No response from the ticket API (timeout or network error)."""

    def __init__(self, message: str = "Ticket service unreachable", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSPORT_FAILURE", message, details)


class NotFoundDuringMutation(RemoteFailure):
    """The mutated ticket no longer exists on the server."""

    def __init__(self, entity_id: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.entity_id = entity_id
        super().__init__(
            404,
            message or f"Ticket {entity_id} was not found",
            {"entity_id": entity_id, **(details or {})},
            code="NOT_FOUND_DURING_MUTATION",
        )
