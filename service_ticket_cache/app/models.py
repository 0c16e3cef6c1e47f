"""
Ticket data models shared by the cache, the mutation coordinator and the API client.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from shared.errors import ValidationFailure


ModelT = TypeVar("ModelT", bound=BaseModel)


class TicketStatus(str, Enum):
    """Ticket workflow status."""
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class TicketPriority(str, Enum):
    """Ticket priority."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SortField(str, Enum):
    """Sortable ticket fields."""
    CREATED_AT = "createdAt"
    UPDATED_AT = "updatedAt"
    TITLE = "title"
    STATUS = "status"
    PRIORITY = "priority"


class SortOrder(str, Enum):
    """Sort direction."""
    ASC = "asc"
    DESC = "desc"


class WireModel(BaseModel):
    """Immutable model speaking the API's camelCase field names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self, **kwargs: Any) -> Dict[str, Any]:
        """JSON-ready dict using API field names."""
        return self.model_dump(mode="json", by_alias=True, **kwargs)


class Comment(WireModel):
    """Comment attached to a ticket."""
    id: str
    content: str
    author: str
    ticket_id: Optional[str] = None
    created_at: datetime


class Ticket(WireModel):
    """Ticket as returned by the API.

    List responses carry at most the three most recent comments; detail
    responses carry all of them, oldest first.
    """
    id: str
    ticket_number: str
    title: str
    description: str
    user: str
    status: TicketStatus
    priority: TicketPriority
    created_at: datetime
    updated_at: datetime
    comments: List[Comment] = Field(default_factory=list)

    def apply_patch(self, patch: Mapping[str, Any], updated_at: Optional[datetime] = None) -> "Ticket":
        """Return a copy with ``patch`` applied and a client-side ``updated_at``."""
        changes = dict(patch)
        changes["updated_at"] = updated_at or datetime.now(timezone.utc)
        return self.model_copy(update=changes)


class Pagination(WireModel):
    """Pagination block of a ticket list response."""
    page: int
    limit: int
    total: int
    pages: int


class TicketListResponse(WireModel):
    """Response of ``GET /tickets``."""
    tickets: List[Ticket]
    pagination: Pagination

    def contains(self, ticket_id: str) -> bool:
        return any(ticket.id == ticket_id for ticket in self.tickets)


class CreateTicketRequest(WireModel):
    """Body of ``POST /tickets``."""
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    user: str = Field(..., min_length=1, max_length=100)
    priority: Optional[TicketPriority] = None


class UpdateTicketRequest(WireModel):
    """Body of ``PUT /tickets/{id}``; any subset of fields."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    user: Optional[str] = Field(None, min_length=1, max_length=100)
    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly set by the caller, keyed by attribute name."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if getattr(self, name) is not None
        }


class CreateCommentRequest(WireModel):
    """Body of ``POST /tickets/{id}/comments``."""
    content: str = Field(..., min_length=1, max_length=1000)
    author: str = Field(..., min_length=1, max_length=100)


class FilterSpec(WireModel):
    """Filter, sort and pagination options for a ticket list.

    ``limit`` stays ``None`` when the caller did not choose one; the
    fingerprint codec fills in the default of the surface it serves.
    """
    page: int = Field(1, ge=1)
    limit: Optional[int] = Field(None, ge=1, le=100)
    sort_by: SortField = SortField.CREATED_AT
    sort_order: SortOrder = SortOrder.DESC
    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None
    search: Optional[str] = None

    @field_validator("search", mode="before")
    @classmethod
    def _trim_search(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


def parse_model(model: Type[ModelT], data: Union[ModelT, Mapping[str, Any]]) -> ModelT:
    """Validate ``data`` into ``model``, raising ValidationFailure on bad input."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailure(
            f"Invalid {model.__name__}",
            details={
                "issues": [
                    {"path": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                    for error in exc.errors()
                ]
            },
        ) from exc
