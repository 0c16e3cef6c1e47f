"""
Ticket API client.
"""

from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from shared.errors import ErrorPayload, RemoteFailure, TransportFailure, error_message_for
from shared.logging import get_logger

from ..models import (
    Comment,
    CreateCommentRequest,
    CreateTicketRequest,
    Ticket,
    TicketListResponse,
    UpdateTicketRequest,
)


ModelT = TypeVar("ModelT", bound=BaseModel)

BASE_PATH = "/tickets"

_comment_list = TypeAdapter(List[Comment])


class TicketsClient:
    """Async client for the ticket REST API.

    Any non-2xx answer becomes a ``RemoteFailure`` carrying the message from
    the error payload; timeouts and connection problems become a
    ``TransportFailure``. The client never retries; retry policy belongs to
    the cache.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.logger = get_logger("ticket_cache.tickets_client")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    async def list_tickets(self, params: Optional[Mapping[str, str]] = None) -> TicketListResponse:
        """Fetch one page of tickets."""
        data = await self._request("GET", BASE_PATH, params=dict(params or {}))
        return self._parse(TicketListResponse, data)

    async def get_ticket(self, ticket_id: str) -> Ticket:
        """Fetch one ticket with all of its comments."""
        data = await self._request("GET", f"{BASE_PATH}/{ticket_id}")
        return self._parse(Ticket, data)

    async def create_ticket(self, request: CreateTicketRequest) -> Ticket:
        data = await self._request("POST", BASE_PATH, json=request.to_wire(exclude_none=True))
        return self._parse(Ticket, data)

    async def update_ticket(self, ticket_id: str, request: UpdateTicketRequest) -> Ticket:
        data = await self._request(
            "PUT",
            f"{BASE_PATH}/{ticket_id}",
            json=request.to_wire(exclude_unset=True, exclude_none=True),
        )
        return self._parse(Ticket, data)

    async def delete_ticket(self, ticket_id: str) -> None:
        await self._request("DELETE", f"{BASE_PATH}/{ticket_id}")

    async def list_comments(self, ticket_id: str) -> List[Comment]:
        """Fetch a ticket's comments, oldest first."""
        data = await self._request("GET", f"{BASE_PATH}/{ticket_id}/comments")
        try:
            return _comment_list.validate_python(data)
        except ValidationError as exc:
            raise self._malformed(exc) from exc

    async def create_comment(self, ticket_id: str, request: CreateCommentRequest) -> Comment:
        data = await self._request("POST", f"{BASE_PATH}/{ticket_id}/comments", json=request.to_wire())
        return self._parse(Comment, data)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Execute a request and map failures onto the error taxonomy."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            self.logger.warning("Ticket API request timed out", method=method, path=path)
            raise TransportFailure(
                "Ticket service did not respond in time",
                details={"method": method, "path": path},
            ) from exc
        except httpx.TransportError as exc:
            self.logger.warning("Ticket API unreachable", method=method, path=path, error=str(exc))
            raise TransportFailure(
                "Ticket service unreachable",
                details={"method": method, "path": path, "reason": str(exc)},
            ) from exc

        if response.is_success:
            self.logger.debug("Ticket API request succeeded", method=method, path=path, status_code=response.status_code)
            if response.status_code == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                self.logger.error(
                    "Ticket API returned a body that is not JSON",
                    method=method,
                    path=path,
                    content_type=response.headers.get("content-type")
                )
                raise RemoteFailure(
                    502,
                    "Ticket service returned an unexpected response.",
                    {"method": method, "path": path, "reason": str(exc)},
                ) from exc

        payload = self._error_payload(response)
        message = error_message_for(response.status_code, payload)
        self.logger.error(
            "Ticket API request failed",
            method=method,
            path=path,
            status_code=response.status_code,
            error=message
        )
        details: Dict[str, Any] = {"method": method, "path": path}
        if payload is not None and payload.details is not None:
            details["details"] = payload.details
        raise RemoteFailure(response.status_code, message, details)

    @staticmethod
    def _error_payload(response: httpx.Response) -> Optional[ErrorPayload]:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        if isinstance(body.get("error"), dict):
            # Some gateways nest the payload one level down
            body = body["error"]
        try:
            return ErrorPayload.model_validate(body)
        except ValidationError:
            return None

    def _parse(self, model: Type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise self._malformed(exc) from exc

    def _malformed(self, exc: ValidationError) -> RemoteFailure:
        self.logger.error("Ticket API returned a malformed body", error=str(exc))
        return RemoteFailure(
            502,
            "Ticket service returned an unexpected response.",
            {"issues": exc.errors(include_url=False)},
        )
