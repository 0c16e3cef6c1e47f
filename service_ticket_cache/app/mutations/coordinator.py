"""
Optimistic mutation coordinator.

Every mutation runs IDLE -> APPLYING -> SETTLING -> COMMITTED | ROLLED_BACK.
While APPLYING the coordinator snapshots the cache entries it is about to
touch, writes the optimistic value and marks every list stale. SETTLING
awaits the remote call. A success replaces optimistic values with the
server's; any failure restores the snapshots. List entries are never
patched in place, so a rollback never has list contents to revert. Lists
are marked stale again on settlement, since a page refetched while the
request was in flight may predate it.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from shared.errors import NotFoundDuringMutation, RemoteFailure, TicketCacheException, TransportFailure
from shared.logging import get_logger, mutation_id_var
from shared.metrics import MetricsCollector

from ..adapters.tickets_client import TicketsClient
from ..caching.fingerprint import comments_key, detail_key, is_comments_key, is_list_key
from ..caching.query_cache import QueryCache
from ..caching.subscriptions import CacheEvent, CacheEventType
from ..models import (
    Comment,
    CreateCommentRequest,
    CreateTicketRequest,
    Ticket,
    UpdateTicketRequest,
    parse_model,
)
from .pending import EntrySnapshot, MutationKind, MutationState, PendingMutation


MUTATIONS_TOPIC = "mutations"


class MutationCoordinator:
    """Runs ticket and comment mutations against the API with optimistic cache updates."""

    def __init__(
        self,
        cache: QueryCache,
        client: TicketsClient,
        *,
        timeout: Optional[float] = 15.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.cache = cache
        self.client = client
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("ticket_cache.mutations")

        self._pending: Dict[str, PendingMutation] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def pending(self) -> List[PendingMutation]:
        """Mutations applied but not yet settled."""
        return list(self._pending.values())

    def pending_for(self, entity_id: str) -> Optional[PendingMutation]:
        for mutation in self._pending.values():
            if mutation.entity_id == entity_id:
                return mutation
        return None

    @property
    def is_submitting_ticket(self) -> bool:
        """Pending-submission indicator for ticket creation."""
        return any(m.kind == MutationKind.CREATE_TICKET for m in self._pending.values())

    # ------------------------------------------------------------------
    # Ticket mutations
    # ------------------------------------------------------------------

    async def create_ticket(self, request: Union[CreateTicketRequest, Mapping[str, Any]]) -> Ticket:
        """Create a ticket.

        Identity and ticket number are assigned by the server, so nothing is
        shown optimistically. On success the new ticket is put in the detail
        cache and every list is marked stale; on failure the cache is left
        untouched.
        """
        payload = parse_model(CreateTicketRequest, request)
        mutation = self._begin(MutationKind.CREATE_TICKET, None, payload.to_wire(exclude_none=True))

        def commit(ticket: Ticket) -> None:
            self.cache.set_data(detail_key(ticket.id), ticket)
            self._invalidate_lists(mutation)

        return await self._execute(
            mutation,
            apply=lambda: None,
            remote=lambda: self.client.create_ticket(payload),
            commit=commit,
        )

    async def update_ticket(self, ticket_id: str, changes: Union[UpdateTicketRequest, Mapping[str, Any]]) -> Ticket:
        """Update a ticket, patching its cached detail view optimistically."""
        payload = parse_model(UpdateTicketRequest, changes)
        patch = payload.changes()
        key = detail_key(ticket_id)

        async with self._entity_lock(ticket_id):
            mutation = self._begin(
                MutationKind.UPDATE_TICKET,
                ticket_id,
                payload.to_wire(exclude_unset=True, exclude_none=True),
            )

            def apply() -> None:
                current = self.cache.get_data(key)
                if isinstance(current, Ticket):
                    self._snapshot(mutation, key)
                    self.cache.set_data(key, current.apply_patch(patch))
                self._invalidate_lists(mutation)

            def commit(ticket: Ticket) -> None:
                self.cache.set_data(key, ticket)
                self._invalidate_lists(mutation)

            return await self._execute(
                mutation,
                apply=apply,
                remote=lambda: self.client.update_ticket(ticket_id, payload),
                commit=commit,
            )

    async def delete_ticket(self, ticket_id: str) -> None:
        """Delete a ticket, dropping it (and its comments) from the cache first."""
        detail = detail_key(ticket_id)
        comments = comments_key(ticket_id)

        async with self._entity_lock(ticket_id):
            mutation = self._begin(MutationKind.DELETE_TICKET, ticket_id, {})

            def apply() -> None:
                for key in (detail, comments):
                    if self.cache.peek(key) is not None:
                        self._snapshot(mutation, key)
                        self.cache.remove(key)
                self._invalidate_lists(mutation)

            def commit(_: Any) -> None:
                # A read that started after the optimistic removal may have re-added them
                self.cache.remove(detail)
                self.cache.remove(comments)
                self._invalidate_lists(mutation)

            await self._execute(
                mutation,
                apply=apply,
                remote=lambda: self.client.delete_ticket(ticket_id),
                commit=commit,
            )

    # ------------------------------------------------------------------
    # Comment mutations
    # ------------------------------------------------------------------

    async def create_comment(
        self,
        ticket_id: str,
        request: Union[CreateCommentRequest, Mapping[str, Any]],
    ) -> Comment:
        """Add a comment, appending a temporary one to the cached list first."""
        payload = parse_model(CreateCommentRequest, request)
        key = comments_key(ticket_id)

        async with self._entity_lock(ticket_id):
            mutation = self._begin(MutationKind.CREATE_COMMENT, ticket_id, payload.to_wire())
            placeholder = Comment(
                id=f"temp-{uuid.uuid4().hex}",
                content=payload.content,
                author=payload.author,
                ticket_id=ticket_id,
                created_at=datetime.now(timezone.utc),
            )

            def apply() -> None:
                self._snapshot(mutation, key)
                previous = self.cache.get_data(key) or []
                self.cache.set_data(key, [*previous, placeholder])

            def commit(comment: Comment) -> None:
                current = self.cache.get_data(key) or []
                merged = [comment if item.id == placeholder.id else item for item in current]
                if all(item.id != comment.id for item in merged):
                    merged.append(comment)
                self.cache.set_data(key, merged)
                # Detail and list rows embed comments too
                invalidated = self.cache.invalidate(ticket_id)
                mutation.target_keys = mutation.target_keys | set(invalidated)

            return await self._execute(
                mutation,
                apply=apply,
                remote=lambda: self.client.create_comment(ticket_id, payload),
                commit=commit,
            )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _begin(self, kind: MutationKind, entity_id: Optional[str], patch: Dict[str, Any]) -> PendingMutation:
        return PendingMutation(
            mutation_id=str(uuid.uuid4()),
            kind=kind,
            entity_id=entity_id,
            applied_patch=patch,
            started_at=time.time(),
        )

    async def _execute(
        self,
        mutation: PendingMutation,
        *,
        apply: Callable[[], None],
        remote: Callable[[], Awaitable[Any]],
        commit: Callable[[Any], None],
    ) -> Any:
        token = mutation_id_var.set(mutation.mutation_id)
        self._pending[mutation.mutation_id] = mutation
        start = time.perf_counter()
        try:
            mutation.transition(MutationState.APPLYING)
            self.logger.info("Mutation started", kind=mutation.kind.value, entity_id=mutation.entity_id)

            try:
                apply()
                mutation.transition(MutationState.SETTLING)
                self._announce(mutation)
                result = await self._call_remote(remote)
            except (Exception, asyncio.CancelledError) as exc:
                failure = self._translate_failure(mutation, exc)
                self._rollback(mutation, failure)
                if failure is exc:
                    raise
                raise failure from exc

            commit(result)
            mutation.transition(MutationState.COMMITTED)
            self.logger.info("Mutation committed", kind=mutation.kind.value, entity_id=mutation.entity_id)
            return result
        finally:
            self._pending.pop(mutation.mutation_id, None)
            if mutation.is_settled:
                self._announce(mutation)
                self._record(mutation, time.perf_counter() - start)
            mutation_id_var.reset(token)

    async def _call_remote(self, remote: Callable[[], Awaitable[Any]]) -> Any:
        if self.timeout is None:
            return await remote()
        try:
            return await asyncio.wait_for(remote(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransportFailure(
                f"Mutation timed out after {self.timeout:g}s",
                details={"timeout": self.timeout},
            ) from exc

    def _translate_failure(self, mutation: PendingMutation, exc: BaseException) -> BaseException:
        if (
            isinstance(exc, RemoteFailure)
            and not isinstance(exc, NotFoundDuringMutation)
            and exc.is_not_found
            and mutation.kind in (MutationKind.UPDATE_TICKET, MutationKind.DELETE_TICKET)
            and mutation.entity_id is not None
        ):
            return NotFoundDuringMutation(mutation.entity_id, exc.message, exc.details)
        return exc

    def _rollback(self, mutation: PendingMutation, failure: BaseException) -> None:
        """Restore every snapshot taken while applying; lists stay stale."""
        outcome_unknown = isinstance(failure, (TransportFailure, asyncio.CancelledError))
        for key, snapshot in mutation.snapshots.items():
            if snapshot is None:
                self.cache.remove(key)
                continue
            self.cache.set_data(
                key,
                self._restore_value(key, snapshot.value),
                fetched_at=snapshot.fetched_at,
                stale=snapshot.stale or outcome_unknown,
                fetcher=snapshot.fetcher,
            )
        if mutation.kind in (MutationKind.UPDATE_TICKET, MutationKind.DELETE_TICKET):
            # Pages refetched while settling must not count as fresh
            self.cache.invalidate(is_list_key)

        if isinstance(failure, TicketCacheException):
            mutation.error = failure.message
        else:
            mutation.error = str(failure) or type(failure).__name__
        mutation.transition(MutationState.ROLLED_BACK)
        if self.metrics is not None and not isinstance(failure, asyncio.CancelledError):
            self.metrics.record_error(type(failure).__name__)
        self.logger.warning(
            "Mutation rolled back",
            kind=mutation.kind.value,
            entity_id=mutation.entity_id,
            restored_keys=sorted(mutation.snapshots),
            error=mutation.error,
            error_type=type(failure).__name__
        )

    def _snapshot(self, mutation: PendingMutation, key: str) -> None:
        if key in mutation.snapshots:
            return
        entry = self.cache.peek(key)
        if entry is None:
            mutation.snapshots[key] = None
        else:
            mutation.snapshots[key] = EntrySnapshot(
                key=key,
                value=self._dump_value(entry.value),
                fetched_at=entry.fetched_at,
                stale=entry.invalidated,
                fetcher=entry.fetcher,
            )
        mutation.target_keys = mutation.target_keys | {key}

    def _invalidate_lists(self, mutation: PendingMutation) -> None:
        invalidated = self.cache.invalidate(is_list_key)
        mutation.target_keys = mutation.target_keys | set(invalidated)

    @staticmethod
    def _dump_value(value: Any) -> Any:
        if isinstance(value, list):
            return [item.to_wire() for item in value]
        return value.to_wire()

    @staticmethod
    def _restore_value(key: str, data: Any) -> Any:
        if is_comments_key(key):
            return [Comment.model_validate(item) for item in data]
        return Ticket.model_validate(data)

    @asynccontextmanager
    async def _entity_lock(self, entity_id: str):
        """Serialize mutations per ticket so each snapshot sees the settled state."""
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._lock_users[entity_id] = self._lock_users.get(entity_id, 0) + 1
        if lock.locked():
            self.logger.debug("Waiting for pending mutation to settle", entity_id=entity_id)
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[entity_id] - 1
            if remaining:
                self._lock_users[entity_id] = remaining
            else:
                del self._lock_users[entity_id]
                del self._locks[entity_id]

    def _announce(self, mutation: PendingMutation) -> None:
        topics = [MUTATIONS_TOPIC]
        if mutation.entity_id is not None:
            topics.append(mutation.entity_id)
        self.cache.registry.publish(
            topics,
            CacheEvent(
                type=CacheEventType.MUTATION,
                key=f"mutation:{mutation.mutation_id}",
                value=mutation.to_dict(),
                error=mutation.error,
            ),
        )

    def _record(self, mutation: PendingMutation, duration: float) -> None:
        if self.metrics is None:
            return
        self.metrics.increment_counter("mutations_total", kind=mutation.kind.value, outcome=mutation.state.value)
        self.metrics.observe_histogram("mutation_duration_seconds", duration, kind=mutation.kind.value)
