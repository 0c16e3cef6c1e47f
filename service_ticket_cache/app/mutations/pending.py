"""
Pending mutation records.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional


class MutationKind(str, Enum):
    """Mutation types handled by the coordinator."""
    CREATE_TICKET = "create_ticket"
    UPDATE_TICKET = "update_ticket"
    DELETE_TICKET = "delete_ticket"
    CREATE_COMMENT = "create_comment"


class MutationState(str, Enum):
    """Lifecycle of one mutation."""
    IDLE = "idle"
    APPLYING = "applying"
    SETTLING = "settling"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class EntrySnapshot:
    """Serializable copy of one cache entry taken before a mutation."""
    key: str
    value: Any  # JSON-mode dump of the cached model(s)
    fetched_at: float
    stale: bool = False
    # Reattached on restore so the entry can still refresh; not serialized
    fetcher: Optional[Callable[[], Awaitable[Any]]] = field(default=None, repr=False, compare=False)


@dataclass
class PendingMutation:
    """A mutation between optimistic application and settlement.

    ``snapshots`` maps cache keys to the entries as they were before the
    optimistic patch. A key mapped to ``None`` had no entry.
    """
    mutation_id: str
    kind: MutationKind
    entity_id: Optional[str]
    target_keys: FrozenSet[str] = frozenset()
    snapshots: Dict[str, Optional[EntrySnapshot]] = field(default_factory=dict)
    applied_patch: Dict[str, Any] = field(default_factory=dict)
    state: MutationState = MutationState.IDLE
    started_at: float = 0.0
    error: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.state in (MutationState.COMMITTED, MutationState.ROLLED_BACK)

    def transition(self, state: MutationState) -> None:
        allowed = _TRANSITIONS[self.state]
        if state not in allowed:
            raise RuntimeError(f"Illegal mutation transition {self.state.value} -> {state.value}")
        self.state = state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mutation_id": self.mutation_id,
            "kind": self.kind.value,
            "entity_id": self.entity_id,
            "target_keys": sorted(self.target_keys),
            "snapshots": {
                key: None if snapshot is None else {
                    "value": snapshot.value,
                    "fetched_at": snapshot.fetched_at,
                    "stale": snapshot.stale,
                }
                for key, snapshot in self.snapshots.items()
            },
            "applied_patch": self.applied_patch,
            "state": self.state.value,
            "started_at": self.started_at,
            "error": self.error,
        }


_TRANSITIONS = {
    MutationState.IDLE: {MutationState.APPLYING},
    MutationState.APPLYING: {MutationState.SETTLING, MutationState.ROLLED_BACK},
    MutationState.SETTLING: {MutationState.COMMITTED, MutationState.ROLLED_BACK},
    MutationState.COMMITTED: set(),
    MutationState.ROLLED_BACK: set(),
}
