"""
Mutation package.

Runs create, update and delete requests with optimistic cache updates and
rolls them back from explicit snapshots when the request fails.
"""

from .coordinator import MUTATIONS_TOPIC, MutationCoordinator
from .pending import EntrySnapshot, MutationKind, MutationState, PendingMutation
