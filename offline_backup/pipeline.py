"""Lifecycle of one backup cycle as an explicit state machine.

    IDLE -> IMPORTED -> BACKUP_COMPLETE -> SNAPSHOTTED -> EXPORTED -> EJECTED

The integrity check gates BACKUP_COMPLETE -> SNAPSHOTTED. A fatal error
leaves the machine where it stopped; nothing rolls back automatically. The
only way out of an intermediate state is ``Pipeline.recovered``, which the
``recover`` command (see ``recovery.py``) calls after it has forced the pool
out. The default control path never takes that edge.
"""

from __future__ import annotations

import enum
import time
from typing import Dict, FrozenSet, List, Tuple

from .errors import InvalidTransitionError
from .executil import trace


class State(str, enum.Enum):
    IDLE = "idle"
    IMPORTED = "imported"
    BACKUP_COMPLETE = "backup_complete"
    SNAPSHOTTED = "snapshotted"
    EXPORTED = "exported"
    EJECTED = "ejected"


TRANSITIONS: Dict[State, FrozenSet[State]] = {
    State.IDLE: frozenset({State.IMPORTED}),
    State.IMPORTED: frozenset({State.BACKUP_COMPLETE}),
    State.BACKUP_COMPLETE: frozenset({State.SNAPSHOTTED}),
    State.SNAPSHOTTED: frozenset({State.EXPORTED}),
    State.EXPORTED: frozenset({State.EJECTED}),
    State.EJECTED: frozenset(),
}

# States in which the pool may still be imported on the host.
UNSAFE_STATES: FrozenSet[State] = frozenset({State.IMPORTED, State.BACKUP_COMPLETE, State.SNAPSHOTTED})


class Pipeline:
    def __init__(self, state: State = State.IDLE) -> None:
        self.state = state
        self.history: List[Tuple[str, str, float]] = []

    def can_advance(self, target: State) -> bool:
        return target in TRANSITIONS[self.state]

    def advance(self, target: State) -> State:
        if not self.can_advance(target):
            raise InvalidTransitionError(
                f"cannot move from {self.state.value} to {target.value}",
                details={"from": self.state.value, "to": target.value},
            )
        self._record(target, "advance")
        return self.state

    @property
    def safe_to_remove(self) -> bool:
        return self.state in (State.EXPORTED, State.EJECTED)

    def recovered(self) -> State:
        """Recovery edge: any state -> EXPORTED once the pool was forced out."""

        self._record(State.EXPORTED, "recover")
        return self.state

    def _record(self, target: State, how: str) -> None:
        previous = self.state
        self.state = target
        self.history.append((previous.value, target.value, time.time()))
        trace("pipeline." + how, src=previous.value, dst=target.value)
