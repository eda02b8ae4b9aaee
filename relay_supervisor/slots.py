"""
Pipeline slots and their run state machine.

A slot is one relay direction. Its run state only moves along the edges in
TRANSITIONS; everything that changes a slot happens with slot.lock held.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .document import RunState, SlotAddress, SlotName, StateDocument, UserIntent
from .errors import InvalidTransition
from .progress import ProgressParser

TRANSITIONS: frozenset[tuple[RunState, RunState]] = frozenset(
    {
        (RunState.STOPPED, RunState.STARTING),
        (RunState.STARTING, RunState.STARTED),
        (RunState.STARTING, RunState.ERROR),
        (RunState.STARTED, RunState.STOPPING),
        (RunState.STARTED, RunState.ERROR),
        (RunState.STOPPING, RunState.STOPPED),
        (RunState.ERROR, RunState.STARTING),
        (RunState.ERROR, RunState.STOPPED),
    }
)

# States in which a process handle exists.
LIVE_STATES = frozenset({RunState.STARTING, RunState.STARTED, RunState.STOPPING})


def can_transition(current: RunState, target: RunState) -> bool:
    return (current, target) in TRANSITIONS


@dataclass
class PipelineSlot:
    """In-memory state of one relay slot."""

    name: SlotName
    address: SlotAddress = field(default_factory=SlotAddress)
    user_intent: UserIntent = UserIntent.STOP
    run_state: RunState = RunState.STOPPED
    message: str = ""
    progress: dict[str, Any] = field(default_factory=dict)

    # Runtime only, never persisted
    process: Any = None
    parser: Optional[ProgressParser] = None
    restart_attempts: int = 0
    run_id: int = 0
    history_run_id: Optional[int] = None
    started_at: Optional[float] = None
    start_timer: Optional[threading.Timer] = None
    retry_timer: Optional[threading.Timer] = None
    store_error: Optional[Exception] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @classmethod
    def from_document(cls, name: SlotName, document: StateDocument) -> "PipelineSlot":
        """Build a slot from the persisted document.

        A persisted live state cannot have a process behind it any more, so it
        is normalized to stopped.
        """
        record = document.states[name]
        run_state = record.type
        message = record.message
        if run_state in LIVE_STATES:
            message = f"process from previous run lost while {run_state.value}"
            run_state = RunState.STOPPED

        return cls(
            name=name,
            address=document.addresses[name].model_copy(),
            user_intent=document.user_actions[name],
            run_state=run_state,
            message=message,
            progress=dict(document.progresses[name]),
        )

    def transition(self, target: RunState, message: str = "") -> RunState:
        """Move to target. Returns the previous state."""
        if not can_transition(self.run_state, target):
            raise InvalidTransition(
                f"{self.name.value}: {self.run_state.value} -> {target.value} is not allowed"
            )
        previous = self.run_state
        self.run_state = target
        self.message = message
        if target is RunState.STARTED:
            self.started_at = time.monotonic()
        return previous

    def next_run(self) -> int:
        """Start a new run generation with an empty progress snapshot."""
        self.run_id += 1
        self.parser = ProgressParser()
        self.progress = {}
        self.started_at = None
        return self.run_id

    def stable_for(self, seconds: float) -> bool:
        """True if the current run has been started for at least seconds."""
        if self.started_at is None:
            return False
        return time.monotonic() - self.started_at >= seconds

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def to_dict(self) -> dict:
        return {
            "slot": self.name.value,
            "userIntent": self.user_intent.value,
            "runState": self.run_state.value,
            "message": self.message,
            "progress": dict(self.progress),
            "address": self.address.model_dump(),
            "restartAttempts": self.restart_attempts,
            "pid": self.pid,
        }
