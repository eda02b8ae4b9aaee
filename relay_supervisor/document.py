"""
Typed state document.

The document of record holds, for each of the two relay slots, the configured
addresses, the last observed run state, the last user action and the latest
progress snapshot. Decoding validates the raw JSON with pydantic and either
returns a complete StateDocument or raises DocumentDecodeError.
"""

import json
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import DocumentDecodeError


class SlotName(str, Enum):
    LOCAL = "repeatToLocalNginx"
    OUTPUT = "repeatToOptionalOutput"


class RunState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    ERROR = "error"


class UserIntent(str, Enum):
    START = "start"
    STOP = "stop"


ProgressValue = Union[int, float, str]


class SlotAddress(BaseModel):
    """Source and destination of a relay. Empty string means unset."""

    model_config = ConfigDict(extra="ignore")

    source: str = ""
    output: str = ""


class StateRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: RunState = RunState.STOPPED
    message: str = ""


class StateDocument(BaseModel):
    """The persisted document. Every map is keyed by both slot names."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    addresses: dict[SlotName, SlotAddress]
    states: dict[SlotName, StateRecord]
    user_actions: dict[SlotName, UserIntent] = Field(alias="userActions")
    progresses: dict[SlotName, dict[str, ProgressValue]]

    @model_validator(mode="after")
    def _require_both_slots(self):
        expected = set(SlotName)
        for key in ("addresses", "states", "user_actions", "progresses"):
            missing = expected - set(getattr(self, key))
            if missing:
                names = ", ".join(sorted(name.value for name in missing))
                raise ValueError(f"{key} is missing slots: {names}")
        return self

    @classmethod
    def default(cls) -> "StateDocument":
        """Both slots stopped, empty addresses, empty progress."""
        return cls(
            addresses={name: SlotAddress() for name in SlotName},
            states={name: StateRecord() for name in SlotName},
            user_actions={name: UserIntent.STOP for name in SlotName},
            progresses={name: {} for name in SlotName},
        )

    def to_json(self) -> str:
        """Serialize deterministically: field order, slot order, two-space indent."""
        data = {
            "addresses": {name.value: self.addresses[name].model_dump() for name in SlotName},
            "states": {name.value: self.states[name].model_dump(mode="json") for name in SlotName},
            "userActions": {name.value: self.user_actions[name].value for name in SlotName},
            "progresses": {name.value: dict(self.progresses[name]) for name in SlotName},
        }
        return json.dumps(data, indent=2) + "\n"


def decode_document(raw: bytes | str) -> StateDocument:
    """Parse and validate raw document content."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DocumentDecodeError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise DocumentDecodeError("document root must be an object")

    try:
        return StateDocument.model_validate(data)
    except ValidationError as e:
        raise DocumentDecodeError(f"schema violation: {e}") from e
