"""
Core data model for commands, callbacks, and Bear database records.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr

ParameterValue = Union[StrictStr, List[StrictStr], StrictBool]
EncodedParameters = Dict[str, str]
CallbackPayload = Dict[str, Any]


class TokenPolicy(str, Enum):
    NEVER = "never"
    OPTIONAL = "optional"
    REQUIRED = "required"
    WHEN_SELECTED = "when_selected"


class ExchangeState(str, Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    RESOLVED = "resolved"
    REJECTED_TIMEOUT = "rejected_timeout"
    REJECTED_ERROR = "rejected_error"
    REJECTED_TRANSPORT = "rejected_transport"


TERMINAL_STATES = frozenset(
    {
        ExchangeState.RESOLVED,
        ExchangeState.REJECTED_TIMEOUT,
        ExchangeState.REJECTED_ERROR,
        ExchangeState.REJECTED_TRANSPORT,
    }
)


class CommandRequest(BaseModel):
    """One outbound Bear action and its typed input fields."""

    model_config = ConfigDict(frozen=True)

    action: str = Field(min_length=1)
    parameters: Dict[str, ParameterValue] = Field(default_factory=dict)


@dataclass(frozen=True)
class ActionSpec:
    """Field typing and token policy for a single Bear action."""

    name: str
    strings: FrozenSet[str] = frozenset()
    booleans: FrozenSet[str] = frozenset()
    lists: FrozenSet[str] = frozenset()
    required: FrozenSet[str] = frozenset()
    one_of: FrozenSet[str] = frozenset()
    choices: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    token: TokenPolicy = TokenPolicy.NEVER
    description: str = ""

    @property
    def fields(self) -> FrozenSet[str]:
        names = self.strings | self.booleans | self.lists
        if self.token is not TokenPolicy.NEVER:
            names = names | {"token"}
        return names


@dataclass(frozen=True)
class CallbackMessage:
    """The single inbound request a listener captured."""

    channel: Literal["success", "error"]
    payload: CallbackPayload
    path: str = "/"
    received_at: float = field(default_factory=time.time)

    @property
    def is_error(self) -> bool:
        return self.channel == "error"


# --- Bear database records ---

class NoteRecord(BaseModel):
    id: str
    title: str = ""
    text: str = ""
    trashed: bool = False


class NoteSummary(BaseModel):
    identifier: str
    title: str = ""
    tags: List[str] = Field(default_factory=list)
    created: Optional[str] = None


class TagRecord(BaseModel):
    name: str


def merge_parameters(base: Mapping[str, Any], **overrides: Any) -> Dict[str, Any]:
    """Drop unset (None) values so only supplied fields reach the codec."""
    merged = dict(base)
    merged.update(overrides)
    return {k: v for k, v in merged.items() if v is not None}
