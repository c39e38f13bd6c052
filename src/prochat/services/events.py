"""Event types flowing through the coordinator's channel.

Provider call tasks produce ``StreamEvent`` values which are wrapped in a
``ProviderUpdate`` carrying the turn id they were spawned for. Terminal input
and the ticker produce the remaining ``AppEvent`` kinds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Chunk:
    text: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class StreamError:
    message: str


@dataclass(frozen=True)
class ToolResponsePayload:
    raw: str


StreamEvent = Union[Chunk, Done, StreamError, ToolResponsePayload]


@dataclass(frozen=True)
class ProviderUpdate:
    turn_id: int
    event: StreamEvent


@dataclass(frozen=True)
class InputLine:
    text: str


@dataclass(frozen=True)
class KeyPress:
    key: str


@dataclass(frozen=True)
class Resize:
    columns: int
    rows: int


@dataclass(frozen=True)
class Tick:
    pass


AppEvent = Union[ProviderUpdate, InputLine, KeyPress, Resize, Tick]
