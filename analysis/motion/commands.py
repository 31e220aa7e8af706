"""Control commands accepted by the detection coordinator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class SetSensitivity:
    value: float


@dataclass(frozen=True)
class SetMinArea:
    value: int


@dataclass(frozen=True)
class SetDevice:
    index: int


@dataclass(frozen=True)
class SnapshotNow:
    pass


Command = Union[Start, Stop, SetSensitivity, SetMinArea, SetDevice, SnapshotNow]


@dataclass(frozen=True)
class CommandAck:
    command: Command
    accepted: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.accepted
