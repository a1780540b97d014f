"""Side-effect intents emitted by the session orchestrator.

The orchestrator never touches the clipboard, speakers or screen directly.
It emits these small records, in order, to an :class:`EffectSink`; the
desktop interpreter in :mod:`freeflow.desktop` turns them into platform
actions and tests simply collect them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Type, TypeVar

from .models import SessionState


@dataclass(frozen=True, slots=True)
class StateChanged:
    session_id: Optional[str]
    previous: SessionState
    current: SessionState


@dataclass(frozen=True, slots=True)
class StatusChanged:
    text: str


@dataclass(frozen=True, slots=True)
class PlayCue:
    name: str


@dataclass(frozen=True, slots=True)
class AudioLevel:
    session_id: str
    level: float


@dataclass(frozen=True, slots=True)
class ShowIndicator:
    kind: str


@dataclass(frozen=True, slots=True)
class HideIndicator:
    pass


@dataclass(frozen=True, slots=True)
class CopyToClipboard:
    text: str


@dataclass(frozen=True, slots=True)
class PasteAtCursor:
    pass


@dataclass(frozen=True, slots=True)
class ShowError:
    message: str


@dataclass(frozen=True, slots=True)
class ShowWarning:
    message: str


@dataclass(frozen=True, slots=True)
class PromptPermission:
    permission: str


CUE_RECORDING_STARTED = "Tink"
CUE_RECORDING_STOPPED = "Pop"

E = TypeVar("E")


class EffectSink(Protocol):
    def apply(self, effect: object) -> None:
        """Execute or record one effect."""


class EffectLog:
    """Sink that keeps every effect in order; useful for tests and dry runs."""

    def __init__(self) -> None:
        self.effects: List[object] = []

    def apply(self, effect: object) -> None:
        self.effects.append(effect)

    def of_type(self, kind: Type[E]) -> List[E]:
        return [effect for effect in self.effects if isinstance(effect, kind)]

    def clear(self) -> None:
        self.effects.clear()
