"""Speech backend interface consumed by the speech controller."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional


def _noop(*_args) -> None:
    return None


@dataclass
class Utterance:
    """One speak request plus its lifecycle callbacks.

    A backend calls ``on_start`` once audio begins, then exactly one of
    ``on_end`` or ``on_error(reason)``. Callbacks may come from any thread.
    """

    text: str
    voice: Optional[str] = None
    rate: float = 1.0
    on_start: Callable[[], None] = _noop
    on_end: Callable[[], None] = _noop
    on_error: Callable[[str], None] = _noop


class SpeechBackend(ABC):
    """Abstract base class for speech backends."""

    @abstractmethod
    def speak(self, utterance: Utterance) -> None:
        """Queue an utterance. May raise; the controller treats that as a failed dispatch."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop the current utterance, if any."""

    def resume(self) -> None:
        """Resume a paused engine. Backends without pause support do nothing."""

    @abstractmethod
    def is_speaking(self) -> bool:
        pass

    def is_paused(self) -> bool:
        return False
