"""Session-owned event bus and the tts-state change tracker."""

import logging
from dataclasses import dataclass, field
from typing import Callable

from scene_narrator.models import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict = field(default_factory=dict)
    ts: float = 0.0


class EventBus:
    """Observer list. Subscriber failures are logged and never reach the emitter."""

    def __init__(self):
        self._subscribers: list[Callable[[Event], None]] = []

    def subscribe(self, fn: Callable[[Event], None]) -> Callable[[], None]:
        """Register ``fn``; returns a callable that removes it again."""
        self._subscribers.append(fn)

        def unsubscribe():
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return unsubscribe

    def emit(self, name: str, **payload) -> Event:
        event = Event(name, payload, now_ms())
        logger.debug("event %s %s", name, payload)
        for fn in list(self._subscribers):
            try:
                fn(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", name)
        return event


class TtsStateTracker:
    """Publishes ``tts-state`` whenever speaking/paused/pending changes."""

    def __init__(self, events: EventBus):
        self.events = events
        self.speaking = False
        self.paused = False
        self.pending = False

    def update(self, **changes) -> bool:
        """Apply changes; emits and returns True only if something differed."""
        changed = False
        for key in ("speaking", "paused", "pending"):
            if key in changes and bool(changes[key]) != getattr(self, key):
                setattr(self, key, bool(changes[key]))
                changed = True
        if changed:
            self.events.emit("tts-state", **self.snapshot())
        return changed

    def snapshot(self) -> dict:
        return {"speaking": self.speaking, "paused": self.paused, "pending": self.pending}
