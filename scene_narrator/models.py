"""Data models for narrated scene playback."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from scene_narrator.constants import SCENE_CONTENT


def now_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class RoleText:
    text: str = ""     # display text
    tts: str = ""      # reading override, preferred when present

    @property
    def source(self) -> str:
        return self.tts or self.text


@dataclass(frozen=True)
class Scene:
    index: int
    type: str = SCENE_CONTENT                  # "content", "effect" or "placeholder"
    roles: dict = field(default_factory=dict)  # role name -> RoleText
    advance_policy: Optional[object] = None    # AdvanceOverride for this scene
    duration_ms: Optional[int] = None          # effect scenes only
    visual: dict = field(default_factory=dict)

    def role_source(self, role: str) -> str:
        """Raw text to speak for a role; empty when the role is absent."""
        entry = self.roles.get(role)
        return entry.source if entry else ""


@dataclass
class Epoch:
    """Generation counter for cooperative cancellation.

    Every navigation advances it. A continuation captures the value before it
    suspends and must produce no effects once ``is_current`` turns false.
    """

    value: int = 0

    def advance(self) -> int:
        self.value += 1
        return self.value

    def is_current(self, token: int) -> bool:
        return token == self.value


@dataclass
class SessionState:
    current_index: int = 0
    playing_lock: bool = False
    epoch: Epoch = field(default_factory=Epoch)


@dataclass
class StopRequest:
    pending: bool = False
    confirmed: bool = False
    requested_at: Optional[float] = None   # ms, monotonic
    confirmed_at: Optional[float] = None
    context: str = ""

    def request(self, at: float) -> bool:
        """Mark a stop as pending. Returns False when one is already pending."""
        if self.pending:
            return False
        self.pending = True
        self.requested_at = at
        return True

    def confirm(self, context: str, at: float) -> Optional[int]:
        """Confirm a pending stop once; returns the latency in ms or None."""
        if not self.pending or self.confirmed:
            return None
        self.confirmed = True
        self.confirmed_at = at
        self.context = context
        started = self.requested_at if self.requested_at is not None else at
        return max(0, round(at - started))

    def clear(self) -> None:
        self.pending = False
        self.confirmed = False
        self.requested_at = None
        self.confirmed_at = None
        self.context = ""


class SpeechStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    DONE = "done"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"


SETTLED_STATUSES = (SpeechStatus.DONE, SpeechStatus.ERRORED, SpeechStatus.TIMED_OUT)


@dataclass
class SpeechTask:
    text: str
    role: str
    rate: float
    chunks: list = field(default_factory=list)
    status: SpeechStatus = SpeechStatus.PENDING
    retried: bool = False
    error: str = ""

    @property
    def settled(self) -> bool:
        return self.status in SETTLED_STATUSES


class PlayerPhase(str, Enum):
    IDLE = "idle"
    RENDERING = "rendering"
    SPEAKING = "speaking"
    QUIET_GATE = "quiet_gate"
    TIMED_WAIT = "timed_wait"
    AWAITING_ACTIVATION = "awaiting_activation"
    ADVANCING = "advancing"
    STOPPED = "stopped"
