"""Shared fixtures for scene narrator tests."""

import asyncio

import pytest
from pydub import AudioSegment

from scene_narrator.backend import SpeechBackend
from scene_narrator.config import PlayerConfig, SpeechTiming
from scene_narrator.constants import SCENE_EFFECT, SCENE_PLACEHOLDER
from scene_narrator.events import EventBus
from scene_narrator.models import RoleText, Scene

# Everything shrunk so a whole scene plays in tens of milliseconds
FAST_TIMING = SpeechTiming(
    cooldown_ms=5,
    start_timeout_ms=30,
    resume_probe_ms=10,
    hard_min_ms=200,
    hard_max_ms=300,
    hard_per_char_ms=1,
    hard_base_ms=0,
    grace_ms=10,
    expected_base_ms=0,
    chars_per_second=1000,
    sentence_mark_ms=0,
    quiet_poll_ms=5,
    hard_stop_settle_ms=10,
    abort_step_ms=5,
    muted_wait_cap_ms=50,
    muted_wait_base_ms=10,
    muted_wait_per_char_ms=1,
)


class FakeBackend(SpeechBackend):
    """Scripted backend driven by the event loop's timers.

    stall: number of speak() calls that never start
    hang: started utterances never end
    fail_dispatch: speak() raises
    error: utterances fail with this reason instead of ending
    """

    def __init__(self, duration_ms=20, start_delay_ms=2, stall=0, hang=False,
                 fail_dispatch=False, error=None, paused=False):
        self.duration_ms = duration_ms
        self.start_delay_ms = start_delay_ms
        self.stall = stall
        self.hang = hang
        self.fail_dispatch = fail_dispatch
        self.error = error
        self.paused = paused
        self.spoken = []
        self.cancels = 0
        self.resumes = 0
        self.speaking = False
        self._active = None
        self._handles = []

    def speak(self, utterance):
        if self.fail_dispatch:
            raise RuntimeError("engine unavailable")
        self.spoken.append(utterance.text)
        self._active = utterance
        if self.stall > 0:
            self.stall -= 1
            return
        loop = asyncio.get_running_loop()
        if self.error:
            self._handles.append(loop.call_later(self.start_delay_ms / 1000, self._fail, utterance))
        else:
            self._handles.append(loop.call_later(self.start_delay_ms / 1000, self._start, utterance))

    def _start(self, utterance):
        self.speaking = True
        utterance.on_start()
        if not self.hang:
            loop = asyncio.get_running_loop()
            self._handles.append(loop.call_later(self.duration_ms / 1000, self._end, utterance))

    def _end(self, utterance):
        self.speaking = False
        self._active = None
        utterance.on_end()

    def _fail(self, utterance):
        self._active = None
        utterance.on_error(self.error)

    def cancel(self):
        self.cancels += 1
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        self.speaking = False
        if self._active is not None:
            active, self._active = self._active, None
            active.on_error("interrupted")

    def resume(self):
        self.resumes += 1
        self.paused = False

    def is_speaking(self):
        return self.speaking

    def is_paused(self):
        return self.paused


class Recorder:
    """Collects bus events for assertions."""

    def __init__(self, bus: EventBus):
        self.events = []
        bus.subscribe(self.events.append)

    def names(self):
        return [e.name for e in self.events]

    def of(self, name):
        return [e.payload for e in self.events if e.name == name]


def content_scene(index, narration="", title="", title_key="", tag="", advance=None):
    roles = {}
    if tag:
        roles["tag"] = RoleText(tag)
    if title_key:
        roles["title_key"] = RoleText(title_key)
    if title:
        roles["title"] = RoleText(title)
    if narration:
        roles["narration"] = RoleText(narration)
    return Scene(index=index, roles=roles, advance_policy=advance)


def effect_scene(index, duration_ms=20):
    return Scene(index=index, type=SCENE_EFFECT, duration_ms=duration_ms)


def placeholder_scene(index):
    return Scene(index=index, type=SCENE_PLACEHOLDER)


@pytest.fixture
def fast_timing():
    return FAST_TIMING


@pytest.fixture
def fast_config():
    return PlayerConfig(timing=FAST_TIMING)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return Recorder(bus)


@pytest.fixture
def tiny_mp3(tmp_path):
    """Generate a 100ms silent MP3 for testing."""
    path = tmp_path / "test.mp3"
    silence = AudioSegment.silent(duration=100)
    silence.export(str(path), format="mp3")
    return path
