"""Tests for the speech controller."""

import asyncio

from conftest import FAST_TIMING, FakeBackend, Recorder
from scene_narrator.config import SpeechTiming
from scene_narrator.events import EventBus
from scene_narrator.models import Epoch, SpeechStatus, now_ms
from scene_narrator.speech import (
    SpeechController,
    expected_duration_ms,
    hard_timeout_ms,
    muted_wait_ms,
)


def _controller(backend, bus=None, epoch=None, **kwargs):
    return SpeechController(backend, bus or EventBus(), timing=FAST_TIMING, epoch=epoch, **kwargs)


# --- Pure helpers ---

def test_expected_duration_default_timing():
    # 13 chars at rate 1.0, one period: 1000 + 13/6.5*1000 + 180
    assert expected_duration_ms("あいうえおかきくけこさし。", 1.0) == 3180


def test_expected_duration_slow_rate_floor():
    assert expected_duration_ms("ab", 0.1) == expected_duration_ms("ab", 0.8)


def test_hard_timeout_clamped():
    assert hard_timeout_ms(1) == 12000
    assert hard_timeout_ms(100) == 29000
    assert hard_timeout_ms(1000) == 90000


def test_muted_wait_capped():
    assert muted_wait_ms(10, 1.0) == 1800
    assert muted_wait_ms(10000, 1.0) == 20000


# --- speak ---

def test_speak_done(backend):
    controller = _controller(backend)
    task = asyncio.run(controller.speak("こんにちは", 1.0, "narration"))
    assert task.status is SpeechStatus.DONE
    assert backend.spoken == ["こんにちは"]
    assert not task.retried


def test_speak_dispatch_failure_settles_errored():
    backend = FakeBackend(fail_dispatch=True)
    task = asyncio.run(_controller(backend).speak("テスト"))
    assert task.status is SpeechStatus.ERRORED
    assert "engine unavailable" in task.error


def test_speak_backend_error(bus):
    recorder = Recorder(bus)
    backend = FakeBackend(error="synthesis-failed")
    task = asyncio.run(_controller(backend, bus).speak("テスト", role="title"))
    assert task.status is SpeechStatus.ERRORED
    assert recorder.of("tts-error") == [{"role": "title", "reason": "synthesis-failed"}]


def test_speak_without_backend():
    task = asyncio.run(_controller(None).speak("テスト"))
    assert task.status is SpeechStatus.ERRORED


def test_stalled_start_resubmits_once():
    backend = FakeBackend(stall=1)
    task = asyncio.run(_controller(backend).speak("テスト"))
    assert task.status is SpeechStatus.DONE
    assert task.retried
    assert backend.spoken == ["テスト", "テスト"]
    assert backend.resumes >= 1
    assert backend.cancels == 1


def test_stalled_twice_times_out():
    backend = FakeBackend(stall=2)
    started = now_ms()
    task = asyncio.run(_controller(backend).speak("テスト"))
    assert task.status is SpeechStatus.TIMED_OUT
    assert task.retried
    assert len(backend.spoken) == 2
    assert now_ms() - started >= FAST_TIMING.hard_min_ms - 5


def test_hung_utterance_times_out_and_cancels():
    backend = FakeBackend(hang=True)
    task = asyncio.run(_controller(backend).speak("テスト"))
    assert task.status is SpeechStatus.TIMED_OUT
    assert not task.retried
    assert backend.cancels == 1


def test_paused_backend_resumed_before_dispatch():
    backend = FakeBackend(paused=True)
    task = asyncio.run(_controller(backend).speak("テスト"))
    assert task.status is SpeechStatus.DONE
    assert backend.resumes == 1


def test_cooldown_after_cancel():
    timing = SpeechTiming(**{**FAST_TIMING.__dict__, "cooldown_ms": 80})
    backend = FakeBackend(start_delay_ms=1, duration_ms=1)

    async def scenario():
        controller = SpeechController(backend, EventBus(), timing=timing)
        controller.cancel()
        began = now_ms()
        await controller.speak("テスト")
        return now_ms() - began

    assert asyncio.run(scenario()) >= 70


def test_cancel_settles_outstanding_speak():
    backend = FakeBackend(hang=True)

    async def scenario():
        controller = _controller(backend)
        pending = asyncio.ensure_future(controller.speak("テスト"))
        await asyncio.sleep(0.02)
        controller.cancel()
        return await pending

    task = asyncio.run(scenario())
    assert task.status is SpeechStatus.ERRORED
    assert task.error == "cancelled"


# --- narrate ---

def test_narrate_emits_chunk_and_quiet_events(backend, bus, recorder):
    async def scenario():
        controller = _controller(backend, bus, chunk_max_len=5)
        return await controller.narrate("あいうえ。かきくけ。さしす", 1.0, "narration", token=0, quiet_ms=10)

    assert asyncio.run(scenario()) is True
    chunks = recorder.of("tts-chunk")
    assert [(c["phase"], c["index"], c["total"]) for c in chunks] == [
        ("start", 1, 3), ("end", 1, 3), ("start", 2, 3), ("end", 2, 3), ("start", 3, 3), ("end", 3, 3),
    ]
    assert all("ms" in c for c in chunks if c["phase"] == "end")
    quiet = recorder.of("tts-quiet")
    assert [q["passed"] for q in quiet] == [True, True, True]
    assert quiet[0]["quiet_ms"] == 10
    names = recorder.names()
    assert names[0] == "tts-state"
    assert "tts-start" in names and names[-1] == "tts-end"
    assert recorder.of("tts-state") == [
        {"speaking": True, "paused": False, "pending": False},
        {"speaking": False, "paused": False, "pending": False},
    ]


def test_narrate_stale_epoch_stops_silently(bus, recorder):
    backend = FakeBackend(duration_ms=30)
    epoch = Epoch()

    async def scenario():
        controller = _controller(backend, bus, epoch=epoch, chunk_max_len=4)
        job = asyncio.ensure_future(controller.narrate("一二三。四五六。七八九。", 1.0, "narration", token=0))
        await asyncio.sleep(0.01)
        epoch.advance()
        controller.cancel()
        return await job

    assert asyncio.run(scenario()) is False
    assert backend.spoken == ["一二三。"]
    assert [c["phase"] for c in recorder.of("tts-chunk")] == ["start"]
    assert recorder.of("tts-quiet") == []
    assert "tts-end" not in recorder.names()


def test_narrate_muted_waits_without_backend(bus, recorder):
    async def scenario():
        controller = _controller(None, bus)
        began = now_ms()
        ok = await controller.narrate("あいうえお", 1.0, "narration", token=0)
        return ok, now_ms() - began

    ok, elapsed = asyncio.run(scenario())
    assert ok is True
    assert elapsed >= 10
    assert recorder.of("tts-chunk") == []


def test_narrate_disabled_tts_uses_timed_wait(backend):
    controller = _controller(backend, tts_enabled=False)
    assert asyncio.run(controller.narrate("あいうえお", token=0)) is True
    assert backend.spoken == []


def test_paused_backend_published_in_tts_state(bus, recorder):
    backend = FakeBackend(paused=True)
    task = asyncio.run(_controller(backend, bus).speak("テスト"))
    assert task.status is SpeechStatus.DONE
    paused = [s["paused"] for s in recorder.of("tts-state")]
    assert paused[:2] == [True, False]
    assert not paused[-1]
