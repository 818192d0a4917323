"""Tests for the edge-tts backend."""

import asyncio
from unittest.mock import patch, MagicMock

import pytest
from pydub import AudioSegment

from conftest import FAST_TIMING
from scene_narrator.backend import Utterance
from scene_narrator.events import EventBus
from scene_narrator.models import SpeechStatus
from scene_narrator.speech import SpeechController
from scene_narrator.tts import EdgeTTSBackend, edge_rate, synthesize


def _make_mock_communicate(duration=100, calls=None):
    """Create a mock edge_tts.Communicate that writes a short silent MP3."""
    def factory(text, voice, **kwargs):
        if calls is not None:
            calls.append((text, voice, kwargs))
        mock = MagicMock()
        async def save(path):
            AudioSegment.silent(duration=duration).export(path, format="mp3")
        mock.save = save
        return mock
    return factory


def _utterance(text="テスト", log=None, voice=None):
    log = log if log is not None else []
    return Utterance(
        text=text,
        voice=voice,
        rate=1.4,
        on_start=lambda: log.append("start"),
        on_end=lambda: log.append("end"),
        on_error=lambda reason: log.append(("error", reason)),
    )


def test_edge_rate():
    assert edge_rate(1.4) == "+40%"
    assert edge_rate(1.0) == "+0%"
    assert edge_rate(0.5) == "-50%"


@patch("scene_narrator.tts.edge_tts.Communicate")
def test_synthesize_writes_file(mock_comm, tmp_path):
    output = tmp_path / "clip.mp3"
    calls = []
    mock_comm.side_effect = _make_mock_communicate(calls=calls)
    asyncio.run(synthesize("こんにちは", "ja-JP-NanamiNeural", str(output), rate="+40%"))
    assert output.stat().st_size > 0
    assert calls == [("こんにちは", "ja-JP-NanamiNeural", {"rate": "+40%"})]


@patch("scene_narrator.tts.TTS_RETRY_BASE_DELAY", 0)
@patch("scene_narrator.tts.edge_tts.Communicate")
def test_synthesize_retry(mock_comm, tmp_path):
    """Retry works when first attempt fails."""
    output = tmp_path / "clip.mp3"
    call_count = 0

    def fail_then_succeed(text, voice, **kwargs):
        nonlocal call_count
        call_count += 1
        mock = MagicMock()
        if call_count == 1:
            async def fail_save(path):
                raise Exception("Network error")
            mock.save = fail_save
        else:
            async def ok_save(path):
                AudioSegment.silent(duration=100).export(path, format="mp3")
            mock.save = ok_save
        return mock

    mock_comm.side_effect = fail_then_succeed
    asyncio.run(synthesize("テスト", "ja-JP-NanamiNeural", str(output)))
    assert output.exists()
    assert call_count == 2


@patch("scene_narrator.tts.TTS_RETRY_BASE_DELAY", 0)
@patch("scene_narrator.tts.edge_tts.Communicate")
def test_synthesize_zero_byte_output_retried(mock_comm, tmp_path):
    writes = [0]

    def write_empty(text, voice, **kwargs):
        mock = MagicMock()
        async def save(path):
            writes[0] += 1
            if writes[0] == 1:
                open(path, "w").close()  # 0-byte file
            else:
                AudioSegment.silent(duration=100).export(path, format="mp3")
        mock.save = save
        return mock

    mock_comm.side_effect = write_empty
    output = tmp_path / "clip.mp3"
    asyncio.run(synthesize("テスト", "ja-JP-NanamiNeural", str(output)))
    assert writes[0] == 2
    assert output.stat().st_size > 0


@patch("scene_narrator.tts.TTS_RETRY_BASE_DELAY", 0)
@patch("scene_narrator.tts.edge_tts.Communicate")
def test_synthesize_retry_exhausted(mock_comm, tmp_path):
    def always_fail(text, voice, **kwargs):
        mock = MagicMock()
        async def fail_save(path):
            raise Exception("Permanent failure")
        mock.save = fail_save
        return mock

    mock_comm.side_effect = always_fail
    with pytest.raises(Exception, match="Permanent failure"):
        asyncio.run(synthesize("テスト", "ja-JP-NanamiNeural", str(tmp_path / "fail.mp3")))


# --- Backend ---

@patch("scene_narrator.tts.edge_tts.Communicate")
def test_backend_speak_reports_start_and_end(mock_comm, tmp_path):
    mock_comm.side_effect = _make_mock_communicate(duration=50)
    backend = EdgeTTSBackend(clip_dir=str(tmp_path))
    log = []

    async def scenario():
        backend.speak(_utterance(log=log))
        await asyncio.sleep(0)
        await backend._task

    asyncio.run(scenario())
    assert log == ["start", "end"]
    assert len(backend.clips) == 1
    assert not backend.is_speaking()


@patch("scene_narrator.tts.edge_tts.Communicate")
def test_backend_uses_default_voice(mock_comm, tmp_path):
    calls = []
    mock_comm.side_effect = _make_mock_communicate(calls=calls)
    backend = EdgeTTSBackend(clip_dir=str(tmp_path), default_voice="ja-JP-KeitaNeural")

    async def scenario():
        backend.speak(_utterance())
        await backend._task
        backend.speak(_utterance(voice="ja-JP-NanamiNeural"))
        await backend._task

    asyncio.run(scenario())
    assert [c[1] for c in calls] == ["ja-JP-KeitaNeural", "ja-JP-NanamiNeural"]
    assert calls[0][2] == {"rate": "+40%"}


@patch("scene_narrator.tts.TTS_RETRY_BASE_DELAY", 0)
@patch("scene_narrator.tts.edge_tts.Communicate")
def test_backend_synthesis_failure_reports_error(mock_comm, tmp_path):
    def always_fail(text, voice, **kwargs):
        mock = MagicMock()
        async def fail_save(path):
            raise Exception("offline")
        mock.save = fail_save
        return mock

    mock_comm.side_effect = always_fail
    backend = EdgeTTSBackend(clip_dir=str(tmp_path))
    log = []

    async def scenario():
        backend.speak(_utterance(log=log))
        await backend._task

    asyncio.run(scenario())
    assert log == [("error", "offline")]
    assert backend.clips == []


@patch("scene_narrator.tts.edge_tts.Communicate")
def test_backend_cancel_interrupts(mock_comm, tmp_path):
    mock_comm.side_effect = _make_mock_communicate(duration=2000)
    backend = EdgeTTSBackend(clip_dir=str(tmp_path))
    log = []

    async def scenario():
        backend.speak(_utterance(log=log))
        while "start" not in log:
            await asyncio.sleep(0.01)
        backend.cancel()
        await asyncio.sleep(0)

    asyncio.run(scenario())
    assert log == ["start", ("error", "interrupted")]
    assert not backend.is_speaking()


def test_backend_rejects_overlapping_speak(tmp_path):
    backend = EdgeTTSBackend(clip_dir=str(tmp_path))

    async def scenario():
        backend._task = asyncio.ensure_future(asyncio.sleep(1))
        try:
            with pytest.raises(RuntimeError):
                backend.speak(_utterance())
        finally:
            backend._task.cancel()

    asyncio.run(scenario())


def test_export_track(tmp_path):
    backend = EdgeTTSBackend(clip_dir=str(tmp_path / "clips"))
    for i in range(2):
        path = tmp_path / "clips" / f"{i}.mp3"
        AudioSegment.silent(duration=200).export(str(path), format="mp3")
        backend.clips.append(str(path))

    output = tmp_path / "out" / "track.mp3"
    backend.export_track(str(output), pause_ms=100, title="デモ")
    track = AudioSegment.from_mp3(str(output))
    assert abs(len(track) - 500) < 100


@patch("scene_narrator.tts.edge_tts.Communicate")
def test_backend_busy_while_synthesizing(mock_comm, tmp_path):
    def slow(text, voice, **kwargs):
        mock = MagicMock()
        async def save(path):
            await asyncio.sleep(0.05)
            AudioSegment.silent(duration=20).export(path, format="mp3")
        mock.save = save
        return mock

    mock_comm.side_effect = slow
    backend = EdgeTTSBackend(clip_dir=str(tmp_path))
    log = []

    async def scenario():
        backend.speak(_utterance(log=log))
        await asyncio.sleep(0.01)
        busy = backend.is_speaking()
        await backend._task
        return busy

    assert asyncio.run(scenario()) is True
    assert log == ["start", "end"]
    assert not backend.is_speaking()


@patch("scene_narrator.tts.edge_tts.Communicate")
def test_slow_synthesis_not_resubmitted(mock_comm, tmp_path):
    calls = []

    def slow(text, voice, **kwargs):
        calls.append(text)
        mock = MagicMock()
        async def save(path):
            await asyncio.sleep(0.08)
            AudioSegment.silent(duration=20).export(path, format="mp3")
        mock.save = save
        return mock

    mock_comm.side_effect = slow
    backend = EdgeTTSBackend(clip_dir=str(tmp_path))

    async def scenario():
        controller = SpeechController(backend, EventBus(), timing=FAST_TIMING)
        return await controller.speak("テスト")

    task = asyncio.run(scenario())
    assert task.status is SpeechStatus.DONE
    assert not task.retried
    assert calls == ["テスト"]
