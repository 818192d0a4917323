"""edge-tts speech backend: synthesize, pace playback, optionally keep the clips."""

import asyncio
import logging
import os
import tempfile
from typing import Optional

import edge_tts
from pydub import AudioSegment

from scene_narrator.backend import SpeechBackend, Utterance
from scene_narrator.constants import (
    CLIP_PAUSE_MS,
    DEFAULT_VOICE,
    OUTPUT_BITRATE,
    TTS_RETRY_BASE_DELAY,
    TTS_RETRY_COUNT,
)

logger = logging.getLogger(__name__)


def edge_rate(rate: float) -> str:
    """Rate multiplier → edge-tts relative string (1.4 → "+40%")."""
    return f"{round((rate - 1.0) * 100):+d}%"


async def synthesize(text: str, voice: str, output_path: str, rate: str = "+0%") -> None:
    """Synthesize one clip with retry logic.

    Retries on network errors, HTTP errors, or 0-byte output files.
    """
    last_error = None
    for attempt in range(TTS_RETRY_COUNT):
        try:
            communicate = edge_tts.Communicate(text, voice, rate=rate)
            await communicate.save(output_path)

            if os.path.exists(output_path) and os.path.getsize(output_path) > 0:
                return

            # 0-byte file counts as a failure
            last_error = Exception(f"TTS produced 0-byte file for: {text[:50]}...")
        except Exception as e:
            last_error = e

        # Exponential backoff
        if attempt < TTS_RETRY_COUNT - 1:
            await asyncio.sleep(TTS_RETRY_BASE_DELAY * (2 ** attempt))

    raise last_error


class EdgeTTSBackend(SpeechBackend):
    """Speaks by synthesizing each utterance and holding "speaking" for the clip's length.

    Audio is not sent to a device; the clips are written to ``clip_dir`` and
    can be joined into one narration track with ``export_track``.
    """

    def __init__(self, clip_dir: Optional[str] = None, default_voice: str = DEFAULT_VOICE):
        self.clip_dir = clip_dir or tempfile.mkdtemp(prefix="scene-narrator-")
        os.makedirs(self.clip_dir, exist_ok=True)
        self.default_voice = default_voice
        self.clips: list[str] = []
        self._count = 0
        self._task: Optional[asyncio.Task] = None
        self._utterance: Optional[Utterance] = None

    def _clip_path(self) -> str:
        self._count += 1
        return os.path.join(self.clip_dir, f"{self._count:04d}.mp3")

    def speak(self, utterance: Utterance) -> None:
        if self._task is not None and not self._task.done():
            raise RuntimeError("an utterance is already in progress")
        self._utterance = utterance
        self._task = asyncio.ensure_future(self._play(utterance, self._clip_path()))

    async def _play(self, utterance: Utterance, path: str) -> None:
        voice = utterance.voice or self.default_voice
        try:
            await synthesize(utterance.text, voice, path, rate=edge_rate(utterance.rate))
            clip = AudioSegment.from_mp3(path)
        except Exception as e:
            logger.warning("Synthesis failed for %r: %s", utterance.text[:40], e)
            utterance.on_error(str(e))
            return

        self.clips.append(path)
        logger.debug("Clip %s: %d ms", os.path.basename(path), len(clip))
        utterance.on_start()
        await asyncio.sleep(len(clip) / 1000)
        utterance.on_end()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            if self._utterance is not None:
                self._utterance.on_error("interrupted")
        self._task = None
        self._utterance = None

    def is_speaking(self) -> bool:
        # busy from speak() on, synthesis included
        return self._task is not None and not self._task.done()

    def export_track(self, output_path: str, pause_ms: int = CLIP_PAUSE_MS, title: Optional[str] = None) -> str:
        """Join every finished clip, with a short pause between them, into one MP3."""
        track = AudioSegment.silent(duration=0)
        for i, path in enumerate(self.clips):
            if i:
                track += AudioSegment.silent(duration=pause_ms)
            track += AudioSegment.from_mp3(path)

        os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
        tags = {"title": title} if title else {}
        track.export(output_path, format="mp3", bitrate=OUTPUT_BITRATE, tags=tags)
        logger.info("Exported %d clips to %s (%d ms)", len(self.clips), output_path, len(track))
        return output_path
