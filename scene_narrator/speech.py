"""Speech controller: one utterance at a time, with stall recovery and timeouts.

``speak`` always settles. The backend may finish, report an error, never
start, or never finish; each of those ends as a ``SpeechTask`` whose status
is done, errored or timed_out. Nothing here raises into the caller.
"""

import asyncio
import logging
from typing import Optional

from scene_narrator.advance import quiet_gate, sleep_abortable
from scene_narrator.backend import SpeechBackend, Utterance
from scene_narrator.chunker import split
from scene_narrator.config import SpeechTiming
from scene_narrator.constants import CHUNK_MAX_LEN, DEFAULT_RATE
from scene_narrator.events import EventBus, TtsStateTracker
from scene_narrator.models import Epoch, SpeechStatus, SpeechTask, now_ms

logger = logging.getLogger(__name__)

SENTENCE_MARKS = "。．！？!?"


def expected_duration_ms(text: str, rate: float, timing: SpeechTiming = SpeechTiming()) -> int:
    """Rough speaking time from length, rate and sentence marks."""
    marks = sum(text.count(ch) for ch in SENTENCE_MARKS)
    chars_per_second = max(0.8, timing.chars_per_second * max(0.8, rate))
    return round(
        timing.expected_base_ms
        + len(text) / chars_per_second * 1000
        + marks * timing.sentence_mark_ms
    )


def hard_timeout_ms(length: int, timing: SpeechTiming = SpeechTiming()) -> int:
    return min(timing.hard_max_ms, max(timing.hard_min_ms, length * timing.hard_per_char_ms + timing.hard_base_ms))


def muted_wait_ms(length: int, rate: float, timing: SpeechTiming = SpeechTiming()) -> float:
    """Stand-in duration when nothing is actually spoken."""
    return min(
        timing.muted_wait_cap_ms,
        timing.muted_wait_base_ms + length * timing.muted_wait_per_char_ms / max(0.5, rate),
    )


class SpeechController:
    def __init__(
        self,
        backend: Optional[SpeechBackend],
        events: EventBus,
        timing: Optional[SpeechTiming] = None,
        state: Optional[TtsStateTracker] = None,
        epoch: Optional[Epoch] = None,
        tts_enabled: bool = True,
        chunk_max_len: int = CHUNK_MAX_LEN,
    ):
        self.backend = backend
        self.events = events
        self.timing = timing or SpeechTiming()
        self.state = state or TtsStateTracker(events)
        self.epoch = epoch or Epoch()
        self.tts_enabled = tts_enabled
        self.chunk_max_len = chunk_max_len
        self.last_cancel_at: Optional[float] = None
        self._attempt = 0
        self._current = None   # (SpeechTask, asyncio.Event) while speak() waits

    @property
    def available(self) -> bool:
        return self.backend is not None and self.tts_enabled

    def is_speaking(self) -> bool:
        if self.backend is None:
            return False
        try:
            return bool(self.backend.is_speaking())
        except Exception as e:
            logger.debug("is_speaking failed: %s", e)
            return False

    def _backend_call(self, name: str) -> None:
        try:
            getattr(self.backend, name)()
        except Exception as e:
            logger.warning("Backend %s() failed: %s", name, e)

    def cancel(self) -> None:
        """Cancel outstanding speech and start the cool-down clock."""
        self._attempt += 1
        self.last_cancel_at = now_ms()
        if self.backend is not None:
            self._backend_call("cancel")
        if self._current is not None:
            task, settled = self._current
            if not task.settled:
                task.status = SpeechStatus.ERRORED
                task.error = "cancelled"
                settled.set()

    def _is_paused(self) -> bool:
        try:
            return bool(self.backend.is_paused())
        except Exception as e:
            logger.debug("is_paused failed: %s", e)
            return False

    async def _ensure_resumed(self) -> None:
        if self._is_paused():
            self.state.update(paused=True)
            self._backend_call("resume")
            self.state.update(paused=self._is_paused())
        if self.last_cancel_at is not None:
            remaining = self.timing.cooldown_ms - (now_ms() - self.last_cancel_at)
            if remaining > 0:
                await asyncio.sleep(remaining / 1000)

    def _dispatch(self, task: SpeechTask, voice: Optional[str], settled: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        self._attempt += 1
        attempt = self._attempt

        def _live():
            return attempt == self._attempt and not task.settled

        def _started():
            if _live():
                task.status = SpeechStatus.STARTED

        def _ended():
            if _live():
                task.status = SpeechStatus.DONE
                settled.set()

        def _failed(reason):
            if _live():
                task.status = SpeechStatus.ERRORED
                task.error = str(reason or "error")
                self.events.emit("tts-error", role=task.role, reason=task.error)
                settled.set()

        def _threadsafe(fn):
            def callback(*args):
                try:
                    loop.call_soon_threadsafe(fn, *args)
                except RuntimeError:
                    logger.debug("Speech callback after event loop closed")
            return callback

        utterance = Utterance(
            text=task.text,
            voice=voice,
            rate=task.rate,
            on_start=_threadsafe(_started),
            on_end=_threadsafe(_ended),
            on_error=_threadsafe(_failed),
        )
        try:
            self.backend.speak(utterance)
        except Exception as e:
            logger.warning("Speech dispatch failed: %s", e)
            task.status = SpeechStatus.ERRORED
            task.error = str(e)
            settled.set()

    async def _watchdog(self, task: SpeechTask, voice: Optional[str], settled: asyncio.Event) -> None:
        """One recovery attempt when the backend never signals start."""
        await asyncio.sleep(self.timing.start_timeout_ms / 1000)
        if task.status is not SpeechStatus.PENDING:
            return
        self._backend_call("resume")
        self.state.update(paused=self._is_paused())
        await asyncio.sleep(self.timing.resume_probe_ms / 1000)
        if task.status is not SpeechStatus.PENDING or self.is_speaking():
            return
        logger.warning("Speech did not start within %d ms, resubmitting once", self.timing.start_timeout_ms)
        task.retried = True
        self._attempt += 1
        self._backend_call("cancel")
        self.last_cancel_at = now_ms()
        await asyncio.sleep(self.timing.cooldown_ms / 1000)
        if task.settled:
            return
        self._dispatch(task, voice, settled)

    async def speak(self, text: str, rate: float = DEFAULT_RATE, role: str = "narration",
                    voice: Optional[str] = None) -> SpeechTask:
        """Speak one chunk and wait until it settles."""
        task = SpeechTask(text=text, role=role, rate=rate, chunks=[text])
        if self.backend is None:
            task.status = SpeechStatus.ERRORED
            task.error = "no backend"
            return task

        settled = asyncio.Event()
        self._current = (task, settled)
        watchdog = None
        try:
            await self._ensure_resumed()
            if task.settled:
                return task
            self._dispatch(task, voice, settled)
            limit_ms = max(
                hard_timeout_ms(len(text), self.timing),
                expected_duration_ms(text, rate, self.timing) + self.timing.grace_ms,
            )
            watchdog = asyncio.ensure_future(self._watchdog(task, voice, settled))
            try:
                await asyncio.wait_for(settled.wait(), timeout=limit_ms / 1000)
            except asyncio.TimeoutError:
                logger.warning("Speech timed out after %d ms: %r", limit_ms, text[:40])
                task.status = SpeechStatus.TIMED_OUT
                self._attempt += 1
                self._backend_call("cancel")
                self.last_cancel_at = now_ms()
        finally:
            if watchdog is not None:
                watchdog.cancel()
            if self._current is not None and self._current[0] is task:
                self._current = None
        return task

    async def narrate(self, text: str, rate: float = DEFAULT_RATE, role: str = "narration",
                      token: Optional[int] = None, voice: Optional[str] = None, quiet_ms: int = 0) -> bool:
        """Speak ``text`` chunk by chunk for the scene epoch ``token``.

        Returns False when the epoch moved on mid-way; in that case no further
        events are emitted for this text.
        """
        if token is None:
            token = self.epoch.value

        def is_current():
            return self.epoch.is_current(token)

        chunks = [c.strip() for c in split(text, self.chunk_max_len) if c.strip()]
        if not chunks or not is_current():
            return is_current()

        if not self.available:
            wait = muted_wait_ms(len(text.strip()), rate, self.timing)
            logger.debug("No speech output, waiting %d ms for %s", wait, role)
            return await sleep_abortable(wait, is_current, self.timing.abort_step_ms)

        total = len(chunks)
        self.state.update(speaking=True)
        self.events.emit("tts-start", role=role, length=sum(len(c) for c in chunks), rate=rate, epoch=token)
        try:
            for index, chunk in enumerate(chunks, start=1):
                if not is_current():
                    return False
                self.events.emit("tts-chunk", phase="start", role=role, index=index, total=total,
                                 len=len(chunk), epoch=token)
                started = now_ms()
                task = await self.speak(chunk, rate, role, voice)
                if not is_current():
                    return False
                self.events.emit("tts-chunk", phase="end", role=role, index=index, total=total,
                                 len=len(chunk), ms=round(now_ms() - started), status=task.status.value,
                                 epoch=token)
                passed = await quiet_gate(self.is_speaking, quiet_ms, is_current, self.timing.quiet_poll_ms)
                if not is_current():
                    return False
                self.events.emit("tts-quiet", role=role, index=index, total=total, quiet_ms=quiet_ms,
                                 passed=passed, epoch=token)
            return True
        finally:
            if is_current():
                self.state.update(speaking=False, paused=False)
                self.events.emit("tts-end", role=role, epoch=token)
