"""Navigation state machine: walks scenes, narrates them, handles stop requests.

Every navigation advances the session epoch. Work started for an older
epoch notices the mismatch at its next suspension point and ends without
further events, so at most one scene execution is ever live.
"""

import asyncio
import inspect
import logging
from typing import Callable, Optional

from scene_narrator.advance import AutoAdvancer, resolve_policy, sleep_abortable
from scene_narrator.backend import SpeechBackend
from scene_narrator.config import AdvanceOverride, PlayerConfig
from scene_narrator.constants import EFFECT_DEFAULT_MS, ROLES, SCENE_EFFECT, SCENE_PLACEHOLDER
from scene_narrator.events import EventBus, TtsStateTracker
from scene_narrator.models import PlayerPhase, Scene, SessionState, StopRequest, now_ms
from scene_narrator.normalize import speech_text
from scene_narrator.rules import RuleStore
from scene_narrator.speech import SpeechController

logger = logging.getLogger(__name__)


class Player:
    def __init__(
        self,
        scenes: list[Scene],
        backend: Optional[SpeechBackend] = None,
        config: Optional[PlayerConfig] = None,
        rules: Optional[RuleStore] = None,
        events: Optional[EventBus] = None,
        renderer: Optional[Callable] = None,
        global_advance: Optional[AdvanceOverride] = None,
    ):
        self._scenes = list(scenes)
        self.config = config or PlayerConfig()
        self.rules = rules
        self.events = events or EventBus()
        self.renderer = renderer
        self.global_advance = global_advance
        self.state = SessionState()
        self.stop_request = StopRequest()
        self.phase = PlayerPhase.IDLE
        self.tts_state = TtsStateTracker(self.events)
        self.speech = SpeechController(
            backend,
            self.events,
            timing=self.config.timing,
            state=self.tts_state,
            epoch=self.state.epoch,
            tts_enabled=self.config.tts_enabled,
            chunk_max_len=self.config.chunk_max_len,
        )
        self.advancer = AutoAdvancer(
            self.speech.is_speaking,
            self.state.epoch,
            poll_ms=self.config.timing.quiet_poll_ms,
            step_ms=self.config.timing.abort_step_ms,
        )
        self._lock_released = asyncio.Event()
        self._started = False

    # ---- configuration / inspection ----

    def set_config(self, config: PlayerConfig) -> None:
        """Replace the session configuration; takes effect from the next chunk."""
        self.config = config
        self.speech.timing = config.timing
        self.speech.tts_enabled = config.tts_enabled
        self.speech.chunk_max_len = config.chunk_max_len
        self.advancer.poll_ms = config.timing.quiet_poll_ms
        self.advancer.step_ms = config.timing.abort_step_ms

    @property
    def total(self) -> int:
        return len(self._scenes)

    @property
    def index(self) -> int:
        return self.state.current_index

    def scene(self) -> Optional[Scene]:
        if 0 <= self.index < self.total:
            return self._scenes[self.index]
        return None

    def scenes(self) -> list[Scene]:
        return list(self._scenes)

    def info(self) -> dict:
        return {
            "index": self.index,
            "total": self.total,
            "playing": self.state.playing_lock,
            "phase": self.phase.value,
            "epoch": self.state.epoch.value,
            "stop_requested": self.stop_request.pending,
            "stopped": self.stop_request.confirmed,
            "can_prev": self.index > 0,
            "can_next": self.index + 1 < self.total,
        }

    def _emit_status(self) -> None:
        self.events.emit(
            "status",
            playing=self.state.playing_lock,
            index=self.index,
            total=self.total,
            can_prev=self.index > 0,
            can_next=self.index + 1 < self.total,
        )

    # ---- explicit navigation ----

    async def goto(self, index: int) -> None:
        if not 0 <= index < self.total:
            logger.debug("goto(%d) out of range [0, %d)", index, self.total)
            return
        self._clear_stop()
        await self._navigate(index)

    async def next(self) -> None:
        self._clear_stop()
        if self.index + 1 >= self.total:
            self.events.emit("end", index=self.index, total=self.total)
            return
        await self._navigate(self.index + 1)

    async def prev(self) -> None:
        self._clear_stop()
        if self.index - 1 < 0:
            self.events.emit("begin", index=self.index, total=self.total)
            return
        await self._navigate(self.index - 1)

    async def restart(self) -> None:
        self._clear_stop()
        await self._navigate(0)

    async def play(self) -> None:
        """Start at the current scene, replay it after a stop, otherwise move on."""
        if not self._started or self.stop_request.pending or self.stop_request.confirmed:
            self._clear_stop()
            await self._navigate(self.index)
            return
        await self.next()

    async def activate(self) -> None:
        """Release a placeholder gate and continue with the following scene."""
        if self.phase is not PlayerPhase.AWAITING_ACTIVATION:
            logger.debug("activate() ignored in phase %s", self.phase.value)
            return
        self.events.emit("activated", index=self.index)
        if self.index + 1 >= self.total:
            self.phase = PlayerPhase.IDLE
            self.events.emit("end", index=self.index, total=self.total)
            return
        await self._navigate(self.index + 1)

    def _clear_stop(self) -> None:
        self.stop_request.clear()
        self.tts_state.update(pending=False)

    async def _navigate(self, index: int) -> None:
        if not 0 <= index < self.total:
            logger.debug("No scene %d to play (total %d)", index, self.total)
            self.events.emit("end", index=self.index, total=self.total)
            return
        self._started = True
        self.speech.cancel()
        token = self.state.epoch.advance()
        self.state.current_index = index
        self.events.emit("page", index=index, total=self.total, epoch=token)
        await self._play_loop(token)

    # ---- stop protocol ----

    def stop(self) -> None:
        """Soft stop: let the current scene finish, then halt."""
        if self.stop_request.request(now_ms()):
            self.events.emit("stop-ack", ts=self.stop_request.requested_at)
            self.tts_state.update(pending=True)
        if not self.state.playing_lock and self.phase in (PlayerPhase.IDLE, PlayerPhase.AWAITING_ACTIVATION):
            # nothing in flight to wait for
            self._finalize_stop("idle")

    async def stop_hard(self) -> None:
        """Stop now: cancel speech, invalidate in-flight work, confirm."""
        if self.stop_request.request(now_ms()):
            self.events.emit("stop-ack", ts=self.stop_request.requested_at)
        self.tts_state.update(pending=True)
        self.speech.cancel()
        self.state.epoch.advance()
        await asyncio.sleep(self.config.timing.hard_stop_settle_ms / 1000)
        self._finalize_stop("hard")
        self.phase = PlayerPhase.STOPPED

    def _finalize_stop(self, context: str) -> None:
        latency = self.stop_request.confirm(context, now_ms())
        if latency is None:
            return
        self.phase = PlayerPhase.STOPPED
        logger.info("Stopped (%s) after %d ms", context, latency)
        self.events.emit("stop-confirm", latency_ms=latency, context=context)
        self.tts_state.update(pending=False, speaking=False, paused=False)

    # ---- scene execution ----

    async def _play_loop(self, token: int) -> None:
        while True:
            advance = await self._run_scene(token)
            if not advance or not self.state.epoch.is_current(token):
                return
            if self.stop_request.pending:
                self._finalize_stop("content")
                return
            if self.index + 1 >= self.total:
                self.phase = PlayerPhase.IDLE
                self.events.emit("end", index=self.index, total=self.total)
                return
            self.phase = PlayerPhase.ADVANCING
            token = self.state.epoch.advance()
            self.state.current_index += 1
            self.events.emit("page", index=self.index, total=self.total, epoch=token)

    async def _acquire(self, token: int) -> bool:
        while self.state.playing_lock:
            self._lock_released.clear()
            await self._lock_released.wait()
        if not self.state.epoch.is_current(token):
            return False
        self.state.playing_lock = True
        self._emit_status()
        return True

    def _release(self) -> None:
        self.state.playing_lock = False
        self._lock_released.set()
        self._emit_status()

    async def _render(self, scene: Scene, token: int) -> None:
        self.phase = PlayerPhase.RENDERING
        if self.renderer is not None:
            try:
                result = self.renderer(scene)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Renderer failed on scene %d", scene.index)
        if self.state.epoch.is_current(token):
            self.events.emit("scene-rendered", index=scene.index, kind=scene.type, epoch=token)

    async def _run_scene(self, token: int) -> bool:
        """Run the current scene; True means "advance to the next one"."""
        scene = self._scenes[self.index]
        if scene.type == SCENE_PLACEHOLDER:
            self.events.emit("scene-start", index=scene.index, kind=scene.type, epoch=token)
            await self._render(scene, token)
            if self.state.epoch.is_current(token):
                self.phase = PlayerPhase.AWAITING_ACTIVATION
            return False

        if not await self._acquire(token):
            return False
        self.events.emit("scene-start", index=scene.index, kind=scene.type, epoch=token)
        if scene.type == SCENE_EFFECT:
            return await self._run_effect(scene, token)
        return await self._run_content(scene, token)

    async def _run_content(self, scene: Scene, token: int) -> bool:
        policy = resolve_policy(self.global_advance, scene.advance_policy)
        try:
            await self._render(scene, token)
            if not self.state.epoch.is_current(token):
                return False
            self.phase = PlayerPhase.SPEAKING
            for role in ROLES:
                if not self.config.role_enabled(role):
                    continue
                text = speech_text(scene.role_source(role), role, self.config.normalization, self.rules)
                if not text:
                    continue
                finished = await self.speech.narrate(
                    text,
                    rate=self.config.rate_for(role),
                    role=role,
                    token=token,
                    voice=self.config.voice_for(role),
                    quiet_ms=policy.quiet_ms,
                )
                if not finished:
                    return False
        finally:
            self._release()

        if not self.state.epoch.is_current(token):
            return False
        self.events.emit("scene-finish", index=scene.index, kind=scene.type, epoch=token)
        if self.stop_request.pending:
            self._finalize_stop("content")
            return False
        self.phase = PlayerPhase.QUIET_GATE
        advance = await self.advancer.should_advance(policy, token)
        if not advance and self.state.epoch.is_current(token) and self.phase is PlayerPhase.QUIET_GATE:
            self.phase = PlayerPhase.IDLE
        return advance

    async def _run_effect(self, scene: Scene, token: int) -> bool:
        def is_current():
            return self.state.epoch.is_current(token)

        try:
            await self._render(scene, token)
            if not is_current():
                return False
            self.phase = PlayerPhase.TIMED_WAIT
            duration = scene.duration_ms if scene.duration_ms is not None else EFFECT_DEFAULT_MS
            if not await sleep_abortable(duration, is_current, self.config.timing.abort_step_ms):
                return False
        finally:
            self._release()

        self.events.emit("scene-finish", index=scene.index, kind=scene.type, epoch=token)
        if self.stop_request.pending:
            self._finalize_stop("effect")
            return False
        return True
