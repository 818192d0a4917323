"""Auto-advance: policy layering, the quiet gate and abortable waits."""

import asyncio
import logging
from typing import Callable, Optional

from scene_narrator.config import AdvanceOverride, AdvancePolicy
from scene_narrator.constants import ABORT_STEP_MS, QUIET_POLL_MS
from scene_narrator.models import Epoch

logger = logging.getLogger(__name__)


def resolve_policy(
    global_override: Optional[AdvanceOverride] = None,
    scene_override: Optional[AdvanceOverride] = None,
) -> AdvancePolicy:
    """Built-in defaults < global policy < scene override."""
    policy = AdvancePolicy()
    policy = policy.layered(global_override)
    policy = policy.layered(scene_override)
    return policy


async def quiet_gate(
    is_speaking: Callable[[], bool],
    quiet_ms: int,
    is_current: Callable[[], bool],
    poll_ms: int = QUIET_POLL_MS,
) -> bool:
    """Wait for ``quiet_ms`` of continuous silence.

    Any "speaking" reading resets the accumulated silence. Returns False as
    soon as ``is_current`` turns false.
    """
    if quiet_ms <= 0:
        return is_current()
    quiet = 0
    while True:
        await asyncio.sleep(poll_ms / 1000)
        if not is_current():
            return False
        if is_speaking():
            quiet = 0
        else:
            quiet += poll_ms
        if quiet >= quiet_ms:
            return True


async def sleep_abortable(ms: float, is_current: Callable[[], bool], step_ms: int = ABORT_STEP_MS) -> bool:
    """Sleep in small steps; returns False early once ``is_current`` turns false."""
    remaining = max(0.0, float(ms))
    while remaining > 0:
        step = min(step_ms, remaining)
        await asyncio.sleep(step / 1000)
        remaining -= step
        if not is_current():
            return False
    return is_current()


class AutoAdvancer:
    """Decides whether a finished scene moves on by itself."""

    def __init__(self, is_speaking: Callable[[], bool], epoch: Epoch,
                 poll_ms: int = QUIET_POLL_MS, step_ms: int = ABORT_STEP_MS):
        self.is_speaking = is_speaking
        self.epoch = epoch
        self.poll_ms = poll_ms
        self.step_ms = step_ms

    async def should_advance(self, policy: AdvancePolicy, token: int) -> bool:
        if not policy.auto:
            logger.debug("manual advance mode, holding scene")
            return False

        def is_current():
            return self.epoch.is_current(token)

        if not await quiet_gate(self.is_speaking, policy.quiet_ms, is_current, self.poll_ms):
            return False
        if not await sleep_abortable(policy.post_delay_ms, is_current, self.step_ms):
            return False
        return is_current()
