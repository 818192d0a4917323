"""Session configuration: normalization policy, advance policy, timings, per-role settings."""

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Optional

from scene_narrator.constants import (
    ABORT_STEP_MS,
    ADVANCE_MODE,
    ADVANCE_POST_DELAY_MS,
    ADVANCE_QUIET_MS,
    BASE_SPELL_THRESHOLD,
    CANCEL_COOLDOWN_MS,
    CHARS_PER_SECOND,
    CHUNK_MAX_LEN,
    DEFAULT_RATE,
    DEFAULT_VOICE,
    EXPECTED_BASE_MS,
    HARD_STOP_SETTLE_MS,
    HARD_TIMEOUT_BASE_MS,
    HARD_TIMEOUT_MAX_MS,
    HARD_TIMEOUT_MIN_MS,
    HARD_TIMEOUT_PER_CHAR_MS,
    MUTED_WAIT_BASE_MS,
    MUTED_WAIT_CAP_MS,
    MUTED_WAIT_PER_CHAR_MS,
    QUIET_POLL_MS,
    RATE_MAX,
    RATE_MIN,
    RESUME_PROBE_MS,
    ROLES,
    SENTENCE_COMMA,
    SENTENCE_MARK_MS,
    SENTENCE_PERIOD,
    START_WATCHDOG_MS,
    TIMEOUT_GRACE_MS,
)

logger = logging.getLogger(__name__)

# Allowed values for each enumerated policy option
POLICY_CHOICES = {
    "comma_pause": ("space2", "off"),
    "period_pause": ("zspaceIfNeeded", "off"),
    "yoon": ("katakana", "off"),
    "yoon_choon": ("preferChoon", "off"),
    "yoon_choon_apply": ("titleOnly", "all", "off"),
    "arrow_silence": ("space2", "space1", "remove", "none"),
    "arrow_gap": ("none", "zspace", "zspaceBoth"),
    "base_pronounce": ("spellShort", "spellAll", "off"),
    "dot_pronounce": ("on", "off"),
    "dot_padding": ("space", "wide"),
}

ADVANCE_MODES = ("auto", "manual")

# Role names as spelled in scene files and config mappings
ROLE_ALIASES = {
    "tag": "tag",
    "tags": "tag",
    "titleKey": "title_key",
    "title_key": "title_key",
    "title": "title",
    "narr": "narration",
    "narration": "narration",
}


def _snake(key: str) -> str:
    """camelCase → snake_case (``quietMs`` → ``quiet_ms``)."""
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _role_map(data: dict) -> dict:
    """Normalize role keys of a per-role mapping, dropping unknown roles."""
    result = {}
    for key, value in (data or {}).items():
        role = ROLE_ALIASES.get(key)
        if role is None:
            logger.warning("Unknown role in config: %r; ignored", key)
            continue
        result[role] = value
    return result


@dataclass(frozen=True)
class NormalizationPolicy:
    comma_pause: str = "space2"
    period_pause: str = "zspaceIfNeeded"
    yoon: str = "katakana"
    yoon_choon: str = "preferChoon"
    yoon_choon_apply: str = "titleOnly"
    arrow_silence: str = "space2"
    arrow_gap: str = "none"
    base_pronounce: str = "spellShort"
    base_spell_threshold: int = BASE_SPELL_THRESHOLD
    dot_pronounce: str = "on"
    dot_padding: str = "space"
    dot_ext_map: dict = field(default_factory=dict)
    comma_char: str = SENTENCE_COMMA
    period_char: str = SENTENCE_PERIOD

    def __post_init__(self):
        for name, choices in POLICY_CHOICES.items():
            value = getattr(self, name)
            if value not in choices:
                raise ValueError(f"Invalid {name}: {value!r} (allowed: {', '.join(choices)})")
        if self.base_spell_threshold < 0:
            raise ValueError("base_spell_threshold must be >= 0")
        if len(self.comma_char) != 1 or len(self.period_char) != 1:
            raise ValueError("comma_char and period_char must be single characters")

    def with_overrides(self, **overrides) -> "NormalizationPolicy":
        """Copy with call-time overrides applied."""
        return replace(self, **overrides)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "NormalizationPolicy":
        """Build from a mapping with snake_case or camelCase keys.

        Unknown keys and invalid values are dropped with a warning so a bad
        entry never costs the rest of the policy.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            name = _snake(key)
            if name not in known:
                logger.warning("Unknown normalization option: %r; ignored", key)
                continue
            choices = POLICY_CHOICES.get(name)
            if choices is not None and value not in choices:
                logger.warning("Invalid value for %s: %r; using default", name, value)
                continue
            if name == "base_spell_threshold":
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    logger.warning("Invalid base_spell_threshold: %r; using default", value)
                    continue
            if name == "dot_ext_map" and not isinstance(value, dict):
                logger.warning("dot_ext_map must be a mapping; ignored")
                continue
            kwargs[name] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class AdvanceOverride:
    """One layer of advance settings; None means "inherit"."""

    mode: Optional[str] = None
    quiet_ms: Optional[int] = None
    post_delay_ms: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["AdvanceOverride"]:
        if not data:
            return None
        if not isinstance(data, dict):
            logger.warning("advancePolicy must be a mapping, got %s; ignored", type(data).__name__)
            return None
        mode = data.get("mode")
        if mode is not None and mode not in ADVANCE_MODES:
            logger.warning("Invalid advance mode: %r; inherited", mode)
            mode = None
        return cls(
            mode=mode,
            quiet_ms=_optional_ms(data, "quiet_ms", "quietMs"),
            post_delay_ms=_optional_ms(data, "post_delay_ms", "postDelayMs"),
        )


def _optional_ms(data: dict, *keys: str) -> Optional[int]:
    for key in keys:
        if key in data and data[key] is not None:
            try:
                return max(0, int(data[key]))
            except (TypeError, ValueError):
                logger.warning("Invalid %s: %r; inherited", key, data[key])
                return None
    return None


@dataclass(frozen=True)
class AdvancePolicy:
    mode: str = ADVANCE_MODE
    quiet_ms: int = ADVANCE_QUIET_MS
    post_delay_ms: int = ADVANCE_POST_DELAY_MS

    def layered(self, override: Optional[AdvanceOverride]) -> "AdvancePolicy":
        """Apply one override layer field by field."""
        if override is None:
            return self
        return AdvancePolicy(
            mode=override.mode if override.mode is not None else self.mode,
            quiet_ms=override.quiet_ms if override.quiet_ms is not None else self.quiet_ms,
            post_delay_ms=(
                override.post_delay_ms if override.post_delay_ms is not None else self.post_delay_ms
            ),
        )

    @property
    def auto(self) -> bool:
        return self.mode != "manual"


@dataclass(frozen=True)
class SpeechTiming:
    cooldown_ms: int = CANCEL_COOLDOWN_MS
    start_timeout_ms: int = START_WATCHDOG_MS
    resume_probe_ms: int = RESUME_PROBE_MS
    hard_min_ms: int = HARD_TIMEOUT_MIN_MS
    hard_max_ms: int = HARD_TIMEOUT_MAX_MS
    hard_per_char_ms: int = HARD_TIMEOUT_PER_CHAR_MS
    hard_base_ms: int = HARD_TIMEOUT_BASE_MS
    grace_ms: int = TIMEOUT_GRACE_MS
    expected_base_ms: int = EXPECTED_BASE_MS
    chars_per_second: float = CHARS_PER_SECOND
    sentence_mark_ms: int = SENTENCE_MARK_MS
    quiet_poll_ms: int = QUIET_POLL_MS
    hard_stop_settle_ms: int = HARD_STOP_SETTLE_MS
    abort_step_ms: int = ABORT_STEP_MS
    muted_wait_cap_ms: int = MUTED_WAIT_CAP_MS
    muted_wait_base_ms: int = MUTED_WAIT_BASE_MS
    muted_wait_per_char_ms: int = MUTED_WAIT_PER_CHAR_MS


def clamp_rate(value) -> float:
    """Clamp a speech rate multiplier; unusable values fall back to the default."""
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return DEFAULT_RATE
    if rate != rate:  # NaN
        return DEFAULT_RATE
    return max(RATE_MIN, min(RATE_MAX, rate))


@dataclass
class PlayerConfig:
    tts_enabled: bool = True
    flags: dict = field(default_factory=lambda: {role: True for role in ROLES})
    base_rate: float = DEFAULT_RATE
    rates: dict = field(default_factory=dict)      # role -> rate multiplier
    default_voice: str = DEFAULT_VOICE
    voices: dict = field(default_factory=dict)     # role -> voice name
    chunk_max_len: int = CHUNK_MAX_LEN
    normalization: NormalizationPolicy = field(default_factory=NormalizationPolicy)
    timing: SpeechTiming = field(default_factory=SpeechTiming)

    def role_enabled(self, role: str) -> bool:
        return bool(self.flags.get(role, True))

    def rate_for(self, role: str) -> float:
        return clamp_rate(self.rates.get(role, self.base_rate))

    def voice_for(self, role: str) -> str:
        return self.voices.get(role) or self.default_voice

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PlayerConfig":
        """Build from a ``videoMeta.tts``-style mapping.

        Recognized keys: enabled, flags, rate, rates, voice, voices,
        chunkMaxLen, policy. Anything else is ignored.
        """
        data = data or {}
        config = cls()
        if "enabled" in data:
            config.tts_enabled = bool(data["enabled"])
        if isinstance(data.get("flags"), dict):
            flags = dict(config.flags)
            for key, value in data["flags"].items():
                # readTag / readTitleKey / readTitle / readNarr map onto roles
                role = ROLE_ALIASES.get(key[4].lower() + key[5:] if key.startswith("read") and len(key) > 4 else key)
                if role is None:
                    logger.warning("Unknown TTS flag: %r; ignored", key)
                    continue
                flags[role] = bool(value)
            config.flags = flags
        if "rate" in data:
            config.base_rate = clamp_rate(data["rate"])
        if isinstance(data.get("rates"), dict):
            config.rates = {role: clamp_rate(v) for role, v in _role_map(data["rates"]).items()}
        if data.get("voice"):
            config.default_voice = str(data["voice"])
        if isinstance(data.get("voices"), dict):
            config.voices = {role: str(v) for role, v in _role_map(data["voices"]).items() if v}
        max_len = data.get("chunkMaxLen", data.get("chunk_max_len"))
        if max_len is not None:
            try:
                config.chunk_max_len = max(1, int(max_len))
            except (TypeError, ValueError):
                logger.warning("Invalid chunkMaxLen: %r; using default", max_len)
        if isinstance(data.get("policy"), dict):
            config.normalization = NormalizationPolicy.from_dict(data["policy"])
        return config
