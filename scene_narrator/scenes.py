"""Load scene documents (``scenes.json``) into Scene objects."""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from scene_narrator.config import AdvanceOverride, PlayerConfig
from scene_narrator.constants import (
    EFFECT_DEFAULT_MS,
    EFFECT_MAX_MS,
    SCENE_CONTENT,
    SCENE_EFFECT,
    SCENE_PLACEHOLDER,
)
from scene_narrator.models import RoleText, Scene

logger = logging.getLogger(__name__)

SCENE_TYPES = (SCENE_CONTENT, SCENE_EFFECT, SCENE_PLACEHOLDER)

# role -> (display key, reading override key)
ROLE_KEYS = {
    "title_key": ("title_key", "titleKeyTTS"),
    "title": ("title", "titleTTS"),
    "narration": ("narr", "narrTTS"),
}

EFFECT_DURATION_KEYS = ("t", "duration", "durationMs", "effectDuration")

_CONSUMED_KEYS = {
    "type", "sectionTags", "tagTTS", "advancePolicy",
    *EFFECT_DURATION_KEYS,
    *(k for pair in ROLE_KEYS.values() for k in pair),
}

MAX_SPOKEN_TAGS = 3


class SceneFormatError(ValueError):
    """The document is not a scene list."""


@dataclass
class SceneDocument:
    scenes: list = field(default_factory=list)
    advance: Optional[AdvanceOverride] = None   # videoMeta.advancePolicy
    tts: dict = field(default_factory=dict)     # videoMeta.tts, raw
    meta: dict = field(default_factory=dict)

    def player_config(self) -> PlayerConfig:
        return PlayerConfig.from_dict(self.tts)


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def spoken_tags(tags) -> str:
    """First three section tags, without '#' and with '_' as spaces, joined by '、'."""
    if not isinstance(tags, list):
        return ""
    cleaned = []
    for tag in tags[:MAX_SPOKEN_TAGS]:
        tag = _text(tag)
        if tag.startswith("#"):
            tag = tag[1:]
        tag = tag.replace("_", " ")
        if tag:
            cleaned.append(tag)
    return "、".join(cleaned)


def effect_duration_ms(raw: dict) -> int:
    """Effect length from the first duration key present, clamped to [0, 60000]."""
    value = None
    for key in EFFECT_DURATION_KEYS:
        if raw.get(key) is not None:
            value = raw[key]
            break
    try:
        ms = float(value) if value is not None else EFFECT_DEFAULT_MS
    except (TypeError, ValueError):
        logger.warning("Invalid effect duration %r; using %d ms", value, EFFECT_DEFAULT_MS)
        ms = EFFECT_DEFAULT_MS
    if ms != ms:  # NaN
        ms = EFFECT_DEFAULT_MS
    return int(max(0, min(EFFECT_MAX_MS, ms)))


def parse_scene(index: int, raw: dict) -> Scene:
    if not isinstance(raw, dict):
        raise SceneFormatError(f"Scene {index} is not an object: {raw!r}")

    scene_type = raw.get("type", SCENE_CONTENT)
    if scene_type not in SCENE_TYPES:
        logger.warning("Scene %d has unknown type %r; treating as content", index, scene_type)
        scene_type = SCENE_CONTENT

    roles = {}
    tags = spoken_tags(raw.get("sectionTags"))
    tag_tts = _text(raw.get("tagTTS"))
    if tags or tag_tts:
        roles["tag"] = RoleText(tags, tag_tts)
    for role, (display_key, tts_key) in ROLE_KEYS.items():
        display = _text(raw.get(display_key))
        reading = _text(raw.get(tts_key))
        if display or reading:
            roles[role] = RoleText(display, reading)

    return Scene(
        index=index,
        type=scene_type,
        roles=roles,
        advance_policy=AdvanceOverride.from_dict(raw.get("advancePolicy")),
        duration_ms=effect_duration_ms(raw) if scene_type == SCENE_EFFECT else None,
        visual={k: v for k, v in raw.items() if k not in _CONSUMED_KEYS},
    )


def parse_scenes(data) -> SceneDocument:
    """Build a SceneDocument from ``{"scenes": [...], "videoMeta": {...}}`` or a bare list."""
    meta = {}
    if isinstance(data, dict):
        if "scenes" not in data:
            raise SceneFormatError("Document has no 'scenes' key")
        raw_scenes = data["scenes"]
        meta = data.get("videoMeta") or {}
        if not isinstance(meta, dict):
            logger.warning("videoMeta is not an object; ignored")
            meta = {}
    else:
        raw_scenes = data
    if not isinstance(raw_scenes, list):
        raise SceneFormatError(f"'scenes' must be a list, got {type(raw_scenes).__name__}")

    scenes = [parse_scene(i, raw) for i, raw in enumerate(raw_scenes)]
    tts = meta.get("tts") if isinstance(meta.get("tts"), dict) else {}
    return SceneDocument(
        scenes=scenes,
        advance=AdvanceOverride.from_dict(meta.get("advancePolicy")),
        tts=tts,
        meta=meta,
    )


def load_scenes(path: str) -> SceneDocument:
    with open(path, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise SceneFormatError(f"{path}: invalid JSON: {e}") from e
    return parse_scenes(data)
