"""Filename detection and Japanese pronunciation of bases and extensions."""

import re

from scene_narrator.constants import DOT_WORD, WIDE_SPACE

# Spoken forms for common extensions
EXTENSION_PRONUNCIATION = {
    "yml": "ヤムル",
    "yaml": "ヤムル",
    "json": "ジェイソン",
    "md": "エムディー",
    "txt": "テキスト",
    "js": "ジェイエス",
    "mjs": "エムジェイエス",
    "ts": "ティーエス",
    "tsx": "ティーエスエックス",
    "jsx": "ジェイエスエックス",
    "py": "パイ",
    "rb": "アールビー",
    "go": "ゴー",
    "rs": "アールエス",
    "java": "ジャバ",
    "html": "エイチティーエムエル",
    "htm": "エイチティーエム",
    "css": "シーエスエス",
    "scss": "エスシーエスエス",
    "csv": "シーエスブイ",
    "tsv": "ティーエスブイ",
    "pdf": "ピーディーエフ",
    "png": "ピング",
    "jpg": "ジェイペグ",
    "jpeg": "ジェイペグ",
    "gif": "ジフ",
    "svg": "エスブイジー",
    "webp": "ウェブピー",
    "mp3": "エムピースリー",
    "mp4": "エムピーフォー",
    "wav": "ウェーブ",
    "zip": "ジップ",
    "gz": "ジーゼット",
    "tar": "ター",
    "sh": "シェル",
    "toml": "トムル",
    "ini": "イニ",
    "xml": "エックスエムエル",
    "log": "ログ",
    "sql": "エスキューエル",
    "env": "エンブ",
    "lock": "ロック",
    "com": "コム",
    "exe": "エグゼ",
}

# Chained extensions spoken as one unit; these win over per-segment lookup
MULTI_EXTENSION_PRONUNCIATION = {
    "tar.gz": "タージーゼット",
    "tar.bz2": "タービーゼットツー",
    "tar.xz": "ターエックスゼット",
    "d.ts": "ディーティーエス",
    "min.js": "ミンジェイエス",
    "min.css": "ミンシーエスエス",
}

LETTER_PRONUNCIATION = {
    "A": "エー", "B": "ビー", "C": "シー", "D": "ディー", "E": "イー",
    "F": "エフ", "G": "ジー", "H": "エイチ", "I": "アイ", "J": "ジェイ",
    "K": "ケー", "L": "エル", "M": "エム", "N": "エヌ", "O": "オー",
    "P": "ピー", "Q": "キュー", "R": "アール", "S": "エス", "T": "ティー",
    "U": "ユー", "V": "ブイ", "W": "ダブリュー", "X": "エックス", "Y": "ワイ",
    "Z": "ゼット",
    "0": "ゼロ", "1": "ワン", "2": "ツー", "3": "スリー", "4": "フォー",
    "5": "ファイブ", "6": "シックス", "7": "セブン", "8": "エイト", "9": "ナイン",
}

# base + 1..4 extensions; every extension holds a letter so "3.5" stays a number
FILENAME_RE = re.compile(
    r"(?<![A-Za-z0-9_.-])"
    r"([A-Za-z0-9_-]+)"
    r"((?:\.(?=[0-9]*[A-Za-z])[A-Za-z0-9]{1,8}){1,4})"
    r"(?![A-Za-z0-9_]|\.[A-Za-z0-9])"
)

_ALNUM_RE = re.compile(r"[A-Za-z0-9]+")


def spell(token: str) -> str:
    """Spell letters and digits one by one; other characters pass through."""
    return "".join(LETTER_PRONUNCIATION.get(ch.upper(), ch) for ch in token)


def pronounce_base(base: str, policy) -> str:
    """Spell a pure-alphanumeric base when the policy asks for it."""
    if policy.base_pronounce == "off" or not _ALNUM_RE.fullmatch(base):
        return base
    if policy.base_pronounce == "spellAll" or len(base) <= policy.base_spell_threshold:
        return spell(base)
    return base


def _tables(policy) -> tuple[dict, dict]:
    singles = dict(EXTENSION_PRONUNCIATION)
    multis = dict(MULTI_EXTENSION_PRONUNCIATION)
    for key, value in (policy.dot_ext_map or {}).items():
        key = str(key).lower().lstrip(".")
        if "." in key:
            multis[key] = str(value)
        else:
            singles[key] = str(value)
    return singles, multis


def pronounce_extensions(exts: list[str], policy) -> list[str]:
    """Spoken form for each extension group, longest multi-extension match first."""
    singles, multis = _tables(policy)
    spoken = []
    i = 0
    while i < len(exts):
        for j in range(len(exts), i + 1, -1):
            key = ".".join(exts[i:j]).lower()
            if key in multis:
                spoken.append(multis[key])
                i = j
                break
        else:
            ext = exts[i]
            spoken.append(singles.get(ext.lower()) or spell(ext))
            i += 1
    return spoken


def pronounce_filename(base: str, exts: list[str], policy) -> str:
    pad = WIDE_SPACE if policy.dot_padding == "wide" else " "
    parts = [pronounce_base(base, policy)]
    for ext in pronounce_extensions(exts, policy):
        if policy.dot_pronounce == "on":
            parts.append(DOT_WORD)
        parts.append(ext)
    return pad.join(parts)


def pronounce_filenames(text: str, policy) -> str:
    """Rewrite every filename-looking token in ``text`` into its spoken form."""

    def _replace(match):
        exts = match.group(2)[1:].split(".")
        return pronounce_filename(match.group(1), exts, policy)

    return FILENAME_RE.sub(_replace, text)
