"""Speech-safe text: ordered, idempotent rewriting of raw scene text.

Stages run in a fixed order:

1. arrow silencing
2. filename pronunciation
3. punctuation pauses
4. contracted kana (yoon) to katakana
5. long-vowel merge after yoon
6. decorative / emoji stripping
7. whitespace canonicalization

Running ``normalize`` on its own output returns the same string.
"""

import re
import unicodedata

from scene_narrator.config import ROLE_ALIASES, NormalizationPolicy
from scene_narrator.constants import TITLE_ROLES, WIDE_SPACE
from scene_narrator.filenames import pronounce_filenames

DEFAULT_POLICY = NormalizationPolicy()
MAX_PASSES = 3

ARROW_GLYPHS = "→←↑↓↔↕⇒⇐⇔⇨⇦➡⬅➔➜➝➞➟➠⟶⟵⟷⟹⟸⟺"
ASCII_ARROWS = ("<-->", "<=>", "<->", "-->", "==>", "<--", "->", "=>", "<-")

_ARROW_RE = re.compile(
    r"[ \t]*(?:"
    + "|".join(re.escape(a) for a in ASCII_ARROWS)
    + "|[" + ARROW_GLYPHS + "]"
    + r")[ \t]*"
)

ARROW_TOKENS = {"space2": "  ", "space1": " ", "remove": ""}

YOON_KATAKANA = {
    "きゃ": "キャ", "きゅ": "キュ", "きょ": "キョ",
    "しゃ": "シャ", "しゅ": "シュ", "しょ": "ショ",
    "ちゃ": "チャ", "ちゅ": "チュ", "ちょ": "チョ",
    "にゃ": "ニャ", "にゅ": "ニュ", "にょ": "ニョ",
    "ひゃ": "ヒャ", "ひゅ": "ヒュ", "ひょ": "ヒョ",
    "みゃ": "ミャ", "みゅ": "ミュ", "みょ": "ミョ",
    "りゃ": "リャ", "りゅ": "リュ", "りょ": "リョ",
    "ぎゃ": "ギャ", "ぎゅ": "ギュ", "ぎょ": "ギョ",
    "じゃ": "ジャ", "じゅ": "ジュ", "じょ": "ジョ",
}

_YOON_LONG_RE = re.compile("(" + "|".join(YOON_KATAKANA.values()) + ")[うウゥｳ]")

# Symbols with a reading worth keeping
KEEP_SYMBOLS = frozenset("°℃℉№™〒〆")
# Joiners, variation selector, keycap
DECORATIVE_MARKS = frozenset("\u200d\ufe0f\u20e3")
DENYLIST = frozenset("⏱⏲⏰⌛")
SKIN_TONES = (0x1F3FB, 0x1F3FF)
# Emoji blocks; used for code points this Python's Unicode database leaves unassigned
EMOJI_RANGES = (
    (0x1F000, 0x1FAFF),
    (0x1FB00, 0x1FBFF),
    (0x2600, 0x27BF),
    (0x2B00, 0x2BFF),
)

_MARKDOWN_RES = (
    re.compile(r"\*\*(.+?)\*\*"),
    re.compile(r"__(.+?)__"),
    re.compile(r"(?<![*\w])\*(?!\s)(.+?)(?<!\s)\*(?!\*)"),
    re.compile(r"`([^`\n]*)`"),
)


def _role(role: str) -> str:
    return ROLE_ALIASES.get(role, role)


def is_decorative(ch: str) -> bool:
    """True for characters stage 6 removes."""
    if ch in KEEP_SYMBOLS:
        return False
    if ch in DECORATIVE_MARKS or ch in DENYLIST:
        return True
    cp = ord(ch)
    if SKIN_TONES[0] <= cp <= SKIN_TONES[1]:
        return True
    category = unicodedata.category(ch)
    if category == "So":
        return True
    if category == "Cn":
        return any(lo <= cp <= hi for lo, hi in EMOJI_RANGES)
    return False


def silence_arrows(text: str, policy: NormalizationPolicy = DEFAULT_POLICY) -> str:
    if policy.arrow_silence == "none":
        return text
    token = ARROW_TOKENS[policy.arrow_silence]
    if policy.arrow_gap == "zspace":
        token = token + WIDE_SPACE
    elif policy.arrow_gap == "zspaceBoth":
        token = WIDE_SPACE + token + WIDE_SPACE
    return _ARROW_RE.sub(lambda _m: token, text)


def _needs_period_gap(text: str, pos: int) -> bool:
    """Whether the period ending at ``pos`` lacks whitespace after it.

    Decorative characters are looked through, since stage 6 removes them.
    ASCII spaces only count when more text follows them; otherwise stage 7
    strips them.
    """
    i = pos
    n = len(text)
    while i < n and is_decorative(text[i]):
        i += 1
    if i < n and text[i] in (WIDE_SPACE, "\r", "\n"):
        return False
    saw_space = False
    while i < n and (text[i] in " \t" or is_decorative(text[i])):
        saw_space = saw_space or text[i] in " \t"
        i += 1
    return not (saw_space and i < n and not text[i].isspace())


def punctuation_pauses(text: str, policy: NormalizationPolicy = DEFAULT_POLICY) -> str:
    if policy.comma_pause == "space2":
        text = text.replace(policy.comma_char, "  ")
    if policy.period_pause == "zspaceIfNeeded":
        out = []
        start = 0
        for match in re.finditer(re.escape(policy.period_char), text):
            end = match.end()
            out.append(text[start:end])
            if _needs_period_gap(text, end):
                out.append(WIDE_SPACE)
            start = end
        out.append(text[start:])
        text = "".join(out)
    return text


def yoon_to_katakana(text: str) -> str:
    for hira, kata in YOON_KATAKANA.items():
        text = text.replace(hira, kata)
    return text


def merge_long_vowels(text: str) -> str:
    """ニュう / ニュウ → ニュー and the like."""
    return _YOON_LONG_RE.sub(lambda m: m.group(1) + "ー", text)


def strip_decorative(text: str) -> str:
    return "".join(ch for ch in text if not is_decorative(ch))


def canonicalize_whitespace(text: str) -> str:
    text = re.sub(r" {3,}", "  ", text)
    text = re.sub(r"[ \t]+$", "", text, flags=re.MULTILINE)
    return text.strip(" \t\r\n")


def _long_vowel_applies(role: str, policy: NormalizationPolicy) -> bool:
    if policy.yoon_choon != "preferChoon":
        return False
    if policy.yoon_choon_apply == "all":
        return True
    return policy.yoon_choon_apply == "titleOnly" and _role(role) in TITLE_ROLES


def _normalize_pass(text: str, role: str, policy: NormalizationPolicy) -> str:
    text = silence_arrows(text, policy)
    text = pronounce_filenames(text, policy)
    text = punctuation_pauses(text, policy)
    if policy.yoon == "katakana":
        text = yoon_to_katakana(text)
    if _long_vowel_applies(role, policy):
        text = merge_long_vowels(text)
    text = strip_decorative(text)
    return canonicalize_whitespace(text)


def normalize(raw_text: str, role: str = "narration", policy: NormalizationPolicy = None) -> str:
    """Run all seven stages over ``raw_text`` for the given role.

    Stripping a decorative can join text an earlier stage rewrites
    (``に🎉ゅう``, ``a.🎉md``), so the pass repeats until the text is stable.
    """
    policy = policy or DEFAULT_POLICY
    text = str(raw_text or "")
    for _ in range(MAX_PASSES):
        result = _normalize_pass(text, role, policy)
        if result == text:
            break
        text = result
    return text


def strip_markdown(text: str) -> str:
    """Remove light emphasis markup, keeping the inner text."""
    text = str(text or "")
    for pattern in _MARKDOWN_RES:
        text = pattern.sub(r"\1", text)
    return text


def speech_text(raw_text: str, role: str = "narration", policy: NormalizationPolicy = None, rules=None) -> str:
    """What the player actually speaks: markdown strip, user rules, then normalize."""
    text = strip_markdown(raw_text)
    if rules is not None:
        text = rules.apply(text)
    return normalize(text, role, policy)
