"""Split normalized text into bounded, speakable chunks."""

from scene_narrator.constants import (
    CHUNK_BREAK_CHARS,
    CHUNK_LOOKBACK,
    CHUNK_MAX_LEN,
    CHUNK_SEPARATORS,
)


def _is_break(ch: str) -> bool:
    return ch in CHUNK_BREAK_CHARS or ch.isspace()


def split_sentences(text: str) -> list[str]:
    """Cut after every separator, keeping the whitespace that follows it."""
    pieces = []
    start = 0
    i = 0
    n = len(text)
    while i < n:
        if text[i] in CHUNK_SEPARATORS:
            i += 1
            while i < n and text[i].isspace():
                i += 1
            pieces.append(text[start:i])
            start = i
        else:
            i += 1
    if start < n:
        pieces.append(text[start:])
    return pieces


def cut_long(piece: str, max_len: int = CHUNK_MAX_LEN, lookback: int = CHUNK_LOOKBACK) -> list[str]:
    """Cut a piece into parts of at most ``max_len``.

    Each cut lands after the last break character within ``lookback`` of the
    limit, or exactly at the limit when there is none.
    """
    parts = []
    while len(piece) > max_len:
        cut = max_len
        for k in range(max_len - 1, max(max_len - lookback, 0) - 1, -1):
            if _is_break(piece[k]):
                cut = k + 1
                break
        parts.append(piece[:cut])
        piece = piece[cut:]
    if piece:
        parts.append(piece)
    return parts


def split(text: str, max_len: int = CHUNK_MAX_LEN, lookback: int = CHUNK_LOOKBACK) -> list[str]:
    """Split ``text`` into chunks of at most ``max_len`` characters.

    Joining the chunks and trimming gives back the trimmed input. Blank
    chunks at either end are dropped.
    """
    if max_len < 1:
        raise ValueError(f"max_len must be >= 1, got {max_len}")
    chunks = []
    for piece in split_sentences(text or ""):
        chunks.extend(cut_long(piece, max_len, lookback))
    while chunks and not chunks[0].strip():
        chunks.pop(0)
    while chunks and not chunks[-1].strip():
        chunks.pop()
    return chunks
