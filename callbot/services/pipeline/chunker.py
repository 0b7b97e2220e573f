"""Sentence-boundary chunking of streamed text."""
import re
from typing import List, Optional

_TERMINATORS = ".!?"
_TAG = re.compile(r"<[^>]+>")
_LINK = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_EMPHASIS = re.compile(r"(\*\*|__|\*|`+|~~)")
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_BULLET = re.compile(r"^\s*[-•]\s+", re.MULTILINE)
_WHITESPACE = re.compile(r"\s+")


def strip_markup(text: str) -> str:
    """Remove SSML/HTML tags and markdown formatting so text can be spoken."""
    text = _TAG.sub(" ", text)
    text = _LINK.sub(r"\1", text)
    text = _HEADING.sub("", text)
    text = _BULLET.sub("", text)
    text = _EMPHASIS.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def _last_boundary(buffer: str) -> Optional[int]:
    """Index just past the last sentence terminator that ends a sentence."""
    for i in range(len(buffer) - 1, -1, -1):
        ch = buffer[i]
        if ch not in _TERMINATORS:
            continue
        at_end = i == len(buffer) - 1
        if not at_end and not buffer[i + 1].isspace():
            continue
        # "5." at the end of the buffer may still become "5.5"
        if at_end and ch == "." and i > 0 and buffer[i - 1].isdigit():
            continue
        return i + 1
    return None


class SentenceChunker:
    """
    Accumulates text deltas and cuts them into speakable chunks.

    A chunk is cut when the buffer holds a sentence terminator and the text
    up to that terminator is at least ``min_chars`` long.
    """

    def __init__(self, min_chars: int = 12):
        self.min_chars = min_chars
        self._buffer = ""

    def push(self, delta: str) -> List[str]:
        """Add a delta and return any chunks it completed."""
        if not delta:
            return []
        self._buffer += delta
        boundary = _last_boundary(self._buffer)
        if boundary is None:
            return []
        candidate = self._buffer[:boundary].strip()
        if len(candidate) < self.min_chars:
            return []
        self._buffer = self._buffer[boundary:].lstrip()
        return [candidate]

    def flush(self) -> Optional[str]:
        """Return whatever is left in the buffer."""
        remainder = self._buffer.strip()
        self._buffer = ""
        return remainder or None

    @property
    def buffered(self) -> str:
        return self._buffer
