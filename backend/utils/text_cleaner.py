"""
Text helpers shared by the selectors, the synthesizer and the scene loop:
token estimation, cheap character-overlap similarity, title keywords,
middle excerpts and removal of model scaffolding (thinking blocks, scene
markers) from generated prose.
"""

import math
import re
from typing import List, Optional

# Chinese prose averages roughly 0.4 tokens per character.
TOKENS_PER_CHAR: float = 0.4

_SIMILARITY_STRIP_RE = re.compile(r"[\s，。、：；！？,.:;!?\"'“”‘’（）()【】\[\]《》<>\-—_…·]+")
_TAG_STRIP_RE = re.compile(r"\s+")
_TITLE_SPLIT_RE = re.compile(r"[\s,，.。、]+")

THINKING_OPEN = "<thinking>"
THINKING_CLOSE = "</thinking>"
_THINKING_BLOCK_RE = re.compile(r"<thinking>[\s\S]*?</thinking>")
_SCENE_TAG_RE = re.compile(r"【场景\s*\d+\s*/\s*\d+[^】]*】\s*")
_SEPARATOR_LINE_RE = re.compile(r"^\s*\*{3,}\s*$", re.MULTILINE)
_SCENE_HEADING_RE = re.compile(r"(?:^|\n)\s*场景\s*\d+[：:][^\n]*(?=\n|$)")
_STRAY_SEPARATOR_RE = re.compile(r"\*\*\*")
# longest unclosed 【 fragment held back while waiting for its 】
MARKER_HOLD_LIMIT = 40


def estimate_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    # rounded first so 600 chars is exactly 240, not 241 from float noise
    return math.ceil(round(len(text) * TOKENS_PER_CHAR, 6))


def normalize_for_similarity(text: Optional[str]) -> str:
    return _SIMILARITY_STRIP_RE.sub("", (text or "").lower())


def char_jaccard(left: Optional[str], right: Optional[str]) -> float:
    """Jaccard index over the unique characters of two normalized strings.

    Deliberately approximate: word order and repetition are ignored, so
    "林舟夜探码头" and "码头夜探林舟" are identical.
    """
    a = normalize_for_similarity(left)
    b = normalize_for_similarity(right)
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    set_a = set(a)
    set_b = set(b)
    return len(set_a & set_b) / len(set_a | set_b)


def is_similar_tag(left: Optional[str], right: Optional[str]) -> bool:
    a = _TAG_STRIP_RE.sub("", (left or "").lower())
    b = _TAG_STRIP_RE.sub("", (right or "").lower())
    return bool(a) and a == b


def extract_title_keywords(title: Optional[str]) -> List[str]:
    return [part for part in _TITLE_SPLIT_RE.split(title or "") if len(part) > 1]


def middle_excerpt(text: Optional[str], max_chars: int = 800) -> str:
    """Return ``max_chars`` characters from the middle of ``text``.

    Chapter openings tend to be scene-setting boilerplate, so the window is
    centred and framed with ellipses on both sides.
    """
    body = text or ""
    if max_chars <= 0:
        return ""
    if len(body) <= max_chars:
        return body
    start = (len(body) - max_chars) // 2
    return f"...{body[start:start + max_chars]}..."


def clean_scene_markers(content: Optional[str]) -> str:
    if not content:
        return ""
    cleaned = _THINKING_BLOCK_RE.sub("", content)
    cleaned = _SCENE_TAG_RE.sub("", cleaned)
    cleaned = _SEPARATOR_LINE_RE.sub("", cleaned)
    cleaned = _SCENE_HEADING_RE.sub("\n", cleaned)
    return cleaned.strip()


def clean_stream_chunk(chunk: str) -> str:
    cleaned = _SCENE_TAG_RE.sub("", chunk)
    return _STRAY_SEPARATOR_RE.sub("", cleaned)


class ThinkingStreamFilter:
    """Drop a leading ``<thinking>...</thinking>`` block from a chunk stream.

    Chunks are held back only while the output could still be opening a
    thinking block, or while inside one. A block that runs past
    ``buffer_limit`` characters without closing is released as prose.
    """

    def __init__(self, buffer_limit: int = 2000):
        self.buffer_limit = buffer_limit
        self._buffer = ""
        self._pending = ""
        self._passthrough = False

    @property
    def buffering(self) -> bool:
        return not self._passthrough

    def feed(self, chunk: str) -> str:
        if not chunk:
            return ""
        if self._passthrough:
            return clean_stream_chunk(self._hold_partial_marker(self._pending + chunk))

        self._buffer += chunk
        head = self._buffer.lstrip()
        if not head:
            return ""
        if not head.startswith(THINKING_OPEN):
            if THINKING_OPEN.startswith(head):
                return ""
            return self._release(self._buffer)

        close_at = self._buffer.find(THINKING_CLOSE)
        if close_at != -1:
            return self._release(self._buffer[close_at + len(THINKING_CLOSE):])
        if len(self._buffer) > self.buffer_limit:
            return self._release(self._buffer)
        return ""

    def flush(self) -> str:
        released = ""
        if not self._passthrough and self._buffer:
            released = self._release(self._buffer)
        pending, self._pending = self._pending, ""
        return released + clean_stream_chunk(pending)

    def _release(self, text: str) -> str:
        self._buffer = ""
        self._passthrough = True
        return clean_scene_markers(self._hold_partial_marker(text))

    def _hold_partial_marker(self, text: str) -> str:
        """Keep a trailing unclosed ``【...`` or run of ``*`` for the next chunk."""
        open_at = text.rfind("【")
        if open_at != -1 and "】" not in text[open_at:] and len(text) - open_at <= MARKER_HOLD_LIMIT:
            cut = open_at
        else:
            cut = len(text.rstrip("*"))
        self._pending = text[cut:]
        return text[:cut]
