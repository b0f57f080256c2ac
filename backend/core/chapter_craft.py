import re
from typing import Dict, List, Optional, Sequence

from models import ChapterOutlinePayload, OutlinePayload, SceneFrame


_CHAPTER_PREFIX_CN_RE = re.compile(
    r"^\s*(?:#\s*)?(?:第\s*[0-9一二三四五六七八九十百千零〇两IVXLCMivxlcm]+\s*[章节卷部]\s*[：:\-\s]*)"
)
_CHAPTER_PREFIX_EN_RE = re.compile(r"^\s*(?:#\s*)?(?:chapter|ch\.)\s*[0-9ivxlcm]+\s*[：:\-\s]*", re.IGNORECASE)
_CJK_RE = re.compile(r"[\u4e00-\u9fa5]")
_SENTENCE_BREAK_RE = re.compile(r"[。！？\n]")

_HIGH_COMPLEXITY_TERMS = ("战斗", "冲突", "对抗", "交手")
_LOW_COMPLEXITY_TERMS = ("对话", "交谈", "过渡", "准备")

MAX_COMPLEXITY_PER_SCENE = 3
MAX_BEATS_PER_SCENE = 2
WORDS_PER_BEAT = 800
MIN_SCENE_WORDS = 1000
MAX_SCENE_WORDS = 3000

PREVIOUS_CHAPTER_TAIL_CHARS = 1500
GENERATED_WINDOW_CHARS = 2000
WINDOW_BREAK_SLACK = 200


def count_words(text: Optional[str]) -> int:
    """CJK characters count one each; other runs count per whitespace-separated word."""
    body = (text or "").strip()
    cjk = len(_CJK_RE.findall(body))
    return cjk + len(_CJK_RE.sub(" ", body).split())


def strip_leading_chapter_heading(text: str) -> str:
    content = (text or "").strip()
    if not content:
        return ""

    lines = content.splitlines()
    first = lines[0].strip()
    if first.startswith("#"):
        heading = re.sub(r"^#+\s*", "", first).strip()
        if heading and (heading.startswith("第") or heading.lower().startswith("chapter")):
            lines = lines[1:]
    elif _CHAPTER_PREFIX_CN_RE.match(first) or _CHAPTER_PREFIX_EN_RE.match(first):
        lines = lines[1:]

    return "\n".join(lines).strip()


def collapse_blank_lines(text: str, max_consecutive_blank: int = 1) -> str:
    content = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    max_consecutive_blank = max(max_consecutive_blank, 1)

    out: List[str] = []
    blank_run = 0
    for line in content.split("\n"):
        if line.strip():
            blank_run = 0
            out.append(line.rstrip())
            continue
        blank_run += 1
        if blank_run <= max_consecutive_blank:
            out.append("")
    return "\n".join(out).strip()


def tail_text(text: Optional[str], max_chars: int = PREVIOUS_CHAPTER_TAIL_CHARS) -> str:
    body = text or ""
    return body[-max_chars:] if len(body) > max_chars else body


def smart_context_window(
    content: Optional[str],
    max_chars: int = GENERATED_WINDOW_CHARS,
    slack: int = WINDOW_BREAK_SLACK,
) -> str:
    """Last ``max_chars`` of ``content``, started on a paragraph or sentence break.

    A window slightly larger than requested is taken first; if a paragraph
    break (or failing that a sentence end) falls within the first ``slack``
    characters, the window starts right after it.
    """
    body = content or ""
    if len(body) <= max_chars:
        return body

    raw = body[-(max_chars + slack):]
    paragraph_at = raw.find("\n\n")
    if 0 <= paragraph_at < slack:
        return raw[paragraph_at + 2:].strip()

    sentence = _SENTENCE_BREAK_RE.search(raw)
    if sentence and sentence.start() < slack:
        return raw[sentence.start() + 1:].strip()

    return body[-max_chars:]


def analyze_beat_complexity(beat: str) -> int:
    lower = (beat or "").lower()
    if any(term in lower for term in _HIGH_COMPLEXITY_TERMS):
        return 3
    if any(term in lower for term in _LOW_COMPLEXITY_TERMS):
        return 1
    return 2


def group_beats(beats: Sequence[str]) -> List[Dict[str, object]]:
    """Greedily pack beats into scenes bounded by complexity and beat count."""
    groups: List[Dict[str, object]] = []
    current: List[str] = []
    current_complexity = 0

    def _close():
        groups.append(
            {
                "beats": list(current),
                "primary": current[0],
                "supporting": list(current[1:]),
                "avg_complexity": current_complexity / len(current),
            }
        )

    for beat in beats:
        score = analyze_beat_complexity(beat)
        if current and (
            current_complexity + score > MAX_COMPLEXITY_PER_SCENE
            or len(current) >= MAX_BEATS_PER_SCENE
        ):
            _close()
            current = [beat]
            current_complexity = score
        else:
            current.append(beat)
            current_complexity += score

    if current:
        _close()
    return groups


def scene_word_target(beat_count: int, avg_complexity: float) -> int:
    target = int(beat_count * WORDS_PER_BEAT * (avg_complexity / 2))
    return max(MIN_SCENE_WORDS, min(MAX_SCENE_WORDS, target))


def distribute_focal_entities(entities: Sequence[str], scene_index: int) -> List[str]:
    if len(entities) <= 2:
        return list(entities)
    start = (scene_index * 2) % len(entities)
    return [entities[start], entities[(start + 1) % len(entities)]]


def build_scene_purpose(primary: str, supporting: Sequence[str]) -> str:
    if supporting:
        return f"主要：{primary}；同时：{'、'.join(supporting)}"
    return primary


def decompose_outline(chapter_id: str, payload: OutlinePayload) -> List[SceneFrame]:
    beats = [beat.strip() for beat in payload.beats if beat and beat.strip()]
    if not beats:
        raise ValueError("章节大纲缺少节拍信息")

    groups = group_beats(beats)
    focal = list(payload.focal_entities) or list(payload.required_entities[:2])
    target_words = None
    if isinstance(payload, ChapterOutlinePayload):
        target_words = payload.target_words

    scenes: List[SceneFrame] = []
    for index, group in enumerate(groups):
        group_beats_list = group["beats"]
        words = scene_word_target(len(group_beats_list), group["avg_complexity"])
        if target_words:
            words = max(MIN_SCENE_WORDS, min(MAX_SCENE_WORDS, target_words // len(groups)))
        scenes.append(
            SceneFrame(
                id=f"{chapter_id}-scene-{index}",
                chapter_id=chapter_id,
                index=index,
                purpose=build_scene_purpose(group["primary"], group["supporting"]),
                focal_entities=distribute_focal_entities(focal, index),
                beats=list(group_beats_list),
                entry_state=payload.entry_state if index == 0 else f"承接场景{index}",
                exit_state=payload.exit_state if index == len(groups) - 1 else f"引出场景{index + 2}",
                target_words=words,
            )
        )
    return scenes
