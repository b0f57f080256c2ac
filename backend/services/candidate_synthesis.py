"""
Candidate Synthesis Service: generates several outline hypothesis sets,
scores every outline on theme / progression / writability, and merges the
best set with beats, tags and conflict focus borrowed from the runners-up.

Scoring and merging are pure functions over already-parsed candidates;
only ``CandidateSynthesizer.synthesize`` talks to a completion provider.
"""

import asyncio
import hashlib
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.exceptions import ParseError, ProviderError, ProviderTimeout, SynthesisError
from core.llm_client import CompletionProvider
from memory import StoryRepository
from models import (
    CandidateOutline,
    Character,
    Completion,
    ContextSelection,
    Outline,
    OutlineKind,
    PROTAGONIST_ROLES,
    ScoredCandidate,
    SynthesisAttempt,
    SynthesisContext,
    SynthesisResult,
)
from services.context_selection import ContextSelector, outline_index
from services.setting_selection import SettingSelector
from utils.json_extract import extract_json_list
from utils.text_cleaner import char_jaccard, is_similar_tag

_logger = logging.getLogger("storyloom.synthesis")

MAX_CANDIDATE_SETS = 3
BASE_TEMPERATURE = 0.7
TEMPERATURE_STEP = 0.1
SYNTHESIS_MAX_TOKENS = 2500
ATTEMPT_TIMEOUT_SECONDS = 120.0

THEME_WEIGHT = 0.4
PROGRESSION_WEIGHT = 0.35
WRITABILITY_WEIGHT = 0.25

NEAR_DUPLICATE = 0.7
MAX_BEATS = 5
MAX_THEME_TAGS = 5
MAX_ALTERNATE_SETS = 2

ABSTRACT_BEAT_WORDS = ("开端", "发展", "高潮", "结局", "转折")
CONFLICT_WORDS = ("冲突", "对抗", "危机", "挑战", "困境", "矛盾", "对决")


# scoring


def is_near_duplicate(left: str, right: str) -> bool:
    return char_jaccard(left, right) >= NEAR_DUPLICATE


def beat_quality(beats: Sequence[str]) -> float:
    """Average per-beat specificity in [0, 1]."""
    if not beats:
        return 0.0
    total = 0.0
    for beat in beats:
        if 15 <= len(beat) <= 100:
            total += 0.3
        elif len(beat) > 5:
            total += 0.1
        if not any(beat == word or f"{word}：" in beat for word in ABSTRACT_BEAT_WORDS):
            total += 0.4
        if any(word in beat for word in CONFLICT_WORDS):
            total += 0.3
    return min(total / len(beats), 1.0)


def theme_score(candidate: CandidateOutline, theme_tags: Sequence[str]) -> float:
    score = 0.0
    text = f"{candidate.title} {candidate.one_liner} {' '.join(candidate.beats)} ".lower()
    for theme in theme_tags:
        if any(is_similar_tag(tag, theme) for tag in candidate.theme_tags):
            score += 15
        elif theme and theme.lower() in text:
            score += 10

    score += beat_quality(candidate.beats) * 30

    if len(candidate.conflict_focus) > 5:
        score += 30
    elif candidate.conflict_focus:
        score += 15
    return min(score, 100.0)


def progression_score(candidate: CandidateOutline, predecessor: Optional[CandidateOutline]) -> float:
    score = 40.0
    beat_count = len(candidate.beats)
    if predecessor is not None:
        if beat_count:
            overlap = sum(
                1
                for beat in candidate.beats
                if any(is_near_duplicate(beat, prev) for prev in predecessor.beats)
            )
            score += (beat_count - overlap) / beat_count * 25
        if (
            candidate.conflict_focus
            and predecessor.conflict_focus
            and candidate.conflict_focus != predecessor.conflict_focus
        ):
            score += 10
    elif beat_count >= 3 and len(candidate.one_liner) >= 20:
        # an opening outline earns its progression by being substantial
        score += 25

    if 3 <= beat_count <= 5:
        score += 25
    elif beat_count > 0:
        score += 10
    return min(score, 100.0)


def writability_score(candidate: CandidateOutline) -> float:
    score = 0.0
    if 20 <= len(candidate.one_liner) <= 50:
        score += 30
    if 3 <= len(candidate.beats) <= 5:
        score += 40
    if 4 <= len(candidate.title) <= 15:
        score += 30
    return score


def total_score(theme: float, progression: float, writability: float) -> float:
    return THEME_WEIGHT * theme + PROGRESSION_WEIGHT * progression + WRITABILITY_WEIGHT * writability


def score_candidate_set(
    candidates: Sequence[CandidateOutline], theme_tags: Sequence[str]
) -> List[ScoredCandidate]:
    scored: List[ScoredCandidate] = []
    for index, candidate in enumerate(candidates):
        predecessor = candidates[index - 1] if index > 0 else None
        theme = theme_score(candidate, theme_tags)
        progression = progression_score(candidate, predecessor)
        writability = writability_score(candidate)
        scored.append(
            ScoredCandidate(
                candidate=candidate,
                theme_score=theme,
                progression_score=progression,
                writability_score=writability,
                total_score=total_score(theme, progression, writability),
            )
        )
    return scored


def mean_total(scored_set: Sequence[ScoredCandidate]) -> float:
    if not scored_set:
        return 0.0
    return sum(item.total_score for item in scored_set) / len(scored_set)


# merging


def merge_outline(base: CandidateOutline, alternates: Sequence[CandidateOutline]) -> CandidateOutline:
    beats = list(base.beats[:MAX_BEATS])
    themes = list(dict.fromkeys(base.theme_tags))[:MAX_THEME_TAGS]
    conflict_focus = base.conflict_focus

    for alternate in alternates:
        for beat in alternate.beats:
            if len(beats) >= MAX_BEATS:
                break
            if not any(is_near_duplicate(beat, existing) for existing in beats):
                beats.append(beat)
        for tag in alternate.theme_tags:
            if len(themes) >= MAX_THEME_TAGS:
                break
            if tag not in themes:
                themes.append(tag)
        if len(alternate.conflict_focus) > len(conflict_focus):
            conflict_focus = alternate.conflict_focus

    return base.model_copy(
        update={"beats": beats, "theme_tags": themes, "conflict_focus": conflict_focus}
    )


def merge_candidate_sets(
    scored_sets: Sequence[Sequence[ScoredCandidate]], target_count: int
) -> Tuple[List[CandidateOutline], int]:
    """Merge scored hypothesis sets; returns the outlines and the base set index."""
    if not scored_sets:
        return [], -1

    means = [mean_total(scored_set) for scored_set in scored_sets]
    order = sorted(range(len(scored_sets)), key=lambda idx: means[idx], reverse=True)
    base_index = order[0]
    alternates = [scored_sets[idx] for idx in order[1 : 1 + MAX_ALTERNATE_SETS]]

    merged: List[CandidateOutline] = []
    for position, scored in enumerate(scored_sets[base_index]):
        same_position = [alt[position].candidate for alt in alternates if position < len(alt)]
        merged.append(merge_outline(scored.candidate, same_position))
    return merged[:target_count], base_index


# parsing


def _normalize_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def parse_candidates(content: str, target_count: int) -> List[CandidateOutline]:
    """Parse one hypothesis set; malformed entries are dropped individually."""
    entries = extract_json_list(content)
    candidates: List[CandidateOutline] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        title = str(entry.get("title") or "").strip()
        one_liner = str(entry.get("oneLiner") or entry.get("one_liner") or "").strip()
        raw_beats = entry.get("beats")
        if not title or not one_liner or not isinstance(raw_beats, list):
            _logger.warning("synthesis entry dropped reason=missing_fields keys=%s", sorted(entry.keys()))
            continue
        beats = _normalize_list(raw_beats)
        if not beats:
            _logger.warning("synthesis entry dropped reason=empty_beats title=%s", title)
            continue
        candidates.append(
            CandidateOutline(
                title=title,
                one_liner=one_liner,
                beats=beats,
                theme_tags=_normalize_list(entry.get("themeTags") or entry.get("theme_tags")),
                required_entities=_normalize_list(entry.get("requiredEntities") or entry.get("required_entities")),
                focal_entities=_normalize_list(entry.get("focalEntities") or entry.get("focal_entities")),
                stakes_delta=str(entry.get("stakesDelta") or entry.get("stakes_delta") or "").strip(),
                entry_state=str(entry.get("entryState") or entry.get("entry_state") or "").strip(),
                exit_state=str(entry.get("exitState") or entry.get("exit_state") or "").strip(),
                conflict_focus=str(entry.get("conflictFocus") or entry.get("conflict_focus") or "").strip(),
            )
        )
    if not candidates:
        raise ParseError("no valid outline entries in response")
    return candidates[:target_count]


def post_process_chapter_candidates(
    candidates: Sequence[CandidateOutline], characters: Sequence[Character]
) -> List[CandidateOutline]:
    valid_names = {character.name for character in characters}
    protagonist = next((c for c in characters if c.role.strip().lower() in PROTAGONIST_ROLES), None)

    processed: List[CandidateOutline] = []
    for candidate in candidates:
        focal = list(candidate.focal_entities) or list(candidate.required_entities[:2])
        required = [name for name in candidate.required_entities if name in valid_names]
        focal = [name for name in focal if name in valid_names]
        if not required and protagonist is not None:
            required = [protagonist.name]
            focal = [protagonist.name]
        processed.append(
            candidate.model_copy(
                update={
                    "required_entities": required,
                    "focal_entities": focal,
                    "entry_state": candidate.entry_state or "章节开始",
                    "exit_state": candidate.exit_state or "章节结束",
                    "stakes_delta": candidate.stakes_delta or "情节推进",
                }
            )
        )
    return processed


def build_synthesis_prompt(
    kind: OutlineKind,
    target_count: int,
    brief: str,
    context_text: str = "",
    theme_tags: Sequence[str] = (),
) -> str:
    label = {"main": "总纲", "volume": "卷纲", "chapter": "章纲"}[OutlineKind(kind).value]
    entity_fields = ""
    if OutlineKind(kind) == OutlineKind.CHAPTER:
        entity_fields = (
            '    "requiredEntities": ["必须出场的角色名"],\n'
            '    "focalEntities": ["视角或焦点角色名"],\n'
            '    "stakesDelta": "本章造成的局势变化",\n'
            '    "entryState": "开场状态",\n'
            '    "exitState": "结束状态",\n'
        )
    sections = [
        f"你是一位资深的网络小说策划。请生成 {target_count} 个连续的{label}。",
        f"# 创作要求\n{brief.strip()}",
    ]
    if theme_tags:
        sections.append(f"# 主题标签\n{'、'.join(theme_tags)}")
    if context_text.strip():
        sections.append(f"# 已有内容\n{context_text.strip()}")
    sections.append(
        "# 输出格式\n"
        "只输出 JSON 数组，不要解释：\n"
        "[\n  {\n"
        '    "title": "标题（4-15字）",\n'
        '    "oneLiner": "一句话概括（20-50字）",\n'
        '    "beats": ["3-5个具体节拍，每个写清谁做了什么、遇到什么冲突"],\n'
        '    "themeTags": ["主题"],\n'
        '    "conflictFocus": "核心冲突",\n'
        f"{entity_fields}"
        "  }\n]"
    )
    return "\n\n".join(sections)


# context assembly


def _continuity_note(selection: ContextSelection, outlines: Sequence[Outline], chapter_count: int) -> str:
    last = selection.chapters[-1]
    outline = outline_index(outlines).get(last.chapter_id)
    exit_state = outline.payload.exit_state if outline is not None else ""
    return f"## 叙事连贯性\n已有{chapter_count}章，当前状态：{exit_state or '章节结束'}"


def build_synthesis_context(
    repository: StoryRepository,
    project_id: str,
    kind: OutlineKind,
    brief: str,
    target_count: int,
    context_selector: ContextSelector,
    setting_selector: SettingSelector,
    volume_id: Optional[str] = None,
    theme_tags: Sequence[str] = (),
) -> SynthesisContext:
    """Assemble the synthesis prompt from existing chapters and world settings.

    Chapter outlines continue from the most recent chapters (of ``volume_id``
    when given); volume and main outlines draw on key chapters of the whole
    project. Embedding calls happen here, so async callers should run this in
    a worker thread.
    """
    kind = OutlineKind(kind)
    chapters = repository.list_chapters(project_id)
    if volume_id is not None:
        chapters = [chapter for chapter in chapters if chapter.volume_id == volume_id]
    outlines = repository.list_outlines(project_id, OutlineKind.CHAPTER)

    if kind == OutlineKind.CHAPTER:
        selection = context_selector.select_recent_chapters_for_append(chapters, outlines, brief)
    else:
        selection = context_selector.select_key_chapters_for_volume(chapters, outlines, brief)
    settings = setting_selector.select(repository.list_settings(project_id), f"{brief}\n{selection.text}")

    sections: List[str] = []
    if settings.global_text:
        sections.append(f"## 全局规则\n{settings.global_text}")
    if selection.text:
        sections.append(f"## 相关章节\n{selection.text}")
        if kind == OutlineKind.CHAPTER:
            sections.append(_continuity_note(selection, outlines, len(chapters)))
    if settings.settings:
        sections.append(f"## 世界观设定\n{settings.text}")

    _logger.info(
        "synthesis context project=%s kind=%s chapters=%d method=%s settings=%d",
        project_id,
        kind.value,
        len(selection.chapters),
        selection.method.value,
        len(settings.settings) + len(settings.global_settings),
    )
    return SynthesisContext(
        prompt=build_synthesis_prompt(kind, target_count, brief, "\n\n".join(sections), theme_tags),
        kind=kind,
        theme_tags=list(theme_tags),
        characters=repository.list_characters(project_id),
        project_id=project_id,
    )


def _hash(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


class CandidateSynthesizer:
    def __init__(
        self,
        primary: CompletionProvider,
        secondary: Optional[CompletionProvider] = None,
        attempts: int = MAX_CANDIDATE_SETS,
        attempt_timeout: float = ATTEMPT_TIMEOUT_SECONDS,
        max_tokens: int = SYNTHESIS_MAX_TOKENS,
    ):
        self.primary = primary
        self.secondary = secondary
        self.attempts = max(int(attempts), 1)
        self.attempt_timeout = attempt_timeout
        self.max_tokens = max_tokens

    async def _complete(self, provider: CompletionProvider, prompt: str, temperature: float) -> Completion:
        try:
            # the client gets the same limit so a timed-out request does not keep its thread busy
            return await asyncio.wait_for(
                asyncio.to_thread(
                    provider.complete, prompt, temperature, self.max_tokens, timeout=self.attempt_timeout
                ),
                timeout=self.attempt_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout(f"completion exceeded {self.attempt_timeout:.0f}s") from exc

    async def _complete_with_fallback(
        self, prompt: str, temperature: float, attempt: SynthesisAttempt
    ) -> Completion:
        attempt.model = getattr(self.primary, "model", "primary")
        try:
            return await self._complete(self.primary, prompt, temperature)
        except Exception as primary_exc:
            if self.secondary is None:
                raise
            _logger.warning(
                "synthesis primary failed attempt=%d error=%s fallback=secondary",
                attempt.index,
                primary_exc,
            )
        attempt.used_secondary = True
        attempt.model = getattr(self.secondary, "model", "secondary")
        return await self._complete(self.secondary, prompt, temperature)

    async def synthesize(self, context: SynthesisContext, target_count: int) -> SynthesisResult:
        if target_count <= 0:
            raise ValueError("target_count must be positive")

        prompt_hash = _hash(context.prompt)
        candidate_sets: List[List[CandidateOutline]] = []
        attempts: List[SynthesisAttempt] = []

        for index in range(self.attempts):
            temperature = round(BASE_TEMPERATURE + index * TEMPERATURE_STEP, 2)
            attempt = SynthesisAttempt(index=index, temperature=temperature, prompt_hash=prompt_hash)
            attempts.append(attempt)
            started = time.perf_counter()
            try:
                completion = await self._complete_with_fallback(context.prompt, temperature, attempt)
                attempt.response_hash = _hash(completion.text)
                candidates = parse_candidates(completion.text, target_count)
            except (ProviderError, ParseError) as exc:
                attempt.error = str(exc)
                _logger.warning("synthesis attempt failed attempt=%d error=%s", index, exc)
                continue
            except Exception as exc:
                attempt.error = f"{type(exc).__name__}: {exc}"
                _logger.error("synthesis attempt crashed attempt=%d error=%s", index, attempt.error)
                continue
            finally:
                attempt.latency_ms = (time.perf_counter() - started) * 1000

            if context.kind == OutlineKind.CHAPTER:
                candidates = post_process_chapter_candidates(candidates, context.characters)
            attempt.success = True
            attempt.candidate_count = len(candidates)
            candidate_sets.append(candidates)
            _logger.info(
                "synthesis attempt ok attempt=%d model=%s temperature=%.1f candidates=%d",
                index,
                attempt.model,
                temperature,
                len(candidates),
            )

        if not candidate_sets:
            raise SynthesisError(f"所有候选生成均失败 (attempts={len(attempts)})")

        scored_sets = [score_candidate_set(candidates, context.theme_tags) for candidates in candidate_sets]
        outlines, base_index = merge_candidate_sets(scored_sets, target_count)
        set_means = [mean_total(scored_set) for scored_set in scored_sets]
        _logger.info(
            "synthesis merged sets=%d base=%d means=%s outlines=%d",
            len(scored_sets),
            base_index,
            ",".join(f"{mean:.2f}" for mean in set_means),
            len(outlines),
        )
        return SynthesisResult(
            outlines=outlines,
            scored_sets=scored_sets,
            set_means=set_means,
            base_set_index=base_index,
            attempts=attempts,
        )
