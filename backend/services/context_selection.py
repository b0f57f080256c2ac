"""
Context Selection Service: picks prior chapters relevant to a continuation
task and packs them into a token budget.

Embedding similarity (blended with recency) is the primary signal; when no
embedding provider is usable, a recency/outline-completeness heuristic
takes over with the same packing procedure.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Generic, List, Optional, Sequence, TypeVar

from core.exceptions import ProviderError
from core.llm_client import EmbeddingProvider
from memory.search import cosine_similarity
from models import (
    Chapter,
    ContextSelection,
    ContextSelectionOptions,
    Outline,
    SelectedChapter,
    SelectionMethod,
)
from utils.text_cleaner import estimate_tokens

_logger = logging.getLogger("storyloom.context")

MIN_EMBED_TEXT_CHARS = 50
KEY_BEAT_BOOST = 1.1
BLOCK_SEPARATOR = "\n\n"

T = TypeVar("T")


@dataclass
class Scored(Generic[T]):
    item: T
    score: float
    text: str
    tokens: int = 0


def recency_boost(index: int, total: int) -> float:
    """0.3 for the oldest of ``total`` items, 1.0 for the newest."""
    if total <= 1:
        return 1.0
    return 0.3 + 0.7 * (index / (total - 1))


def pack_within_budget(
    ranked: Sequence[Scored[T]],
    token_budget: int,
    max_count: int,
    separator: str = BLOCK_SEPARATOR,
) -> List[Scored[T]]:
    """Greedy score-order packing.

    Each accepted block is charged for its own text plus the separator that
    joins it to the previous block, so the joined text never estimates above
    ``token_budget``. A block that does not fit is skipped and never
    reconsidered, which can leave budget unused when a large high-scoring
    block precedes several small ones.
    """
    selected: List[Scored[T]] = []
    used = 0
    for candidate in ranked:
        if len(selected) >= max_count:
            break
        cost = estimate_tokens(candidate.text if not selected else separator + candidate.text)
        if used + cost <= token_budget:
            candidate.tokens = cost
            selected.append(candidate)
            used += cost
    return selected


def outline_index(outlines: Sequence[Outline]) -> Dict[str, Outline]:
    indexed: Dict[str, Outline] = {}
    for outline in outlines:
        if outline.chapter_id and outline.chapter_id not in indexed:
            indexed[outline.chapter_id] = outline
    return indexed


def build_chapter_text(chapter: Chapter, outline: Optional[Outline]) -> str:
    """Text embedded on demand for chapters without a stored vector."""
    text = chapter.title
    if outline is not None:
        payload = outline.payload
        if payload.one_liner:
            text += f"\n{payload.one_liner}"
        if payload.beats:
            text += f"\n节拍：{'；'.join(payload.beats[:3])}"
        if payload.stakes_delta:
            text += f"\n影响：{payload.stakes_delta}"
        if payload.exit_state:
            text += f"\n结束状态：{payload.exit_state}"
    elif chapter.content:
        text += f"\n{chapter.content[:200]}"
    return text


def render_chapter_block(chapter: Chapter, outline: Optional[Outline]) -> str:
    block = chapter.title
    if outline is not None:
        payload = outline.payload
        if payload.one_liner:
            block += f"\n  概括：{payload.one_liner}"
        if payload.beats:
            block += f"\n  节拍：{'；'.join(payload.beats[:2])}"
        if payload.stakes_delta:
            block += f"\n  影响：{payload.stakes_delta}"
        if payload.exit_state:
            block += f"\n  结束状态：{payload.exit_state}"
    elif chapter.content:
        block += f"\n  内容：{chapter.content[:150]}"
    return block


class ContextSelector:
    def __init__(self, embedder: Optional[EmbeddingProvider] = None):
        self.embedder = embedder

    def select(
        self,
        chapters: Sequence[Chapter],
        outlines: Sequence[Outline],
        target_topic: str,
        options: Optional[ContextSelectionOptions] = None,
    ) -> ContextSelection:
        opts = options or ContextSelectionOptions()
        if not chapters:
            return ContextSelection(method=SelectionMethod.RECENT)

        ordered = sorted(chapters, key=lambda chapter: chapter.order_index)
        by_chapter = outline_index(outlines)

        if opts.use_embedding and self.embedder is not None:
            try:
                ranked = self._rank_by_embedding(ordered, by_chapter, target_topic, opts)
            except ProviderError as exc:
                _logger.warning("context embedding failed error=%s fallback=heuristic", exc)
                ranked = []
            if ranked:
                result = self._assemble(ranked, opts, SelectionMethod.EMBEDDING)
                if result.chapters:
                    return result
                _logger.info("context embedding selected nothing fallback=heuristic")

        return self._assemble(self._rank_by_heuristic(ordered, by_chapter, opts), opts, SelectionMethod.HEURISTIC)

    def select_key_chapters_for_volume(
        self,
        chapters: Sequence[Chapter],
        outlines: Sequence[Outline],
        volume_theme: str,
        **overrides,
    ) -> ContextSelection:
        options = ContextSelectionOptions(
            **{
                "max_count": 5,
                "token_budget": 1000,
                "prioritize_recent": True,
                "include_key_beats": True,
                "use_embedding": True,
                **overrides,
            }
        )
        return self.select(chapters, outlines, f"卷主题：{volume_theme}，需要选择关键章节作为上下文", options)

    def select_recent_chapters_for_append(
        self,
        chapters: Sequence[Chapter],
        outlines: Sequence[Outline],
        next_purpose: str,
        **overrides,
    ) -> ContextSelection:
        options = ContextSelectionOptions(
            **{
                "max_count": 5,
                "token_budget": 1200,
                "prioritize_recent": True,
                "include_key_beats": False,
                "use_embedding": True,
                **overrides,
            }
        )
        return self.select(chapters, outlines, f"下一章目的：{next_purpose}，需要选择相关章节保持叙事连贯", options)

    def _rank_by_embedding(
        self,
        ordered: Sequence[Chapter],
        by_chapter: Dict[str, Outline],
        target_topic: str,
        opts: ContextSelectionOptions,
    ) -> List[Scored[Chapter]]:
        target_vector = self.embedder.embed_text(target_topic)
        if not target_vector:
            raise ProviderError("empty target embedding")

        total = len(ordered)
        ranked: List[Scored[Chapter]] = []
        for index, chapter in enumerate(ordered):
            outline = by_chapter.get(chapter.id)
            vector = chapter.embedding or self._embed_on_demand(chapter, outline)
            if not vector:
                continue
            try:
                similarity = cosine_similarity(target_vector, vector)
            except ProviderError as exc:
                _logger.warning("context chapter=%s skipped error=%s", chapter.id, exc)
                continue

            relevance = similarity
            if opts.prioritize_recent:
                relevance = 0.7 * similarity + 0.3 * recency_boost(index, total)
            if opts.include_key_beats and outline is not None and outline.has_beats:
                relevance *= KEY_BEAT_BOOST
            if relevance < opts.min_relevance:
                continue
            ranked.append(Scored(chapter, relevance, render_chapter_block(chapter, outline)))

        ranked.sort(key=lambda entry: entry.score, reverse=True)
        return ranked

    def _embed_on_demand(self, chapter: Chapter, outline: Optional[Outline]) -> Optional[List[float]]:
        text = build_chapter_text(chapter, outline)
        if len(text) <= MIN_EMBED_TEXT_CHARS:
            return None
        try:
            return self.embedder.embed_text(text)
        except ProviderError as exc:
            _logger.warning("context on-demand embedding failed chapter=%s error=%s", chapter.id, exc)
            return None

    def _rank_by_heuristic(
        self,
        ordered: Sequence[Chapter],
        by_chapter: Dict[str, Outline],
        opts: ContextSelectionOptions,
    ) -> List[Scored[Chapter]]:
        total = len(ordered)
        ranked: List[Scored[Chapter]] = []
        for index, chapter in enumerate(ordered):
            outline = by_chapter.get(chapter.id)
            score = 0.6 * recency_boost(index, total)
            if outline is not None:
                if opts.include_key_beats and outline.has_beats:
                    score += 0.2
                if outline.payload.exit_state:
                    score += 0.2
            ranked.append(Scored(chapter, score, render_chapter_block(chapter, outline)))
        ranked.sort(key=lambda entry: entry.score, reverse=True)
        return ranked

    def _assemble(
        self,
        ranked: Sequence[Scored[Chapter]],
        opts: ContextSelectionOptions,
        method: SelectionMethod,
    ) -> ContextSelection:
        selected = pack_within_budget(ranked, opts.token_budget, opts.max_count)
        selected.sort(key=lambda entry: entry.item.order_index)
        text = BLOCK_SEPARATOR.join(entry.text for entry in selected)
        avg = sum(entry.score for entry in selected) / len(selected) if selected else 0.0
        result = ContextSelection(
            chapters=[
                SelectedChapter(
                    chapter_id=entry.item.id,
                    order_index=entry.item.order_index,
                    title=entry.item.title,
                    relevance=entry.score,
                    token_estimate=estimate_tokens(entry.text),
                )
                for entry in selected
            ],
            text=text,
            token_estimate=estimate_tokens(text),
            method=method,
            avg_relevance=avg,
        )
        _logger.info(
            "context selected method=%s count=%d tokens=%d budget=%d avg_relevance=%.2f",
            method.value,
            len(result.chapters),
            result.token_estimate,
            opts.token_budget,
            avg,
        )
        return result
