import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np

from core.exceptions import EmbeddingDimensionError, NotFoundError, ProviderError
from core.llm_client import EmbeddingProvider
from models import Chapter, RetrievalResult, RetrievalScores, RetrievedContext
from utils.text_cleaner import middle_excerpt

logger = logging.getLogger("storyloom.rag")

DEFAULT_TOP_K = 5
DEFAULT_TIME_WINDOW = 6
EXCERPT_CHARS = 800
FALLBACK_SCORE = 0.5
HIGH_SIMILARITY = 0.8
HIGH_SIMILARITY_ROLE_WEIGHT = 1.2
DEFAULT_WEIGHTS = {"semantic": 0.5, "recency": 0.3, "role": 0.2}


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    a = np.asarray(left, dtype=np.float64)
    b = np.asarray(right, dtype=np.float64)
    if a.shape != b.shape:
        raise EmbeddingDimensionError(a.size, b.size)
    denominator = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(a, b) / denominator)


def role_weight_for(similarity: float) -> float:
    return HIGH_SIMILARITY_ROLE_WEIGHT if similarity > HIGH_SIMILARITY else 1.0


def combine_retrieval_score(
    similarity: float,
    recency: float,
    role_weight: float,
    weights: Optional[Dict[str, float]] = None,
) -> float:
    w = weights or DEFAULT_WEIGHTS
    return w["semantic"] * similarity + w["recency"] * recency + w["role"] * role_weight


def time_window_candidates(
    chapters: Sequence[Chapter], current: Chapter, window: int
) -> List[Chapter]:
    """Stage A: chapters within ``window`` positions of ``current``, never ``current`` itself.

    Excluding the current chapter matters on regeneration: its old (or
    just-cleared) text must not come back as "prior context".
    """
    start = max(0, current.order_index - window)
    end = current.order_index + window
    pool = [
        chapter
        for chapter in chapters
        if chapter.id != current.id and start <= chapter.order_index <= end
    ]
    pool.sort(key=lambda chapter: chapter.order_index)
    return pool


class DualStageRetriever:
    """Time-window filter followed by semantic ranking over stored chapter vectors."""

    def __init__(
        self,
        repository,
        embedder: Optional[EmbeddingProvider],
        weights: Optional[Dict[str, float]] = None,
        excerpt_chars: int = EXCERPT_CHARS,
    ):
        self.repository = repository
        self.embedder = embedder
        self.weights = weights or dict(DEFAULT_WEIGHTS)
        self.excerpt_chars = excerpt_chars

    def retrieve(
        self,
        project_id: str,
        current_chapter_id: str,
        query: str,
        top_k: int = DEFAULT_TOP_K,
        time_window: int = DEFAULT_TIME_WINDOW,
    ) -> RetrievalResult:
        top_k = max(0, top_k)
        current = self.repository.get_chapter(current_chapter_id)
        if current is None:
            raise NotFoundError(f"Current chapter not found: {current_chapter_id}")

        candidates = time_window_candidates(
            self.repository.list_chapters(project_id), current, time_window
        )
        logger.info(
            "rag stage_a chapter=%s window=[%d,%d] candidates=%d",
            current_chapter_id,
            max(0, current.order_index - time_window),
            current.order_index + time_window,
            len(candidates),
        )

        query_vector = self._embed_query(query)
        if query_vector is None:
            contexts = self._recent_contexts(candidates, top_k)
            return self._build_result(contexts, len(candidates), time_window, "recency-fallback")

        ranked = self._semantic_rank(candidates, query_vector, current.order_index)
        return self._build_result(ranked[:top_k], len(candidates), time_window, "dual-stage")

    def _embed_query(self, query: str) -> Optional[List[float]]:
        if self.embedder is None or not (query or "").strip():
            return None
        try:
            vector = self.embedder.embed_text(query)
        except ProviderError as exc:
            logger.warning("rag query embedding failed error=%s fallback=recency", exc)
            return None
        return vector or None

    def _semantic_rank(
        self, candidates: Sequence[Chapter], query_vector: Sequence[float], current_index: int
    ) -> List[RetrievedContext]:
        scored: List[tuple] = []
        for chapter in candidates:
            if not chapter.embedding:
                logger.debug("rag chapter=%s has no embedding skip", chapter.id)
                continue
            try:
                similarity = cosine_similarity(query_vector, chapter.embedding)
            except EmbeddingDimensionError as exc:
                logger.warning("rag chapter=%s skipped error=%s", chapter.id, exc)
                continue
            scored.append((chapter, similarity))

        if not scored:
            return []
        max_distance = max(abs(chapter.order_index - current_index) for chapter, _ in scored) or 1

        contexts: List[RetrievedContext] = []
        for chapter, similarity in scored:
            recency = 1 - abs(chapter.order_index - current_index) / max_distance
            role_weight = role_weight_for(similarity)
            contexts.append(
                self._context_for(
                    chapter,
                    combine_retrieval_score(similarity, recency, role_weight, self.weights),
                    RetrievalScores(similarity=similarity, recency=recency, role_weight=role_weight),
                )
            )
        contexts.sort(key=lambda ctx: ctx.score, reverse=True)
        return contexts

    def _recent_contexts(self, candidates: Sequence[Chapter], top_k: int) -> List[RetrievedContext]:
        recent = list(candidates)[-top_k:] if top_k > 0 else []
        return [
            self._context_for(chapter, FALLBACK_SCORE, RetrievalScores())
            for chapter in reversed(recent)
        ]

    def _context_for(self, chapter: Chapter, score: float, scores: RetrievalScores) -> RetrievedContext:
        label = f"第{chapter.order_index + 1}章"
        if chapter.title:
            label = f"{label} - {chapter.title}"
        return RetrievedContext(
            source_id=chapter.id,
            source_label=label,
            excerpt=middle_excerpt(chapter.content, self.excerpt_chars),
            score=score,
            order_index=chapter.order_index,
            metadata=scores,
        )

    def _build_result(
        self,
        contexts: List[RetrievedContext],
        total_candidates: int,
        time_window: int,
        method: str,
    ) -> RetrievalResult:
        logger.info(
            "rag retrieved method=%s candidates=%d selected=%d",
            method,
            total_candidates,
            len(contexts),
        )
        return RetrievalResult(
            contexts=contexts,
            prompt=build_context_prompt(contexts),
            total_candidates=total_candidates,
            time_window_used=time_window,
            retrieval_method=method,
            retrieved_at=datetime.now(),
        )


def build_context_prompt(contexts: Sequence[RetrievedContext]) -> str:
    if not contexts:
        return ""

    fragments = []
    for index, ctx in enumerate(contexts):
        fragments.append(
            "\n".join(
                [
                    f"【参考片段 #{index + 1}】",
                    f"来源: {ctx.source_label}",
                    f"相关度: {ctx.score * 100:.1f}%",
                    "---",
                    ctx.excerpt,
                    "---",
                ]
            )
        )

    return (
        "# 参考上下文\n\n"
        "以下片段来自相关章节，仅供参考，不作为绝对事实依据。\n"
        "请根据当前情节需要选择性使用，保持故事连贯性。\n\n"
        + "\n\n".join(fragments)
        + "\n\n# 注意事项\n"
        "- 优先保持情节连贯性和角色一致性\n"
        "- 避免与已有设定产生冲突\n"
        "- 必要时可以创新，但需符合整体风格\n"
        "- 不要生硬照搬参考内容\n"
    )
