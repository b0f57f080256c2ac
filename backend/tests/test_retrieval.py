"""
Dual-stage retrieval: time-window filtering, semantic ranking and the
recency fallback.
"""

import sys
import unittest
from pathlib import Path
from typing import Dict, List, Optional

_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from hypothesis import given, settings, strategies as st

from core.exceptions import EmbeddingDimensionError, NotFoundError, ProviderError
from memory.search import (
    DualStageRetriever,
    build_context_prompt,
    combine_retrieval_score,
    cosine_similarity,
    role_weight_for,
    time_window_candidates,
)
from models import Chapter


class FakeRepository:
    def __init__(self, chapters: List[Chapter]):
        self.chapters: Dict[str, Chapter] = {chapter.id: chapter for chapter in chapters}

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        return self.chapters.get(chapter_id)

    def list_chapters(self, project_id: str) -> List[Chapter]:
        return sorted(
            (c for c in self.chapters.values() if c.project_id == project_id),
            key=lambda c: c.order_index,
        )


class FixedEmbedder:
    def __init__(self, vector: List[float]):
        self.vector = vector
        self.calls = 0

    def embed_text(self, text: str) -> List[float]:
        self.calls += 1
        return list(self.vector)


class FailingEmbedder:
    def embed_text(self, text: str) -> List[float]:
        raise ProviderError("embedding down")


def _chapter(index: int, embedding=None, content: str = "") -> Chapter:
    return Chapter(
        id=f"c{index}",
        project_id="p1",
        title=f"标题{index}",
        content=content or f"第{index}章正文",
        order_index=index,
        embedding=embedding,
    )


class VectorMathTest(unittest.TestCase):
    def test_cosine(self):
        self.assertAlmostEqual(cosine_similarity([1, 0], [1, 0]), 1.0)
        self.assertAlmostEqual(cosine_similarity([1, 0], [0, 1]), 0.0)
        self.assertEqual(cosine_similarity([0, 0], [1, 1]), 0.0)

    def test_dimension_mismatch_raises(self):
        with self.assertRaises(EmbeddingDimensionError):
            cosine_similarity([1, 0, 0], [1, 0])

    def test_role_weight_threshold(self):
        self.assertEqual(role_weight_for(0.8), 1.0)
        self.assertEqual(role_weight_for(0.81), 1.2)

    def test_combined_score_weights(self):
        self.assertAlmostEqual(combine_retrieval_score(0.9, 0.5, 1.2), 0.5 * 0.9 + 0.3 * 0.5 + 0.2 * 1.2)


class TimeWindowTest(unittest.TestCase):
    def test_current_chapter_excluded_even_inside_window(self):
        chapters = [_chapter(0), _chapter(1)]
        pool = time_window_candidates(chapters, chapters[1], window=6)
        self.assertEqual([c.id for c in pool], ["c0"])

    def test_window_bounds_clamped_at_zero(self):
        chapters = [_chapter(i) for i in range(12)]
        pool = time_window_candidates(chapters, chapters[2], window=3)
        self.assertEqual([c.order_index for c in pool], [0, 1, 3, 4, 5])

    @given(
        count=st.integers(min_value=1, max_value=30),
        current=st.integers(min_value=0, max_value=29),
        window=st.integers(min_value=0, max_value=10),
    )
    @settings(max_examples=100)
    def test_pool_never_contains_current(self, count, current, window):
        chapters = [_chapter(i) for i in range(count)]
        target = chapters[min(current, count - 1)]
        pool = time_window_candidates(chapters, target, window)
        self.assertNotIn(target.id, [c.id for c in pool])
        for chapter in pool:
            self.assertLessEqual(abs(chapter.order_index - target.order_index), window)


class CombinedScoreMonotonicityTest(unittest.TestCase):
    @given(
        low=st.floats(min_value=-1.0, max_value=1.0, allow_nan=False),
        delta=st.floats(min_value=1e-6, max_value=1.0, allow_nan=False),
        recency=st.floats(min_value=0.0, max_value=1.0, allow_nan=False),
        role=st.sampled_from([1.0, 1.2]),
    )
    @settings(max_examples=200)
    def test_strictly_increasing_in_similarity(self, low, delta, recency, role):
        high = low + delta
        self.assertLess(
            combine_retrieval_score(low, recency, role),
            combine_retrieval_score(high, recency, role),
        )


class DualStageRetrieverTest(unittest.TestCase):
    def test_ranks_window_candidates_by_combined_score(self):
        chapters = [
            _chapter(0, embedding=[1.0, 0.0]),
            _chapter(1, embedding=[0.0, 1.0]),
            _chapter(2, embedding=[0.6, 0.8]),
            _chapter(3),
        ]
        retriever = DualStageRetriever(FakeRepository(chapters), FixedEmbedder([1.0, 0.0]))
        result = retriever.retrieve("p1", "c3", "查询", top_k=5, time_window=6)

        self.assertEqual(result.retrieval_method, "dual-stage")
        self.assertEqual(result.total_candidates, 3)
        self.assertEqual(result.time_window_used, 6)
        ids = [ctx.source_id for ctx in result.contexts]
        self.assertNotIn("c3", ids)
        self.assertEqual(ids[0], "c0")
        top = result.contexts[0]
        self.assertEqual(top.metadata.role_weight, 1.2)
        self.assertAlmostEqual(top.metadata.recency, 0.0)
        self.assertEqual(top.source_label, "第1章 - 标题0")
        self.assertIn("【参考片段 #1】", result.prompt)

    def test_chapters_without_vectors_or_wrong_dimension_are_skipped(self):
        chapters = [
            _chapter(0, embedding=[1.0, 0.0, 0.0]),
            _chapter(1),
            _chapter(2, embedding=[1.0, 0.0]),
            _chapter(3),
        ]
        retriever = DualStageRetriever(FakeRepository(chapters), FixedEmbedder([1.0, 0.0]))
        result = retriever.retrieve("p1", "c3", "查询")
        self.assertEqual([ctx.source_id for ctx in result.contexts], ["c2"])

    def test_query_embedding_failure_falls_back_to_recency(self):
        chapters = [_chapter(i) for i in range(5)]
        retriever = DualStageRetriever(FakeRepository(chapters), FailingEmbedder())
        result = retriever.retrieve("p1", "c4", "查询", top_k=2)
        self.assertEqual(result.retrieval_method, "recency-fallback")
        self.assertEqual([ctx.source_id for ctx in result.contexts], ["c3", "c2"])
        self.assertTrue(all(ctx.score == 0.5 for ctx in result.contexts))

    def test_non_positive_top_k_returns_nothing(self):
        chapters = [_chapter(0, embedding=[1.0, 0.0]), _chapter(1, embedding=[0.8, 0.6]), _chapter(2)]
        retriever = DualStageRetriever(FakeRepository(chapters), FixedEmbedder([1.0, 0.0]))
        for top_k in (0, -1):
            result = retriever.retrieve("p1", "c2", "查询", top_k=top_k)
            self.assertEqual(result.contexts, [])
            self.assertEqual(result.total_candidates, 2)

    def test_unknown_current_chapter(self):
        retriever = DualStageRetriever(FakeRepository([]), FixedEmbedder([1.0]))
        with self.assertRaises(NotFoundError):
            retriever.retrieve("p1", "missing", "查询")

    def test_long_content_uses_middle_excerpt(self):
        content = "头" * 1000 + "中" * 800 + "尾" * 1000
        chapters = [_chapter(0, embedding=[1.0, 0.0], content=content), _chapter(1)]
        retriever = DualStageRetriever(FakeRepository(chapters), FixedEmbedder([1.0, 0.0]))
        excerpt = retriever.retrieve("p1", "c1", "查询").contexts[0].excerpt
        self.assertEqual(excerpt, "..." + "中" * 800 + "...")

    def test_empty_prompt_for_no_contexts(self):
        self.assertEqual(build_context_prompt([]), "")


if __name__ == "__main__":
    unittest.main()
