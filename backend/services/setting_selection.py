"""
World Setting Selection Service: the setting-side twin of context selection.

``rules``/``global`` settings are always injected and never compete for the
budget; everything else is ranked against the query and packed greedily.
"""

import logging
from typing import List, Optional, Sequence

from core.exceptions import ProviderError
from core.llm_client import EmbeddingProvider
from memory.search import cosine_similarity
from models import SelectionMethod, SettingSelection, WorldSetting
from services.context_selection import Scored, pack_within_budget
from utils.text_cleaner import estimate_tokens, extract_title_keywords

_logger = logging.getLogger("storyloom.settings")

SETTING_SEPARATOR = "\n"
ZERO_SCORE_CAP = 3


def render_settings(settings: Sequence[WorldSetting]) -> str:
    return SETTING_SEPARATOR.join(setting.render() for setting in settings)


def keyword_score(setting: WorldSetting, query: str) -> int:
    score = 0
    for keyword in extract_title_keywords(setting.title):
        if keyword in query:
            score += 2
    if setting.title and setting.title in query:
        score += 3
    return score


class SettingSelector:
    def __init__(
        self,
        embedder: Optional[EmbeddingProvider] = None,
        max_count: int = 10,
        token_budget: int = 1000,
        threshold: float = 0.6,
    ):
        self.embedder = embedder
        self.max_count = max_count
        self.token_budget = token_budget
        self.threshold = threshold

    def select(
        self,
        settings: Sequence[WorldSetting],
        query: str,
        max_count: Optional[int] = None,
        token_budget: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> SettingSelection:
        max_count = self.max_count if max_count is None else max_count
        token_budget = self.token_budget if token_budget is None else token_budget
        threshold = self.threshold if threshold is None else threshold

        global_settings = [setting for setting in settings if setting.always_included]
        contextual = [setting for setting in settings if not setting.always_included]
        global_text = render_settings(global_settings)

        if not contextual:
            return SettingSelection(
                global_settings=global_settings,
                text=global_text,
                global_text=global_text,
                token_estimate=estimate_tokens(global_text),
                method=SelectionMethod.ALL,
            )

        contextual_text = render_settings(contextual)
        if estimate_tokens(contextual_text) <= token_budget:
            return self._result(contextual, global_settings, global_text, SelectionMethod.ALL)

        selected: Optional[List[WorldSetting]] = None
        if self.embedder is not None:
            try:
                selected = self._select_by_embedding(contextual, query, max_count, token_budget, threshold)
            except ProviderError as exc:
                _logger.warning("settings embedding failed error=%s fallback=keyword", exc)
        if selected is not None:
            result = self._result(selected, global_settings, global_text, SelectionMethod.EMBEDDING)
        else:
            selected = self._select_by_keywords(contextual, query, max_count, token_budget)
            result = self._result(selected, global_settings, global_text, SelectionMethod.KEYWORD)

        _logger.info(
            "settings selected method=%s selected=%d candidates=%d global=%d tokens=%d budget=%d",
            result.method.value,
            len(result.settings),
            len(contextual),
            len(global_settings),
            result.token_estimate,
            token_budget,
        )
        return result

    def _select_by_embedding(
        self,
        contextual: Sequence[WorldSetting],
        query: str,
        max_count: int,
        token_budget: int,
        threshold: float,
    ) -> List[WorldSetting]:
        query_vector = self.embedder.embed_text(query)
        if not query_vector:
            raise ProviderError("empty query embedding")

        ranked: List[Scored[WorldSetting]] = []
        for setting in contextual:
            vector = setting.embedding or self.embedder.embed_text(f"{setting.title}\n{setting.content}")
            if not vector:
                continue
            similarity = cosine_similarity(query_vector, vector)
            if similarity >= threshold:
                ranked.append(Scored(setting, similarity, setting.render()))
        ranked.sort(key=lambda entry: entry.score, reverse=True)
        packed = pack_within_budget(ranked, token_budget, max_count, separator=SETTING_SEPARATOR)
        return [entry.item for entry in packed]

    def _select_by_keywords(
        self,
        contextual: Sequence[WorldSetting],
        query: str,
        max_count: int,
        token_budget: int,
    ) -> List[WorldSetting]:
        ranked = [Scored(setting, float(keyword_score(setting, query or "")), setting.render()) for setting in contextual]
        ranked.sort(key=lambda entry: entry.score, reverse=True)

        selected: List[WorldSetting] = []
        used = 0
        for entry in ranked:
            if len(selected) >= max_count:
                break
            if entry.score == 0 and len(selected) >= ZERO_SCORE_CAP:
                continue
            cost = estimate_tokens(entry.text if not selected else SETTING_SEPARATOR + entry.text)
            if used + cost <= token_budget:
                selected.append(entry.item)
                used += cost
        return selected

    def _result(
        self,
        selected: Sequence[WorldSetting],
        global_settings: Sequence[WorldSetting],
        global_text: str,
        method: SelectionMethod,
    ) -> SettingSelection:
        text = render_settings(selected)
        return SettingSelection(
            settings=list(selected),
            global_settings=list(global_settings),
            text=text,
            global_text=global_text,
            token_estimate=estimate_tokens(text),
            method=method,
        )
