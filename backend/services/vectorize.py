import logging
from typing import Any, Dict

from core.llm_client import EmbeddingProvider
from memory import StoryRepository
from models import QueuePriority
from services.task_queue import TaskQueue

_logger = logging.getLogger("storyloom.tasks")

VECTORIZE_CHAPTER = "vectorize_chapter"

# embedding endpoints cap input near 8k tokens; CJK prose runs above one token per char
EMBED_MAX_CHARS = 6000


class ChapterVectorizer:
    """Queue handler that refreshes a chapter's cached embedding."""

    def __init__(self, repository: StoryRepository, embedder: EmbeddingProvider, max_chars: int = EMBED_MAX_CHARS):
        self.repository = repository
        self.embedder = embedder
        self.max_chars = max_chars

    def __call__(self, payload: Dict[str, Any]) -> bool:
        return self.vectorize_chapter(str(payload.get("chapter_id", "")))

    def vectorize_chapter(self, chapter_id: str) -> bool:
        """Embed the chapter body and store it.

        Returns False when there is nothing to embed or the chapter was edited
        meanwhile. Embedding failures propagate so the queue retries the job.
        """
        chapter = self.repository.get_chapter(chapter_id)
        if chapter is None:
            _logger.warning("vectorize skipped chapter_id=%s reason=not_found", chapter_id)
            return False
        if not (chapter.content or "").strip():
            _logger.info("vectorize skipped chapter_id=%s reason=empty", chapter_id)
            return False

        version = chapter.version
        vector = self.embedder.embed_text(chapter.content[: self.max_chars])
        stored = self.repository.set_chapter_embedding(chapter_id, vector, expected_version=version)
        if stored:
            _logger.info("vectorize done chapter_id=%s version=%d dim=%d", chapter_id, version, len(vector))
        else:
            _logger.info("vectorize dropped chapter_id=%s version=%d reason=stale", chapter_id, version)
        return stored


def register_vectorizer(queue: TaskQueue, repository: StoryRepository, embedder: EmbeddingProvider) -> ChapterVectorizer:
    vectorizer = ChapterVectorizer(repository, embedder)
    queue.register(VECTORIZE_CHAPTER, vectorizer)
    return vectorizer


def enqueue_vectorize(queue: TaskQueue, chapter_id: str, priority: QueuePriority = QueuePriority.MEDIUM) -> bool:
    return queue.enqueue(VECTORIZE_CHAPTER, {"chapter_id": chapter_id}, priority=priority)
