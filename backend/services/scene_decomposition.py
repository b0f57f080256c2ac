import logging
from typing import List

from core.chapter_craft import decompose_outline
from core.exceptions import NotFoundError
from memory import StoryRepository
from models import SceneFrame

_logger = logging.getLogger("storyloom.orchestrator")


class SceneDecomposer:
    """Default ``decompose(chapter_id)`` collaborator: stored frames first, else split the chapter outline."""

    def __init__(self, repository: StoryRepository):
        self.repository = repository

    def decompose(self, chapter_id: str) -> List[SceneFrame]:
        existing = self.repository.list_scene_frames(chapter_id)
        if existing:
            _logger.info("scene frames reused chapter_id=%s scenes=%d", chapter_id, len(existing))
            return sorted(existing, key=lambda frame: frame.index)

        outline = self.repository.get_chapter_outline(chapter_id)
        if outline is None:
            raise NotFoundError(f"章节大纲不存在: {chapter_id}")

        frames = decompose_outline(chapter_id, outline.payload)
        self.repository.save_scene_frames(chapter_id, frames)
        _logger.info("scene frames created chapter_id=%s scenes=%d", chapter_id, len(frames))
        return frames
