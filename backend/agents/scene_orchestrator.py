"""
Scene-by-scene chapter generation.

A run is a small state machine that writes ``GenerationEvent`` records onto
a ``GenerationChannel``:

    connected -> progress(decompose) -> scenes_decomposed
      -> per scene: scene_start -> scene_content_chunk* -> scene_completed | scene_failed
      -> completed

Fatal conditions before the scene loop (no completion provider, unknown
chapter, decomposition failure, a run already active for the chapter) end
the run with a single ``error`` event. A failing scene never aborts the
chapter. The consumer cancels by closing the channel; the producer checks
for that between events and stops issuing provider calls.
"""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set

from core.chapter_craft import count_words, smart_context_window, tail_text
from core.exceptions import GenerationError, GenerationInProgressError
from core.llm_client import CompletionProvider
from memory import StoryRepository
from models import (
    Chapter,
    ChapterStatus,
    Character,
    EventType,
    GenerationEvent,
    Outline,
    OutlineKind,
    QueuePriority,
    SceneFrame,
)
from services.context_selection import ContextSelector
from services.rule_checker import RuleChecker, scene_check_context
from services.scene_decomposition import SceneDecomposer
from services.setting_selection import SettingSelector
from services.task_queue import TaskQueue
from services.vectorize import VECTORIZE_CHAPTER
from utils.text_cleaner import ThinkingStreamFilter, clean_scene_markers

_logger = logging.getLogger("storyloom.orchestrator")

NO_PROVIDER_MESSAGE = "未配置默认对话模型。请先配置并设置默认的对话模型（Chat）。"
CHAPTER_NOT_FOUND_MESSAGE = "Chapter not found"
EMPTY_SCENE_MESSAGE = "场景生成结果为空"
DEFAULT_ERROR_MESSAGE = "生成失败"

SUPPORTING_ROLES = {"配角", "supporting"}

DECOMPOSE_PROGRESS = 5
DECOMPOSED_PROGRESS = 10
SCENE_PROGRESS_SPAN = 85


def scene_progress(index: int, total: int) -> int:
    if total <= 0:
        return DECOMPOSED_PROGRESS
    return DECOMPOSED_PROGRESS + (index * SCENE_PROGRESS_SPAN) // total


class GenerationChannel:
    """Single-producer, single-consumer event channel.

    ``emit`` returns False once the channel is closed so the producer can
    stop. Iteration ends after a terminal event or when the channel closes.
    """

    def __init__(self):
        self._queue: asyncio.Queue[Optional[GenerationEvent]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: GenerationEvent) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[GenerationEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if event.is_terminal:
                return


def select_scene_characters(
    characters: Sequence[Character],
    scene: SceneFrame,
    chapter_outline: Optional[Outline],
    cap: int = 7,
    floor: int = 3,
) -> List[Character]:
    """Pick the characters a scene prompt carries, by priority tier.

    Tiers: the scene's focal entities, the chapter outline's required
    entities, protagonists, then supporting characters by mention count.
    If the tiers leave fewer than ``floor`` characters, any remaining
    characters are backfilled by mention count.
    """
    by_name = {character.name: character for character in characters}
    selected: List[Character] = []
    seen: Set[str] = set()

    def _add(character: Optional[Character]) -> None:
        if character is None or character.id in seen or len(selected) >= cap:
            return
        seen.add(character.id)
        selected.append(character)

    for name in scene.focal_entities:
        _add(by_name.get(name))
    if chapter_outline is not None:
        for name in chapter_outline.payload.required_entities:
            _add(by_name.get(name))
    for character in characters:
        if character.is_protagonist:
            _add(character)

    by_mentions = sorted(characters, key=lambda character: character.mention_count, reverse=True)
    for character in by_mentions:
        if character.role.strip().lower() in SUPPORTING_ROLES:
            _add(character)

    if len(selected) < floor:
        for character in by_mentions:
            if len(selected) >= floor:
                break
            _add(character)
    return selected


def _render_character(character: Character) -> str:
    line = f"【{character.name}】（{character.role or '未知'}）"
    if character.description:
        line += f"\n{character.description[:200]}"
    return line


def build_scene_prompt(
    scene: SceneFrame,
    total_scenes: int,
    chapter_outline: Optional[Outline],
    characters: Sequence[Character],
    previous_content: str,
    story_context: str,
    global_settings: str,
    world_settings: str,
    previous_purpose: Optional[str] = None,
    next_purpose: Optional[str] = None,
) -> str:
    sections = ["你是一位资深的网络小说作家，擅长创作引人入胜的场景和对话。"]

    if global_settings:
        sections.append(f"# 全局关键规则\n{global_settings}")

    if chapter_outline is not None:
        payload = chapter_outline.payload
        beats = "\n".join(f"{i + 1}. {beat}" for i, beat in enumerate(payload.beats))
        position = f"当前节拍：{scene.purpose}"
        if previous_purpose:
            position += f"\n上一节拍：{previous_purpose}"
        if next_purpose:
            position += f"\n下一节拍：{next_purpose}"
        sections.append(
            f"# 章节大纲\n章节标题：{payload.title}\n章节概括：{payload.one_liner}\n\n"
            f"## 章节节拍\n{beats}\n\n## 当前场景位置\n{position}\n\n"
            f"## 章节目标\n必需角色：{'、'.join(payload.required_entities)}\n"
            f"风险变化：{payload.stakes_delta}\n入场状态：{payload.entry_state}\n出场状态：{payload.exit_state}"
        )

    if characters:
        sections.append("# 焦点角色信息\n" + "\n\n".join(_render_character(c) for c in characters))
    if story_context:
        sections.append(f"# 前情提要\n{story_context}")
    if previous_content:
        sections.append(f"# 上文内容\n最近内容：\n{previous_content}")
    if world_settings:
        sections.append(f"# 世界观设定\n{world_settings}")

    sections.append(
        f"# 当前场景任务\n场景序号：第{scene.index + 1}个场景（共{total_scenes}个）\n场景目的：{scene.purpose}\n"
        f"入场：{scene.entry_state or '场景开始'}\n出场：{scene.exit_state or '场景结束'}"
    )
    sections.append(
        "# 写作要求\n"
        f"1. 字数：{scene.target_words}字左右（±15%）\n"
        f"2. 角色：{'、'.join(scene.focal_entities) or '按大纲安排'}必须出现并推动情节\n"
        f"3. 目的：完成\"{scene.purpose}\"\n"
        "不要写\"好的\"、\"让我\"等元评论，不要在开头或结尾加说明性文字，不要输出场景标记。"
    )
    sections.append("# 输出格式\n直接输出场景正文，立即开始写作，保持沉浸式叙事。")
    return "\n\n".join(sections)


class SceneOrchestrator:
    def __init__(
        self,
        repository: StoryRepository,
        completion: Optional[CompletionProvider],
        decomposer: Optional[SceneDecomposer] = None,
        context_selector: Optional[ContextSelector] = None,
        setting_selector: Optional[SettingSelector] = None,
        rule_checker: Optional[RuleChecker] = None,
        task_queue: Optional[TaskQueue] = None,
        character_cap: int = 7,
        character_floor: int = 3,
        continuity_max_chapters: int = 5,
        continuity_token_budget: int = 1200,
        setting_max_count: int = 10,
        setting_token_budget: int = 1500,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        self.repository = repository
        self.completion = completion
        self.decomposer = decomposer or SceneDecomposer(repository)
        self.context_selector = context_selector or ContextSelector()
        self.setting_selector = setting_selector or SettingSelector()
        self.rule_checker = rule_checker or RuleChecker()
        self.task_queue = task_queue
        self.character_cap = character_cap
        self.character_floor = character_floor
        self.continuity_max_chapters = continuity_max_chapters
        self.continuity_token_budget = continuity_token_budget
        self.setting_max_count = setting_max_count
        self.setting_token_budget = setting_token_budget
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._active: Set[str] = set()

    @property
    def provider_configured(self) -> bool:
        if self.completion is None:
            return False
        return bool(getattr(self.completion, "is_configured", True))

    async def generate(self, chapter_id: str) -> AsyncIterator[GenerationEvent]:
        """Stream the events of one run. Leaving the loop early cancels the run."""
        channel = GenerationChannel()
        producer = asyncio.create_task(self.run(chapter_id, channel))
        try:
            async for event in channel:
                yield event
        finally:
            channel.close()
            if not producer.done():
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass

    async def generate_chapter(self, chapter_id: str) -> Dict[str, Any]:
        """Non-streaming entry point: the ``completed`` payload, or GenerationError."""
        async for event in self.generate(chapter_id):
            if event.type == EventType.ERROR:
                message = event.data.get("error") or DEFAULT_ERROR_MESSAGE
                if event.data.get("code") == "in_progress":
                    raise GenerationInProgressError(message)
                raise GenerationError(message)
            if event.type == EventType.COMPLETED:
                return event.data
        raise GenerationError(DEFAULT_ERROR_MESSAGE)

    async def run(self, chapter_id: str, channel: GenerationChannel) -> None:
        if not self._emit(channel, EventType.CONNECTED, {"chapterId": chapter_id}):
            return
        if not self.provider_configured:
            _logger.error("generation rejected chapter_id=%s reason=no_provider", chapter_id)
            self._emit(channel, EventType.ERROR, {"error": NO_PROVIDER_MESSAGE})
            return
        if chapter_id in self._active:
            _logger.warning("generation rejected chapter_id=%s reason=in_progress", chapter_id)
            self._emit(channel, EventType.ERROR, {"error": f"章节正在生成中: {chapter_id}", "code": "in_progress"})
            return

        self._active.add(chapter_id)
        try:
            await self._run_chapter(chapter_id, channel)
        except Exception as exc:
            _logger.exception("generation failed chapter_id=%s error=%s", chapter_id, exc)
            self._emit(channel, EventType.ERROR, {"error": str(exc) or DEFAULT_ERROR_MESSAGE})
        finally:
            self._active.discard(chapter_id)

    async def _run_chapter(self, chapter_id: str, channel: GenerationChannel) -> None:
        chapter = await asyncio.to_thread(self.repository.get_chapter, chapter_id)
        if chapter is None:
            self._emit(channel, EventType.ERROR, {"error": CHAPTER_NOT_FOUND_MESSAGE})
            return

        if not self._emit(
            channel,
            EventType.PROGRESS,
            {"step": "decompose", "message": "分解场景框架...", "progress": DECOMPOSE_PROGRESS},
        ):
            return

        scenes = await asyncio.to_thread(self.decomposer.decompose, chapter_id)
        total = len(scenes)
        if not self._emit(
            channel,
            EventType.SCENES_DECOMPOSED,
            {
                "totalScenes": total,
                "scenes": [
                    {"id": s.id, "index": s.index, "purpose": s.purpose, "focalEntities": s.focal_entities}
                    for s in scenes
                ],
                "progress": DECOMPOSED_PROGRESS,
            },
        ):
            return

        chapters = await asyncio.to_thread(self.repository.list_chapters, chapter.project_id)
        outlines = await asyncio.to_thread(self.repository.list_outlines, chapter.project_id, OutlineKind.CHAPTER)
        characters = await asyncio.to_thread(self.repository.list_characters, chapter.project_id)
        settings = await asyncio.to_thread(self.repository.list_settings, chapter.project_id)
        chapter_outline = await asyncio.to_thread(self.repository.get_chapter_outline, chapter_id)
        previous_tail = self._previous_chapter_tail(chapters, chapter)
        # The chapter being written is never its own continuity context.
        prior_chapters = [c for c in chapters if c.order_index < chapter.order_index]

        generated = ""
        successful = 0
        checks_passed = 0
        total_warnings = 0

        for i, scene in enumerate(scenes):
            if channel.closed:
                _logger.info("generation cancelled chapter_id=%s before_scene=%d", chapter_id, i)
                return
            base = scene_progress(i, total)
            self._emit(
                channel,
                EventType.SCENE_START,
                {
                    "sceneIndex": i,
                    "totalScenes": total,
                    "scenePurpose": scene.purpose,
                    "progress": base,
                    "message": f"正在生成第 {i + 1}/{total} 个场景...",
                },
            )

            previous_content = previous_tail if i == 0 else smart_context_window(generated)
            try:
                prompt = await self._scene_prompt(
                    i,
                    scene,
                    scenes,
                    chapter_outline,
                    prior_chapters,
                    outlines,
                    characters,
                    settings,
                    previous_content,
                )
                text = await self._stream_scene(prompt, i, channel)
                if text is None:
                    _logger.info("generation cancelled chapter_id=%s during_scene=%d", chapter_id, i)
                    return
                if not text.strip():
                    raise GenerationError(EMPTY_SCENE_MESSAGE)

                check = self.rule_checker.check(
                    text,
                    scene_check_context(scene.target_words, scene.focal_entities, previous_content),
                )
            except Exception as exc:
                _logger.warning("scene failed chapter_id=%s scene=%d error=%s", chapter_id, i, exc)
                self._emit(channel, EventType.SCENE_FAILED, {"sceneIndex": i, "error": str(exc), "progress": base})
                continue

            generated += text + "\n\n"
            successful += 1
            if check.passed:
                checks_passed += 1
            total_warnings += len(check.warnings)
            _logger.info(
                "scene completed chapter_id=%s scene=%d words=%d passed=%s issues=%d warnings=%d",
                chapter_id,
                i,
                count_words(text),
                check.passed,
                len(check.issues),
                len(check.warnings),
            )
            self._emit(
                channel,
                EventType.SCENE_COMPLETED,
                {
                    "sceneIndex": i,
                    "wordCount": count_words(text),
                    "passed": check.passed,
                    "issues": check.issues,
                    "warnings": len(check.warnings),
                    "progress": scene_progress(i + 1, total),
                },
            )

        if channel.closed:
            return

        content = clean_scene_markers(generated)
        word_count = count_words(content)
        if content:
            await asyncio.to_thread(
                self.repository.update_chapter_content,
                chapter_id,
                content,
                word_count,
                ChapterStatus.DRAFT,
            )
            self._submit_vectorize(chapter_id, chapter.project_id)

        _logger.info(
            "generation completed chapter_id=%s scenes=%d successful=%d words=%d passed=%d warnings=%d",
            chapter_id,
            total,
            successful,
            word_count,
            checks_passed,
            total_warnings,
        )
        self._emit(
            channel,
            EventType.COMPLETED,
            {
                "success": True,
                "projectId": chapter.project_id,
                "chapterId": chapter_id,
                "totalScenes": total,
                "successfulScenes": successful,
                "wordCount": word_count,
                "ruleChecksPassed": checks_passed,
                "totalWarnings": total_warnings,
            },
        )

    async def _scene_prompt(
        self,
        position: int,
        scene: SceneFrame,
        scenes: Sequence[SceneFrame],
        chapter_outline: Optional[Outline],
        prior_chapters: Sequence[Chapter],
        outlines: Sequence[Outline],
        characters: Sequence[Character],
        settings: Sequence[Any],
        previous_content: str,
    ) -> str:
        context = await asyncio.to_thread(
            self.context_selector.select_recent_chapters_for_append,
            prior_chapters,
            outlines,
            scene.purpose,
            max_count=self.continuity_max_chapters,
            token_budget=self.continuity_token_budget,
        )
        setting_selection = await asyncio.to_thread(
            self.setting_selector.select,
            settings,
            f"{scene.purpose}\n{context.text}",
            self.setting_max_count,
            self.setting_token_budget,
        )
        return build_scene_prompt(
            scene,
            len(scenes),
            chapter_outline,
            select_scene_characters(characters, scene, chapter_outline, self.character_cap, self.character_floor),
            previous_content,
            context.text,
            setting_selection.global_text,
            setting_selection.text if setting_selection.settings else "",
            previous_purpose=scenes[position - 1].purpose if position > 0 else None,
            next_purpose=scenes[position + 1].purpose if position + 1 < len(scenes) else None,
        )

    async def _stream_scene(self, prompt: str, scene_index: int, channel: GenerationChannel) -> Optional[str]:
        """Forward cleaned chunks as they arrive; returns None if the channel closed mid-scene."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        worker_errors: List[Exception] = []
        stop = threading.Event()

        def stream_worker():
            try:
                for text in self.completion.complete_stream(
                    prompt, temperature=self.temperature, max_tokens=self.max_tokens
                ):
                    if stop.is_set():
                        break
                    if not text:
                        continue
                    loop.call_soon_threadsafe(queue.put_nowait, text)
            except Exception as exc:
                worker_errors.append(exc)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, None)

        thinking = ThinkingStreamFilter()
        parts: List[str] = []

        def forward(visible: str) -> bool:
            if not visible:
                return True
            parts.append(visible)
            return self._emit(channel, EventType.SCENE_CONTENT_CHUNK, {"sceneIndex": scene_index, "content": visible})

        worker = threading.Thread(target=stream_worker, daemon=True)
        worker.start()
        try:
            while True:
                text = await queue.get()
                if text is None:
                    break
                if not forward(thinking.feed(text)):
                    return None
        finally:
            stop.set()
            await asyncio.to_thread(worker.join, 0.2)

        if worker_errors:
            raise worker_errors[0]
        if not forward(thinking.flush()):
            return None
        return clean_scene_markers("".join(parts))

    def _previous_chapter_tail(self, chapters: Sequence[Chapter], chapter: Chapter) -> str:
        earlier = [c for c in chapters if c.order_index < chapter.order_index and c.id != chapter.id]
        if not earlier:
            return ""
        previous = max(earlier, key=lambda c: c.order_index)
        return tail_text(previous.content)

    def _submit_vectorize(self, chapter_id: str, project_id: str) -> None:
        if self.task_queue is None:
            return
        try:
            accepted = self.task_queue.enqueue(
                VECTORIZE_CHAPTER,
                {"chapter_id": chapter_id, "project_id": project_id},
                priority=QueuePriority.MEDIUM,
            )
        except Exception as exc:
            _logger.error("vectorize submit failed chapter_id=%s error=%s", chapter_id, exc)
            return
        if not accepted:
            _logger.error("vectorize submit rejected chapter_id=%s", chapter_id)

    @staticmethod
    def _emit(channel: GenerationChannel, event_type: EventType, data: Dict[str, Any]) -> bool:
        return channel.emit(GenerationEvent(type=event_type, data=data))
