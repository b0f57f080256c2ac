"""
Scene orchestrator: event ordering, per-scene failure isolation, fatal
errors, cancellation and persistence of the assembled chapter.
"""

import asyncio
import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence, Union

import pytest

_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.scene_orchestrator import (
    CHAPTER_NOT_FOUND_MESSAGE,
    EMPTY_SCENE_MESSAGE,
    NO_PROVIDER_MESSAGE,
    GenerationChannel,
    SceneOrchestrator,
    scene_progress,
    select_scene_characters,
)
from core.exceptions import GenerationError, ProviderError
from memory import StoryStore
from models import (
    Chapter,
    ChapterOutlinePayload,
    ChapterStatus,
    Character,
    EventType,
    GenerationEvent,
    Outline,
    OutlineKind,
    QueuePriority,
    SceneFrame,
    WorldSetting,
)
from services.vectorize import VECTORIZE_CHAPTER

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

Script = Union[Sequence[str], Exception]

PREVIOUS_ENDING = "前一章的结尾，码头的雪还没有停。"


class FakeCompletion:
    """Streams one scripted response per call; calls happen on worker threads."""

    def __init__(
        self,
        scripts: Sequence[Script] = (),
        default: Sequence[str] = ("林舟踏雪而来。",),
        gate: Optional[threading.Event] = None,
        pause_after_first_chunk: Optional[threading.Event] = None,
        is_configured: bool = True,
    ):
        self.scripts = list(scripts)
        self.default = list(default)
        self.gate = gate
        self.pause_after_first_chunk = pause_after_first_chunk
        self.is_configured = is_configured
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    def complete(self, prompt, temperature=None, max_tokens=None, timeout=None):
        raise AssertionError("scene generation must stream")

    def complete_stream(self, prompt, temperature=None, max_tokens=None):
        with self._lock:
            index = len(self.prompts)
            self.prompts.append(prompt)
        script = self.scripts[index] if index < len(self.scripts) else self.default
        if self.gate is not None:
            self.gate.wait(5)
        if isinstance(script, Exception):
            raise script
        for position, chunk in enumerate(script):
            yield chunk
            if position == 0 and self.pause_after_first_chunk is not None:
                self.pause_after_first_chunk.wait(5)


class FakeQueue:
    def __init__(self, accept: bool = True):
        self.accept = accept
        self.jobs = []

    def enqueue(self, job_type, payload=None, priority=QueuePriority.MEDIUM):
        self.jobs.append((job_type, payload, priority))
        return self.accept


def _make_store(tmp_path, scene_count: int = 3) -> StoryStore:
    store = StoryStore(str(tmp_path / "story.db"))
    store.save_chapter(Chapter(id="c0", project_id="p1", title="第一章", content=PREVIOUS_ENDING, order_index=0))
    store.save_chapter(Chapter(id="c1", project_id="p1", title="第二章", order_index=1))
    store.save_outline(
        Outline(
            id="o1",
            project_id="p1",
            kind=OutlineKind.CHAPTER,
            chapter_id="c1",
            payload=ChapterOutlinePayload(
                title="第二章",
                one_liner="林舟与沈青在码头夺回账册",
                beats=[f"目的{i}" for i in range(scene_count)],
                required_entities=["沈青"],
            ),
        )
    )
    store.save_character(Character(id="h1", project_id="p1", name="林舟", role="主角", mention_count=10))
    store.save_character(Character(id="h2", project_id="p1", name="沈青", role="配角", mention_count=4))
    store.save_setting(WorldSetting(id="s1", project_id="p1", title="门规", content="不得私斗", category="rules"))
    store.save_scene_frames(
        "c1",
        [
            SceneFrame(
                id=f"c1-scene-{i}",
                chapter_id="c1",
                index=i,
                purpose=f"目的{i}",
                focal_entities=["林舟"],
                target_words=1000,
            )
            for i in range(scene_count)
        ],
    )
    return store


async def _collect(orchestrator: SceneOrchestrator, chapter_id: str = "c1") -> List[GenerationEvent]:
    return [event async for event in orchestrator.generate(chapter_id)]


def _types(events: Sequence[GenerationEvent]) -> List[EventType]:
    return [event.type for event in events]


# ===========================================================================
# Channel and helpers
# ===========================================================================


class TestGenerationChannel:
    @pytest.mark.asyncio
    async def test_iteration_stops_at_terminal_event(self):
        channel = GenerationChannel()
        channel.emit(GenerationEvent(type=EventType.CONNECTED))
        channel.emit(GenerationEvent(type=EventType.ERROR, data={"error": "x"}))
        channel.emit(GenerationEvent(type=EventType.PROGRESS))
        assert _types([event async for event in channel]) == [EventType.CONNECTED, EventType.ERROR]

    @pytest.mark.asyncio
    async def test_emit_after_close_is_refused(self):
        channel = GenerationChannel()
        channel.close()
        assert channel.closed
        assert channel.emit(GenerationEvent(type=EventType.PROGRESS)) is False
        assert [event async for event in channel] == []

    def test_scene_progress(self):
        assert [scene_progress(i, 3) for i in range(4)] == [10, 38, 66, 95]
        assert scene_progress(0, 0) == 10


class TestCharacterSelection:
    def _cast(self):
        return [
            Character(id="a", project_id="p1", name="林舟", role="主角", mention_count=1),
            Character(id="b", project_id="p1", name="沈青", role="配角", mention_count=10),
            Character(id="c", project_id="p1", name="老周", role="supporting", mention_count=5),
            Character(id="d", project_id="p1", name="路人", role="路人", mention_count=50),
            Character(id="e", project_id="p1", name="黑衣人", role="反派", mention_count=20),
            Character(id="f", project_id="p1", name="阿蛮", role="反派", mention_count=0),
        ]

    def _outline(self, required):
        return Outline(
            id="o",
            project_id="p1",
            kind=OutlineKind.CHAPTER,
            chapter_id="c1",
            payload=ChapterOutlinePayload(required_entities=required),
        )

    def test_tiers_in_priority_order(self):
        scene = SceneFrame(id="s", chapter_id="c1", index=0, purpose="p", focal_entities=["阿蛮"])
        picked = select_scene_characters(self._cast(), scene, self._outline(["黑衣人"]))
        assert [c.name for c in picked] == ["阿蛮", "黑衣人", "林舟", "沈青", "老周"]

    def test_cap_truncates_lower_tiers(self):
        scene = SceneFrame(id="s", chapter_id="c1", index=0, purpose="p", focal_entities=["阿蛮"])
        picked = select_scene_characters(self._cast(), scene, self._outline(["黑衣人"]), cap=3)
        assert [c.name for c in picked] == ["阿蛮", "黑衣人", "林舟"]

    def test_floor_backfills_by_mentions(self):
        cast = [c for c in self._cast() if c.role in ("路人", "反派")]
        scene = SceneFrame(id="s", chapter_id="c1", index=0, purpose="p")
        picked = select_scene_characters(cast, scene, None)
        assert [c.name for c in picked] == ["路人", "黑衣人", "阿蛮"]


# ===========================================================================
# Orchestrator runs
# ===========================================================================


class TestSceneOrchestrator:
    @pytest.mark.asyncio
    async def test_event_order_for_successful_run(self, tmp_path):
        store = _make_store(tmp_path)
        queue = FakeQueue()
        orchestrator = SceneOrchestrator(store, FakeCompletion(), task_queue=queue)

        events = await _collect(orchestrator)

        scene_block = [EventType.SCENE_START, EventType.SCENE_CONTENT_CHUNK, EventType.SCENE_COMPLETED]
        assert _types(events) == [
            EventType.CONNECTED,
            EventType.PROGRESS,
            EventType.SCENES_DECOMPOSED,
            *scene_block,
            *scene_block,
            *scene_block,
            EventType.COMPLETED,
        ]
        assert events[0].data == {"chapterId": "c1"}
        assert events[1].data["progress"] == 5
        assert events[2].data["totalScenes"] == 3
        assert [s["purpose"] for s in events[2].data["scenes"]] == ["目的0", "目的1", "目的2"]

        starts = [e for e in events if e.type == EventType.SCENE_START]
        assert [e.data["progress"] for e in starts] == [10, 38, 66]
        assert [e.data["sceneIndex"] for e in starts] == [0, 1, 2]

        completed = events[-1].data
        assert completed["success"] is True
        assert completed["projectId"] == "p1"
        assert completed["successfulScenes"] == 3
        assert completed["totalScenes"] == 3

    @pytest.mark.asyncio
    async def test_chapter_is_persisted_and_vectorize_submitted(self, tmp_path):
        store = _make_store(tmp_path)
        queue = FakeQueue()
        scripts = [["场景一", "的正文。"], ["场景二的正文。"], ["场景三的正文。"]]
        orchestrator = SceneOrchestrator(store, FakeCompletion(scripts), task_queue=queue)

        events = await _collect(orchestrator)

        chapter = store.get_chapter("c1")
        assert chapter.status == ChapterStatus.DRAFT
        assert chapter.version == 1
        assert chapter.content == "场景一的正文。\n\n场景二的正文。\n\n场景三的正文。"
        assert chapter.word_count == events[-1].data["wordCount"]
        assert queue.jobs == [(VECTORIZE_CHAPTER, {"chapter_id": "c1", "project_id": "p1"}, QueuePriority.MEDIUM)]

    @pytest.mark.asyncio
    async def test_rejected_vectorize_does_not_fail_run(self, tmp_path):
        store = _make_store(tmp_path, scene_count=1)
        orchestrator = SceneOrchestrator(store, FakeCompletion(), task_queue=FakeQueue(accept=False))
        events = await _collect(orchestrator)
        assert events[-1].type == EventType.COMPLETED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing", [0, 1, 2])
    async def test_failed_scene_does_not_abort_chapter(self, tmp_path, failing):
        store = _make_store(tmp_path)
        scripts = [["第%d幕。" % i] for i in range(3)]
        scripts[failing] = ProviderError("upstream 502")
        orchestrator = SceneOrchestrator(store, FakeCompletion(scripts))

        events = await _collect(orchestrator)

        failed = [e for e in events if e.type == EventType.SCENE_FAILED]
        done = [e for e in events if e.type == EventType.SCENE_COMPLETED]
        assert [e.data["sceneIndex"] for e in failed] == [failing]
        assert failed[0].data["error"] == "upstream 502"
        assert sorted(e.data["sceneIndex"] for e in done) == sorted({0, 1, 2} - {failing})
        assert events[-1].type == EventType.COMPLETED
        assert events[-1].data["successfulScenes"] == 2
        assert "第%d幕" % failing not in store.get_chapter("c1").content

    @pytest.mark.asyncio
    async def test_empty_scene_counts_as_failure(self, tmp_path):
        store = _make_store(tmp_path, scene_count=2)
        orchestrator = SceneOrchestrator(store, FakeCompletion([[], ["第二幕。"]]))

        events = await _collect(orchestrator)

        failed = [e for e in events if e.type == EventType.SCENE_FAILED]
        assert failed[0].data == {"sceneIndex": 0, "error": EMPTY_SCENE_MESSAGE, "progress": 10}
        assert events[-1].data["successfulScenes"] == 1

    @pytest.mark.asyncio
    async def test_all_scenes_failing_persists_nothing(self, tmp_path):
        store = _make_store(tmp_path, scene_count=2)
        queue = FakeQueue()
        orchestrator = SceneOrchestrator(store, FakeCompletion([ProviderError("down")] * 2), task_queue=queue)

        events = await _collect(orchestrator)

        assert events[-1].data["successfulScenes"] == 0
        assert events[-1].data["wordCount"] == 0
        assert store.get_chapter("c1").version == 0
        assert queue.jobs == []

    @pytest.mark.asyncio
    async def test_scene_prompts_carry_continuity(self, tmp_path):
        store = _make_store(tmp_path, scene_count=2)
        completion = FakeCompletion([["林舟推门而入。"], ["沈青随后赶到。"]])
        await _collect(SceneOrchestrator(store, completion))

        first, second = completion.prompts
        assert PREVIOUS_ENDING in first
        assert "# 全局关键规则\n门规: 不得私斗" in first
        assert "# 前情提要\n第一章" in first
        assert "【林舟】（主角）" in first
        assert "【沈青】（配角）" in first
        assert "下一节拍：目的1" in first
        assert "上一节拍：目的0" in second
        assert "# 上文内容\n最近内容：\n林舟推门而入。" in second

    @pytest.mark.asyncio
    async def test_missing_provider_is_fatal(self, tmp_path):
        store = _make_store(tmp_path)
        for completion in (None, FakeCompletion(is_configured=False)):
            events = await _collect(SceneOrchestrator(store, completion))
            assert _types(events) == [EventType.CONNECTED, EventType.ERROR]
            assert events[1].data["error"] == NO_PROVIDER_MESSAGE

    @pytest.mark.asyncio
    async def test_unknown_chapter_is_fatal(self, tmp_path):
        orchestrator = SceneOrchestrator(_make_store(tmp_path), FakeCompletion())
        events = await _collect(orchestrator, "missing")
        assert _types(events) == [EventType.CONNECTED, EventType.ERROR]
        assert events[1].data["error"] == CHAPTER_NOT_FOUND_MESSAGE

    @pytest.mark.asyncio
    async def test_decomposition_failure_is_fatal(self, tmp_path):
        store = _make_store(tmp_path)
        store.save_chapter(Chapter(id="c2", project_id="p1", title="第三章", order_index=2))
        events = await _collect(SceneOrchestrator(store, FakeCompletion()), "c2")
        assert _types(events) == [EventType.CONNECTED, EventType.PROGRESS, EventType.ERROR]
        assert "章节大纲不存在" in events[-1].data["error"]

    @pytest.mark.asyncio
    async def test_second_run_for_same_chapter_is_rejected(self, tmp_path):
        store = _make_store(tmp_path, scene_count=1)
        gate = threading.Event()
        orchestrator = SceneOrchestrator(store, FakeCompletion(gate=gate))

        first = orchestrator.generate("c1")
        first_events = []
        while not first_events or first_events[-1].type != EventType.SCENE_START:
            first_events.append(await first.__anext__())

        second_events = await _collect(orchestrator)
        assert _types(second_events) == [EventType.CONNECTED, EventType.ERROR]
        assert second_events[1].data["code"] == "in_progress"

        gate.set()
        first_events.extend([event async for event in first])
        assert first_events[-1].type == EventType.COMPLETED

    @pytest.mark.asyncio
    async def test_consumer_disconnect_cancels_run(self, tmp_path):
        store = _make_store(tmp_path)
        queue = FakeQueue()
        release = threading.Event()
        completion = FakeCompletion(default=["第一段。", "第二段。"], pause_after_first_chunk=release)
        orchestrator = SceneOrchestrator(store, completion, task_queue=queue)

        stream = orchestrator.generate("c1")
        async for event in stream:
            if event.type == EventType.SCENE_CONTENT_CHUNK:
                break
        await stream.aclose()

        release.set()
        await asyncio.sleep(0.05)

        assert len(completion.prompts) == 1
        assert store.get_chapter("c1").version == 0
        assert queue.jobs == []

        # the chapter is free again once the cancelled run unwinds
        orchestrator.completion = FakeCompletion()
        events = await _collect(orchestrator)
        assert events[-1].type == EventType.COMPLETED

    @pytest.mark.asyncio
    async def test_generate_chapter_returns_summary_or_raises(self, tmp_path):
        orchestrator = SceneOrchestrator(_make_store(tmp_path, scene_count=1), FakeCompletion())
        summary = await orchestrator.generate_chapter("c1")
        assert summary["successfulScenes"] == 1

        with pytest.raises(GenerationError, match=CHAPTER_NOT_FOUND_MESSAGE):
            await orchestrator.generate_chapter("missing")
