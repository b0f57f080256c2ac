import sys
import tempfile
import unittest
from pathlib import Path

_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from memory import StoryStore
from models import (
    Chapter,
    ChapterOutlinePayload,
    ChapterStatus,
    Character,
    Outline,
    OutlineKind,
    SceneFrame,
    VolumeOutlinePayload,
    WorldSetting,
)


def _make_store() -> StoryStore:
    tmp = tempfile.mkdtemp()
    return StoryStore(str(Path(tmp) / "story.db"))


class StoryStoreTest(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()

    def test_chapters_listed_in_order(self):
        for index in (2, 0, 1):
            self.store.save_chapter(Chapter(id=f"c{index}", project_id="p1", title=f"第{index}章", order_index=index))
        self.store.save_chapter(Chapter(id="other", project_id="p2", order_index=0))
        self.assertEqual([c.id for c in self.store.list_chapters("p1")], ["c0", "c1", "c2"])
        self.assertIsNone(self.store.get_chapter("missing"))

    def test_content_update_bumps_version(self):
        self.store.save_chapter(Chapter(id="c1", project_id="p1", content="旧"))
        updated = self.store.update_chapter_content("c1", "新内容", 3, ChapterStatus.DRAFT)
        self.assertEqual(updated.version, 1)
        self.assertEqual(updated.content, "新内容")
        self.assertEqual(updated.status, ChapterStatus.DRAFT)
        self.assertEqual(updated.word_count, 3)

    def test_embedding_write_is_version_checked(self):
        self.store.save_chapter(Chapter(id="c1", project_id="p1", content="旧"))
        self.store.update_chapter_content("c1", "新", 1, ChapterStatus.DRAFT)

        self.assertFalse(self.store.set_chapter_embedding("c1", [0.1, 0.2], expected_version=0))
        self.assertIsNone(self.store.get_chapter("c1").embedding)

        self.assertTrue(self.store.set_chapter_embedding("c1", [0.1, 0.2], expected_version=1))
        self.assertEqual(self.store.get_chapter("c1").embedding, [0.1, 0.2])

    def test_outline_payloads_round_trip_typed(self):
        self.store.save_outline(
            Outline(
                id="o1",
                project_id="p1",
                kind=OutlineKind.CHAPTER,
                chapter_id="c1",
                payload=ChapterOutlinePayload(title="雪夜", one_liner="林舟夜探码头", beats=["a", "b"], target_words=3000),
            )
        )
        self.store.save_outline(
            Outline(
                id="o2",
                project_id="p1",
                kind=OutlineKind.VOLUME,
                payload=VolumeOutlinePayload(title="卷一", chapter_count=10),
            )
        )
        outline = self.store.get_chapter_outline("c1")
        self.assertIsInstance(outline.payload, ChapterOutlinePayload)
        self.assertEqual(outline.payload.target_words, 3000)
        self.assertEqual(outline.payload.one_liner, "林舟夜探码头")

        volumes = self.store.list_outlines("p1", OutlineKind.VOLUME)
        self.assertEqual(len(volumes), 1)
        self.assertEqual(volumes[0].payload.chapter_count, 10)
        self.assertEqual(len(self.store.list_outlines("p1")), 2)

    def test_characters_settings_and_scene_frames(self):
        self.store.save_character(Character(id="h1", project_id="p1", name="林舟", role="主角", mention_count=9))
        self.store.save_setting(WorldSetting(id="s1", project_id="p1", title="门规", content="不得私斗", category="rules"))

        characters = self.store.list_characters("p1")
        self.assertTrue(characters[0].is_protagonist)
        settings = self.store.list_settings("p1")
        self.assertTrue(settings[0].always_included)

        frames = [
            SceneFrame(id="c1-scene-1", chapter_id="c1", index=1, purpose="追击", beats=["x"]),
            SceneFrame(id="c1-scene-0", chapter_id="c1", index=0, purpose="开场", focal_entities=["林舟"]),
        ]
        self.store.save_scene_frames("c1", frames)
        loaded = self.store.list_scene_frames("c1")
        self.assertEqual([f.purpose for f in loaded], ["开场", "追击"])
        self.assertEqual(loaded[0].focal_entities, ["林舟"])

        self.store.save_scene_frames("c1", frames[:1])
        self.assertEqual(len(self.store.list_scene_frames("c1")), 1)


if __name__ == "__main__":
    unittest.main()
