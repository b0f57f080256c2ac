import sys
import unittest
from pathlib import Path

_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from core.chapter_craft import (
    analyze_beat_complexity,
    count_words,
    decompose_outline,
    distribute_focal_entities,
    group_beats,
    scene_word_target,
    smart_context_window,
    strip_leading_chapter_heading,
    tail_text,
)
from models import ChapterOutlinePayload, OutlinePayload


class WordCountTest(unittest.TestCase):
    def test_cjk_characters_and_latin_words(self):
        self.assertEqual(count_words("林舟说：hello world"), 5)
        self.assertEqual(count_words(""), 0)
        self.assertEqual(count_words(None), 0)


class ChapterHeadingTest(unittest.TestCase):
    def test_strips_markdown_and_plain_headings(self):
        self.assertEqual(strip_leading_chapter_heading("# 第一章 雪夜\n正文"), "正文")
        self.assertEqual(strip_leading_chapter_heading("第12章：归来\n\n正文"), "正文")
        self.assertEqual(strip_leading_chapter_heading("Chapter 3 - Dawn\nBody"), "Body")
        self.assertEqual(strip_leading_chapter_heading("正文第一句\n第二句"), "正文第一句\n第二句")


class ContextWindowTest(unittest.TestCase):
    def test_tail_text(self):
        self.assertEqual(tail_text("abc", 5), "abc")
        self.assertEqual(tail_text("abcdef", 2), "ef")

    def test_short_content_is_returned_whole(self):
        self.assertEqual(smart_context_window("一段话。", 2000), "一段话。")

    def test_window_starts_after_paragraph_break(self):
        content = "x" * 500 + "\n\n" + "y" * 2050
        window = smart_context_window(content, 2000, slack=200)
        self.assertEqual(window, "y" * 2050)

    def test_hard_cut_without_nearby_break(self):
        content = "x" * 500 + "\n\n" + "y" * 2300
        self.assertEqual(smart_context_window(content, 2000, slack=200), "y" * 2000)

    def test_window_falls_back_to_sentence_end(self):
        content = "x" * 500 + "。" + "y" * 2050
        window = smart_context_window(content, 2000, slack=200)
        self.assertEqual(window, "y" * 2050)


class DecompositionTest(unittest.TestCase):
    def test_complexity_classes(self):
        self.assertEqual(analyze_beat_complexity("两派在码头爆发冲突"), 3)
        self.assertEqual(analyze_beat_complexity("师徒对话"), 1)
        self.assertEqual(analyze_beat_complexity("林舟发现线索"), 2)

    def test_grouping_respects_complexity_and_size(self):
        groups = group_beats(["师徒对话", "林舟发现线索", "码头战斗", "过渡到清晨", "准备出发"])
        self.assertEqual([g["beats"] for g in groups], [
            ["师徒对话", "林舟发现线索"],
            ["码头战斗"],
            ["过渡到清晨", "准备出发"],
        ])
        self.assertEqual(groups[0]["primary"], "师徒对话")
        self.assertEqual(groups[0]["supporting"], ["林舟发现线索"])

    def test_scene_word_target_is_clamped(self):
        self.assertEqual(scene_word_target(1, 1), 1000)
        self.assertEqual(scene_word_target(2, 1.5), 1200)
        self.assertEqual(scene_word_target(5, 3), 3000)

    def test_focal_entities_rotate_two_at_a_time(self):
        entities = ["甲", "乙", "丙"]
        self.assertEqual(distribute_focal_entities(entities, 0), ["甲", "乙"])
        self.assertEqual(distribute_focal_entities(entities, 1), ["丙", "甲"])
        self.assertEqual(distribute_focal_entities(["甲"], 3), ["甲"])

    def test_decompose_outline_sets_boundary_states(self):
        payload = OutlinePayload(
            beats=["师徒对话", "码头战斗", "林舟发现线索"],
            required_entities=["林舟", "沈青"],
            entry_state="雪夜启程",
            exit_state="线索到手",
        )
        scenes = decompose_outline("ch-1", payload)
        self.assertEqual([s.index for s in scenes], list(range(len(scenes))))
        self.assertEqual(scenes[0].id, "ch-1-scene-0")
        self.assertEqual(scenes[0].entry_state, "雪夜启程")
        self.assertEqual(scenes[-1].exit_state, "线索到手")
        self.assertEqual(scenes[0].focal_entities, ["林舟", "沈青"])
        self.assertTrue(all(1000 <= s.target_words <= 3000 for s in scenes))

    def test_chapter_target_words_split_across_scenes(self):
        payload = ChapterOutlinePayload(beats=["码头战斗", "追击对抗"], target_words=5000)
        scenes = decompose_outline("ch-2", payload)
        self.assertEqual(len(scenes), 2)
        self.assertEqual([s.target_words for s in scenes], [2500, 2500])

    def test_outline_without_beats_is_rejected(self):
        with self.assertRaises(ValueError):
            decompose_outline("ch-3", OutlinePayload(beats=["  "]))


if __name__ == "__main__":
    unittest.main()
