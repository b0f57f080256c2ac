import re
from typing import Any, Dict, List, Optional, Tuple

from core.chapter_craft import count_words
from models import RuleCheckResult

Findings = Tuple[List[str], List[str]]


class SceneRule:
    """A single check over generated scene text.

    ``check`` returns ``(issues, warnings)``: issues fail the scene check,
    warnings are reported but never block.
    """

    def __init__(self, rule_id: str, name: str, description: str):
        self.rule_id = rule_id
        self.name = name
        self.description = description

    def check(self, text: str, context: Dict[str, Any]) -> Findings:
        raise NotImplementedError


class WordCountRule(SceneRule):
    def __init__(self):
        super().__init__("S1", "字数范围", "正文字数需落在目标区间内")

    def check(self, text: str, context: Dict[str, Any]) -> Findings:
        min_words = context.get("min_words")
        max_words = context.get("max_words")
        words = count_words(text)
        if min_words is not None and words < min_words:
            return [f"content_too_short: {words} words (min: {min_words})"], []
        if max_words is not None and words > max_words:
            return [f"content_too_long: {words} words (max: {max_words})"], []
        return [], []


class RequiredCharacterRule(SceneRule):
    def __init__(self):
        super().__init__("S2", "必需角色", "指定角色必须在正文中出场")

    def check(self, text: str, context: Dict[str, Any]) -> Findings:
        missing = [name for name in context.get("required_characters", []) if name and name not in text]
        if missing:
            return [f"missing_characters: {', '.join(missing)}"], []
        return [], []


class MetaCommentaryRule(SceneRule):
    _PATTERNS = [
        re.compile(r"好的[，,]\s*让我"),
        re.compile(r"让我来写"),
        re.compile(r"让我来描述"),
        re.compile(r"接下来[，,]\s*我将"),
        re.compile(r"我将会"),
        re.compile(r"我会在"),
        re.compile(r"在这个场景中[，,]\s*我"),
        re.compile(r"\[待确认\]"),
        re.compile(r"\[需要补充\]"),
        re.compile(r"\[作者注"),
    ]

    def __init__(self):
        super().__init__("S3", "元叙述", "正文不得包含模型自述或占位标记")

    def check(self, text: str, context: Dict[str, Any]) -> Findings:
        found = [match.group(0) for match in (p.search(text) for p in self._PATTERNS) if match]
        if found:
            return [f"meta_commentary_detected: {'; '.join(found)}"], []
        return [], []


class FormattingRule(SceneRule):
    _EMPTY_PARAGRAPH_RE = re.compile(r"\n\s*\n\s*\n")
    _END_PUNCTUATION = set("。！？…\"」』”")

    def __init__(self):
        super().__init__("S4", "基础排版", "段落完整、标点收尾")

    def check(self, text: str, context: Dict[str, Any]) -> Findings:
        warnings: List[str] = []
        empty_runs = self._EMPTY_PARAGRAPH_RE.findall(text)
        if len(empty_runs) > 3:
            warnings.append(f"excessive_empty_paragraphs: {len(empty_runs)} found")

        paragraphs = [p.strip() for p in re.split(r"\n+", text) if p.strip()]
        if not paragraphs:
            return [], warnings
        short = [p for p in paragraphs if len(p) < 10]
        if len(short) > len(paragraphs) * 0.3:
            warnings.append(f"too_many_short_paragraphs: {len(short)}/{len(paragraphs)}")
        unpunctuated = [p for p in paragraphs if p[-1] not in self._END_PUNCTUATION]
        if len(unpunctuated) > len(paragraphs) * 0.2:
            warnings.append(f"missing_punctuation: {len(unpunctuated)}/{len(paragraphs)} paragraphs")
        return [], warnings


class RepetitionRule(SceneRule):
    _SUMMARY_START_RE = re.compile(r"^(?:上文提到|之前说到|回顾一下|书接上回)")

    def __init__(self):
        super().__init__("S5", "重复衔接", "不得照抄上文结尾或以回顾开篇")

    def check(self, text: str, context: Dict[str, Any]) -> Findings:
        previous = (context.get("previous_context") or "").strip()
        if len(previous) < 50:
            return [], []
        issues: List[str] = []
        content = text.strip()
        if previous[-50:] in content[:100]:
            issues.append("content_repeats_context_end")
        if self._SUMMARY_START_RE.match(content):
            issues.append("content_starts_with_summary")
        return issues, []


class RuleChecker:
    def __init__(self, rules: Optional[List[SceneRule]] = None):
        self.rules = rules if rules is not None else [
            WordCountRule(),
            RequiredCharacterRule(),
            MetaCommentaryRule(),
            FormattingRule(),
            RepetitionRule(),
        ]

    def check(self, text: str, context: Optional[Dict[str, Any]] = None) -> RuleCheckResult:
        ctx = context or {}
        issues: List[str] = []
        warnings: List[str] = []
        for rule in self.rules:
            rule_issues, rule_warnings = rule.check(text or "", ctx)
            issues.extend(rule_issues)
            warnings.extend(rule_warnings)
        return RuleCheckResult(passed=not issues, issues=issues, warnings=warnings)


def scene_check_context(
    target_words: int,
    required_characters: List[str],
    previous_context: str = "",
) -> Dict[str, Any]:
    return {
        "min_words": int(target_words * 0.85),
        "max_words": int(target_words * 1.15),
        "required_characters": list(required_characters),
        "previous_context": previous_context,
    }
