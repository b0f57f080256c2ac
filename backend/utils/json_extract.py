import ast
import json
import re
from typing import Any, Dict, List, Optional, Tuple

from core.exceptions import ParseError

_THINKING_RE = re.compile(r"<thinking>[\s\S]*?</thinking>", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_LINE_COMMENT_RE = re.compile(r"^\s*//.*$", re.MULTILINE)
_BLOCK_COMMENT_RE = re.compile(r"/\*[\s\S]*?\*/")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _slice_brackets(payload: str) -> Optional[str]:
    starts = [idx for idx in (payload.find("{"), payload.find("[")) if idx >= 0]
    if not starts:
        return None
    start = min(starts)
    closer = "}" if payload[start] == "{" else "]"
    end = payload.rfind(closer)
    if end <= start:
        return None
    return payload[start : end + 1]


def repair_truncated_json(payload: str) -> Optional[str]:
    """Close quotes and brackets left open by a response cut off mid-stream."""
    starts = [idx for idx in (payload.find("{"), payload.find("[")) if idx >= 0]
    if not starts:
        return None
    text = payload[min(starts):].rstrip()
    stack: List[str] = []
    in_string = False
    escaped = False
    last_safe = 0
    for idx, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            last_safe = idx + 1
        elif ch == ",":
            last_safe = idx
    if not stack and not in_string:
        return text
    if in_string:
        # Drop the dangling element rather than invent the rest of a string.
        text = text[:last_safe] if last_safe else text + '"'
        return repair_truncated_json(text) if last_safe else text + "".join(reversed(stack))
    text = _TRAILING_COMMA_RE.sub(r"\1", text.rstrip().rstrip(","))
    return text + "".join(reversed(stack))


def _candidates(text: str) -> List[Tuple[str, str]]:
    payload = (text or "").strip()
    out: List[Tuple[str, str]] = [("raw", payload)]
    stripped = _THINKING_RE.sub("", payload).strip()
    if stripped != payload:
        out.append(("thinking_stripped", stripped))
    fenced = _FENCE_RE.search(stripped)
    if fenced:
        out.append(("fenced", fenced.group(1).strip()))
    sliced = _slice_brackets(stripped)
    if sliced:
        out.append(("bracket_slice", sliced))
        uncommented = _BLOCK_COMMENT_RE.sub("", _LINE_COMMENT_RE.sub("", sliced))
        uncommented = _TRAILING_COMMA_RE.sub(r"\1", uncommented)
        if uncommented != sliced:
            out.append(("comments_removed", uncommented))
    repaired = repair_truncated_json(stripped)
    if repaired and repaired != sliced:
        out.append(("truncation_repaired", repaired))
    return out


def extract_json_with_diag(text: str) -> Tuple[Optional[Any], Dict[str, Any]]:
    diagnostics: Dict[str, Any] = {
        "raw_length": len(text or ""),
        "candidates": [],
        "parsed": False,
        "strategy": None,
    }
    if not (text or "").strip():
        return None, diagnostics

    for strategy, candidate in _candidates(text):
        if not candidate:
            continue
        candidate_diag: Dict[str, Any] = {"strategy": strategy, "length": len(candidate)}
        try:
            parsed = json.loads(candidate)
            candidate_diag["parser"] = "json"
        except ValueError as exc:
            candidate_diag["json_error"] = str(exc)[:240]
            try:
                # Some models emit Python-style dicts or single quotes.
                parsed = ast.literal_eval(candidate)
                candidate_diag["parser"] = "ast"
            except (ValueError, SyntaxError, MemoryError, RecursionError) as ast_exc:
                candidate_diag["ast_error"] = str(ast_exc)[:240]
                diagnostics["candidates"].append(candidate_diag)
                continue
        diagnostics["candidates"].append(candidate_diag)
        if isinstance(parsed, (dict, list)):
            diagnostics["parsed"] = True
            diagnostics["strategy"] = strategy
            return parsed, diagnostics
    return None, diagnostics


def extract_json(text: str) -> Any:
    parsed, diagnostics = extract_json_with_diag(text)
    if parsed is None:
        tried = ",".join(item["strategy"] for item in diagnostics["candidates"])
        raise ParseError(f"no json payload found (tried={tried or 'none'})")
    return parsed


def extract_json_list(text: str, envelope_keys: Tuple[str, ...] = ("outlines", "items", "data")) -> List[Any]:
    """Extract a JSON array, unwrapping ``{"outlines": [...]}``-style envelopes."""
    parsed = extract_json(text)
    if isinstance(parsed, list):
        return parsed
    for key in envelope_keys:
        value = parsed.get(key)
        if isinstance(value, list):
            return value
    return [parsed]
