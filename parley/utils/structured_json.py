"""Recover JSON payloads from model output.

Models wrap JSON in code fences, leak chat-template sentinel tokens, leave
trailing commas, or stop mid-object. ``parse_structured_json`` tries three
stages in order (strict, repaired, relaxed) and reports which one succeeded.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from loguru import logger

_FENCE_RE = re.compile(r"```(?:json|JSON|json5)?\s*([\s\S]+?)\s*```")
_OPEN_FENCE_RE = re.compile(r"^```(?:json|JSON|json5)?\s*")
_BOS_MARKERS = (
    "<｜begin▁of▁sentence｜>",
    "<|begin_of_text|>",
    "<|im_start|>",
    "<|im_end|>",
    "<|eot_id|>",
)
_UNARY_PLUS_RE = re.compile(r"([:\[,]\s*)\+(\d+(?:\.\d+)?)")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_-]*)\s*:")
_SINGLE_QUOTED_RE = re.compile(r"'([^'\\]*(?:\\.[^'\\]*)*)'")
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


@dataclass
class ParseResult:
    """Tagged outcome of a structured parse."""

    ok: bool
    value: Any = None
    stage: str = ""  # strict | repaired | relaxed | failed
    reason: str = ""


def sanitize_payload(raw: str) -> str:
    """Strip fences, BOM and sentinel tokens around a payload."""
    text = (raw or "").strip()
    text = text.lstrip("﻿")
    for marker in _BOS_MARKERS:
        text = text.replace(marker, "")
    text = text.strip()
    match = _FENCE_RE.search(text)
    if match:
        text = match.group(1).strip()
    elif text.startswith("```"):
        # Unterminated fence: model stopped before closing it.
        text = _OPEN_FENCE_RE.sub("", text).strip()
    return text


def extract_json_fragment(text: str) -> str | None:
    """Return the first balanced JSON object or array in ``text``, string-aware."""
    match = re.search(r"[\{\[]", text)
    if not match:
        return None
    start = match.start()
    stack: list[str] = []
    in_str = False
    esc = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            if not stack:
                return text[start : index + 1]
    return None


def close_unbalanced(text: str) -> str:
    """Append the closers a truncated JSON document is missing."""
    stack: list[str] = []
    in_str = False
    esc = False
    for ch in text:
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()
    suffix = '"' if in_str else ""
    repaired = (text + suffix).rstrip()
    if repaired.endswith(","):
        repaired = repaired[:-1]
    return repaired + "".join(reversed(stack))


def _repair(text: str) -> str:
    fragment = extract_json_fragment(text)
    if fragment is None:
        first = re.search(r"[\{\[]", text)
        fragment = close_unbalanced(text[first.start():]) if first else text
    fragment = _UNARY_PLUS_RE.sub(r"\1\2", fragment)
    return _TRAILING_COMMA_RE.sub(r"\1", fragment)


def _relax(text: str) -> str:
    relaxed = text.translate(_SMART_QUOTES)
    if "'" in relaxed and '"' not in relaxed:
        relaxed = _SINGLE_QUOTED_RE.sub(
            lambda m: '"' + m.group(1).replace('"', '\\"') + '"', relaxed
        )
    relaxed = _UNQUOTED_KEY_RE.sub(r'\1"\2":', relaxed)
    relaxed = re.sub(
        r"(?<![\"\w])(True|False|None)(?![\"\w])",
        lambda m: _PY_LITERALS[m.group(1)],
        relaxed,
    )
    return _TRAILING_COMMA_RE.sub(r"\1", relaxed)


def _try_loads(text: str) -> tuple[bool, Any, str]:
    try:
        return True, json.loads(text), ""
    except (json.JSONDecodeError, ValueError) as exc:
        return False, None, str(exc)


def parse_structured_json(raw: str, context: str = "model") -> ParseResult:
    """Parse model output expected to be JSON, degrading stage by stage."""
    if not raw or not raw.strip():
        return ParseResult(ok=False, stage="failed", reason="empty payload")

    sanitized = sanitize_payload(raw)

    ok, value, strict_error = _try_loads(sanitized)
    if ok:
        return ParseResult(ok=True, value=value, stage="strict")

    repaired = _repair(sanitized)
    ok, value, repair_error = _try_loads(repaired)
    if ok:
        logger.debug(f"[{context}] structured JSON parsed after repair")
        return ParseResult(ok=True, value=value, stage="repaired")

    relaxed = _relax(repaired)
    ok, value, relaxed_error = _try_loads(relaxed)
    if ok:
        logger.info(f"[{context}] structured JSON parsed via relaxed syntax")
        return ParseResult(ok=True, value=value, stage="relaxed")

    sample = sanitized[:800]
    logger.warning(
        f"[{context}] failed to parse structured JSON "
        f"(strict: {strict_error}; repaired: {repair_error}; relaxed: {relaxed_error}); "
        f"sample={sample!r}"
    )
    return ParseResult(ok=False, stage="failed", reason=relaxed_error or repair_error or strict_error)
