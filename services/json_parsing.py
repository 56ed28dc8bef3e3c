#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Lenient JSON extraction for model output and embedded page state.

Models wrap JSON in prose or code fences and produce near-JSON (single
quotes, bare keys, trailing commas, Python literals). parse_llm_json()
finds the object and repairs the common mistakes before giving up.
"""

import json
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from exceptions import ParseFailureError
from logging_config import StructuredLogger

logger = StructuredLogger(__name__)

FENCED_JSON_PATTERN = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)
FENCED_ANY_PATTERN = re.compile(r"```[a-zA-Z]*\s*(.*?)```", re.DOTALL)
UNQUOTED_KEY_PATTERN = re.compile(r"([{,]\s*)([A-Za-z_$][\w$\-]*)\s*:")
TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")
PYTHON_LITERALS = {"True": "true", "False": "false", "None": "null"}
PYTHON_LITERAL_PATTERN = re.compile(r"\b(True|False|None)\b")


def find_balanced_object(text: str, start: int = 0) -> Optional[str]:
    """Return the first balanced {...} span at or after `start`.

    Braces inside double-quoted strings are ignored.
    """
    begin = text.find("{", start)
    if begin < 0:
        return None

    depth = 0
    in_string = False
    escape = False
    for i in range(begin, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            if in_string:
                escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[begin:i + 1]
    return None


def _candidates(text: str) -> Iterator[str]:
    """Possible JSON payloads in priority order."""
    match = FENCED_JSON_PATTERN.search(text)
    if match:
        yield match.group(1).strip()
    match = FENCED_ANY_PATTERN.search(text)
    if match:
        yield match.group(1).strip()
    span = find_balanced_object(text)
    if span:
        yield span
    yield text.strip()


def _split_strings(text: str) -> List[Tuple[bool, str]]:
    """Split text into (is_string, segment) parts on double-quoted strings."""
    parts: List[Tuple[bool, str]] = []
    buf: List[str] = []
    in_string = False
    escape = False
    for ch in text:
        if in_string:
            buf.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                parts.append((True, "".join(buf)))
                buf = []
                in_string = False
        elif ch == '"':
            if buf:
                parts.append((False, "".join(buf)))
            buf = [ch]
            in_string = True
        else:
            buf.append(ch)
    if buf:
        parts.append((in_string, "".join(buf)))
    return parts


def _outside_strings(text: str, func: Callable[[str], str]) -> str:
    return "".join(seg if is_string else func(seg) for is_string, seg in _split_strings(text))


def _single_to_double_quotes(text: str) -> str:
    """Turn 'single quoted' strings into "double quoted" ones.

    Apostrophes inside existing double-quoted strings are left alone.
    """
    out: List[str] = []
    mode = None  # None, '"' or "'"
    escape = False
    for ch in text:
        if mode is None:
            if ch == '"':
                mode = '"'
                out.append(ch)
            elif ch == "'":
                mode = "'"
                out.append('"')
            else:
                out.append(ch)
            continue

        if escape:
            escape = False
            if mode == "'" and ch == "'":
                out[-1] = "'"  # \' needs no escaping inside double quotes
            else:
                out.append(ch)
            continue
        if ch == "\\":
            escape = True
            out.append(ch)
        elif ch == mode:
            mode = None
            out.append('"')
        elif mode == "'" and ch == '"':
            out.append('\\"')
        else:
            out.append(ch)
    return "".join(out)


def repair_json(text: str) -> str:
    """Apply the usual fixes for model-produced near-JSON."""
    repaired = _single_to_double_quotes(text)

    def fix_segment(segment: str) -> str:
        segment = UNQUOTED_KEY_PATTERN.sub(r'\1"\2":', segment)
        segment = TRAILING_COMMA_PATTERN.sub(r"\1", segment)
        return PYTHON_LITERAL_PATTERN.sub(lambda m: PYTHON_LITERALS[m.group(1)], segment)

    return _outside_strings(repaired, fix_segment)


def _loads_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_llm_json(text: str) -> Dict[str, Any]:
    """Extract a JSON object from model output.

    Tries fenced blocks, then the first balanced object, then the raw text;
    if none parse, retries each once after repair_json().

    Raises:
        ParseFailureError: If no JSON object can be recovered.
    """
    if not text or not text.strip():
        raise ParseFailureError("Empty model response")

    candidates = list(dict.fromkeys(_candidates(text)))
    for candidate in candidates:
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed

    for candidate in candidates:
        parsed = _loads_object(repair_json(candidate))
        if parsed is not None:
            logger.debug("Model JSON required repair")
            return parsed

    logger.warning("Could not recover JSON from model output", preview=text[:200])
    raise ParseFailureError("Model response did not contain a parseable JSON object")
