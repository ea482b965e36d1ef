"""
Tolerant parser for subtopic content pasted from an LLM chat or clipboard.

The expected payload is a JSON list whose first record describes the
subtopic (``{"texto": ...}``) and whose remaining records describe
propositions (``{"tipo": ..., "etiqueta": ..., "texto": ...}``). Pasted text
is frequently damaged, so parsing walks a fixed ladder of rewrites:

1. the trimmed text as-is, ``{{...}}`` rewritten to ``[...]``, and a bare
   object wrapped in ``[...]``;
2. each of those with stray single backslashes doubled;
3. every balanced top-level ``{...}`` / ``[...]`` span found in the raw text,
   run through steps 1-2.

The first candidate that parses wins. The result records the text actually
parsed and every fix applied. The parser never raises and depends on nothing
but its input.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

FIX_TRIMMED = "Removed leading and trailing whitespace"
FIX_DOUBLE_BRACES = "Rewrote double braces {{ }} as a JSON list"
FIX_WRAPPED_OBJECT = "Wrapped the object in a JSON list [ ]"
FIX_BACKSLASHES = "Escaped stray backslashes"

EMPTY_INPUT_ERROR = "Paste the content you want to import first."
UNPARSEABLE_ERROR = (
    "Could not interpret the content as JSON. Check the quotes and make sure the "
    "structure is a list of records."
)


@dataclass
class ImportDiagnostics:
    success: bool
    parsed: Optional[List[Any]]
    normalized_text: str
    applied_fixes: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class _Candidate:
    text: str
    fixes: List[str]


def _reject_constant(name: str):
    raise ValueError(f"Non-standard JSON constant: {name}")


def _parse_as_list(text: str):
    """Return ``(records, promoted)`` or ``(None, False)`` when ``text`` is not a JSON list/object."""
    try:
        parsed = json.loads(text, parse_constant=_reject_constant)
    except ValueError:
        return None, False

    if isinstance(parsed, list):
        return parsed, False
    if isinstance(parsed, dict):
        return [parsed], True
    return None, False


def normalize_backslashes(text: str) -> str:
    """Double every backslash that is not already part of a ``\\\\`` pair."""
    result = []
    index = 0
    while index < len(text):
        char = text[index]
        if char == "\\":
            result.append("\\\\")
            index += 2 if text[index + 1:index + 2] == "\\" else 1
            continue
        result.append(char)
        index += 1
    return "".join(result)


def _success(records: List[Any], promoted: bool, text: str, fixes: List[str]) -> ImportDiagnostics:
    applied = list(fixes)
    if promoted and FIX_WRAPPED_OBJECT not in applied:
        applied.append(FIX_WRAPPED_OBJECT)
    return ImportDiagnostics(
        success=True,
        parsed=records,
        normalized_text=text,
        applied_fixes=applied,
    )


def _try_candidate(candidate: _Candidate) -> Optional[ImportDiagnostics]:
    records, promoted = _parse_as_list(candidate.text)
    if records is not None:
        return _success(records, promoted, candidate.text, candidate.fixes)

    sanitized = normalize_backslashes(candidate.text)
    if sanitized != candidate.text:
        records, promoted = _parse_as_list(sanitized)
        if records is not None:
            return _success(records, promoted, sanitized, [*candidate.fixes, FIX_BACKSLASHES])

    return None


def build_candidates(text: str) -> List[_Candidate]:
    trimmed = text.strip()
    if not trimmed:
        return []

    variations: Dict[str, List[str]] = {}

    def add(candidate_text: str, fix: Optional[str] = None) -> None:
        fixes = variations.setdefault(candidate_text, [])
        if fix and fix not in fixes:
            fixes.append(fix)

    add(trimmed, FIX_TRIMMED if trimmed != text else None)

    if trimmed.startswith("{{") and trimmed.endswith("}}") and len(trimmed) > 4:
        add(f"[{trimmed[1:-1]}]", FIX_DOUBLE_BRACES)

    if trimmed.startswith("{") and trimmed.endswith("}"):
        add(f"[{trimmed}]", FIX_WRAPPED_OBJECT)

    return [_Candidate(text=key, fixes=value) for key, value in variations.items()]


def extract_json_segments(text: str) -> List[str]:
    """Return every balanced top-level ``{...}``/``[...]`` span, ignoring brackets inside strings."""
    segments: List[str] = []
    stack: List[str] = []
    start = -1
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if char == "\\" and not escaped:
            escaped = True
            continue

        if char == '"' and not escaped:
            in_string = not in_string

        escaped = False

        if in_string:
            continue

        if char in "{[":
            if not stack:
                start = index
            stack.append(char)
            continue

        if char in "}]":
            if not stack:
                continue

            opener = stack[-1]
            if (opener == "{" and char != "}") or (opener == "[" and char != "]"):
                stack.clear()
                start = -1
                continue

            stack.pop()
            if not stack and start != -1:
                segments.append(text[start:index + 1])
                start = -1

    return segments


def parse_import_text(text: str) -> ImportDiagnostics:
    trimmed = (text or "").strip()
    if not trimmed:
        return ImportDiagnostics(
            success=False,
            parsed=None,
            normalized_text="",
            error=EMPTY_INPUT_ERROR,
        )

    for candidate in build_candidates(text):
        result = _try_candidate(candidate)
        if result:
            return result

    for segment in extract_json_segments(text):
        for candidate in build_candidates(segment):
            result = _try_candidate(candidate)
            if result:
                return result

    return ImportDiagnostics(
        success=False,
        parsed=None,
        normalized_text="",
        error=UNPARSEABLE_ERROR,
    )
