"""JSON repair engine for free-text model output.

Local models asked for "only JSON" still routinely produce markdown
fences, chatty preambles, trailing commas, single-quoted keys, output cut
off mid-object, or a restatement of the previous turn's JSON followed by
the real answer.  ``repair_json`` recovers a JSON value from all of these
and reports every corrective action in ``RepairResult.issues``.

Repair pipeline (each step runs only if the previous ones failed)
-----------------------------------------------------------------
1. **Direct parse**: valid JSON is returned untouched with no issues.
2. **Unwrap**: strip one surrounding markdown fence (```json or bare
   ```) and one known chatter prefix (``JSON:``, ``Response:``, ...).
3. **Candidate selection**: scan for balanced top-level ``{...}``
   objects and try them from **last to first**.  When marker fields are
   given (a story turn is expected) a candidate must contain them; models
   often echo an earlier turn's JSON before writing the current one, and
   the echo comes first.  A truncated object after complete ones is
   closed and preferred over them: it is the current turn cut off by
   ``num_predict``.
4. **Syntax fixes**: single-quoted keys/values, trailing commas,
   unterminated strings and missing closing braces/brackets (typical of
   output truncated by ``num_predict``).
5. **Backtick fallback**: the whole pipeline is re-run on the raw text
   with every ``'`` replaced by a backtick.  Apostrophes inside prose
   otherwise confuse the single-quote fixes of step 4.
6. **Failure**: ``success=False`` with the parser error and the last
   string that was handed to the parser.
"""

from __future__ import annotations

import json
import re
from collections.abc import Collection, Iterable
from typing import Any

from llm_bridge.types import RepairResult

# Fields whose presence marks an object as the current story turn rather
# than an echo of an earlier one.
TURN_MARKER_FIELDS = ("story", "choices")

_FENCE_RE = re.compile(r"^```([A-Za-z0-9_+-]*)[ \t]*\n?(.*?)\n?[ \t]*```$", re.DOTALL)

_CHATTER_PREFIXES = (
    "JSON:",
    "Response:",
    "Here is the JSON:",
    "The JSON response is:",
    "Here's the response:",
)

_SINGLE_QUOTED_KEY_RE = re.compile(r"'([^'\n]+)'(\s*):")
_SINGLE_QUOTED_VALUE_RE = re.compile(r"([:\[,]\s*)'([^'\n]*)'")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


def turn_marker_fields(field_names: Iterable[str]) -> tuple[str, ...]:
    """Marker fields to require for a request, or ``()`` if it is not a story turn."""
    names = set(field_names)
    if "story" not in names:
        return ()
    return tuple(name for name in TURN_MARKER_FIELDS if name in names)


def _try_parse(text: str) -> tuple[Any, str | None]:
    """Return ``(value, None)`` on success or ``(None, error)`` on failure."""
    try:
        return json.loads(text), None
    except ValueError as exc:
        return None, str(exc)


def _is_turn(value: Any, markers: Collection[str]) -> bool:
    if not markers:
        return True
    return isinstance(value, dict) and all(name in value for name in markers)


# ── Unwrapping ───────────────────────────────────────────────────────────────


def _strip_fence(text: str) -> tuple[str, list[str]]:
    match = _FENCE_RE.match(text)
    if not match:
        return text, []
    language = match.group(1).lower()
    note = "Removed markdown json wrapper" if language == "json" else "Removed markdown code wrapper"
    return match.group(2).strip(), [note]


def _strip_prefix(text: str) -> tuple[str, list[str]]:
    lowered = text.lower()
    for prefix in _CHATTER_PREFIXES:
        if lowered.startswith(prefix.lower()):
            return text[len(prefix) :].strip(), [f"Removed prefix: {prefix}"]
    return text, []


# ── Scanning ─────────────────────────────────────────────────────────────────


def _scan_objects(text: str) -> tuple[list[str], int | None]:
    """Find balanced top-level ``{...}`` spans.

    Braces inside double-quoted strings are ignored.  Returns the complete
    objects in order of appearance plus the start offset of a trailing
    object that never closed (``None`` if there is none).
    """
    objects: list[str] = []
    depth = 0
    start = 0
    in_string = False
    escape = False

    for index, char in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue

        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                objects.append(text[start : index + 1])

    return objects, (start if depth > 0 else None)


# ── Syntax fixes ─────────────────────────────────────────────────────────────


def _fix_quotes(text: str) -> tuple[str, list[str]]:
    count = 0

    def _key(match: re.Match[str]) -> str:
        nonlocal count
        count += 1
        return f'"{match.group(1)}"{match.group(2)}:'

    def _value(match: re.Match[str]) -> str:
        nonlocal count
        if '"' in match.group(2):
            return match.group(0)
        count += 1
        return f'{match.group(1)}"{match.group(2)}"'

    text = _SINGLE_QUOTED_KEY_RE.sub(_key, text)
    text = _SINGLE_QUOTED_VALUE_RE.sub(_value, text)
    return text, ([f"Fixed {count} single-quoted key(s)/value(s)"] if count else [])


def _fix_trailing_commas(text: str) -> tuple[str, list[str]]:
    text, count = _TRAILING_COMMA_RE.subn(r"\1", text)
    return text, ([f"Removed {count} trailing comma(s)"] if count else [])


def _close_open_structures(text: str) -> tuple[str, list[str]]:
    """Close an unterminated string and any braces/brackets left open."""
    stack: list[str] = []
    in_string = False
    escape = False

    for char in text:
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()

    notes: list[str] = []
    if in_string:
        text += '"'
        notes.append("Closed unterminated string")
    if stack:
        text = text.rstrip()
        if text.endswith(","):
            text = text[:-1]
        braces = stack.count("}")
        brackets = stack.count("]")
        text += "".join(reversed(stack))
        if braces:
            notes.append(f"Added {braces} missing closing brace(s)")
        if brackets:
            notes.append(f"Added {brackets} missing closing bracket(s)")
    return text, notes


def _parse_lenient(text: str) -> tuple[Any, str | None, str, list[str]]:
    """Parse ``text``, applying quote and comma fixes if the plain parse fails.

    Returns ``(value, error, attempted_text, notes)``.
    """
    value, error = _try_parse(text)
    if error is None:
        return value, None, text, []

    fixed, notes = _fix_quotes(text)
    fixed, comma_notes = _fix_trailing_commas(fixed)
    notes += comma_notes
    if not notes:
        return None, error, text, []
    value, error = _try_parse(fixed)
    return value, error, fixed, notes


def _close_tail(body: str, source_start: int) -> tuple[Any, str | None, str, list[str]]:
    """Apply every syntax fix to ``body[source_start:]`` and parse it.

    Returns ``(value, error, fixed_text, notes)``.
    """
    notes = [f"Dropped {source_start} character(s) before the JSON object"] if source_start else []
    fixed, step_notes = _fix_quotes(body[source_start:])
    notes += step_notes
    fixed, step_notes = _fix_trailing_commas(fixed)
    notes += step_notes
    fixed, step_notes = _close_open_structures(fixed)
    notes += step_notes
    value, error = _try_parse(fixed)
    return value, error, fixed, notes


# ── Pipeline ─────────────────────────────────────────────────────────────────


def _repair_pass(text: str, markers: Collection[str]) -> RepairResult:
    value, error = _try_parse(text)
    if error is None:
        return RepairResult(success=True, parsed=value, cleaned=text)

    body, issues = _strip_fence(text)
    body, prefix_notes = _strip_prefix(body)
    issues += prefix_notes
    if body != text:
        value, error = _try_parse(body)
        if error is None:
            return RepairResult(success=True, parsed=value, cleaned=body, issues=issues)

    objects, unclosed_start = _scan_objects(body)

    # A truncated object after complete ones is the current turn cut off
    # by num_predict; the complete ones before it are echoes.
    if objects and unclosed_start is not None:
        value, tail_error, fixed, notes = _close_tail(body, unclosed_start)
        if tail_error is None and isinstance(value, dict) and value and _is_turn(value, markers):
            total = len(objects) + 1
            return RepairResult(
                success=True,
                parsed=value,
                cleaned=fixed,
                issues=[*issues, f"Selected truncated JSON object {total} of {total}", *notes],
            )

    # Last to first: the current turn follows any echoed earlier turn.
    fallback: RepairResult | None = None
    for position in range(len(objects) - 1, -1, -1):
        candidate = objects[position]
        value, cand_error, attempted, notes = _parse_lenient(candidate)
        if cand_error is not None:
            continue
        if len(objects) > 1:
            picked = f"Selected JSON object {position + 1} of {len(objects)}"
        else:
            picked = "Extracted JSON object from surrounding text"
        result = RepairResult(
            success=True,
            parsed=value,
            cleaned=attempted,
            issues=[*issues, picked, *notes],
        )
        if _is_turn(value, markers):
            return result
        if fallback is None:
            fallback = result

    # Syntax fixes on the trailing unclosed object, or on everything from
    # the first brace when nothing was left open.
    if unclosed_start is not None:
        source_start = unclosed_start
    else:
        first_brace = body.find("{")
        source_start = first_brace if first_brace > 0 else 0
    value, fixed_error, fixed, fix_notes = _close_tail(body, source_start)

    if fixed_error is None and (fallback is None or _is_turn(value, markers)):
        return RepairResult(success=True, parsed=value, cleaned=fixed, issues=[*issues, *fix_notes])

    if fallback is not None:
        fallback.issues.append("No object carried the expected turn fields; using the last parseable one")
        return fallback

    return RepairResult(
        success=False,
        cleaned=fixed,
        error=fixed_error or error or "No JSON object found",
        issues=[*issues, *fix_notes],
    )


def repair_json(raw_text: str, *, marker_fields: Collection[str] = ()) -> RepairResult:
    """Recover a JSON value from raw model text.

    Args:
        raw_text:      Text returned by the model.
        marker_fields: Fields that identify the current turn's answer when
                       the text holds several JSON objects.  Empty means
                       any parseable object qualifies.

    Returns:
        A :class:`RepairResult`.  ``issues`` is empty exactly when the
        trimmed text was already valid JSON.
    """
    text = raw_text.strip()
    if not text:
        return RepairResult(success=False, error="Empty response text")

    result = _repair_pass(text, marker_fields)
    if result.success or "'" not in text:
        return result

    retry = _repair_pass(text.replace("'", "`"), marker_fields)
    if retry.success:
        retry.issues.insert(0, "Replaced single quotes with backticks")
        return retry

    return RepairResult(
        success=False,
        cleaned=retry.cleaned,
        error=result.error,
        issues=[*result.issues, "Replaced single quotes with backticks", *retry.issues],
    )
