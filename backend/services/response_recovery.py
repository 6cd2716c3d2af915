"""
Response Recovery - Extract one structured JSON value from free-form model output

Strategies run in priority order and stop at the first success:
  1. sentinel markers (and fenced ```json blocks)
  2. string-aware balanced-bracket scan
  3. targeted extraction of a known payload key
  4. sanitize (escape raw control characters in strings, drop trailing
     commas) and retry the candidates above
When all fail the reply is classified as truncated or malformed.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from typing import Any

from models.recovery import RecoveredValue, RecoveryMalformed, RecoveryOk, RecoveryTruncated

logger = logging.getLogger(__name__)

START_MARKER = "__START_JSON__"
END_MARKER = "__END_JSON__"

CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

_CLOSERS = {"{": "}", "[": "]"}
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}

# Tolerates raw control characters inside strings
_LENIENT_DECODER = json.JSONDecoder(strict=False)


def extract_between_markers(
    text: str,
    start_marker: str = START_MARKER,
    end_marker: str = END_MARKER,
) -> str | None:
    """Slice the text between sentinel markers, if both are present"""
    start = text.find(start_marker)
    if start == -1:
        return None
    end = text.find(end_marker, start + len(start_marker))
    if end == -1:
        return None
    return text[start + len(start_marker):end].strip()


def find_balanced_from_index(text: str, start: int) -> str | None:
    """Return the balanced {...} or [...] span opening at `start`, or None.

    Brackets inside string literals are ignored; backslash escapes are honored.
    None means the span never closes (possibly truncated) or closes with the
    wrong bracket type.
    """
    if text[start] not in _CLOSERS:
        return None

    stack = [_CLOSERS[text[start]]]
    in_string = False
    escaping = False

    for index in range(start + 1, len(text)):
        ch = text[index]
        if in_string:
            if escaping:
                escaping = False
            elif ch == "\\":
                escaping = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]"):
            if stack.pop() != ch:
                return None
            if not stack:
                return text[start:index + 1]
    return None


def _scan_spans(text: str) -> tuple[list[tuple[int, int]], list[int]]:
    """One pass over the text: closed (start, end) spans and openers left open at the end.

    String state is only tracked inside brackets, so stray quotes in prose
    do not swallow the payload that follows.
    """
    spans: list[tuple[int, int]] = []
    stack: list[tuple[int, str]] = []
    in_string = False
    escaping = False

    for index, ch in enumerate(text):
        if in_string:
            if escaping:
                escaping = False
            elif ch == "\\":
                escaping = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = bool(stack)
        elif ch in _CLOSERS:
            stack.append((index, _CLOSERS[ch]))
        elif ch in ("}", "]"):
            if not any(closer == ch for _, closer in stack):
                continue
            # Openers above the partner never balance
            while stack[-1][1] != ch:
                stack.pop()
            start, _ = stack.pop()
            spans.append((start, index))

    return spans, [start for start, _ in stack]


def _runs_to_end(text: str, start: int, end_marker: str) -> bool:
    """The JSON opened at `start` is well-formed until the reply stops"""
    try:
        _LENIENT_DECODER.raw_decode(text, start)
    except json.JSONDecodeError as e:
        if e.msg.startswith("Unterminated string"):
            return True
        rest = text[e.pos:].strip()
        return not rest or rest.startswith(end_marker)
    return False


def iter_balanced_spans(text: str, end_marker: str = END_MARKER) -> Iterator[str]:
    """Yield balanced bracket spans in order of their opening position.

    Spans nested inside a payload that is cut off are never yielded: an
    element of a truncated list is not the list.
    """
    spans, unclosed = _scan_spans(text)
    cutoff = next((start for start in unclosed if _runs_to_end(text, start, end_marker)), None)

    for start, end in sorted(spans):
        if cutoff is not None and start > cutoff:
            break
        yield text[start:end + 1]


def extract_key_payload(text: str, key: str) -> str | None:
    """Rebuild a minimal object around the bracketed value of `key`"""
    needle = f'"{key}"'
    search_from = 0
    while True:
        key_index = text.find(needle, search_from)
        if key_index == -1:
            return None
        search_from = key_index + len(needle)

        rest = text[search_from:].lstrip()
        if not rest.startswith(":"):
            continue
        value = rest[1:].lstrip()
        if not value or value[0] not in _CLOSERS:
            continue

        value_index = len(text) - len(value)
        span = find_balanced_from_index(text, value_index)
        if span is not None:
            return "{" + json.dumps(key) + ": " + span + "}"


def sanitize_json_text(raw: str) -> str:
    """Escape raw newlines/tabs/CRs inside strings and drop trailing commas"""
    out: list[str] = []
    in_string = False
    escaping = False
    length = len(raw)

    for index, ch in enumerate(raw):
        if in_string:
            if escaping:
                escaping = False
                out.append(ch)
            elif ch == "\\":
                escaping = True
                out.append(ch)
            elif ch == '"':
                in_string = False
                out.append(ch)
            else:
                out.append(_CONTROL_ESCAPES.get(ch, ch))
            continue

        if ch == '"':
            in_string = True
        elif ch == ",":
            lookahead = index + 1
            while lookahead < length and raw[lookahead].isspace():
                lookahead += 1
            if lookahead < length and raw[lookahead] in "}]":
                continue
        out.append(ch)

    return "".join(out)


def is_response_truncated(
    text: str,
    payload_key: str | None = None,
    start_marker: str = START_MARKER,
    end_marker: str = END_MARKER,
) -> bool:
    """A payload was started but the reply stops before it could close"""
    stripped = text.rstrip()
    if stripped.endswith(("}", "]")):
        return False

    fence_open = text.count("```") % 2 == 1
    started = start_marker in text or fence_open
    if payload_key and f'"{payload_key}"' in text:
        started = True
    return started and end_marker not in text


def _try_parse(candidate: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return False, None


def recover_json(
    text: str,
    payload_key: str | None = None,
    start_marker: str = START_MARKER,
    end_marker: str = END_MARKER,
    stage_name: str = "Unknown",
    expect: type | tuple[type, ...] | None = None,
) -> RecoveredValue:
    """Recover exactly one JSON value from a model reply.

    With `expect`, scanned spans of another JSON type (a stray `[0]` in the
    prose) are passed over; a marked payload is always taken as is.
    """
    if not text or not text.strip():
        return RecoveryMalformed(reason="empty response")

    candidates: list[tuple[str, str]] = []

    # 1) Sentinel markers, then fenced code blocks
    marked = extract_between_markers(text, start_marker, end_marker)
    if marked:
        candidates.append(("markers", marked))
    fenced = CODE_FENCE_RE.search(text)
    if fenced and fenced.group(1).strip():
        candidates.append(("markers", fenced.group(1).strip()))

    for strategy, candidate in candidates:
        ok, value = _try_parse(candidate)
        if ok:
            return _recovered(value, strategy, stage_name)

    def wanted(strategy: str, value: Any) -> bool:
        return expect is None or strategy == "markers" or isinstance(value, expect)

    # 2) First balanced span that parses
    for span in iter_balanced_spans(text, end_marker):
        candidates.append(("balanced", span))
        ok, value = _try_parse(span)
        if ok and wanted("balanced", value):
            return _recovered(value, "balanced", stage_name)

    # 3) Targeted payload key
    if payload_key:
        keyed = extract_key_payload(text, payload_key)
        if keyed:
            candidates.append(("key", keyed))
            ok, value = _try_parse(keyed)
            if ok and wanted("key", value):
                return _recovered(value, "key", stage_name)

    # 4) Sanitize and retry
    candidates.append(("whole", text.strip()))
    for strategy, candidate in candidates:
        ok, value = _try_parse(sanitize_json_text(candidate))
        if ok and wanted(strategy, value):
            return _recovered(value, f"sanitized-{strategy}", stage_name)

    if is_response_truncated(text, payload_key, start_marker, end_marker):
        logger.warning(
            "[ResponseRecovery] %s: response appears truncated (ends with %r)",
            stage_name, text.rstrip()[-80:],
        )
        return RecoveryTruncated()

    logger.warning("[ResponseRecovery] %s: all JSON parsing strategies failed", stage_name)
    return RecoveryMalformed(reason=f"{stage_name}: all JSON parsing strategies failed")


def _recovered(value: Any, strategy: str, stage_name: str) -> RecoveryOk:
    logger.debug("[ResponseRecovery] %s: recovered JSON via %s", stage_name, strategy)
    return RecoveryOk(value=value, strategy=strategy)
