"""
Diff Codec - Generate, parse, apply and validate unified diffs against text buffers
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from difflib import SequenceMatcher
from typing import Any

from models.diff import DiffApplyResult, DiffHunk, DiffStats, FileDiff, SkippedHunk

logger = logging.getLogger(__name__)

HUNK_HEADER_RE = re.compile(r"^@@\s*-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s*@@")

DEFAULT_CONTEXT_LINES = 3
FUZZY_SEARCH_WINDOW = 50
MINIMAL_DIFF_LOOKAHEAD = 10


def _split_lines(content: str) -> list[str]:
    return content.split("\n")


def _split_hunk_line(line: str) -> tuple[str | None, str]:
    """Return (kind, text) where kind is ' ', '-', '+' or None for markers"""
    if not line:
        return " ", ""
    prefix = line[0]
    if prefix in " -+":
        return prefix, line[1:]
    if prefix == "\\":
        # "\ No newline at end of file"
        return None, ""
    # Models often drop the leading space of context lines
    return " ", line


def _format_range(start: int, length: int) -> str:
    return f"{start},{length}"


def format_unified_diff(filename: str, hunks: Iterable[DiffHunk]) -> str:
    """Render hunks as unified diff text"""
    hunks = list(hunks)
    if not hunks:
        return ""

    out = [f"--- a/{filename}", f"+++ b/{filename}"]
    for hunk in hunks:
        out.append(
            f"@@ -{_format_range(hunk.old_start, hunk.old_lines)} "
            f"+{_format_range(hunk.new_start, hunk.new_lines)} @@"
        )
        out.extend(hunk.lines)
    return "\n".join(out) + "\n"


# ========== Generation ==========


def generate_diff(
    original_content: str,
    new_content: str,
    file_path: str,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> FileDiff:
    """Generate a minimal line-level diff from original to new content"""
    original_lines = _split_lines(original_content)
    new_lines = _split_lines(new_content)

    matcher = SequenceMatcher(None, original_lines, new_lines, autojunk=False)
    hunks = [
        _hunk_from_opcodes(group, original_lines, new_lines)
        for group in matcher.get_grouped_opcodes(context_lines)
    ]

    return FileDiff(
        filename=file_path,
        hunks=hunks,
        unified_diff=format_unified_diff(file_path, hunks),
    )


def _hunk_from_opcodes(
    group: list[tuple[str, int, int, int, int]],
    original: list[str],
    modified: list[str],
) -> DiffHunk:
    i1, i2 = group[0][1], group[-1][2]
    j1, j2 = group[0][3], group[-1][4]

    lines: list[str] = []
    for tag, a1, a2, b1, b2 in group:
        if tag == "equal":
            lines.extend(" " + line for line in original[a1:a2])
            continue
        if tag in ("replace", "delete"):
            lines.extend("-" + line for line in original[a1:a2])
        if tag in ("replace", "insert"):
            lines.extend("+" + line for line in modified[b1:b2])

    old_lines = i2 - i1
    new_lines = j2 - j1
    # An empty range names the line *after which* the change happens
    return DiffHunk(
        old_start=i1 + 1 if old_lines else i1,
        old_lines=old_lines,
        new_start=j1 + 1 if new_lines else j1,
        new_lines=new_lines,
        lines=lines,
    )


def create_minimal_diff(
    original_content: str,
    new_content: str,
    filename: str,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> FileDiff:
    """Build a diff with a configurable context window using a greedy line scan.

    Change regions closer than twice the context window are merged into a
    single hunk.
    """
    ops = _greedy_edit_script(_split_lines(original_content), _split_lines(new_content))
    hunks = [
        _hunk_from_ops(ops[start:end])
        for start, end in _group_change_regions(ops, context_lines)
    ]
    return FileDiff(
        filename=filename,
        hunks=hunks,
        unified_diff=format_unified_diff(filename, hunks),
    )


def _greedy_edit_script(original: list[str], modified: list[str]) -> list[tuple[str, int, int, str]]:
    """Edit operations as (kind, old_index, new_index, text)"""
    ops: list[tuple[str, int, int, str]] = []
    i = j = 0
    while i < len(original) or j < len(modified):
        if i >= len(original):
            ops.append(("+", i, j, modified[j]))
            j += 1
        elif j >= len(modified):
            ops.append(("-", i, j, original[i]))
            i += 1
        elif original[i] == modified[j]:
            ops.append((" ", i, j, original[i]))
            i += 1
            j += 1
        else:
            for k in range(1, MINIMAL_DIFF_LOOKAHEAD + 1):
                if j + k < len(modified) and original[i] == modified[j + k]:
                    ops.extend(("+", i, j + n, modified[j + n]) for n in range(k))
                    j += k
                    break
            else:
                ops.append(("-", i, j, original[i]))
                i += 1
    return ops


def _group_change_regions(
    ops: list[tuple[str, int, int, str]], context_lines: int
) -> list[tuple[int, int]]:
    """Slice bounds of each hunk, context included"""
    changes = [index for index, op in enumerate(ops) if op[0] != " "]
    if not changes:
        return []

    merge_below = max(2 * context_lines, 1)
    regions: list[list[int]] = [[changes[0], changes[0]]]
    for index in changes[1:]:
        gap = index - regions[-1][1] - 1
        if gap < merge_below:
            regions[-1][1] = index
        else:
            regions.append([index, index])

    return [
        (max(0, first - context_lines), min(len(ops), last + context_lines + 1))
        for first, last in regions
    ]


def _hunk_from_ops(ops: list[tuple[str, int, int, str]]) -> DiffHunk:
    old_side = [op for op in ops if op[0] != "+"]
    new_side = [op for op in ops if op[0] != "-"]
    return DiffHunk(
        old_start=old_side[0][1] + 1 if old_side else ops[0][1],
        old_lines=len(old_side),
        new_start=new_side[0][2] + 1 if new_side else ops[0][2],
        new_lines=len(new_side),
        lines=[kind + text for kind, _, _, text in ops],
    )


def invert_hunks(hunks: Iterable[DiffHunk]) -> list[DiffHunk]:
    """Hunks that turn the modified text back into the original"""
    swap = {"+": "-", "-": "+"}
    inverted = []
    for hunk in hunks:
        lines = [swap[line[0]] + line[1:] if line[:1] in swap else line for line in hunk.lines]
        inverted.append(
            DiffHunk(
                old_start=hunk.new_start,
                old_lines=hunk.new_lines,
                new_start=hunk.old_start,
                new_lines=hunk.old_lines,
                lines=lines,
            )
        )
    return inverted


# ========== Parsing ==========


def parse_unified_diff(diff_text: str) -> list[DiffHunk]:
    """Parse unified diff text into hunks, tolerating sloppy model output"""
    if not diff_text:
        return []

    lines = diff_text.replace("\r\n", "\n").rstrip("\n").split("\n")
    hunks: list[DiffHunk] = []
    current: DiffHunk | None = None

    for index, line in enumerate(lines):
        header = HUNK_HEADER_RE.match(line)
        if header:
            old_start, old_lines, new_start, new_lines = header.groups()
            current = DiffHunk(
                old_start=int(old_start),
                old_lines=int(old_lines or 0),
                new_start=int(new_start),
                new_lines=int(new_lines or 0),
                lines=[],
            )
            hunks.append(current)
            continue

        if _is_file_header(lines, index):
            current = None
            continue

        if current is None:
            continue

        kind, text = _split_hunk_line(line)
        if kind is None:
            continue
        current.lines.append(kind + text)

    for hunk in hunks:
        validate_and_correct_hunk(hunk)
    return hunks


def _is_file_header(lines: list[str], index: int) -> bool:
    line = lines[index]
    if line.startswith("diff --git "):
        return True
    if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
        return True
    if line.startswith("+++ ") and index > 0 and lines[index - 1].startswith("--- "):
        return True
    return False


def validate_and_correct_hunk(hunk: DiffHunk) -> DiffHunk:
    """Overwrite declared line counts with the counts of the actual hunk lines"""
    context = removed = added = 0
    for line in hunk.lines:
        kind, _ = _split_hunk_line(line)
        if kind == " ":
            context += 1
        elif kind == "-":
            removed += 1
        elif kind == "+":
            added += 1

    old_lines = context + removed
    new_lines = context + added
    if hunk.old_lines != old_lines or hunk.new_lines != new_lines:
        logger.debug(
            "[DiffCodec] Corrected hunk @@ -%d,%d +%d,%d @@ to %d/%d lines",
            hunk.old_start, hunk.old_lines, hunk.new_start, hunk.new_lines,
            old_lines, new_lines,
        )
        hunk.old_lines = old_lines
        hunk.new_lines = new_lines
    return hunk


# ========== Application ==========


def apply_diff_hunks(
    original_content: str,
    hunks: Iterable[DiffHunk],
    filename: str | None = None,
) -> DiffApplyResult:
    """Apply hunks to content; hunks whose context no longer matches are skipped"""
    lines = _split_lines(original_content)
    prepared = [validate_and_correct_hunk(hunk.model_copy(deep=True)) for hunk in hunks]
    # Bottom-up so earlier edits don't shift the line numbers of later ones
    prepared.sort(key=lambda hunk: hunk.old_start, reverse=True)

    applied = 0
    skipped: list[SkippedHunk] = []
    for hunk in prepared:
        parsed = [(kind, text) for kind, text in map(_split_hunk_line, hunk.lines) if kind]
        position = _locate_hunk(lines, hunk, parsed)
        if position is None:
            reason = f"context not found within {FUZZY_SEARCH_WINDOW} lines of line {hunk.old_start}"
            logger.warning("[DiffCodec] Skipping hunk for %s: %s", filename or "<buffer>", reason)
            skipped.append(SkippedHunk(filename=filename, hunk=hunk, reason=reason))
            continue

        if hunk.old_lines and position != max(hunk.old_start - 1, 0):
            logger.debug(
                "[DiffCodec] Hunk declared at line %d applied at line %d",
                hunk.old_start, position + 1,
            )
        _replay_hunk(lines, parsed, position)
        applied += 1

    return DiffApplyResult(content="\n".join(lines), applied=applied, skipped=skipped)


def _locate_hunk(lines: list[str], hunk: DiffHunk, parsed: list[tuple[str, str]]) -> int | None:
    """Index in `lines` where the hunk's old side starts, or None"""
    old_parsed = [(kind, text) for kind, text in parsed if kind != "+"]
    if not old_parsed:
        # Pure insertion after line old_start
        return min(max(hunk.old_start, 0), len(lines))

    old_side = [text for _, text in old_parsed]
    # Anchor on the first context line, or the first removed line if there is none
    anchor_offset = next((n for n, (kind, _) in enumerate(old_parsed) if kind == " "), 0)
    anchor = old_side[anchor_offset]

    expected = max(hunk.old_start - 1, 0)
    last_start = len(lines) - len(old_side)
    candidates = sorted(
        range(max(0, expected - FUZZY_SEARCH_WINDOW), min(last_start, expected + FUZZY_SEARCH_WINDOW) + 1),
        key=lambda position: abs(position - expected),
    )

    for matches_anchor in (_exact_match, _trimmed_match):
        for position in candidates:
            if matches_anchor(lines[position + anchor_offset], anchor) and _verify_old_side(
                lines, position, old_side
            ):
                return position
    return None


def _exact_match(line: str, expected: str) -> bool:
    return line == expected


def _trimmed_match(line: str, expected: str) -> bool:
    return line.strip() == expected.strip()


def _verify_old_side(lines: list[str], position: int, old_side: list[str]) -> bool:
    return all(
        _trimmed_match(lines[position + offset], text)
        for offset, text in enumerate(old_side)
    )


def _replay_hunk(lines: list[str], parsed: list[tuple[str, str]], position: int) -> None:
    """Group contiguous removals/additions by position and replay them bottom-up"""
    groups: list[tuple[int, list[int], list[str]]] = []
    cursor = position
    current: tuple[int, list[int], list[str]] | None = None

    for kind, text in parsed:
        if kind == " ":
            current = None
            cursor += 1
            continue
        if current is None:
            current = (cursor, [0], [])
            groups.append(current)
        if kind == "-":
            current[1][0] += 1
            cursor += 1
        else:
            current[2].append(text)

    for index, removed, inserted in reversed(groups):
        lines[index:index + removed[0]] = inserted


# ========== Validation & statistics ==========


def _field(data: Mapping[str, Any], snake: str, camel: str) -> Any:
    return data[snake] if snake in data else data.get(camel)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_diff(diff: FileDiff | Mapping[str, Any]) -> bool:
    """Structural check of a diff, either a FileDiff or raw model output"""
    if isinstance(diff, FileDiff):
        hunks: Any = [hunk.model_dump() for hunk in diff.hunks]
    elif isinstance(diff, Mapping):
        hunks = diff.get("hunks")
    else:
        return False

    if not isinstance(hunks, list):
        return False

    for hunk in hunks:
        if isinstance(hunk, DiffHunk):
            hunk = hunk.model_dump()
        if not isinstance(hunk, Mapping):
            return False
        old_start = _field(hunk, "old_start", "oldStart")
        new_start = _field(hunk, "new_start", "newStart")
        old_lines = _field(hunk, "old_lines", "oldLines")
        new_lines = _field(hunk, "new_lines", "newLines")
        if not all(_is_count(value) for value in (old_start, new_start, old_lines, new_lines)):
            return False
        if old_start <= 0 or new_start <= 0 or old_lines < 0 or new_lines < 0:
            return False
        if not isinstance(hunk.get("lines"), list):
            return False
    return True


def get_diff_stats(diff: FileDiff) -> DiffStats:
    """Count added and removed lines"""
    additions = deletions = 0
    for hunk in diff.hunks:
        for line in hunk.lines:
            if line.startswith("+"):
                additions += 1
            elif line.startswith("-"):
                deletions += 1
    return DiffStats(additions=additions, deletions=deletions, hunks=len(diff.hunks))


def get_diff_statistics(diffs: Iterable[FileDiff]) -> dict[str, int]:
    """Aggregate statistics across several file diffs"""
    totals = {"totalFiles": 0, "totalAdditions": 0, "totalDeletions": 0, "totalHunks": 0}
    for diff in diffs:
        stats = get_diff_stats(diff)
        totals["totalFiles"] += 1
        totals["totalAdditions"] += stats.additions
        totals["totalDeletions"] += stats.deletions
        totals["totalHunks"] += stats.hunks
    return totals
