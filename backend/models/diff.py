"""Diff-related data models"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model accepting both camelCase (model output) and snake_case keys"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileSnapshot(BaseModel):
    """Full current content of one text file"""

    filename: str
    content: str


class DiffHunk(CamelModel):
    """A contiguous change region of a unified diff"""

    old_start: int  # 1-indexed
    old_lines: int = 0
    new_start: int
    new_lines: int = 0
    lines: list[str] = []  # " " context, "-" removed, "+" added


class FileDiff(CamelModel):
    """Complete change for a single file"""

    filename: str
    hunks: list[DiffHunk]
    unified_diff: str = ""


class SkippedHunk(BaseModel):
    """A hunk that could not be applied to the current file content"""

    filename: str | None = None
    hunk: DiffHunk
    reason: str


class DiffApplyResult(BaseModel):
    """Outcome of applying hunks to a buffer"""

    content: str
    applied: int = 0
    skipped: list[SkippedHunk] = []

    @property
    def complete(self) -> bool:
        return not self.skipped


class DiffStats(BaseModel):
    additions: int
    deletions: int
    hunks: int
