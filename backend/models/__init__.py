"""Models module - Pydantic data models"""

from .diff import DiffApplyResult, DiffHunk, DiffStats, FileDiff, FileSnapshot, SkippedHunk
from .recovery import RecoveredValue, RecoveryMalformed, RecoveryOk, RecoveryTruncated
from .command import CommandRequest, CommandResult, ContextGatheringResult, ToolCall
from .pipeline import (
    BuildFeedback,
    ChangeRequest,
    ExecuteCommandRequest,
    FilePatch,
    GeneratedFile,
    IntentSpec,
    PatchPlan,
    PipelineEvent,
    PipelineOptions,
    PipelineResult,
    PipelineStage,
    RegisterProjectRequest,
    ValidateRequest,
)

__all__ = [
    # Diff models
    "DiffApplyResult",
    "DiffHunk",
    "DiffStats",
    "FileDiff",
    "FileSnapshot",
    "SkippedHunk",
    # Recovery models
    "RecoveredValue",
    "RecoveryMalformed",
    "RecoveryOk",
    "RecoveryTruncated",
    # Command models
    "CommandRequest",
    "CommandResult",
    "ContextGatheringResult",
    "ToolCall",
    # Pipeline models
    "BuildFeedback",
    "ChangeRequest",
    "ExecuteCommandRequest",
    "FilePatch",
    "GeneratedFile",
    "IntentSpec",
    "PatchPlan",
    "PipelineEvent",
    "PipelineOptions",
    "PipelineResult",
    "PipelineStage",
    "RegisterProjectRequest",
    "ValidateRequest",
]
