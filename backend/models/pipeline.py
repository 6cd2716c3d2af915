"""Pipeline stage data models"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel

from .command import CommandResult, ContextGatheringResult
from .diff import CamelModel, DiffHunk, FileDiff, FileSnapshot, SkippedHunk


class PipelineStage(str, Enum):
    """Pipeline stages, valued by their model configuration key"""

    CONTEXT_GATHERER = "STAGE_0_CONTEXT_GATHERER"
    INTENT_PARSER = "STAGE_1_INTENT_PARSER"
    PATCH_PLANNER = "STAGE_2_PATCH_PLANNER"
    CODE_GENERATOR = "STAGE_3_CODE_GENERATOR"
    VALIDATOR = "STAGE_4_VALIDATOR"

    @property
    def display_name(self) -> str:
        return _STAGE_NAMES[self]


_STAGE_NAMES = {
    PipelineStage.CONTEXT_GATHERER: "Stage 0: Context Gatherer",
    PipelineStage.INTENT_PARSER: "Stage 1: Intent Parser",
    PipelineStage.PATCH_PLANNER: "Stage 2: Patch Planner",
    PipelineStage.CODE_GENERATOR: "Stage 3: Code Generator",
    PipelineStage.VALIDATOR: "Stage 4: Validator",
}


FileOperation = Literal["create", "modify", "delete"]


class IntentSpec(CamelModel):
    """Stage 1 output"""

    feature: str
    requirements: list[str]
    target_files: list[str]
    dependencies: list[str] = []
    needs_changes: bool
    reason: str | None = None


class PatchChange(CamelModel):
    type: str = "replace"  # add, replace, remove
    target: str = ""
    description: str = ""
    location: str | None = None


class FilePatch(CamelModel):
    """Planned change for one target file"""

    filename: str
    operation: FileOperation
    purpose: str = ""
    changes: list[PatchChange] = []
    diff_hunks: list[DiffHunk] = []
    unified_diff: str | None = None


class PatchPlan(CamelModel):
    """Stage 2 output"""

    patches: list[FilePatch]
    implementation_notes: list[str] = []


class GeneratedFile(CamelModel):
    """Stage 3/4 output for one file: full content or a unified diff"""

    filename: str
    operation: FileOperation | None = None
    content: str | None = None
    unified_diff: str | None = None
    diff_hunks: list[DiffHunk] = []


class BuildFeedback(BaseModel):
    """External compile/lint signal consumed by the validator stage"""

    success: bool
    diagnostics: list[str] = []


class PipelineEvent(BaseModel):
    """Progress notification emitted while a pipeline runs"""

    type: str  # stage_started, stage_completed, early_exit, pipeline_completed
    stage: PipelineStage | None = None
    message: str = ""
    metadata: dict[str, Any] = {}


class PipelineOptions(CamelModel):
    enable_context_gathering: bool = True
    max_context_tool_calls: int = 3
    max_prompt_file_chars: int = 60000


class PipelineResult(CamelModel):
    """Final file set plus everything the run produced along the way"""

    files: list[FileSnapshot]
    diffs: list[FileDiff] = []
    deleted_files: list[str] = []
    skipped_hunks: list[SkippedHunk] = []
    intent: IntentSpec | None = None
    patch_plan: PatchPlan | None = None
    context_gathered: ContextGatheringResult | None = None
    context_results: list[CommandResult] = []
    validation: BuildFeedback | None = None
    stages_run: list[PipelineStage] = []
    needs_changes: bool = True


# ========== HTTP request models ==========


class ChangeRequest(CamelModel):
    """Request to run the pipeline against a project's files"""

    project_id: str
    prompt: str
    files: list[FileSnapshot]
    options: PipelineOptions | None = None  # server defaults when omitted


class ValidateRequest(CamelModel):
    """Request to run only the validator stage with external feedback"""

    project_id: str
    prompt: str
    files: list[FileSnapshot]
    feedback: BuildFeedback


class RegisterProjectRequest(CamelModel):
    project_id: str
    base_dir: str


class ExecuteCommandRequest(CamelModel):
    project_id: str
    command: str
    args: list[str] = []
    working_directory: str = "."
