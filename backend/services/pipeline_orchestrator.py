"""
Pipeline Orchestrator - Sequence the LLM stages that turn a change request into file edits

    Stage 0  context gatherer   (optional, sandboxed lookups)
    Stage 1  intent parser      (may end the run: needsChanges=false)
    Stage 2  patch planner
    Stage 3  code generator     (diffs applied with the diff codec)
    Stage 4  validator          (only when build feedback reports failure)

Each stage makes exactly one call through the injected LLM caller, which owns
retry, backoff and model fallback. Stages run strictly in sequence.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from models.command import CommandResult, ContextGatheringResult
from models.diff import FileDiff, FileSnapshot, SkippedHunk
from models.pipeline import (
    BuildFeedback,
    FilePatch,
    GeneratedFile,
    IntentSpec,
    PatchPlan,
    PipelineEvent,
    PipelineOptions,
    PipelineResult,
    PipelineStage,
)
from models.recovery import RecoveredValue, RecoveryMalformed, RecoveryOk
from services import prompts
from services.command_sandbox import CommandSandbox, execute_tool_calls
from services.diff_codec import (
    apply_diff_hunks,
    generate_diff,
    get_diff_statistics,
    parse_unified_diff,
)
from services.response_recovery import recover_json

logger = logging.getLogger(__name__)

# (system_prompt, user_prompt, stage_name, stage_model_key) -> response text
LLMCaller = Callable[[str, str, str, str | None], Awaitable[str]]
FeedbackProvider = Callable[[list[FileSnapshot]], Awaitable[BuildFeedback]]
EventCallback = Callable[[PipelineEvent], Awaitable[None]]


class PipelineStageError(Exception):
    """A stage failed; the run stops and no later stage executes"""

    def __init__(self, stage: PipelineStage, message: str, failure: RecoveredValue | None = None):
        super().__init__(f"{stage.display_name} failed: {message}")
        self.stage = stage
        self.message = message
        self.failure = failure


@dataclass
class FileSetUpdate:
    """Result of applying generated files to a file set"""

    files: list[FileSnapshot]
    diffs: list[FileDiff] = field(default_factory=list)
    deleted_files: list[str] = field(default_factory=list)
    skipped_hunks: list[SkippedHunk] = field(default_factory=list)


class PipelineOrchestrator:
    """Run the staged change pipeline against one project's files"""

    def __init__(
        self,
        call_llm: LLMCaller,
        sandbox: CommandSandbox | None = None,
        options: PipelineOptions | None = None,
        on_event: EventCallback | None = None,
    ):
        self._call_llm = call_llm
        self.sandbox = sandbox
        self.options = options or PipelineOptions()
        self._on_event = on_event

    async def run(
        self,
        prompt: str,
        files: Sequence[FileSnapshot],
        feedback_provider: FeedbackProvider | None = None,
    ) -> PipelineResult:
        """Run stages 0-4 and return the final file set"""
        started = time.monotonic()
        input_files = [snapshot.model_copy() for snapshot in files]
        stages_run: list[PipelineStage] = []

        context_gathered = None
        context_results: list[CommandResult] = []
        context = None
        if self.options.enable_context_gathering:
            context_gathered, context_results, context = await self._gather_context(prompt, input_files)
            stages_run.append(PipelineStage.CONTEXT_GATHERER)

        user_prompt = prompts.build_user_prompt(prompt, context)

        intent = await self._parse_intent(user_prompt, input_files)
        stages_run.append(PipelineStage.INTENT_PARSER)

        if not intent.needs_changes:
            logger.info("[Pipeline] No changes needed: %s", intent.reason or intent.feature)
            await self._emit(
                "early_exit",
                PipelineStage.INTENT_PARSER,
                intent.reason or "No changes needed",
            )
            return PipelineResult(
                files=input_files,
                intent=intent,
                context_gathered=context_gathered,
                context_results=context_results,
                stages_run=stages_run,
                needs_changes=False,
            )

        plan = await self._plan_patches(user_prompt, intent, input_files)
        stages_run.append(PipelineStage.PATCH_PLANNER)

        generated = await self._generate_code(user_prompt, plan, intent, input_files)
        stages_run.append(PipelineStage.CODE_GENERATOR)

        update = apply_generated_files(input_files, generated)

        validation = None
        if feedback_provider is not None:
            validation = await feedback_provider(update.files)
            if not validation.success:
                corrective = await self._validate(user_prompt, update.files, validation)
                stages_run.append(PipelineStage.VALIDATOR)
                update = _merge_updates(update, apply_generated_files(update.files, corrective))

        stats = get_diff_statistics(update.diffs)
        logger.info(
            "[Pipeline] Completed in %.1fs: %d files, +%d/-%d lines, %d hunks, %d skipped",
            time.monotonic() - started,
            stats["totalFiles"],
            stats["totalAdditions"],
            stats["totalDeletions"],
            stats["totalHunks"],
            len(update.skipped_hunks),
        )
        await self._emit("pipeline_completed", None, "Pipeline completed", **stats)

        return PipelineResult(
            files=update.files,
            diffs=update.diffs,
            deleted_files=update.deleted_files,
            skipped_hunks=update.skipped_hunks,
            intent=intent,
            patch_plan=plan,
            context_gathered=context_gathered,
            context_results=context_results,
            validation=validation,
            stages_run=stages_run,
        )

    async def run_validator(
        self,
        prompt: str,
        files: Sequence[FileSnapshot],
        feedback: BuildFeedback,
    ) -> PipelineResult:
        """Run only the validator stage against externally produced feedback"""
        input_files = [snapshot.model_copy() for snapshot in files]
        if feedback.success:
            return PipelineResult(files=input_files, validation=feedback, needs_changes=False)

        corrective = await self._validate(prompts.build_user_prompt(prompt), input_files, feedback)
        update = apply_generated_files(input_files, corrective)
        await self._emit("pipeline_completed", None, "Validation completed", **get_diff_statistics(update.diffs))
        return PipelineResult(
            files=update.files,
            diffs=update.diffs,
            deleted_files=update.deleted_files,
            skipped_hunks=update.skipped_hunks,
            validation=feedback,
            stages_run=[PipelineStage.VALIDATOR],
        )

    # ========== Stages ==========

    async def _gather_context(
        self, prompt: str, files: list[FileSnapshot]
    ) -> tuple[ContextGatheringResult, list[CommandResult], str | None]:
        stage = PipelineStage.CONTEXT_GATHERER
        recovered = await self._call_stage(
            stage,
            prompts.build_context_gatherer_prompt(prompt, files, self.options.max_context_tool_calls),
            prompts.build_user_prompt(prompt),
            expect=dict,
        )

        gathered = ContextGatheringResult()
        if isinstance(recovered, RecoveryOk) and isinstance(recovered.value, dict):
            try:
                gathered = ContextGatheringResult.model_validate(recovered.value)
            except ValidationError as e:
                logger.warning("[Pipeline] Context gatherer reply is invalid, continuing without context: %s", e)
        else:
            # A bad reply here only costs context
            logger.warning("[Pipeline] Context gatherer reply unusable, continuing without context")

        results: list[CommandResult] = []
        context = None
        tool_calls = gathered.tool_calls[: self.options.max_context_tool_calls]
        if gathered.needs_context and tool_calls:
            if self.sandbox is None:
                logger.warning("[Pipeline] No project sandbox available, skipping %d tool calls", len(tool_calls))
            else:
                results, context = await execute_tool_calls(self.sandbox, tool_calls)
                logger.info(
                    "[Pipeline] Gathered context with %d tool calls (%d failed)",
                    len(results), sum(1 for result in results if not result.success),
                )

        await self._emit(
            "stage_completed",
            stage,
            gathered.context_summary or "Context gathering complete",
            needsContext=gathered.needs_context,
            toolCalls=len(results),
        )
        return gathered, results, context

    async def _parse_intent(self, user_prompt: str, files: list[FileSnapshot]) -> IntentSpec:
        stage = PipelineStage.INTENT_PARSER
        recovered = await self._call_stage(
            stage, prompts.build_intent_parser_prompt(files), user_prompt, expect=dict
        )
        value = self._require_value(stage, recovered, dict)

        try:
            intent = IntentSpec.model_validate(value)
        except ValidationError as e:
            raise PipelineStageError(stage, f"invalid intent: {e}") from e

        await self._emit(
            "stage_completed",
            stage,
            intent.feature,
            needsChanges=intent.needs_changes,
            targetFiles=intent.target_files,
        )
        return intent

    async def _plan_patches(self, user_prompt: str, intent: IntentSpec, files: list[FileSnapshot]) -> PatchPlan:
        stage = PipelineStage.PATCH_PLANNER
        recovered = await self._call_stage(
            stage,
            prompts.build_patch_planner_prompt(intent, files, self.options.max_prompt_file_chars),
            user_prompt,
            payload_key="patches",
            expect=dict,
        )
        value = self._require_value(stage, recovered, dict)

        raw_patches = value.get("patches")
        if not isinstance(raw_patches, list):
            raise PipelineStageError(stage, "plan has no patches array")

        patches = []
        for raw in raw_patches:
            try:
                patches.append(FilePatch.model_validate(raw))
            except ValidationError as e:
                logger.warning("[Pipeline] Skipping invalid patch: %s", e)

        notes = value.get("implementationNotes") or []
        plan = PatchPlan(
            patches=patches,
            implementation_notes=[str(note) for note in notes] if isinstance(notes, list) else [str(notes)],
        )
        await self._emit(
            "stage_completed",
            stage,
            f"Planned {len(patches)} patches",
            files=[patch.filename for patch in patches],
        )
        return plan

    async def _generate_code(
        self, user_prompt: str, plan: PatchPlan, intent: IntentSpec, files: list[FileSnapshot]
    ) -> list[GeneratedFile]:
        stage = PipelineStage.CODE_GENERATOR
        recovered = await self._call_stage(
            stage,
            prompts.build_code_generator_prompt(plan, intent, files, self.options.max_prompt_file_chars),
            user_prompt,
            expect=(list, dict),
        )
        generated = self._generated_files(stage, recovered)
        await self._emit("stage_completed", stage, f"Generated {len(generated)} file changes")
        return generated

    async def _validate(
        self, user_prompt: str, files: list[FileSnapshot], feedback: BuildFeedback
    ) -> list[GeneratedFile]:
        stage = PipelineStage.VALIDATOR
        logger.info("[Pipeline] Build feedback reported %d diagnostics", len(feedback.diagnostics))
        recovered = await self._call_stage(
            stage,
            prompts.build_validator_prompt(files, feedback.diagnostics, self.options.max_prompt_file_chars),
            user_prompt,
            expect=(list, dict),
        )
        corrective = self._generated_files(stage, recovered)
        await self._emit("stage_completed", stage, f"Proposed {len(corrective)} corrective changes")
        return corrective

    # ========== Helpers ==========

    async def _call_stage(
        self,
        stage: PipelineStage,
        system_prompt: str,
        user_prompt: str,
        payload_key: str | None = None,
        expect: type | tuple[type, ...] | None = None,
    ) -> RecoveredValue:
        """One LLM call for the stage, decoded with response recovery"""
        await self._emit("stage_started", stage, stage.display_name)
        started = time.monotonic()
        try:
            text = await self._call_llm(system_prompt, user_prompt, stage.display_name, stage.value)
        except Exception as e:
            logger.error("[Pipeline] %s: LLM call failed: %s", stage.display_name, e)
            raise PipelineStageError(stage, str(e)) from e

        logger.info(
            "[Pipeline] %s: %d chars in %.1fs", stage.display_name, len(text), time.monotonic() - started
        )
        return recover_json(text, payload_key=payload_key, stage_name=stage.display_name, expect=expect)

    @staticmethod
    def _require_value(stage: PipelineStage, recovered: RecoveredValue, expected: type | tuple[type, ...]) -> Any:
        if not isinstance(recovered, RecoveryOk):
            raise PipelineStageError(stage, recovered.reason, failure=recovered)
        if not isinstance(recovered.value, expected):
            reason = f"unexpected JSON {type(recovered.value).__name__} in reply"
            raise PipelineStageError(stage, reason, failure=RecoveryMalformed(reason=reason))
        return recovered.value

    def _generated_files(self, stage: PipelineStage, recovered: RecoveredValue) -> list[GeneratedFile]:
        value = self._require_value(stage, recovered, (list, dict))
        if isinstance(value, dict):
            # A {"files": [...]} wrapper or a single bare entry
            value = value["files"] if isinstance(value.get("files"), list) else [value]

        generated = []
        for raw in value:
            try:
                generated.append(GeneratedFile.model_validate(raw))
            except ValidationError as e:
                logger.warning("[Pipeline] %s: skipping invalid file entry: %s", stage.display_name, e)
        return generated

    async def _emit(self, event_type: str, stage: PipelineStage | None, message: str, **metadata) -> None:
        if self._on_event is None:
            return
        await self._on_event(PipelineEvent(type=event_type, stage=stage, message=message, metadata=metadata))


# ═══════════════════════════════════════════════════════════════════════════
# Module-level helper functions
# ═══════════════════════════════════════════════════════════════════════════


def apply_generated_files(files: Sequence[FileSnapshot], generated: Sequence[GeneratedFile]) -> FileSetUpdate:
    """Apply create/modify/delete entries to a file set; mismatched hunks are reported, not fatal"""
    contents = {snapshot.filename: snapshot.content for snapshot in files}
    update = FileSetUpdate(files=[])

    for entry in generated:
        filename = entry.filename
        existing = contents.get(filename)

        if entry.operation == "delete":
            if existing is None:
                logger.warning("[Pipeline] Cannot delete missing file %s", filename)
                continue
            del contents[filename]
            update.deleted_files.append(filename)
            update.diffs.append(generate_diff(existing, "", filename))
            continue

        hunks = parse_unified_diff(entry.unified_diff) if entry.unified_diff else list(entry.diff_hunks)

        if entry.content is not None and (existing is None or not hunks):
            # Full content: reconcile into a diff against the current file
            update.diffs.append(generate_diff(existing or "", entry.content, filename))
            contents[filename] = entry.content
            continue

        if not hunks:
            logger.warning("[Pipeline] No content or diff for %s (%s), skipping", filename, entry.operation)
            continue

        if existing is None:
            # A diff against a file that does not exist yet: create it from the added lines
            created = "\n".join(line[1:] for hunk in hunks for line in hunk.lines if line.startswith("+"))
            logger.info("[Pipeline] Creating %s from diff content (%d chars)", filename, len(created))
            contents[filename] = created
            update.diffs.append(generate_diff("", created, filename))
            continue

        applied = apply_diff_hunks(existing, hunks, filename)
        update.skipped_hunks.extend(applied.skipped)
        if applied.applied:
            contents[filename] = applied.content
            update.diffs.append(generate_diff(existing, applied.content, filename))

    update.files = [FileSnapshot(filename=name, content=content) for name, content in contents.items()]
    return update


def _merge_updates(first: FileSetUpdate, second: FileSetUpdate) -> FileSetUpdate:
    return FileSetUpdate(
        files=second.files,
        diffs=first.diffs + second.diffs,
        deleted_files=first.deleted_files + second.deleted_files,
        skipped_hunks=first.skipped_hunks + second.skipped_hunks,
    )
