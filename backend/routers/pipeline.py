"""Pipeline API endpoints"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from models.command import CommandRequest, CommandResult
from models.pipeline import (
    ChangeRequest,
    ExecuteCommandRequest,
    PipelineEvent,
    PipelineOptions,
    PipelineResult,
    ValidateRequest,
)
from services.config_manager import ConfigManager
from services.llm_service import LLMService
from services.pipeline_orchestrator import LLMCaller, PipelineOrchestrator, PipelineStageError
from services.project_store import ProjectStore

logger = logging.getLogger(__name__)

router = APIRouter()


def get_project_store(request: Request) -> ProjectStore:
    return request.app.state.project_store


def get_llm_caller() -> LLMCaller:
    """LLM caller bound to the current configuration"""
    config = ConfigManager.get_instance().get_config()
    return LLMService(config).call


def default_options() -> PipelineOptions:
    pipeline = ConfigManager.get_instance().get_config().get("pipeline", {})
    return PipelineOptions(
        enable_context_gathering=pipeline.get("enableContextGathering", True),
        max_context_tool_calls=pipeline.get("maxContextToolCalls", 3),
        max_prompt_file_chars=pipeline.get("maxPromptFileChars", 60000),
    )


def stage_error_detail(error: PipelineStageError) -> dict:
    detail = {"stage": error.stage.value, "stageName": error.stage.display_name, "message": error.message}
    if error.failure is not None:
        detail["failure"] = error.failure.kind
    return detail


def build_orchestrator(
    request: ChangeRequest | ValidateRequest,
    store: ProjectStore,
    call_llm: LLMCaller,
    on_event=None,
) -> PipelineOrchestrator:
    options = getattr(request, "options", None) or default_options()
    return PipelineOrchestrator(
        call_llm,
        sandbox=store.sandbox_for(request.project_id),
        options=options,
        on_event=on_event,
    )


def record_run(store: ProjectStore, request: ChangeRequest, result: PipelineResult) -> None:
    store.append_history(request.project_id, "user", request.prompt)
    if result.needs_changes:
        changed = [diff.filename for diff in result.diffs]
        summary = f"Updated {len(changed)} files: {', '.join(changed)}" if changed else "No files changed"
    else:
        summary = (result.intent.reason if result.intent else None) or "No changes needed"
    store.append_history(
        request.project_id,
        "assistant",
        summary,
        skippedHunks=len(result.skipped_hunks),
    )


@router.post("/run", response_model=PipelineResult)
async def run_pipeline(
    request: ChangeRequest,
    store: ProjectStore = Depends(get_project_store),
    call_llm: LLMCaller = Depends(get_llm_caller),
) -> PipelineResult:
    """Run the full pipeline and return the final file set"""
    orchestrator = build_orchestrator(request, store, call_llm)

    async with store.lock_for(request.project_id):
        try:
            result = await orchestrator.run(request.prompt, request.files)
        except PipelineStageError as e:
            logger.warning("[Pipeline] Run for %s failed: %s", request.project_id, e)
            raise HTTPException(status_code=502, detail=stage_error_detail(e))

    record_run(store, request, result)
    return result


@router.post("/stream")
async def stream_pipeline(
    request: ChangeRequest,
    store: ProjectStore = Depends(get_project_store),
    call_llm: LLMCaller = Depends(get_llm_caller),
):
    """Run the pipeline and stream progress events (SSE)"""
    queue: asyncio.Queue[PipelineEvent | None] = asyncio.Queue()

    async def on_event(event: PipelineEvent) -> None:
        await queue.put(event)

    orchestrator = build_orchestrator(request, store, call_llm, on_event)

    async def run() -> PipelineResult:
        try:
            async with store.lock_for(request.project_id):
                return await orchestrator.run(request.prompt, request.files)
        finally:
            await queue.put(None)

    async def event_generator():
        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield {"event": "message", "data": event.model_dump_json()}

            result = await task
            record_run(store, request, result)
            done = {"type": "done", "result": result.model_dump(mode="json", by_alias=True)}
            yield {"event": "message", "data": json.dumps(done)}

        except PipelineStageError as e:
            logger.warning("[Pipeline] Streamed run for %s failed: %s", request.project_id, e)
            error = {"type": "error", **stage_error_detail(e)}
            yield {"event": "message", "data": json.dumps(error)}
        finally:
            if not task.done():
                task.cancel()

    return EventSourceResponse(event_generator())


@router.post("/validate", response_model=PipelineResult)
async def validate_pipeline(
    request: ValidateRequest,
    store: ProjectStore = Depends(get_project_store),
    call_llm: LLMCaller = Depends(get_llm_caller),
) -> PipelineResult:
    """Run only the validator stage against external build feedback"""
    orchestrator = build_orchestrator(request, store, call_llm)

    async with store.lock_for(request.project_id):
        try:
            return await orchestrator.run_validator(request.prompt, request.files, request.feedback)
        except PipelineStageError as e:
            raise HTTPException(status_code=502, detail=stage_error_detail(e))


@router.post("/execute", response_model=CommandResult)
async def execute_command(
    request: ExecuteCommandRequest,
    store: ProjectStore = Depends(get_project_store),
) -> CommandResult:
    """Run one sandboxed inspection command inside a registered project"""
    sandbox = store.sandbox_for(request.project_id)
    if sandbox is None:
        raise HTTPException(status_code=404, detail=f"Unknown project: {request.project_id}")

    return await sandbox.execute(
        CommandRequest(
            command=request.command,
            args=request.args,
            working_directory=request.working_directory,
        )
    )
