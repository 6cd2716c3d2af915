from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conftest import marked
from models.diff import FileSnapshot
from models.pipeline import BuildFeedback, GeneratedFile, PipelineEvent, PipelineOptions, PipelineStage
from services.command_sandbox import CommandSandbox
from services.pipeline_orchestrator import PipelineOrchestrator, PipelineStageError, apply_generated_files
from services.retry_policy import LLMAPIError

APP = "def main():\n    print('hi')\n"
FILES = [FileSnapshot(filename="app.py", content=APP)]
NO_CONTEXT = PipelineOptions(enable_context_gathering=False)

INTENT = {
    "feature": "Friendlier greeting",
    "requirements": ["print hello instead of hi"],
    "targetFiles": ["app.py", "README.md"],
    "needsChanges": True,
}
PLAN = {
    "patches": [
        {"filename": "app.py", "operation": "modify", "purpose": "greet"},
        {"filename": "README.md", "operation": "create", "purpose": "docs"},
        {"filename": "broken.py", "operation": "explode"},
    ],
    "implementationNotes": ["keep it small"],
}
GREETING_DIFF = "@@ -1,2 +1,2 @@\n def main():\n-    print('hi')\n+    print('hello')\n"
CODE = [
    {"filename": "app.py", "operation": "modify", "unifiedDiff": GREETING_DIFF},
    {"filename": "README.md", "operation": "create", "content": "# Demo"},
]


def full_script(**extra) -> dict:
    script = {
        "STAGE_1_INTENT_PARSER": [marked(INTENT)],
        "STAGE_2_PATCH_PLANNER": [marked(PLAN)],
        "STAGE_3_CODE_GENERATOR": [marked(CODE)],
    }
    script.update(extra)
    return script


def contents(files) -> dict[str, str]:
    return {snapshot.filename: snapshot.content for snapshot in files}


def test_no_op_request_returns_files_verbatim(scripted_llm) -> None:
    llm = scripted_llm({
        "STAGE_1_INTENT_PARSER": [marked({
            "feature": "Question",
            "requirements": [],
            "targetFiles": [],
            "needsChanges": False,
            "reason": "Just a question",
        })],
    })

    result = asyncio.run(PipelineOrchestrator(llm, options=NO_CONTEXT).run("what does main do?", FILES))

    assert result.needs_changes is False
    assert result.files == FILES
    assert result.diffs == []
    assert llm.stage_keys == ["STAGE_1_INTENT_PARSER"]
    assert result.stages_run == [PipelineStage.INTENT_PARSER]


def test_full_run_applies_generated_changes(scripted_llm) -> None:
    llm = scripted_llm(full_script())
    events: list[PipelineEvent] = []

    async def on_event(event: PipelineEvent) -> None:
        events.append(event)

    orchestrator = PipelineOrchestrator(llm, options=NO_CONTEXT, on_event=on_event)
    result = asyncio.run(orchestrator.run("say hello", FILES))

    assert contents(result.files) == {
        "app.py": "def main():\n    print('hello')\n",
        "README.md": "# Demo",
    }
    assert [diff.filename for diff in result.diffs] == ["app.py", "README.md"]
    assert result.skipped_hunks == []
    assert result.intent.target_files == ["app.py", "README.md"]
    assert [patch.filename for patch in result.patch_plan.patches] == ["app.py", "README.md"]
    assert result.patch_plan.implementation_notes == ["keep it small"]
    assert llm.stage_keys == ["STAGE_1_INTENT_PARSER", "STAGE_2_PATCH_PLANNER", "STAGE_3_CODE_GENERATOR"]
    assert events[0].type == "stage_started"
    assert events[-1].type == "pipeline_completed"
    assert events[-1].metadata["totalFiles"] == 2
    # Input snapshots are never mutated
    assert FILES[0].content == APP


def test_stage_calls_carry_display_name_and_model_key(scripted_llm) -> None:
    llm = scripted_llm(full_script())

    asyncio.run(PipelineOrchestrator(llm, options=NO_CONTEXT).run("say hello", FILES))

    assert llm.calls[0]["stage_name"] == "Stage 1: Intent Parser"
    assert "__START_JSON__" in llm.calls[0]["system"]
    assert "def main():" in llm.calls[2]["system"]


def test_skipped_hunks_are_surfaced(scripted_llm) -> None:
    stale = "@@ -1,2 +1,2 @@\n def start():\n-    print('hi')\n+    print('hello')\n"
    llm = scripted_llm(full_script(STAGE_3_CODE_GENERATOR=[marked([
        {"filename": "app.py", "operation": "modify", "unifiedDiff": stale},
    ])]))

    result = asyncio.run(PipelineOrchestrator(llm, options=NO_CONTEXT).run("say hello", FILES))

    assert result.files == FILES
    assert result.diffs == []
    assert len(result.skipped_hunks) == 1
    assert result.skipped_hunks[0].filename == "app.py"


def test_validator_runs_only_when_feedback_fails(scripted_llm) -> None:
    passing = scripted_llm(full_script())

    async def build_ok(files):
        return BuildFeedback(success=True)

    result = asyncio.run(PipelineOrchestrator(passing, options=NO_CONTEXT).run("say hello", FILES, build_ok))

    assert "STAGE_4_VALIDATOR" not in passing.stage_keys
    assert result.validation.success is True

    fix = "@@ -2,1 +2,1 @@\n-    print('hello')\n+    print('hello!')\n"
    failing = scripted_llm(full_script(STAGE_4_VALIDATOR=[marked([
        {"filename": "app.py", "operation": "modify", "unifiedDiff": fix},
    ])]))
    checked: list[dict[str, str]] = []

    async def build_fails(files):
        checked.append(contents(files))
        return BuildFeedback(success=False, diagnostics=["app.py:2: missing exclamation"])

    result = asyncio.run(PipelineOrchestrator(failing, options=NO_CONTEXT).run("say hello", FILES, build_fails))

    assert checked[0]["app.py"] == "def main():\n    print('hello')\n"
    assert failing.stage_keys[-1] == "STAGE_4_VALIDATOR"
    assert "missing exclamation" in failing.calls[-1]["system"]
    assert contents(result.files)["app.py"] == "def main():\n    print('hello!')\n"
    assert result.stages_run[-1] == PipelineStage.VALIDATOR
    assert [diff.filename for diff in result.diffs] == ["app.py", "README.md", "app.py"]


def test_llm_failure_names_the_stage(scripted_llm) -> None:
    llm = scripted_llm(full_script(STAGE_2_PATCH_PLANNER=[LLMAPIError(400, "bad request", "Anthropic")]))

    with pytest.raises(PipelineStageError) as exc_info:
        asyncio.run(PipelineOrchestrator(llm, options=NO_CONTEXT).run("say hello", FILES))

    assert exc_info.value.stage == PipelineStage.PATCH_PLANNER
    assert "Stage 2: Patch Planner" in str(exc_info.value)
    assert "STAGE_3_CODE_GENERATOR" not in llm.stage_keys


def test_unrecoverable_reply_fails_stage_with_typed_failure(scripted_llm) -> None:
    llm = scripted_llm({"STAGE_1_INTENT_PARSER": ["I'd rather not answer in JSON."]})

    with pytest.raises(PipelineStageError) as exc_info:
        asyncio.run(PipelineOrchestrator(llm, options=NO_CONTEXT).run("say hello", FILES))

    assert exc_info.value.stage == PipelineStage.INTENT_PARSER
    assert exc_info.value.failure.kind == "malformed"


def test_intent_missing_required_fields_fails(scripted_llm) -> None:
    llm = scripted_llm({"STAGE_1_INTENT_PARSER": [marked({"feature": "x", "needsChanges": True})]})

    with pytest.raises(PipelineStageError, match="invalid intent"):
        asyncio.run(PipelineOrchestrator(llm, options=NO_CONTEXT).run("say hello", FILES))


def test_plan_without_patches_fails(scripted_llm) -> None:
    llm = scripted_llm(full_script(STAGE_2_PATCH_PLANNER=[marked({"notes": "nothing"})]))

    with pytest.raises(PipelineStageError, match="no patches array") as exc_info:
        asyncio.run(PipelineOrchestrator(llm, options=NO_CONTEXT).run("say hello", FILES))

    assert exc_info.value.stage == PipelineStage.PATCH_PLANNER


def test_context_gathering_runs_sandboxed_lookups(scripted_llm, tmp_path: Path) -> None:
    (tmp_path / "app.py").write_text(APP, encoding="utf-8")
    llm = scripted_llm(full_script(STAGE_0_CONTEXT_GATHERER=[marked({
        "needsContext": True,
        "toolCalls": [
            {"tool": "cat", "args": ["app.py"], "reason": "read entry point"},
            {"tool": "rm", "args": ["app.py"], "reason": "not allowed"},
        ],
        "contextSummary": "Reading the entry point",
    })]))

    orchestrator = PipelineOrchestrator(llm, sandbox=CommandSandbox("demo", tmp_path))
    result = asyncio.run(orchestrator.run("say hello", FILES))

    assert llm.stage_keys[0] == "STAGE_0_CONTEXT_GATHERER"
    assert [r.success for r in result.context_results] == [True, False]
    assert result.context_gathered.context_summary == "Reading the entry point"
    intent_prompt = llm.calls[1]["user"]
    assert "CONTEXT GATHERED" in intent_prompt
    assert "## cat app.py" in intent_prompt
    assert "print('hi')" in intent_prompt
    assert (tmp_path / "app.py").exists()


def test_malformed_context_reply_degrades_to_no_context(scripted_llm) -> None:
    llm = scripted_llm(full_script(STAGE_0_CONTEXT_GATHERER=["no idea"]))

    result = asyncio.run(PipelineOrchestrator(llm).run("say hello", FILES))

    assert result.context_results == []
    assert "CONTEXT GATHERED" not in llm.calls[1]["user"]
    assert contents(result.files)["app.py"] == "def main():\n    print('hello')\n"


def test_tool_calls_are_limited(scripted_llm, tmp_path: Path) -> None:
    llm = scripted_llm(full_script(STAGE_0_CONTEXT_GATHERER=[marked({
        "needsContext": True,
        "toolCalls": [{"tool": "ls", "args": []} for _ in range(5)],
    })]))
    options = PipelineOptions(max_context_tool_calls=2)

    result = asyncio.run(PipelineOrchestrator(llm, CommandSandbox("demo", tmp_path), options).run("x", FILES))

    assert len(result.context_results) == 2


def test_run_validator_alone(scripted_llm) -> None:
    llm = scripted_llm({"STAGE_4_VALIDATOR": [marked({"files": [
        {"filename": "app.py", "operation": "modify", "unifiedDiff": "@@ -2 +2 @@\n-    print('hi')\n+    print('hi')  # ok\n"},
    ]})]})
    orchestrator = PipelineOrchestrator(llm)

    result = asyncio.run(orchestrator.run_validator("fix it", FILES, BuildFeedback(success=False, diagnostics=["E1"])))

    assert contents(result.files)["app.py"] == "def main():\n    print('hi')  # ok\n"
    assert result.stages_run == [PipelineStage.VALIDATOR]
    assert llm.stage_keys == ["STAGE_4_VALIDATOR"]


def test_apply_generated_files_operations() -> None:
    files = [
        FileSnapshot(filename="keep.txt", content="a\nb\nc"),
        FileSnapshot(filename="old.txt", content="bye"),
    ]
    generated = [
        GeneratedFile(filename="old.txt", operation="delete"),
        GeneratedFile(filename="keep.txt", operation="modify", content="a\nB\nc"),
        GeneratedFile(filename="new.txt", operation="modify", unified_diff="@@ -0,0 +1,2 @@\n+first\n+second\n"),
        GeneratedFile(filename="ghost.txt", operation="delete"),
        GeneratedFile(filename="empty.txt", operation="create"),
    ]

    update = apply_generated_files(files, generated)

    assert contents(update.files) == {"keep.txt": "a\nB\nc", "new.txt": "first\nsecond"}
    assert update.deleted_files == ["old.txt"]
    assert [diff.filename for diff in update.diffs] == ["old.txt", "keep.txt", "new.txt"]
    assert "-b" in update.diffs[1].hunks[0].lines


def test_truncated_code_reply_fails_instead_of_applying_part_of_it(scripted_llm) -> None:
    cut_off = '__START_JSON__\n[{"filename": "app.py", "content": "x = 1"}, {"filename": "README.md", "content": "y ='
    llm = scripted_llm(full_script(STAGE_3_CODE_GENERATOR=[cut_off]))

    with pytest.raises(PipelineStageError) as exc_info:
        asyncio.run(PipelineOrchestrator(llm, options=NO_CONTEXT).run("say hello", FILES))

    assert exc_info.value.stage == PipelineStage.CODE_GENERATOR
    assert exc_info.value.failure.kind == "truncated"


def test_intent_found_past_bracketed_prose(scripted_llm) -> None:
    reply = "Looking at items[0] and items[1] in app.py, here is the intent: " + json.dumps({
        "feature": "Question",
        "requirements": [],
        "targetFiles": [],
        "needsChanges": False,
    })
    llm = scripted_llm({"STAGE_1_INTENT_PARSER": [reply]})

    result = asyncio.run(PipelineOrchestrator(llm, options=NO_CONTEXT).run("what is items?", FILES))

    assert result.needs_changes is False
    assert result.intent.feature == "Question"
