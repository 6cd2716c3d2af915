"""
Prompt builders for each pipeline stage
"""

from __future__ import annotations

from collections.abc import Sequence

from models.diff import FileSnapshot
from models.pipeline import IntentSpec, PatchPlan
from services.command_sandbox import ALLOWED_COMMANDS
from services.response_recovery import END_MARKER, START_MARKER

JSON_MARKER_RULES = f"""CRITICAL: Return ONLY valid JSON. Surround the JSON with EXACT markers:
{START_MARKER}
{{ ... your JSON ... }}
{END_MARKER}
Nothing else before/after the markers. No explanations, no markdown formatting."""


def render_files(files: Sequence[FileSnapshot], max_chars: int | None = None) -> str:
    """Render file contents as ---name--- blocks, optionally capped in total size"""
    blocks = []
    used = 0
    for snapshot in files:
        content = snapshot.content
        if max_chars is not None:
            remaining = max(max_chars - used, 0)
            if len(content) > remaining:
                content = content[:remaining] + "\n... (truncated)"
            used += len(content)
        blocks.append(f"---{snapshot.filename}---\n{content}")
    return "\n\n".join(blocks)


def render_file_list(files: Sequence[FileSnapshot]) -> str:
    return "\n".join(f"- {snapshot.filename}" for snapshot in files) or "(no files)"


def build_context_gatherer_prompt(
    request: str, files: Sequence[FileSnapshot], max_tool_calls: int = 3
) -> str:
    """Stage 0: decide whether the project must be inspected before planning"""
    tools = ", ".join(sorted(ALLOWED_COMMANDS))

    return f"""ROLE: Context Gatherer

TASK: Decide if additional project context is needed before processing the user request.
If the request is vague or depends on existing code you cannot see, request read-only tool calls.

USER REQUEST:
{request}

CURRENT FILES AVAILABLE:
{render_file_list(files)}

AVAILABLE TOOLS: {tools}
Arguments are passed literally (no shell). Paths must be relative to the project root.

OUTPUT FORMAT:
{START_MARKER}
{{
    "needsContext": true,
    "toolCalls": [
        {{
            "tool": "grep",
            "args": ["-rn", "pattern", "src"],
            "workingDirectory": ".",
            "reason": "Why this lookup is needed"
        }}
    ],
    "contextSummary": "Brief summary of what context is being gathered"
}}
{END_MARKER}

DECISION RULES:
- Specific, self-contained requests need no context: set needsContext to false
- Vague requests, or requests naming code not in the current files, need context
- Limit to {max_tool_calls} tool calls maximum

{JSON_MARKER_RULES}"""


def build_intent_parser_prompt(files: Sequence[FileSnapshot]) -> str:
    """Stage 1: turn the request into a structured intent"""
    return f"""ROLE: Intent Parser

TASK: Parse the user request into a structured specification and decide whether any file must change.

CURRENT FILES:
{render_file_list(files)}

OUTPUT FORMAT:
{START_MARKER}
{{
    "feature": "One-line summary of the requested change",
    "requirements": ["Concrete requirement", "..."],
    "targetFiles": ["path/to/file"],
    "dependencies": ["new package or module, if any"],
    "needsChanges": true,
    "reason": "Why changes are or are not needed"
}}
{END_MARKER}

RULES:
- Set needsChanges to false for questions, greetings or requests already satisfied by the current files
- targetFiles lists every file to create, modify or delete

{JSON_MARKER_RULES}"""


def build_patch_planner_prompt(
    intent: IntentSpec, files: Sequence[FileSnapshot], max_chars: int | None = None
) -> str:
    """Stage 2: propose an operation and hunk sketch for each target file"""
    return f"""ROLE: Patch Planner

INTENT:
{intent.model_dump_json(by_alias=True, indent=2)}

CURRENT FILES:
{render_files(files, max_chars)}

TASK: For each target file propose an operation (create, modify or delete), its purpose,
the changes to make, and a sketch of unified diff hunks against the current content.
Line numbers are 1-indexed. Hunk lines are prefixed with " " (context), "-" (removed) or "+" (added).

OUTPUT FORMAT:
{START_MARKER}
{{
    "patches": [
        {{
            "filename": "path/to/file",
            "operation": "modify",
            "purpose": "What this patch achieves",
            "changes": [
                {{"type": "add", "target": "imports", "description": "...", "location": "top of file"}}
            ],
            "diffHunks": [
                {{"oldStart": 1, "oldLines": 2, "newStart": 1, "newLines": 3, "lines": [" a", "+b", " c"]}}
            ]
        }}
    ],
    "implementationNotes": ["Overall approach"]
}}
{END_MARKER}

{JSON_MARKER_RULES}"""


def build_code_generator_prompt(
    plan: PatchPlan, intent: IntentSpec, files: Sequence[FileSnapshot], max_chars: int | None = None
) -> str:
    """Stage 3: compile the plan into concrete diffs against the actual files"""
    return f"""ROLE: Code Generator

INTENT:
{intent.model_dump_json(by_alias=True, indent=2)}

DETAILED PATCH PLAN:
{plan.model_dump_json(by_alias=True, indent=2)}

CURRENT FILES:
{render_files(files, max_chars)}

TASK: Generate unified diff patches that implement the plan against the CURRENT file content.
Context lines must be copied exactly from the current files. For new files, generate complete content.

OUTPUT FORMAT:
{START_MARKER}
[
    {{
        "filename": "path/to/file",
        "operation": "modify",
        "unifiedDiff": "@@ -1,2 +1,3 @@\\n a\\n+b\\n c"
    }},
    {{
        "filename": "path/to/newfile",
        "operation": "create",
        "content": "complete file content"
    }},
    {{
        "filename": "path/to/obsolete",
        "operation": "delete"
    }}
]
{END_MARKER}

RULES:
- Only change what the plan specifies; keep other code intact
- Never use placeholders such as "rest of file unchanged"

{JSON_MARKER_RULES}"""


def build_validator_prompt(
    files: Sequence[FileSnapshot], diagnostics: Sequence[str], max_chars: int | None = None
) -> str:
    """Stage 4: propose corrective diffs for reported build or lint failures"""
    errors = "\n".join(diagnostics) or "(no diagnostics provided)"

    return f"""ROLE: Code Validator

ERRORS FOUND:
{errors}

FILES:
{render_files(files, max_chars)}

TASK: Fix the errors that prevent the project from building. Generate unified diff patches
for surgical fixes rather than rewriting entire files.

OUTPUT FORMAT:
{START_MARKER}
[
    {{
        "filename": "EXACT_SAME_FILENAME",
        "operation": "modify",
        "unifiedDiff": "@@ -3,1 +3,1 @@\\n-broken line\\n+fixed line"
    }}
]
{END_MARKER}

RULES:
- Return exactly the filenames provided; do not create new files
- Fix only what the errors require

{JSON_MARKER_RULES}"""


def build_user_prompt(request: str, context: str | None = None) -> str:
    """User turn for every stage: the request plus any gathered context"""
    if context:
        return f"USER REQUEST:\n{request}\n\nCONTEXT GATHERED:\n{context}"
    return f"USER REQUEST:\n{request}"
