"""Sandboxed command execution models"""

from __future__ import annotations

from pydantic import Field

from .diff import CamelModel


class CommandRequest(CamelModel):
    """A read-only inspection command to run inside a project directory"""

    command: str
    args: list[str] = []
    working_directory: str = "."
    timeout: float | None = None  # seconds


class CommandResult(CamelModel):
    """Structured outcome of a sandboxed command, never an exception"""

    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int = -1
    execution_time_ms: int = 0


class ToolCall(CamelModel):
    """A lookup requested by the context gatherer"""

    tool: str
    args: list[str] = []
    working_directory: str = "."
    reason: str | None = None

    def to_request(self) -> CommandRequest:
        return CommandRequest(
            command=self.tool,
            args=self.args,
            working_directory=self.working_directory or ".",
        )


class ContextGatheringResult(CamelModel):
    """Stage 0 reply: whether more project information is needed"""

    needs_context: bool = False
    tool_calls: list[ToolCall] = Field(default_factory=list)
    context_summary: str | None = None
