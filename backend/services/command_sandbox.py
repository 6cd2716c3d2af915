"""
Command Sandbox - Run whitelisted, read-only inspection commands inside a project directory
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import time
from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel

from models.command import CommandRequest, CommandResult, ToolCall
from models.recovery import RecoveryOk
from services.response_recovery import recover_json

logger = logging.getLogger(__name__)

ALLOWED_COMMANDS = frozenset({
    "grep", "find", "tree", "cat", "head", "tail", "wc", "ls", "pwd",
    "file", "which", "dirname", "basename", "realpath",
})

DANGEROUS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("command chaining", re.compile(r"[;&|`$]")),
    ("directory traversal", re.compile(r"\.\.")),
    ("system directory", re.compile(r"/etc/|/proc/|/sys/")),
    ("absolute or home path", re.compile(r"^[/~]")),
    ("file operation", re.compile(r"rm\s|del\s|mv\s|cp\s")),
    ("mutating find action", re.compile(r"^-(delete|fprint0?|fprintf|fls|ok|okdir)$")),
    ("network tool", re.compile(r"wget|curl|nc\s|netcat")),
    ("code execution", re.compile(r"eval|exec|system")),
    ("redirection", re.compile(r"[<>]")),
)

# Options that make an otherwise read-only command write into the project
WRITING_OPTIONS: dict[str, re.Pattern[str]] = {
    "file": re.compile(r"^(-[a-zA-Z]*C|--compile)"),  # compiles <magic>.mgc
    "tree": re.compile(r"^(-[a-zA-Z]*[oR]|--output)"),  # -R writes 00Tree.html files
}

TRUNCATION_NOTE = "\n... (truncated)"
_READ_CHUNK = 4096


class SandboxLimits(BaseModel):
    max_output_length: int = 10000  # per stream
    timeout_seconds: float = 5.0
    max_args: int = 10


class SandboxViolation(ValueError):
    """A request rejected before any process is spawned"""


class CommandSandbox:
    """Execute read-only commands confined to one project's directory"""

    def __init__(self, project_id: str, base_dir: str | os.PathLike, limits: SandboxLimits | None = None):
        self.project_id = project_id
        self.base_dir = Path(os.path.abspath(base_dir))
        self.limits = limits or SandboxLimits()

    async def execute(self, request: CommandRequest) -> CommandResult:
        """Run a command; every failure comes back as a structured result"""
        started = time.monotonic()

        try:
            self.validate_command(request)
            working_dir = self.resolve_working_directory(request.working_directory)
        except SandboxViolation as e:
            logger.warning("[CommandSandbox] %s: rejected %s: %s", self.project_id, request.command, e)
            return self._failure(str(e), started)

        try:
            return await self._run(request, working_dir, started)
        except OSError as e:
            logger.warning("[CommandSandbox] %s: failed to spawn %s: %s", self.project_id, request.command, e)
            return self._failure(f"Command execution failed: {e}", started)

    # ========== Validation ==========

    def validate_command(self, request: CommandRequest) -> None:
        if request.command not in ALLOWED_COMMANDS:
            raise SandboxViolation(f"Command '{request.command}' is not allowed")

        if len(request.args) > self.limits.max_args:
            raise SandboxViolation(f"Too many arguments: {len(request.args)} > {self.limits.max_args}")

        for arg in request.args:
            for name, pattern in DANGEROUS_PATTERNS:
                if pattern.search(arg):
                    raise SandboxViolation(
                        f"Dangerous pattern detected in argument: {arg!r} ({name}: {pattern.pattern})"
                    )

        writing = WRITING_OPTIONS.get(request.command)
        if writing is not None:
            for arg in request.args:
                if writing.match(arg):
                    raise SandboxViolation(
                        f"Option {arg!r} writes files and is not allowed for '{request.command}'"
                    )

    def resolve_working_directory(self, working_directory: str) -> Path:
        """Confine the working directory to the project, lexically first"""
        candidate = Path(os.path.normpath(self.base_dir / (working_directory or ".")))
        if not candidate.is_relative_to(self.base_dir):
            raise SandboxViolation("Working directory outside project bounds")

        # Symlinks may still point elsewhere once resolved
        real_base = self.base_dir.resolve()
        real_candidate = candidate.resolve()
        if not real_candidate.is_relative_to(real_base):
            raise SandboxViolation("Working directory outside project bounds")
        if not real_candidate.is_dir():
            raise SandboxViolation("Working directory does not exist")
        return real_candidate

    # ========== Execution ==========

    async def _run(self, request: CommandRequest, working_dir: Path, started: float) -> CommandResult:
        timeout = self.limits.timeout_seconds
        if request.timeout:
            timeout = min(request.timeout, timeout)

        # Argument vector, never a shell string
        process = await asyncio.create_subprocess_exec(
            request.command,
            *request.args,
            cwd=str(working_dir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout = bytearray()
        stderr = bytearray()
        capped: list[str] = []
        timed_out = False

        async def drain(stream: asyncio.StreamReader, buffer: bytearray, name: str) -> None:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    return
                buffer.extend(chunk)
                if len(buffer) > self.limits.max_output_length:
                    capped.append(name)
                    _kill(process)
                    return

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    drain(process.stdout, stdout, "stdout"),
                    drain(process.stderr, stderr, "stderr"),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
        finally:
            if process.returncode is None:
                _kill(process)
                await process.wait()

        output = self._decode(stdout, "stdout" in capped)
        error = self._decode(stderr, "stderr" in capped)
        elapsed = _elapsed_ms(started)

        if timed_out:
            logger.warning("[CommandSandbox] %s: %s timed out after %ss", self.project_id, request.command, timeout)
            message = f"Command timed out after {timeout:g}s"
            return CommandResult(
                success=False,
                output=output,
                error=f"{message}\n{error}" if error else message,
                exit_code=-1,
                execution_time_ms=elapsed,
            )

        exit_code = process.returncode if process.returncode is not None else -1
        # Hitting the output ceiling terminates the process but keeps what was read
        success = exit_code == 0 or bool(capped)
        logger.debug(
            "[CommandSandbox] %s: %s exited %s in %dms", self.project_id, request.command, exit_code, elapsed
        )
        return CommandResult(
            success=success,
            output=output,
            error=error or None,
            exit_code=exit_code,
            execution_time_ms=elapsed,
        )

    def _decode(self, buffer: bytearray, capped: bool) -> str:
        text = bytes(buffer).decode("utf-8", errors="replace")
        if capped or len(text) > self.limits.max_output_length:
            return text[: self.limits.max_output_length] + TRUNCATION_NOTE
        return text.strip()

    @staticmethod
    def _failure(message: str, started: float) -> CommandResult:
        return CommandResult(
            success=False,
            output="",
            error=message,
            exit_code=-1,
            execution_time_ms=_elapsed_ms(started),
        )


def _kill(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


# ═══════════════════════════════════════════════════════════════════════════
# Module-level helper functions
# ═══════════════════════════════════════════════════════════════════════════


def parse_tool_call(response: str) -> CommandRequest | None:
    """Parse a single {"tool": ..., "args": [...]} call from model text"""
    recovered = recover_json(response, stage_name="Tool call", expect=dict)
    if not isinstance(recovered, RecoveryOk) or not isinstance(recovered.value, dict):
        return None

    data = recovered.value
    if not data.get("tool") or "args" not in data:
        return None

    args = data["args"] if isinstance(data["args"], list) else [data["args"]]
    return CommandRequest(
        command=str(data["tool"]),
        args=[str(arg) for arg in args],
        working_directory=data.get("workingDirectory") or ".",
        timeout=data.get("timeout"),
    )


def format_command_result(result: CommandResult, command: str) -> str:
    """Format a command result for inclusion in a prompt"""
    if not result.success:
        return f"Command '{command}' failed (exit code: {result.exit_code}):\n{result.error or ''}"
    return f"Command '{command}' completed successfully:\n{result.output}"


async def execute_tool_calls(
    sandbox: CommandSandbox,
    tool_calls: Sequence[ToolCall],
) -> tuple[list[CommandResult], str]:
    """Run lookups concurrently; results and context come back in issuance order"""
    results = await asyncio.gather(*(sandbox.execute(call.to_request()) for call in tool_calls))

    sections = []
    for call, result in zip(tool_calls, results):
        title = " ".join([call.tool, *call.args])
        if result.success:
            sections.append(f"## {title}\n{format_command_result(result, call.tool)}")
        else:
            sections.append(f"## {title} (FAILED)\n{result.error or ''}")

    return list(results), "\n\n".join(sections)
