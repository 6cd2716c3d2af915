from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from models.command import CommandRequest, CommandResult, ToolCall
from services.command_sandbox import (
    CommandSandbox,
    SandboxLimits,
    execute_tool_calls,
    format_command_result,
    parse_tool_call,
)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("def main():\n    return 'hello'\n", encoding="utf-8")
    (root / "README.md").write_text("# Demo project\n", encoding="utf-8")
    return root


@pytest.fixture
def no_spawn(monkeypatch):
    async def forbidden(*args, **kwargs):
        raise AssertionError("process must not be spawned")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", forbidden)


def run(sandbox: CommandSandbox, command: str, *args: str, **kwargs) -> CommandResult:
    return asyncio.run(sandbox.execute(CommandRequest(command=command, args=list(args), **kwargs)))


def test_disallowed_command_fails_closed(project: Path, no_spawn) -> None:
    result = run(CommandSandbox("demo", project), "rm", "-rf", "src")

    assert result.success is False
    assert "not allowed" in result.error
    assert result.exit_code == -1
    assert (project / "src" / "app.py").exists()


def test_too_many_arguments(project: Path, no_spawn) -> None:
    result = run(CommandSandbox("demo", project), "ls", *[f"f{n}" for n in range(11)])

    assert result.success is False
    assert result.error == "Too many arguments: 11 > 10"


@pytest.mark.parametrize("arg", [
    "foo; cat secrets",
    "a|b",
    "$(whoami)",
    "../outside",
    "/etc/passwd",
    "~/notes",
    "out > file",
    "curl",
    "-delete",
])
def test_dangerous_arguments_are_rejected(project: Path, no_spawn, arg: str) -> None:
    result = run(CommandSandbox("demo", project), "find", ".", arg)

    assert result.success is False
    assert "Dangerous pattern detected in argument" in result.error
    assert repr(arg) in result.error


def test_working_directory_outside_project_is_rejected(project: Path, no_spawn) -> None:
    sandbox = CommandSandbox("demo", project)

    result = run(sandbox, "ls", working_directory="../")

    assert result.success is False
    assert result.error == "Working directory outside project bounds"


def test_missing_working_directory_is_rejected(project: Path, no_spawn) -> None:
    result = run(CommandSandbox("demo", project), "ls", working_directory="does-not-exist")

    assert result.success is False
    assert result.error == "Working directory does not exist"


def test_symlink_escape_is_rejected(project: Path, tmp_path: Path, no_spawn) -> None:
    outside = tmp_path / "elsewhere"
    outside.mkdir()
    (project / "link").symlink_to(outside, target_is_directory=True)

    result = run(CommandSandbox("demo", project), "ls", working_directory="link")

    assert result.success is False
    assert result.error == "Working directory outside project bounds"


def test_cat_reads_file(project: Path) -> None:
    result = run(CommandSandbox("demo", project), "cat", "README.md")

    assert result.success is True
    assert result.exit_code == 0
    assert result.output == "# Demo project"
    assert result.error is None


def test_runs_in_requested_subdirectory(project: Path) -> None:
    result = run(CommandSandbox("demo", project), "ls", working_directory="src")

    assert result.success is True
    assert result.output == "app.py"


def test_grep_searches_project_tree(project: Path) -> None:
    result = run(CommandSandbox("demo", project), "grep", "-rn", "hello", "src")

    assert result.success is True
    assert "src/app.py:2:" in result.output


def test_nonzero_exit_is_reported(project: Path) -> None:
    result = run(CommandSandbox("demo", project), "grep", "-r", "no-such-text", "src")

    assert result.success is False
    assert result.exit_code == 1


def test_timeout_kills_process(project: Path) -> None:
    sandbox = CommandSandbox("demo", project, SandboxLimits(timeout_seconds=0.5))

    result = run(sandbox, "tail", "-f", "README.md")

    assert result.success is False
    assert result.exit_code == -1
    assert "timed out after 0.5s" in result.error
    assert result.execution_time_ms < 5000


def test_output_is_capped(project: Path) -> None:
    (project / "big.txt").write_text("x" * 50000, encoding="utf-8")
    sandbox = CommandSandbox("demo", project, SandboxLimits(max_output_length=1000))

    result = run(sandbox, "cat", "big.txt")

    assert result.success is True
    assert result.output.endswith("\n... (truncated)")
    assert len(result.output) == 1000 + len("\n... (truncated)")


def test_parse_tool_call() -> None:
    request = parse_tool_call('I will run {"tool": "grep", "args": ["-rn", "useState", "src"], "workingDirectory": "src"}')

    assert request == CommandRequest(command="grep", args=["-rn", "useState", "src"], working_directory="src")
    assert parse_tool_call('{"args": ["x"]}') is None
    assert parse_tool_call("nothing structured here") is None


def test_format_command_result() -> None:
    ok = CommandResult(success=True, output="a.py\nb.py", exit_code=0)
    failed = CommandResult(success=False, error="boom", exit_code=2)

    assert format_command_result(ok, "ls") == "Command 'ls' completed successfully:\na.py\nb.py"
    assert format_command_result(failed, "grep") == "Command 'grep' failed (exit code: 2):\nboom"


def test_tool_calls_keep_issuance_order(project: Path) -> None:
    sandbox = CommandSandbox("demo", project)
    calls = [
        ToolCall(tool="cat", args=["README.md"]),
        ToolCall(tool="wget", args=["http://example.com"]),
        ToolCall(tool="ls", args=[], working_directory="src"),
    ]

    results, context = asyncio.run(execute_tool_calls(sandbox, calls))

    assert [result.success for result in results] == [True, False, True]
    sections = context.split("\n\n")
    assert sections[0].startswith("## cat README.md\nCommand 'cat' completed successfully:")
    assert sections[1].startswith("## wget http://example.com (FAILED)\nCommand 'wget' is not allowed")
    assert sections[2] == "## ls\nCommand 'ls' completed successfully:\napp.py"


@pytest.mark.parametrize("command, args", [
    ("file", ["-C", "-m", "magic"]),
    ("file", ["--compile", "-m", "magic"]),
    ("tree", ["-o", "listing.txt"]),
    ("tree", ["-R", "-H", "."]),
])
def test_options_that_write_files_are_rejected(project: Path, no_spawn, command: str, args: list[str]) -> None:
    result = run(CommandSandbox("demo", project), command, *args)

    assert result.success is False
    assert "writes files" in result.error
    assert sorted(path.name for path in project.iterdir()) == ["README.md", "src"]


def test_read_only_options_pass_validation(project: Path) -> None:
    sandbox = CommandSandbox("demo", project)

    sandbox.validate_command(CommandRequest(command="file", args=["-b", "--mime-type", "README.md"]))
    sandbox.validate_command(CommandRequest(command="tree", args=["-L", "2", "--noreport"]))
