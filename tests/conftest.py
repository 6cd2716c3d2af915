from __future__ import annotations

import json
from collections.abc import Callable

import pytest

from services.config_manager import ConfigManager
from services.response_recovery import END_MARKER, START_MARKER


def marked(value) -> str:
    """Reply text the way the stage prompts ask for it"""
    return f"Sure.\n{START_MARKER}\n{json.dumps(value)}\n{END_MARKER}\n"


class ScriptedLLM:
    """Fake LLM caller answering each stage key from a queue of replies"""

    def __init__(self, replies: dict[str, list[str | Exception]]):
        self.replies = {key: list(values) for key, values in replies.items()}
        self.calls: list[dict[str, str | None]] = []

    async def __call__(self, system_prompt: str, user_prompt: str, stage_name: str, stage_key: str | None = None) -> str:
        self.calls.append({
            "system": system_prompt,
            "user": user_prompt,
            "stage_name": stage_name,
            "stage_key": stage_key,
        })
        queue = self.replies.get(stage_key)
        if not queue:
            raise AssertionError(f"unexpected call for {stage_key}")
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def stage_keys(self) -> list[str | None]:
        return [call["stage_key"] for call in self.calls]


@pytest.fixture
def scripted_llm() -> Callable[..., ScriptedLLM]:
    return ScriptedLLM


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    """Isolated config directory and a fresh ConfigManager singleton"""
    directory = tmp_path / "config"
    monkeypatch.setenv("PATCHFLOW_CONFIG_DIR", str(directory))
    ConfigManager.reset_instance()
    yield directory
    ConfigManager.reset_instance()
