from __future__ import annotations

import gc
from pathlib import Path

import pytest

from services.command_sandbox import SandboxLimits
from services.project_store import MAX_HISTORY_ENTRIES, ProjectStore


def test_register_requires_existing_directory(tmp_path: Path) -> None:
    store = ProjectStore()

    with pytest.raises(FileNotFoundError):
        store.register("ghost", tmp_path / "missing")

    state = store.register("demo", tmp_path)
    assert state.base_dir == tmp_path
    assert store.get("demo") is state


def test_reregister_keeps_history(tmp_path: Path) -> None:
    first = tmp_path / "one"
    second = tmp_path / "two"
    first.mkdir()
    second.mkdir()
    store = ProjectStore()
    store.register("demo", first)
    store.append_history("demo", "user", "hello")

    store.register("demo", second)

    assert store.get("demo").base_dir == second
    assert [entry["content"] for entry in store.history("demo")] == ["hello"]


def test_projects_under_root_are_picked_up(tmp_path: Path) -> None:
    (tmp_path / "alpha").mkdir()
    store = ProjectStore(projects_root=tmp_path)

    assert store.get("alpha").base_dir == tmp_path / "alpha"
    assert store.get("beta") is None
    assert store.get("..") is None
    assert store.get("alpha/../..") is None


def test_unknown_project_has_no_sandbox_or_history(tmp_path: Path) -> None:
    store = ProjectStore()

    assert store.sandbox_for("nope") is None
    store.append_history("nope", "user", "ignored")
    assert store.history("nope") == []


def test_sandbox_uses_store_limits(tmp_path: Path) -> None:
    limits = SandboxLimits(max_output_length=10)
    store = ProjectStore(limits=limits)
    store.register("demo", tmp_path)

    sandbox = store.sandbox_for("demo")

    assert sandbox is not None
    assert sandbox.limits is limits


def test_history_is_capped(tmp_path: Path) -> None:
    store = ProjectStore()
    store.register("demo", tmp_path)

    for n in range(MAX_HISTORY_ENTRIES + 5):
        store.append_history("demo", "user", f"message {n}", filesChanged=n)

    history = store.history("demo")
    assert len(history) == MAX_HISTORY_ENTRIES
    assert history[0]["content"] == "message 5"
    assert history[-1]["filesChanged"] == MAX_HISTORY_ENTRIES + 4
    assert "timestamp" in history[-1]


def test_lock_is_shared_per_project() -> None:
    store = ProjectStore()
    lock = store.lock_for("a")

    assert store.lock_for("a") is lock
    assert store.lock_for("b") is not lock


def test_unused_locks_are_released() -> None:
    store = ProjectStore()

    for n in range(50):
        store.lock_for(f"project-{n}")
    gc.collect()

    assert len(store._locks) == 0
