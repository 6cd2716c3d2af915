"""
Project Store - Per-project state keyed by project id
"""

from __future__ import annotations

import asyncio
import logging
import os
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from services.command_sandbox import CommandSandbox, SandboxLimits

logger = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 100


@dataclass
class ProjectState:
    project_id: str
    base_dir: Path
    history: list[dict[str, Any]] = field(default_factory=list)


class ProjectStore:
    """Explicit registry of project directories, conversation history and run locks"""

    def __init__(self, projects_root: str | os.PathLike | None = None, limits: SandboxLimits | None = None):
        self.projects_root = Path(projects_root) if projects_root else None
        self.limits = limits or SandboxLimits()
        self._projects: dict[str, ProjectState] = {}
        # Held only while a run is using it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def register(self, project_id: str, base_dir: str | os.PathLike) -> ProjectState:
        """Register (or re-point) a project at an existing directory"""
        path = Path(os.path.abspath(base_dir))
        if not path.is_dir():
            raise FileNotFoundError(f"Project directory does not exist: {path}")

        state = self._projects.get(project_id)
        if state is None:
            state = ProjectState(project_id=project_id, base_dir=path)
            self._projects[project_id] = state
            logger.info("[ProjectStore] Registered %s at %s", project_id, path)
        else:
            state.base_dir = path
        return state

    def get(self, project_id: str) -> ProjectState | None:
        state = self._projects.get(project_id)
        if state is not None:
            return state

        # Projects under the configured root are picked up on first use
        if self.projects_root is not None:
            candidate = self.projects_root / project_id
            if (
                project_id not in ("", ".", "..")
                and candidate.parent == self.projects_root
                and candidate.is_dir()
            ):
                return self.register(project_id, candidate)
        return None

    def sandbox_for(self, project_id: str) -> CommandSandbox | None:
        state = self.get(project_id)
        if state is None:
            return None
        return CommandSandbox(project_id, state.base_dir, self.limits)

    def lock_for(self, project_id: str) -> asyncio.Lock:
        """Lock used by the HTTP layer to serialize runs against one project"""
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def append_history(self, project_id: str, role: str, content: str, **extra: Any) -> None:
        state = self.get(project_id)
        if state is None:
            return
        state.history.append({
            "role": role,
            "content": content,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **extra,
        })
        del state.history[:-MAX_HISTORY_ENTRIES]

    def history(self, project_id: str) -> list[dict[str, Any]]:
        state = self.get(project_id)
        return list(state.history) if state else []
