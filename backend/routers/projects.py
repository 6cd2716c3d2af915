"""Project registration API endpoints"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from models.pipeline import RegisterProjectRequest
from routers.pipeline import get_project_store
from services.project_store import ProjectStore

router = APIRouter()


@router.post("")
async def register_project(
    request: RegisterProjectRequest,
    store: ProjectStore = Depends(get_project_store),
) -> dict[str, Any]:
    """Register a project directory for sandboxed lookups"""
    try:
        state = store.register(request.project_id, request.base_dir)
    except FileNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"projectId": state.project_id, "baseDir": str(state.base_dir)}


@router.get("/{project_id}/history")
async def get_history(
    project_id: str,
    store: ProjectStore = Depends(get_project_store),
) -> dict[str, Any]:
    """Conversation history recorded for a project"""
    if store.get(project_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown project: {project_id}")

    return {"projectId": project_id, "history": store.history(project_id)}
