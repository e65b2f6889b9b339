from __future__ import annotations

from pydantic import BaseModel, Field

from ..workspace.session_cache import SessionState


class WorkspaceSwitchRequest(BaseModel):
    current: SessionState | None = None
    target_workspace_id: str = Field(min_length=1)


class WorkspaceSessionList(BaseModel):
    workspace_ids: list[str]
    max_workspaces: int
