from __future__ import annotations

from collections import OrderedDict
from datetime import datetime
from typing import Iterable, Literal

from pydantic import BaseModel, Field, ValidationError

from ..core.config import SessionCacheSettings
from ..core.logging import get_logger
from ..orchestration.orchestrator import RunSnapshot
from ..orchestration.state import utcnow
from ..orchestration.tracker import AgentTrackingInfo

logger = get_logger(name=__name__)

SESSION_STATE_VERSION = 1


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    agent_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class SessionState(BaseModel):
    """Everything a client needs to put a workspace back on screen."""

    version: int = SESSION_STATE_VERSION
    workspace_id: str
    viewed_task_run_id: str | None = None
    active_task_run_id: str | None = None
    trackers: list[AgentTrackingInfo] = Field(default_factory=list)
    chat_messages: list[ChatMessage] = Field(default_factory=list)
    draft_prompt: str = ""
    captured_at: datetime = Field(default_factory=utcnow)


def build_session_state(
    workspace_id: str,
    *,
    snapshot: RunSnapshot | None = None,
    viewed_task_run_id: str | None = None,
    chat_messages: Iterable[ChatMessage] = (),
    draft_prompt: str = "",
) -> SessionState:
    active_task_run_id = None
    trackers: list[AgentTrackingInfo] = []
    if snapshot is not None:
        trackers = list(snapshot.trackers)
        if snapshot.is_active:
            active_task_run_id = snapshot.task_run.id
        viewed_task_run_id = viewed_task_run_id or snapshot.task_run.id
    return SessionState(
        workspace_id=workspace_id,
        viewed_task_run_id=viewed_task_run_id,
        active_task_run_id=active_task_run_id,
        trackers=trackers,
        chat_messages=list(chat_messages),
        draft_prompt=draft_prompt,
    )


class WorkspaceSessionCache:
    """Bounded LRU of serialized per-workspace session state.

    Entries are stored as JSON so a restored state never aliases a live one.
    Restores replace the state wholesale.
    """

    def __init__(self, settings: SessionCacheSettings | None = None) -> None:
        self._settings = settings or SessionCacheSettings()
        self._entries: OrderedDict[str, str] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, workspace_id: object) -> bool:
        return workspace_id in self._entries

    @property
    def max_workspaces(self) -> int:
        return self._settings.max_workspaces

    def workspace_ids(self) -> list[str]:
        """Cached workspace ids, least recently used first."""
        return list(self._entries)

    def capture(self, state: SessionState) -> None:
        stamped = state.model_copy(update={"captured_at": utcnow()})
        self._entries[state.workspace_id] = stamped.model_dump_json()
        self._entries.move_to_end(state.workspace_id)
        while len(self._entries) > self._settings.max_workspaces:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("session_state_evicted", workspace_id=evicted, reason="capacity")
        logger.debug("session_state_captured", workspace_id=state.workspace_id, trackers=len(state.trackers))

    def restore(self, workspace_id: str) -> SessionState | None:
        raw = self._entries.get(workspace_id)
        if raw is None:
            return None
        try:
            state = SessionState.model_validate_json(raw)
        except ValidationError as exc:
            self._entries.pop(workspace_id, None)
            logger.warning("session_state_unreadable", workspace_id=workspace_id, error=str(exc))
            return None
        if state.version != SESSION_STATE_VERSION:
            self._entries.pop(workspace_id, None)
            logger.info("session_state_version_dropped", workspace_id=workspace_id, version=state.version)
            return None
        self._entries.move_to_end(workspace_id)
        return state

    def switch(self, current: SessionState | None, target_workspace_id: str) -> SessionState:
        """Capture ``current`` and return the state to show for ``target_workspace_id``."""
        if current is not None:
            if current.workspace_id == target_workspace_id:
                return current
            self.capture(current)
        restored = self.restore(target_workspace_id)
        if restored is None:
            restored = SessionState(workspace_id=target_workspace_id)
        logger.info(
            "workspace_switched",
            source=current.workspace_id if current is not None else None,
            target=target_workspace_id,
        )
        return restored

    def evict(self, workspace_id: str) -> bool:
        removed = self._entries.pop(workspace_id, None) is not None
        if removed:
            logger.debug("session_state_evicted", workspace_id=workspace_id, reason="explicit")
        return removed

    def clear(self) -> None:
        self._entries.clear()


__all__ = [
    "ChatMessage",
    "SESSION_STATE_VERSION",
    "SessionState",
    "WorkspaceSessionCache",
    "build_session_state",
]
