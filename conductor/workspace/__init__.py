from .session_cache import ChatMessage, SessionState, WorkspaceSessionCache, build_session_state

__all__ = ["ChatMessage", "SessionState", "WorkspaceSessionCache", "build_session_state"]
