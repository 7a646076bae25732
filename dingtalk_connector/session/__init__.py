"""Process-wide dedup cache and session table."""

from functools import lru_cache

from dingtalk_connector.session.dedup import MessageDeduplicator
from dingtalk_connector.session.manager import (
    Session,
    SessionManager,
    SessionResolution,
    is_new_session_command,
)
from dingtalk_connector.session.store import InMemoryStore, KeyValueStore


@lru_cache
def get_deduplicator() -> MessageDeduplicator:
    from dingtalk_connector.settings import get_settings

    s = get_settings()
    return MessageDeduplicator(
        ttl_ms=s.dedup_ttl_seconds * 1000,
        sweep_threshold=s.dedup_sweep_threshold,
    )


@lru_cache
def get_session_manager() -> SessionManager:
    return SessionManager()


__all__ = [
    "InMemoryStore",
    "KeyValueStore",
    "MessageDeduplicator",
    "Session",
    "SessionManager",
    "SessionResolution",
    "get_deduplicator",
    "get_session_manager",
    "is_new_session_command",
]
