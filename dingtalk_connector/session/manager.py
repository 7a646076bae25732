"""Per-sender conversation sessions with timeout-based rotation."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from dingtalk_connector.session.store import InMemoryStore, KeyValueStore

SESSION_KEY_PREFIX = "dingtalk-connector"

NEW_SESSION_COMMANDS: tuple[str, ...] = ("/new", "/reset", "/clear", "新会话", "重新开始", "清空对话")


def is_new_session_command(text: str, commands: tuple[str, ...] = NEW_SESSION_COMMANDS) -> bool:
    """Whole-message match, ignoring surrounding whitespace and case."""
    trimmed = (text or "").strip().lower()
    return any(trimmed == cmd.lower() for cmd in commands)


@dataclass
class Session:
    """One sender's live conversation key."""

    owner_key: str  # sender identity
    session_key: str
    last_activity_ms: int
    last_rotation_ms: int = 0


@dataclass(frozen=True, slots=True)
class SessionResolution:
    session_key: str
    is_new: bool


class SessionManager:
    """
    Maps a sender to a session key.

    First contact gets a stable key derived from the sender id alone and is
    *not* reported as new.  Rotations (forced, or after ``timeout_ms`` of
    inactivity) embed a strictly increasing millisecond stamp so that two
    rotations never produce the same key.
    """

    def __init__(
        self,
        store: KeyValueStore[Session] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store: KeyValueStore[Session] = store if store is not None else InMemoryStore()
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get(self, sender_id: str) -> Session | None:
        return self._store.get(sender_id)

    def _rotate(self, sender_id: str, now: int, existing: Session | None) -> Session:
        stamp = now
        if existing is not None and stamp <= existing.last_rotation_ms:
            stamp = existing.last_rotation_ms + 1
        session = Session(
            owner_key=sender_id,
            session_key=f"{SESSION_KEY_PREFIX}:{sender_id}:{stamp}",
            last_activity_ms=now,
            last_rotation_ms=stamp,
        )
        self._store.set(sender_id, session)
        return session

    def resolve(self, sender_id: str, force_new: bool, timeout_ms: int) -> SessionResolution:
        if not sender_id:
            raise ValueError("sender_id is required")

        now = self._now_ms()
        existing = self._store.get(sender_id)

        if force_new:
            session = self._rotate(sender_id, now, existing)
            logger.info(f"[DingTalk][Session] new session requested by {sender_id}")
            return SessionResolution(session.session_key, True)

        if existing is not None:
            elapsed = now - existing.last_activity_ms
            if elapsed > timeout_ms:
                session = self._rotate(sender_id, now, existing)
                logger.info(
                    f"[DingTalk][Session] session idle {round(elapsed / 60000)}min, "
                    f"rotated for {sender_id}"
                )
                return SessionResolution(session.session_key, True)
            existing.last_activity_ms = now
            self._store.set(sender_id, existing)
            return SessionResolution(existing.session_key, False)

        session = Session(
            owner_key=sender_id,
            session_key=f"{SESSION_KEY_PREFIX}:{sender_id}",
            last_activity_ms=now,
        )
        self._store.set(sender_id, session)
        logger.info(f"[DingTalk][Session] first session for {sender_id}")
        return SessionResolution(session.session_key, False)
