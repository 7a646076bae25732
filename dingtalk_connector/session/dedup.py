"""Inbound message de-duplication cache.

Stream mode may redeliver a callback (reconnects, missed ACKs).  Every
message id is recorded with its first-seen time; entries older than the TTL
are evicted lazily, only when the cache grows to the sweep threshold.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from loguru import logger

from dingtalk_connector.session.store import InMemoryStore, KeyValueStore

MESSAGE_DEDUP_TTL_MS = 5 * 60 * 1000
DEDUP_SWEEP_THRESHOLD = 100


class MessageDeduplicator:
    def __init__(
        self,
        store: KeyValueStore[int] | None = None,
        ttl_ms: int = MESSAGE_DEDUP_TTL_MS,
        sweep_threshold: int = DEDUP_SWEEP_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store: KeyValueStore[int] = store if store is not None else InMemoryStore()
        self._ttl_ms = ttl_ms
        self._sweep_threshold = sweep_threshold
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def is_processed(self, message_id: str) -> bool:
        if not message_id:
            return False
        return message_id in self._store

    def mark_processed(self, message_id: str) -> None:
        if not message_id:
            return
        self._store.set(message_id, self._now_ms())
        if len(self._store) >= self._sweep_threshold:
            self.sweep()

    def sweep(self) -> int:
        """Drop entries older than the TTL; returns how many were removed."""
        cutoff = self._now_ms() - self._ttl_ms
        removed = self._store.sweep(lambda _mid, seen_at: seen_at < cutoff)
        if removed:
            logger.debug(f"[DingTalk] dedup sweep removed {removed} entries")
        return removed

    def __len__(self) -> int:
        return len(self._store)
