"""
Content-Addressed Cache — fingerprint → previously computed result.

Entries carry their own TTL in seconds; ttl=0 means the entry never
expires. Reads evict expired entries lazily and a background sweep
reclaims the rest. Every operation completes without awaiting, so on a
single event loop no two writers ever interleave on a key.

Key families:
  transcript:<sha256 of audio bytes>    permanent
  evaluation:<call id>                  7 days
  customer:<customer id>:config         default TTL
"""
from __future__ import annotations

import asyncio
import json
import re
import time
import structlog
from dataclasses import dataclass
from typing import Any, Callable, Optional

from storage.content_store import content_hash

logger = structlog.get_logger()

NEVER_EXPIRE = 0


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float              # seconds, 0 = never expire

    def expired(self, now: float) -> bool:
        return self.ttl > NEVER_EXPIRE and now - self.created_at > self.ttl


def transcript_key(audio: bytes) -> str:
    return f"transcript:{content_hash(audio)}"


def evaluation_key(call_id: str) -> str:
    return f"evaluation:{call_id}"


class ContentCache:
    """In-process cache. Size caps or LRU can be layered on _entries later."""

    def __init__(
        self,
        default_ttl: float = 3600,
        sweep_interval_s: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ── Core operations ───────────────────────────────────────

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear_pattern(self, pattern: str) -> int:
        regex = re.compile(pattern)
        doomed = [k for k in self._entries if regex.search(k)]
        for key in doomed:
            del self._entries[key]
        logger.info("cache_pattern_cleared", pattern=pattern, count=len(doomed))
        return len(doomed)

    def clear_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info("cache_cleared", count=count)
        return count

    def sweep_expired(self) -> int:
        now = self._clock()
        doomed = [k for k, e in self._entries.items() if e.expired(now)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.info("cache_expired_swept", count=len(doomed))
        return len(doomed)

    def stats(self) -> dict[str, int]:
        now = self._clock()
        expired = sum(1 for e in self._entries.values() if e.expired(now))
        memory = 0
        for entry in self._entries.values():
            # rough: 2 bytes per serialized char
            memory += len(json.dumps(entry.value, default=str)) * 2
        return {
            "totalEntries": len(self._entries),
            "expiredEntries": expired,
            "activeEntries": len(self._entries) - expired,
            "memoryUsage": memory,
        }

    def __len__(self) -> int:
        return len(self._entries)

    # ── Background sweep ──────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="cache_sweeper")
        logger.info("cache_sweeper_started", interval=self.sweep_interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error("cache_sweep_error", error=str(e))
