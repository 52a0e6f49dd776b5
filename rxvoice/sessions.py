"""
Process-wide registry of live sessions.

Every operation takes the registry lock; lookups fail closed for sessions that are
expired or already being torn down. Expiry callbacks run after the lock is released
so a callback can never deadlock against the registry.
"""

from __future__ import annotations

import asyncio
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .logging import RichLogger
from .settings import settings

ExpireCallback = Callable[[str], None]


@dataclass
class SessionRecord:
    id: str
    token: str
    created_at: float
    expires_at: float           # absolute lifetime (token TTL)
    last_activity: float        # idle timeout is measured from here
    state: str = "IDLE"
    closing: bool = False
    on_expire: Optional[ExpireCallback] = field(default=None, repr=False)

    def is_expired(self, now: float, idle_timeout_s: float) -> bool:
        return now >= self.expires_at or (now - self.last_activity) >= idle_timeout_s

    def public(self) -> dict:
        return {
            "sessionId": self.id,
            "state": self.state,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "lastActivity": self.last_activity,
        }


class SessionRegistry:
    def __init__(
        self,
        ttl_s: float = settings.session_ttl_ms / 1000.0,
        idle_timeout_s: float = settings.idle_timeout_s,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_s <= 0 or idle_timeout_s <= 0:
            raise ValueError("ttl_s and idle_timeout_s must be > 0")
        self.ttl_s = ttl_s
        self.idle_timeout_s = idle_timeout_s
        self._clock = clock
        self._lock = asyncio.Lock()
        self._by_token: Dict[str, SessionRecord] = {}

    def __len__(self) -> int:
        return len(self._by_token)

    @property
    def live_count(self) -> int:
        return sum(1 for r in self._by_token.values() if not r.closing)

    async def create(self, on_expire: Optional[ExpireCallback] = None) -> SessionRecord:
        now = self._clock()
        rec = SessionRecord(
            id=str(uuid.uuid4()),
            token=secrets.token_hex(32),
            created_at=now,
            expires_at=now + self.ttl_s,
            last_activity=now,
            on_expire=on_expire,
        )
        async with self._lock:
            self._by_token[rec.token] = rec
        return rec

    async def get(self, token: str) -> Optional[SessionRecord]:
        if not token:
            return None
        expired: Optional[SessionRecord] = None
        async with self._lock:
            rec = self._by_token.get(token)
            if rec is None or rec.closing:
                return None
            if rec.is_expired(self._clock(), self.idle_timeout_s):
                expired = self._detach(rec)
            else:
                return rec
        self._notify(expired, "expired")
        return None

    async def attach(self, token: str, on_expire: Optional[ExpireCallback] = None) -> Optional[SessionRecord]:
        """
        Re-attach a live session to a new connection; refreshes its activity clock.

        The previous owner's callback is called with "superseded" so the old
        connection shuts down instead of sharing the record.
        """
        rec = await self.get(token)
        if rec is None:
            return None
        async with self._lock:
            if rec.closing:
                return None
            previous, rec.on_expire = rec.on_expire, on_expire
            rec.last_activity = self._clock()
        if previous is not None and previous != on_expire:
            self._call(rec, previous, "superseded")
        return rec

    async def touch(self, token: str, state: Optional[str] = None) -> bool:
        async with self._lock:
            rec = self._by_token.get(token)
            if rec is None or rec.closing:
                return False
            rec.last_activity = self._clock()
            if state is not None:
                rec.state = state
            return True

    async def extend(self, token: str) -> Optional[SessionRecord]:
        async with self._lock:
            rec = self._by_token.get(token)
            if rec is None or rec.closing:
                return None
            now = self._clock()
            rec.expires_at = now + self.ttl_s
            rec.last_activity = now
            return rec

    async def expire(self, token: str, reason: str = "closed") -> bool:
        """Remove a session. Idempotent: returns False when it was already gone."""
        async with self._lock:
            rec = self._by_token.get(token)
            if rec is None:
                return False
            rec = self._detach(rec)
        self._notify(rec, reason)
        return True

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        expired: List[Tuple[SessionRecord, str]] = []
        async with self._lock:
            for rec in list(self._by_token.values()):
                if rec.closing:
                    continue
                if rec.is_expired(now, self.idle_timeout_s):
                    reason = "expired" if now >= rec.expires_at else "idle_timeout"
                    expired.append((self._detach(rec), reason))
        for rec, reason in expired:
            self._notify(rec, reason)
        print(RichLogger.line(RichLogger.sweep(len(expired), len(self._by_token))))
        return [rec.id for rec, _ in expired]

    async def sweep_forever(self, interval_s: float = settings.sweep_interval_s):
        while True:
            await asyncio.sleep(interval_s)
            await self.sweep()

    # caller holds the lock
    def _detach(self, rec: SessionRecord) -> SessionRecord:
        rec.closing = True
        rec.state = "CLOSED"
        self._by_token.pop(rec.token, None)
        return rec

    @staticmethod
    def _notify(rec: Optional[SessionRecord], reason: str):
        if rec is None or rec.on_expire is None:
            return
        cb, rec.on_expire = rec.on_expire, None
        SessionRegistry._call(rec, cb, reason)

    @staticmethod
    def _call(rec: SessionRecord, cb: ExpireCallback, reason: str):
        try:
            cb(reason)
        except Exception as e:
            print(RichLogger.line(RichLogger.error(f"session {rec.id[:8]} expire callback failed: {e!r}")))
