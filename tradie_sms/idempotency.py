"""
Idempotency claims
------------------
Redis / Upstash SET-NX claims with a bounded in-process fallback.

Used to de-duplicate webhook deliveries and to serialize unique inserts
against remote tables that have no uniqueness constraint of their own.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Optional

import requests

from tradie_sms.config import settings
from tradie_sms.runtime import get_logger

try:
    import redis as _redis  # type: ignore
except ImportError:
    _redis = None

logger = get_logger("idempotency")


class IdempotencyStore:
    """Redis / Upstash idempotency with local fallback for claim de-duplication."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        redis_tls: bool = False,
        upstash_url: Optional[str] = None,
        upstash_token: Optional[str] = None,
        max_local: int = 10000,
    ):
        self.r = None
        self.upstash_url = upstash_url
        self.upstash_token = upstash_token
        self.rest = bool(upstash_url and upstash_token)
        if redis_url and _redis:
            if redis_tls and redis_url.startswith("redis://"):
                redis_url = "rediss://" + redis_url[len("redis://"):]
            try:
                self.r = _redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=2)
            except (ValueError, _redis.RedisError):
                logger.warning("Redis unavailable; falling back to local claims", exc_info=True)
        self._lock = threading.Lock()
        self._mem: "OrderedDict[str, Optional[float]]" = OrderedDict()
        self._max_mem_size = max_local

    @property
    def backend(self) -> str:
        if self.r:
            return "redis"
        if self.rest:
            return "upstash"
        return "memory"

    def claim(self, key: str, ttl: Optional[int] = None) -> bool:
        """Return True if this caller is the first to claim ``key``."""
        if not key:
            return True

        if self.r:
            try:
                ok = self.r.set(key, "1", nx=True, ex=ttl) if ttl else self.r.set(key, "1", nx=True)
                return bool(ok)
            except _redis.RedisError:
                logger.warning("Redis claim failed for %s; using local fallback", key, exc_info=True)

        if self.rest:
            command = ["SET", key, "1", "NX"]
            if ttl:
                command += ["EX", str(int(ttl))]
            try:
                resp = requests.post(
                    self.upstash_url,
                    headers={"Authorization": f"Bearer {self.upstash_token}"},
                    json=command,
                    timeout=5,
                )
                data = resp.json() if resp.ok else {}
                if resp.ok:
                    return data.get("result") == "OK"
            except (requests.RequestException, ValueError):
                logger.warning("Upstash claim failed for %s; using local fallback", key, exc_info=True)

        return self._claim_local(key, ttl)

    def release(self, key: str) -> None:
        if self.r:
            try:
                self.r.delete(key)
            except _redis.RedisError:
                logger.warning("Redis release failed for %s", key, exc_info=True)
        elif self.rest:
            try:
                requests.post(
                    self.upstash_url,
                    headers={"Authorization": f"Bearer {self.upstash_token}"},
                    json=["DEL", key],
                    timeout=5,
                )
            except requests.RequestException:
                logger.warning("Upstash release failed for %s", key, exc_info=True)
        with self._lock:
            self._mem.pop(key, None)

    def _claim_local(self, key: str, ttl: Optional[int]) -> bool:
        now = time.monotonic()
        with self._lock:
            expires = self._mem.get(key, -1.0)
            if expires != -1.0 and (expires is None or expires > now):
                return False
            # Prevent memory from growing unbounded: drop the oldest 20%.
            if len(self._mem) >= self._max_mem_size:
                for _ in range(self._max_mem_size // 5):
                    self._mem.popitem(last=False)
            self._mem[key] = (now + ttl) if ttl else None
            self._mem.move_to_end(key)
            return True

_STORE: Optional[IdempotencyStore] = None
_STORE_LOCK = threading.Lock()


def get_store() -> IdempotencyStore:
    global _STORE
    with _STORE_LOCK:
        if _STORE is None:
            s = settings()
            _STORE = IdempotencyStore(
                s.REDIS_URL,
                redis_tls=s.REDIS_TLS,
                upstash_url=s.UPSTASH_REST_URL,
                upstash_token=s.UPSTASH_REST_TOKEN,
            )
        return _STORE


def reset_store() -> None:
    global _STORE
    with _STORE_LOCK:
        _STORE = None
