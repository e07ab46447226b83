"""Supplier API token cache.

The cache is an injected component: the app factory builds one at start-up
and hands it to the supplier clients, tests pass their own. Access tokens are
reused until ``ACCESS_TOKEN_MARGIN`` seconds before their known expiry.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional

import redis

from config.cache_config import build_key, get_cache, invalidate_pattern

logger = logging.getLogger('dropshipping')

ACCESS_TOKEN_MARGIN = 10 * 60


@dataclass
class TokenData:
    access_token: str
    access_expires_at: float
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[float] = None
    updated_at: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> 'TokenData':
        return cls(
            access_token=data['access_token'],
            access_expires_at=float(data['access_expires_at']),
            refresh_token=data.get('refresh_token'),
            refresh_expires_at=(
                float(data['refresh_expires_at']) if data.get('refresh_expires_at') is not None else None
            ),
            updated_at=float(data.get('updated_at') or 0.0),
        )


class TokenCache(ABC):
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    # ===== Storage primitives =====

    @abstractmethod
    def load(self, supplier_id) -> Optional[TokenData]:
        """Return the stored tokens for ``supplier_id``, if any."""

    @abstractmethod
    def save(self, supplier_id, data: TokenData) -> None:
        """Persist ``data`` for ``supplier_id``."""

    @abstractmethod
    def invalidate(self, supplier_id) -> None:
        """Forget the tokens of one supplier."""

    @abstractmethod
    def clear(self) -> None:
        """Forget every cached token."""

    # ===== Token lookups =====

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else float(now)

    def get_access_token(self, supplier_id, now: Optional[float] = None) -> Optional[str]:
        data = self.load(supplier_id)
        if data is None:
            return None
        if data.access_expires_at > self._now(now) + ACCESS_TOKEN_MARGIN:
            return data.access_token
        return None

    def get_refresh_token(self, supplier_id, now: Optional[float] = None) -> Optional[str]:
        data = self.load(supplier_id)
        if data is None or not data.refresh_token:
            return None
        if data.refresh_expires_at is None or data.refresh_expires_at > self._now(now):
            return data.refresh_token
        return None

    def store(
        self,
        supplier_id,
        access_token: str,
        access_expires_at: float,
        refresh_token: Optional[str] = None,
        refresh_expires_at: Optional[float] = None,
        now: Optional[float] = None,
    ) -> TokenData:
        data = TokenData(
            access_token=access_token,
            access_expires_at=float(access_expires_at),
            refresh_token=refresh_token,
            refresh_expires_at=float(refresh_expires_at) if refresh_expires_at is not None else None,
            updated_at=self._now(now),
        )
        self.save(supplier_id, data)
        logger.info("Stored API tokens for supplier %s", supplier_id)
        return data


class InMemoryTokenCache(TokenCache):
    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._tokens: Dict[str, TokenData] = {}
        self._lock = threading.Lock()

    def load(self, supplier_id) -> Optional[TokenData]:
        with self._lock:
            return self._tokens.get(str(supplier_id))

    def save(self, supplier_id, data: TokenData) -> None:
        with self._lock:
            self._tokens[str(supplier_id)] = data

    def invalidate(self, supplier_id) -> None:
        with self._lock:
            self._tokens.pop(str(supplier_id), None)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()


class RedisTokenCache(TokenCache):
    """Token cache shared by every worker through Redis (JSON values)."""

    def __init__(self, client: redis.Redis, prefix: str = 'supplier_tokens', clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.client = client
        self.prefix = prefix

    def _key(self, supplier_id) -> str:
        return build_key(self.prefix, supplier_id)

    def load(self, supplier_id) -> Optional[TokenData]:
        raw = self.client.get(self._key(supplier_id))
        if raw is None:
            return None
        try:
            return TokenData.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable token entry for supplier %s", supplier_id)
            self.invalidate(supplier_id)
            return None

    def save(self, supplier_id, data: TokenData) -> None:
        expires_at = max(data.access_expires_at, data.refresh_expires_at or 0.0)
        ttl = int(expires_at - self._clock())
        payload = json.dumps(asdict(data))
        if ttl > 0:
            self.client.setex(self._key(supplier_id), ttl, payload)
        else:
            self.client.delete(self._key(supplier_id))

    def invalidate(self, supplier_id) -> None:
        self.client.delete(self._key(supplier_id))

    def clear(self) -> None:
        invalidate_pattern(build_key(self.prefix, '*'), client=self.client)


def build_token_cache(redis_url: Optional[str] = None) -> TokenCache:
    """Redis-backed cache when ``redis_url`` is reachable, in-memory otherwise."""
    if redis_url:
        cache = get_cache(redis_url)
        if cache.is_enabled():
            return RedisTokenCache(cache.get_client())
        logger.warning("Redis unavailable; supplier tokens will be cached in memory")
    return InMemoryTokenCache()
