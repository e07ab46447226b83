"""Cooperative per-supplier rate limiting.

Each supplier has two independent windows: one for authentication calls
(login and token refresh, typically a few per hour) and one for data calls.
Callers never block: a call inside the window raises
``RateLimitedException`` with the seconds left, and the caller retries later.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from services.base import RateLimitedException

logger = logging.getLogger('dropshipping')

AUTH = 'auth'
DATA = 'data'
KINDS = (AUTH, DATA)

DEFAULT_AUTH_INTERVAL = 300.0
DEFAULT_DATA_INTERVAL = 1.1


@dataclass
class SupplierWindow:
    auth_next_allowed: float = 0.0
    data_next_allowed: float = 0.0
    auth_interval: Optional[float] = None
    data_interval: Optional[float] = None


class SupplierRateLimiter:
    def __init__(
        self,
        auth_interval: float = DEFAULT_AUTH_INTERVAL,
        data_interval: float = DEFAULT_DATA_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.auth_interval = float(auth_interval)
        self.data_interval = float(data_interval)
        self._clock = clock
        self._windows: Dict[str, SupplierWindow] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(supplier_id) -> str:
        return str(supplier_id)

    @staticmethod
    def _validate_kind(kind: str) -> None:
        if kind not in KINDS:
            raise ValueError(f"Unknown rate limit kind {kind!r}; expected one of {KINDS}")

    def _window(self, supplier_id) -> SupplierWindow:
        return self._windows.setdefault(self._key(supplier_id), SupplierWindow())

    def _interval(self, window: SupplierWindow, kind: str) -> float:
        override = window.auth_interval if kind == AUTH else window.data_interval
        if override is not None:
            return override
        return self.auth_interval if kind == AUTH else self.data_interval

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else float(now)

    def configure(self, supplier_id, auth_interval: Optional[float] = None, data_interval: Optional[float] = None) -> None:
        """Override the intervals for one supplier."""
        with self._lock:
            window = self._window(supplier_id)
            if auth_interval is not None:
                window.auth_interval = float(auth_interval)
            if data_interval is not None:
                window.data_interval = float(data_interval)

    def retry_after(self, supplier_id, kind: str, now: Optional[float] = None) -> float:
        """Seconds until the next ``kind`` call is allowed (0 when allowed now)."""
        self._validate_kind(kind)
        current = self._now(now)
        with self._lock:
            window = self._windows.get(self._key(supplier_id))
            if window is None:
                return 0.0
            next_allowed = window.auth_next_allowed if kind == AUTH else window.data_next_allowed
        return max(0.0, next_allowed - current)

    def check(self, supplier_id, kind: str, now: Optional[float] = None) -> None:
        wait = self.retry_after(supplier_id, kind, now)
        if wait > 0:
            raise RateLimitedException(supplier_id, kind, wait)

    def record(self, supplier_id, kind: str, now: Optional[float] = None) -> None:
        """Register a call made at ``now`` and advance the window."""
        self._validate_kind(kind)
        current = self._now(now)
        with self._lock:
            window = self._window(supplier_id)
            next_allowed = current + self._interval(window, kind)
            if kind == AUTH:
                window.auth_next_allowed = max(window.auth_next_allowed, next_allowed)
            else:
                window.data_next_allowed = max(window.data_next_allowed, next_allowed)

    def acquire(self, supplier_id, kind: str, now: Optional[float] = None) -> None:
        """Check and record in one step; raises ``RateLimitedException`` when deferred."""
        self._validate_kind(kind)
        current = self._now(now)
        with self._lock:
            window = self._window(supplier_id)
            next_allowed = window.auth_next_allowed if kind == AUTH else window.data_next_allowed
            if next_allowed > current:
                raise RateLimitedException(supplier_id, kind, next_allowed - current)
            if kind == AUTH:
                window.auth_next_allowed = current + self._interval(window, kind)
            else:
                window.data_next_allowed = current + self._interval(window, kind)

    def defer(self, supplier_id, kind: str, retry_after: float, now: Optional[float] = None) -> None:
        """Push the window out after the supplier itself throttled us."""
        self._validate_kind(kind)
        current = self._now(now)
        with self._lock:
            window = self._window(supplier_id)
            until = current + max(0.0, float(retry_after))
            if kind == AUTH:
                window.auth_next_allowed = max(window.auth_next_allowed, until)
            else:
                window.data_next_allowed = max(window.data_next_allowed, until)
        logger.warning("Supplier %s %s calls deferred for %.1fs", supplier_id, kind, retry_after)

    def state(self, supplier_id) -> SupplierWindow:
        with self._lock:
            return replace(self._windows.get(self._key(supplier_id), SupplierWindow()))

    def reset(self, supplier_id=None) -> None:
        with self._lock:
            if supplier_id is None:
                self._windows.clear()
            else:
                self._windows.pop(self._key(supplier_id), None)
