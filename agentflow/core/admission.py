from __future__ import annotations

import math
import time
from collections import deque
from typing import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status

from . import metrics
from .config import AdmissionSettings, Settings, get_app_settings
from .errors import AdmissionRejected
from .logging import get_logger

logger = get_logger(name=__name__)

Clock = Callable[[], float]


class AdmissionGate:
    """Sliding window counter for a single caller.

    Timestamps are supplied by the caller; an entry whose age equals the window
    has expired. The buffer never holds more than ``limit`` entries because a
    full window rejects without recording.
    """

    def __init__(self, *, limit: int = 5, window_seconds: float = 10.0) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._timestamps: deque[float] = deque(maxlen=limit)

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def check_and_record(self, now: float) -> bool:
        self._evict(now)
        if len(self._timestamps) >= self.limit:
            return False
        self._timestamps.append(now)
        return True

    def retry_after(self, now: float) -> float:
        self._evict(now)
        if len(self._timestamps) < self.limit:
            return 0.0
        return max(0.0, self.window_seconds - (now - self._timestamps[0]))

    def pending(self, now: float) -> int:
        self._evict(now)
        return len(self._timestamps)

    def last_seen(self) -> float | None:
        return self._timestamps[-1] if self._timestamps else None


class AdmissionRegistry:
    """Per-caller admission gates sharing one clock."""

    def __init__(
        self,
        *,
        limit: int = 5,
        window_seconds: float = 10.0,
        max_tracked_callers: int = 10_000,
        clock: Clock | None = None,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_tracked_callers = max_tracked_callers
        self._clock: Clock = clock or time.monotonic
        self._gates: dict[str, AdmissionGate] = {}

    @classmethod
    def from_settings(cls, settings: AdmissionSettings, *, clock: Clock | None = None) -> "AdmissionRegistry":
        return cls(
            limit=settings.limit,
            window_seconds=settings.window_seconds,
            max_tracked_callers=settings.max_tracked_callers,
            clock=clock,
        )

    def admit(self, caller: str) -> tuple[bool, float]:
        """Return whether ``caller`` may submit now and, if not, seconds until it may."""
        now = self._clock()
        gate = self._gates.get(caller)
        if gate is None:
            if len(self._gates) >= self.max_tracked_callers:
                self._prune(now)
            gate = AdmissionGate(limit=self.limit, window_seconds=self.window_seconds)
            self._gates[caller] = gate
        if gate.check_and_record(now):
            return True, 0.0
        return False, gate.retry_after(now)

    def enforce(self, caller: str) -> None:
        allowed, retry_after = self.admit(caller)
        if not allowed:
            raise AdmissionRejected(retry_after=retry_after)

    def tracked_callers(self) -> int:
        return len(self._gates)

    def reset(self) -> None:
        self._gates.clear()

    def _prune(self, now: float) -> None:
        idle = [key for key, gate in self._gates.items() if gate.pending(now) == 0]
        for key in idle:
            del self._gates[key]
        overflow = len(self._gates) - self.max_tracked_callers + 1
        if overflow > 0:
            oldest = sorted(self._gates, key=lambda key: self._gates[key].last_seen() or 0.0)[:overflow]
            for key in oldest:
                del self._gates[key]


def _identifier_from_request(request: Request) -> str:
    session = request.headers.get("x-session-id")
    if session and session.strip():
        return f"session:{session.strip()}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    client = request.client
    if client and client.host:
        return client.host
    return "anonymous"


_registry: AdmissionRegistry | None = None


def get_admission_registry(settings: Settings) -> AdmissionRegistry:
    global _registry
    if _registry is None:
        _registry = AdmissionRegistry.from_settings(settings.admission)
    return _registry


def admission_dependency() -> Callable[[Request, Settings], Awaitable[None]]:
    async def _dependency(
        request: Request,
        settings: Settings = Depends(get_app_settings),
    ) -> None:
        if not settings.admission.enabled:
            return
        registry = get_admission_registry(settings)
        identifier = _identifier_from_request(request)
        try:
            registry.enforce(identifier)
            return
        except AdmissionRejected as exc:
            retry_after = exc.retry_after or registry.window_seconds
        metrics.increment_admission_rejection()
        headers = {"Retry-After": str(max(1, math.ceil(retry_after)))}
        logger.warning(
            "admission_rejected",
            identifier=identifier,
            retry_after=headers["Retry-After"],
            limit=registry.limit,
            window_seconds=registry.window_seconds,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Please wait a moment before sending another request.",
            headers=headers,
        )

    return _dependency


__all__ = ["AdmissionGate", "AdmissionRegistry", "admission_dependency", "get_admission_registry"]
