"""
Refreshable credential cache shared by every fetch of a scan.

The cache holds one opaque token (for NSE this is the cookie header) with a
time-to-live.  Callers go through :meth:`SessionCache.acquire`, which serves
the cached token while it is fresh and otherwise refreshes it through a
credential provider.  Concurrent callers that find the token stale share a
single in-flight refresh, so a burst of fetches never turns into a burst of
logins.  Sustained failures across calls trigger a hard reset that also
drops any fallback state the owner registered (cookie jars and the like).
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from .config import ScreenerSettings, get_logger
from .errors import CredentialError, TransientUpstreamError, ValidationError

logger = get_logger("session_cache")


class CredentialProvider(Protocol):
    async def acquire(self) -> str: ...


class SessionState(str, Enum):
    EMPTY = "empty"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass
class SessionToken:
    ttl_seconds: float
    value: Optional[str] = None
    acquired_at: Optional[float] = None
    consecutive_failures: int = 0


class SessionCache:
    def __init__(
        self,
        provider: CredentialProvider,
        ttl_seconds: float = ScreenerSettings.session_ttl_seconds,
        max_retries: int = ScreenerSettings.session_max_retries,
        failure_ceiling: int = ScreenerSettings.session_failure_ceiling,
        backoff_base_secs: float = ScreenerSettings.session_backoff_base_secs,
        on_hard_reset: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValidationError("ttl_seconds must be positive")
        if max_retries < 1:
            raise ValidationError("max_retries must be at least 1")
        if failure_ceiling < 1:
            raise ValidationError("failure_ceiling must be at least 1")
        self._provider = provider
        self._token = SessionToken(ttl_seconds=ttl_seconds)
        self.max_retries = max_retries
        self.failure_ceiling = failure_ceiling
        self.backoff_base_secs = backoff_base_secs
        self._on_hard_reset = on_hard_reset
        self._clock = clock
        self._sleep = sleep
        self._inflight: Optional[asyncio.Future] = None
        self.refresh_count = 0
        self.hard_reset_count = 0

    @classmethod
    def from_settings(
        cls,
        provider: CredentialProvider,
        settings: ScreenerSettings,
        on_hard_reset: Optional[Callable[[], None]] = None,
    ) -> "SessionCache":
        return cls(
            provider,
            ttl_seconds=settings.session_ttl_seconds,
            max_retries=settings.session_max_retries,
            failure_ceiling=settings.session_failure_ceiling,
            backoff_base_secs=settings.session_backoff_base_secs,
            on_hard_reset=on_hard_reset,
        )

    @property
    def token(self) -> SessionToken:
        return self._token

    @property
    def state(self) -> SessionState:
        tok = self._token
        if tok.value is None:
            return SessionState.EMPTY
        if tok.acquired_at is None or self._clock() - tok.acquired_at >= tok.ttl_seconds:
            return SessionState.EXPIRED
        return SessionState.ACTIVE

    async def acquire(self) -> str:
        """Return a fresh token, refreshing it (once, for all waiters) if needed."""
        if self.state is SessionState.ACTIVE:
            age = self._clock() - self._token.acquired_at
            logger.debug("Using cached session token (%.0f sec old)", age)
            return self._token.value
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())
            self._inflight.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    def invalidate(self) -> None:
        """Force the next :meth:`acquire` to refresh, e.g. after an HTTP 401."""
        if self._token.value is not None:
            logger.info("Session token invalidated")
        self._token.acquired_at = None

    def hard_reset(self) -> None:
        tok = self._token
        logger.warning(
            "Session failure ceiling reached (%s consecutive failures); hard reset",
            tok.consecutive_failures,
        )
        tok.value = None
        tok.acquired_at = None
        tok.consecutive_failures = 0
        self.hard_reset_count += 1
        if self._on_hard_reset is not None:
            self._on_hard_reset()

    def _clear_inflight(self, fut: asyncio.Future) -> None:
        self._inflight = None
        if not fut.cancelled():
            # mark retrieved; every waiter re-raises it through the shield
            fut.exception()

    async def _refresh(self) -> str:
        tok = self._token
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.max_retries + 1):
            self.refresh_count += 1
            try:
                value = await self._provider.acquire()
                if not value:
                    raise TransientUpstreamError("credential provider returned an empty token")
            except Exception as exc:
                last_exc = exc
                tok.consecutive_failures += 1
                if tok.consecutive_failures >= self.failure_ceiling:
                    self.hard_reset()
                if attempt == self.max_retries:
                    break
                delay = self.backoff_base_secs * (2 ** (attempt - 1))
                logger.warning(
                    "Credential acquisition failed on attempt %s: %s (backoff %.2fs)",
                    attempt, exc, delay,
                )
                await self._sleep(delay)
                continue

            tok.value = value
            tok.acquired_at = self._clock()
            tok.consecutive_failures = 0
            logger.info("Acquired new session token")
            return value

        raise CredentialError(
            f"failed to acquire session credential after {self.max_retries} attempts: {last_exc}"
        ) from last_exc
