"""
Concurrent universe scanner.

For every universe entry the scanner fetches the raw series, resamples it
into candles, computes the requested indicators and applies a predicate.
Units run on a :class:`~screener.pool.BoundedTaskPool`, so at most
``concurrency`` symbols are being fetched or evaluated at any moment.
Quote screens (futures against spot) skip the resampling stage and hand the
fetched :class:`~screener.ohlc_fetcher.DerivativeQuote` to the predicate.

A unit that fails (upstream error, timeout, malformed series, too little
history) is logged, counted in the :class:`ScanReport` and contributes no
result; its siblings carry on.  Only invalid scan parameters and an
unobtainable session credential fail the scan as a whole.
"""
from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from pydantic import BaseModel, Field, StrictInt, field_validator
from pydantic import ValidationError as PydanticValidationError

from .config import ScreenerSettings, get_logger
from .errors import CredentialError, DataIntegrityError, InsufficientHistoryError, ValidationError
from .indicators import IndicatorSpec, compute_indicators
from .ohlc_fetcher import DerivativeQuote
from .pool import BoundedTaskPool
from .resampler import empty_frame, resample
from .rules import Predicate, Screen, ScreenContext, ScreenResult, rank_results
from .universe import UniverseEntry

logger = get_logger("scanner")

Fetch = Callable[[str], Awaitable[pd.DataFrame]]
QuoteFetch = Callable[[str], Awaitable[Optional[DerivativeQuote]]]


class UnitState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    FETCH_FAILED = "fetch_failed"
    FETCHED = "fetched"
    RESAMPLING = "resampling"
    RESAMPLE_FAILED = "resample_failed"
    RESAMPLED = "resampled"
    EVALUATING = "evaluating"
    MATCHED = "matched"
    UNMATCHED = "unmatched"


TERMINAL_STATES = frozenset(
    {UnitState.FETCH_FAILED, UnitState.RESAMPLE_FAILED, UnitState.MATCHED, UnitState.UNMATCHED}
)


@dataclass
class ScanUnit:
    entry: UniverseEntry
    state: UnitState = UnitState.PENDING
    error: Optional[str] = None

    def advance(self, state: UnitState) -> None:
        logger.debug("%s: %s -> %s", self.entry.symbol_id, self.state.value, state.value)
        self.state = state

    def fail(self, state: UnitState, reason: str) -> None:
        self.error = reason
        self.advance(state)
        logger.warning("Skipping %s (%s): %s", self.entry.symbol_id, state.value, reason)


@dataclass
class ScanReport:
    results: List[ScreenResult] = field(default_factory=list)
    outcomes: Counter = field(default_factory=Counter)
    failures: Dict[str, str] = field(default_factory=dict)
    duration_secs: float = 0.0

    @property
    def evaluated(self) -> int:
        return sum(self.outcomes.values())

    @property
    def failed(self) -> int:
        return self.outcomes[UnitState.FETCH_FAILED] + self.outcomes[UnitState.RESAMPLE_FAILED]


class ScanParams(BaseModel):
    width: StrictInt = Field(..., gt=0)
    indicator_specs: List[Any] = Field(default_factory=list)
    concurrency: StrictInt = Field(..., gt=0)
    fetch_timeout: Optional[float] = Field(None, gt=0)
    deadline: Optional[float] = Field(None, gt=0)

    @field_validator("indicator_specs")
    @classmethod
    def _check_specs(cls, v: List[Any]) -> List[Any]:
        for spec in v:
            if not isinstance(spec, IndicatorSpec):
                raise ValueError(f"not an indicator spec: {spec!r}")
        return v


def validate_scan_params(**kwargs: Any) -> ScanParams:
    try:
        return ScanParams(**kwargs)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid scan parameters: {e}") from e


UnitHandler = Callable[[ScanUnit, Optional[float]], Awaitable[Optional[ScreenResult]]]


class ConcurrentScanner:
    def __init__(
        self,
        concurrency: int = ScreenerSettings.scan_concurrency,
        fetch_timeout: Optional[float] = ScreenerSettings.fetch_timeout_secs,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.concurrency = concurrency
        self.fetch_timeout = fetch_timeout
        self._clock = clock
        self.last_pool: Optional[BoundedTaskPool] = None

    @classmethod
    def from_settings(cls, settings: ScreenerSettings) -> "ConcurrentScanner":
        return cls(concurrency=settings.scan_concurrency, fetch_timeout=settings.fetch_timeout_secs)

    async def scan(
        self,
        universe: Iterable[UniverseEntry],
        fetch: Fetch,
        width: int,
        indicator_specs: Sequence[IndicatorSpec],
        predicate: Predicate,
        concurrency: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> List[ScreenResult]:
        """Matching results in completion order."""
        report = await self.run(universe, fetch, width, indicator_specs, predicate, concurrency, deadline)
        return report.results

    async def run_screen(
        self,
        universe: Iterable[UniverseEntry],
        fetch: Fetch,
        screen: Screen,
        width: Optional[int] = None,
        concurrency: Optional[int] = None,
    ) -> ScanReport:
        """Run a ready-made screen and rank its results by the screen's key."""
        report = await self.run(
            universe, fetch, width if width is not None else screen.width,
            screen.indicators, screen.predicate, concurrency,
        )
        if screen.sort_key:
            report.results = rank_results(report.results, screen.sort_key, screen.descending)
        return report

    async def run(
        self,
        universe: Iterable[UniverseEntry],
        fetch: Fetch,
        width: int,
        indicator_specs: Sequence[IndicatorSpec],
        predicate: Predicate,
        concurrency: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> ScanReport:
        """
        Scan ``universe`` and return the full report.

        ``deadline`` (seconds) bounds the whole scan: fetches still pending
        when it passes are treated as failed fetches.
        """
        params = self._params(width, indicator_specs, predicate, concurrency, deadline)

        async def handle(unit: ScanUnit, deadline_at: Optional[float]) -> Optional[ScreenResult]:
            return await self._run_unit(unit, fetch, params, predicate, deadline_at)

        return await self._execute(universe, params, handle, f"width={params.width}")

    async def run_quote_screen(
        self,
        universe: Iterable[UniverseEntry],
        fetch_quote: QuoteFetch,
        screen: Screen,
        concurrency: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> ScanReport:
        """
        Run a screen that reads a derivatives quote instead of candles.

        Units go straight from FETCHED to EVALUATING; a symbol without a
        listed future (``fetch_quote`` returned ``None``) is simply unmatched.
        """
        params = self._params(1, screen.indicators, screen.predicate, concurrency, deadline)

        async def handle(unit: ScanUnit, deadline_at: Optional[float]) -> Optional[ScreenResult]:
            ok, quote = await self._fetch(unit, fetch_quote, params, deadline_at)
            if not ok:
                return None
            ctx = ScreenContext(unit.entry, empty_frame(), {}, quote=quote)
            return self._evaluate(unit, ctx, screen.predicate)

        report = await self._execute(universe, params, handle, screen.name)
        if screen.sort_key:
            report.results = rank_results(report.results, screen.sort_key, screen.descending)
        return report

    def _params(
        self,
        width: int,
        indicator_specs: Sequence[IndicatorSpec],
        predicate: Predicate,
        concurrency: Optional[int],
        deadline: Optional[float],
    ) -> ScanParams:
        params = validate_scan_params(
            width=width,
            indicator_specs=list(indicator_specs),
            concurrency=concurrency if concurrency is not None else self.concurrency,
            fetch_timeout=self.fetch_timeout,
            deadline=deadline,
        )
        if not callable(predicate):
            raise ValidationError("predicate must be callable")
        return params

    async def _execute(
        self,
        universe: Iterable[UniverseEntry],
        params: ScanParams,
        handle: UnitHandler,
        label: str,
    ) -> ScanReport:
        units = [ScanUnit(entry) for entry in universe]
        started = self._clock()
        deadline_at = started + params.deadline if params.deadline is not None else None
        logger.info("Scanning %s symbols (%s, concurrency=%s)", len(units), label, params.concurrency)

        pool = BoundedTaskPool(params.concurrency)
        self.last_pool = pool
        results = await pool.run(units, lambda unit: handle(unit, deadline_at))

        report = ScanReport(results=results, duration_secs=self._clock() - started)
        for unit in units:
            report.outcomes[unit.state] += 1
            if unit.error is not None:
                report.failures[unit.entry.symbol_id] = unit.error
        logger.info(
            "Scan finished in %.2fs: %s matched, %s unmatched, %s fetch failed, %s resample failed",
            report.duration_secs,
            report.outcomes[UnitState.MATCHED],
            report.outcomes[UnitState.UNMATCHED],
            report.outcomes[UnitState.FETCH_FAILED],
            report.outcomes[UnitState.RESAMPLE_FAILED],
        )
        return report

    def _timeout_for(self, params: ScanParams, deadline_at: Optional[float]) -> Optional[float]:
        timeout = params.fetch_timeout
        if deadline_at is not None:
            remaining = deadline_at - self._clock()
            timeout = remaining if timeout is None else min(timeout, remaining)
        return timeout

    async def _fetch(
        self,
        unit: ScanUnit,
        fetch: Callable[[str], Awaitable[Any]],
        params: ScanParams,
        deadline_at: Optional[float],
    ) -> Tuple[bool, Any]:
        unit.advance(UnitState.FETCHING)
        timeout = self._timeout_for(params, deadline_at)
        if timeout is not None and timeout <= 0:
            unit.fail(UnitState.FETCH_FAILED, "scan deadline passed")
            return False, None
        try:
            value = await asyncio.wait_for(fetch(unit.entry.symbol_id), timeout)
        except CredentialError as e:
            unit.fail(UnitState.FETCH_FAILED, str(e))
            raise
        except asyncio.TimeoutError:
            reason = "fetch timed out"
            if timeout is not None:
                reason += f" after {timeout:.2f}s"
            unit.fail(UnitState.FETCH_FAILED, reason)
            return False, None
        except Exception as e:
            unit.fail(UnitState.FETCH_FAILED, f"{type(e).__name__}: {e}")
            return False, None
        unit.advance(UnitState.FETCHED)
        return True, value

    def _evaluate(self, unit: ScanUnit, ctx: ScreenContext, predicate: Predicate) -> Optional[ScreenResult]:
        unit.advance(UnitState.EVALUATING)
        try:
            result = predicate(ctx)
        except InsufficientHistoryError as e:
            logger.debug("%s: %s", unit.entry.symbol_id, e)
            result = None
        except Exception as e:
            unit.error = f"predicate raised {type(e).__name__}: {e}"
            logger.warning("Predicate failed for %s: %s", unit.entry.symbol_id, e)
            result = None
        unit.advance(UnitState.MATCHED if result is not None else UnitState.UNMATCHED)
        return result

    async def _run_unit(
        self,
        unit: ScanUnit,
        fetch: Fetch,
        params: ScanParams,
        predicate: Predicate,
        deadline_at: Optional[float],
    ) -> Optional[ScreenResult]:
        ok, raw = await self._fetch(unit, fetch, params, deadline_at)
        if not ok:
            return None

        unit.advance(UnitState.RESAMPLING)
        try:
            if raw is None:
                raise DataIntegrityError("no history returned")
            candles = resample(raw, params.width)
            indicators = compute_indicators(candles, params.indicator_specs)
        except Exception as e:
            unit.fail(UnitState.RESAMPLE_FAILED, f"{type(e).__name__}: {e}")
            return None
        unit.advance(UnitState.RESAMPLED)

        return self._evaluate(unit, ScreenContext(unit.entry, candles, indicators), predicate)
