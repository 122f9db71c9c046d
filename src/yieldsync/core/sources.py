"""
Ground-truth yield sources.

- StaticYieldSource: in-memory observation history (reference rates, tests)
- HttpYieldSource: JSON-over-HTTP lookups via requests
- ResilientYieldFetcher: timeout + bounded retry with backoff, degrading to
  the latest observation and finally to the last known value (flagged stale)

No fetch ever blocks indefinitely: every HTTP call carries a timeout and the
retry loop stops at an optional deadline.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Deque, Dict, List, Optional

import requests

from yieldsync.core.economics.constants import (
    FETCH_BACKOFF_SECONDS,
    FETCH_MAX_RETRIES,
    FETCH_TIMEOUT_SECONDS,
    LST_BASE_RATES_BPS,
    YIELD_HISTORY_LIMIT,
    backoff_delay,
)
from yieldsync.core.errors import ExternalFetchError
from yieldsync.core.interfaces import GroundTruthSource, YieldObservation

logger = logging.getLogger(__name__)


class StaticYieldSource(GroundTruthSource):
    """
    In-memory yield history per asset.

    Assets without recorded observations fall back to their reference base
    rate for "latest" lookups. Historical lookups require a recorded
    observation at or before the requested time.
    """

    def __init__(
        self,
        base_rates: Optional[Dict[str, int]] = None,
        clock: Callable[[], float] = time.time,
        history_limit: int = YIELD_HISTORY_LIMIT,
    ):
        self.base_rates = dict(LST_BASE_RATES_BPS if base_rates is None else base_rates)
        self.clock = clock
        self._history: Dict[str, Deque[YieldObservation]] = {}
        self._history_limit = history_limit
        self._lock = threading.Lock()

    def record(self, asset: str, rate_bps: int, timestamp: Optional[float] = None, proof: Optional[str] = None) -> YieldObservation:
        observation = YieldObservation(
            asset=asset,
            rate_bps=rate_bps,
            timestamp=self.clock() if timestamp is None else timestamp,
            proof=proof,
        )
        with self._lock:
            history = self._history.setdefault(asset, deque(maxlen=self._history_limit))
            history.append(observation)
        return observation

    def history(self, asset: str) -> List[YieldObservation]:
        with self._lock:
            return list(self._history.get(asset, ()))

    def fetch_yield(self, asset: str, at_time: Optional[float] = None) -> YieldObservation:
        with self._lock:
            history = list(self._history.get(asset, ()))

        if at_time is None:
            if history:
                return max(history, key=lambda o: o.timestamp)
            if asset in self.base_rates:
                return YieldObservation(asset=asset, rate_bps=self.base_rates[asset], timestamp=self.clock(), proof="reference")
            raise ExternalFetchError(f"No yield data for {asset}", asset=asset)

        candidates = [o for o in history if o.timestamp <= at_time]
        if not candidates:
            raise ExternalFetchError(f"No historical yield data for {asset} at {at_time}", asset=asset)
        return max(candidates, key=lambda o: o.timestamp)


class HttpYieldSource(GroundTruthSource):
    """
    Fetch observations from an HTTP endpoint.

    GET {base_url}/yield/{asset}[?at=<unix>] -> {"rate_bps": int, "timestamp": float, "proof": str}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_yield(self, asset: str, at_time: Optional[float] = None) -> YieldObservation:
        params = {"at": at_time} if at_time is not None else None
        url = f"{self.base_url}/yield/{asset}"
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
            if resp.status_code != 200:
                raise ExternalFetchError(f"Yield source returned HTTP {resp.status_code}", asset=asset)
            data = resp.json()
            return YieldObservation(
                asset=asset,
                rate_bps=int(data["rate_bps"]),
                timestamp=float(data["timestamp"]),
                proof=data.get("proof"),
            )
        except ExternalFetchError:
            raise
        except requests.RequestException as e:
            raise ExternalFetchError(f"Yield source request failed: {e}", asset=asset) from e
        except (ValueError, KeyError, TypeError) as e:
            raise ExternalFetchError(f"Malformed yield source response: {e}", asset=asset) from e


@dataclass
class FetchResult:
    """Outcome of a resilient fetch."""
    observation: YieldObservation
    origin: str                      # "historical", "latest" or "cache"
    warnings: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.origin != "historical"


class ResilientYieldFetcher:
    """
    Wraps a GroundTruthSource with retries, fallbacks and a last-known cache.

    Usage:
        fetcher = ResilientYieldFetcher(HttpYieldSource("https://..."))
        result = fetcher.fetch("stETH", at_time=response.timestamp)
        if result.degraded:
            logger.warning(result.warnings)
    """

    def __init__(
        self,
        source: GroundTruthSource,
        max_retries: int = FETCH_MAX_RETRIES,
        backoff_seconds: float = FETCH_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.clock = clock
        self._last_known: Dict[str, YieldObservation] = {}
        self._lock = threading.Lock()

    def _with_retries(self, asset: str, at_time: Optional[float], deadline: Optional[float]) -> YieldObservation:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                return self.source.fetch_yield(asset, at_time)
            except ExternalFetchError as e:
                last_error = e
                logger.debug(f"Yield fetch attempt {attempt + 1}/{self.max_retries} failed for {asset}: {e}")
            if attempt == self.max_retries - 1:
                break
            delay = backoff_delay(attempt, self.backoff_seconds)
            if deadline is not None and self.clock() + delay > deadline:
                logger.debug(f"Yield fetch for {asset}: deadline reached, giving up retries")
                break
            self.sleep(delay)
        raise ExternalFetchError(f"Yield fetch failed for {asset}: {last_error}", asset=asset)

    def fetch(self, asset: str, at_time: Optional[float] = None, deadline: Optional[float] = None) -> FetchResult:
        """
        Fetch an observation, degrading gracefully.

        1. Historical lookup at `at_time` (skipped when at_time is None)
        2. Latest observation, with a warning
        3. Last known value (marked stale), with a staleness warning

        Raises ExternalFetchError only when nothing has ever been observed.
        """
        warnings: List[str] = []

        if at_time is not None:
            try:
                observation = self._with_retries(asset, at_time, deadline)
                self._remember(observation)
                return FetchResult(observation=observation, origin="historical")
            except ExternalFetchError as e:
                message = f"Historical yield unavailable for {asset} at {at_time}, using latest: {e}"
                logger.warning(message)
                warnings.append(message)

        try:
            observation = self._with_retries(asset, None, deadline)
            self._remember(observation)
            return FetchResult(observation=observation, origin="latest", warnings=warnings)
        except ExternalFetchError as e:
            with self._lock:
                cached = self._last_known.get(asset)
            if cached is None:
                raise
            message = (f"Yield source unavailable for {asset}, using last known value "
                       f"{cached.rate_bps} bps from {cached.timestamp:.0f}: {e}")
            logger.warning(message)
            warnings.append(message)
            return FetchResult(observation=replace(cached, stale=True), origin="cache", warnings=warnings)

    def last_known(self, asset: str) -> Optional[YieldObservation]:
        with self._lock:
            return self._last_known.get(asset)

    def _remember(self, observation: YieldObservation) -> None:
        with self._lock:
            current = self._last_known.get(observation.asset)
            if current is None or observation.timestamp >= current.timestamp:
                self._last_known[observation.asset] = observation
