"""
Yield Oracle

Finalized consensus yields, per asset, and the drift they imply.

The oracle is the only thing the position side sees of the consensus side:
the tracker asks for drift, the service feeds finalized values in. Neither
holds a reference to the other.

DRIFT:
======
Yields are annual rates in bps. Each finalized rate applies from its
finalization time until the next one is finalized, so the drift accrued over
[since, now] is

    drift_bps = sum(rate_i * overlap_seconds_i) // SECONDS_PER_YEAR

Time before the first finalized value contributes nothing. No finalized data
at all means None ("no finalized yield data"), never zero.

accrued_yield() returns the undivided sum (bps-seconds) so that callers can
carry the sub-bps remainder from one adjustment into the next.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from yieldsync.core.economics.constants import SECONDS_PER_YEAR, YIELD_HISTORY_LIMIT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinalizedYield:
    asset: str
    yield_bps: int
    finalized_at: float
    task_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "asset": self.asset,
            "yield_bps": self.yield_bps,
            "finalized_at": self.finalized_at,
            "task_id": self.task_id,
        }


class YieldOracle:
    """
    Usage:
        oracle = YieldOracle()
        oracle.record_finalized("stETH", 350, finalized_at=now, task_id=7)
        oracle.get_required_adjustment("stETH", since=position.last_adjustment_at)
    """

    def __init__(self, clock: Callable[[], float] = time.time, history_limit: int = YIELD_HISTORY_LIMIT):
        self.clock = clock
        self.history_limit = history_limit
        self._history: Dict[str, List[FinalizedYield]] = {}
        self._lock = threading.Lock()

    def record_finalized(self, asset: str, yield_bps: int, finalized_at: float, task_id: Optional[int] = None) -> FinalizedYield:
        entry = FinalizedYield(asset=asset, yield_bps=yield_bps, finalized_at=finalized_at, task_id=task_id)
        with self._lock:
            history = self._history.setdefault(asset, [])
            history.append(entry)
            history.sort(key=lambda e: e.finalized_at)
            # Keep the newest entries
            del history[:-self.history_limit]
        logger.info(f"Oracle: {asset} finalized at {yield_bps}bps (task {task_id})")
        return entry

    def latest(self, asset: str) -> Optional[FinalizedYield]:
        with self._lock:
            history = self._history.get(asset)
            return history[-1] if history else None

    def history(self, asset: str) -> List[FinalizedYield]:
        with self._lock:
            return list(self._history.get(asset, ()))

    def assets(self) -> List[str]:
        with self._lock:
            return sorted(self._history)

    def accrued_yield(self, asset: str, since: float, now: Optional[float] = None) -> Optional[int]:
        """Yield accrued between `since` and `now` in bps-seconds (rate x time), or None without data."""
        now = self.clock() if now is None else now
        history = self.history(asset)
        if not history:
            return None
        if now <= since:
            return 0

        accrued = 0
        for i, entry in enumerate(history):
            start = max(entry.finalized_at, since)
            end = history[i + 1].finalized_at if i + 1 < len(history) else now
            end = min(end, now)
            if end > start:
                accrued += int(entry.yield_bps * (end - start))
        return accrued

    def get_required_adjustment(self, asset: str, since: float, now: Optional[float] = None) -> Optional[int]:
        """Drift in bps accrued between `since` and `now`, or None without finalized data."""
        accrued = self.accrued_yield(asset, since, now)
        if accrued is None:
            return None
        return accrued // SECONDS_PER_YEAR
