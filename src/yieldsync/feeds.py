"""
Operator feeds.

Each feed is a worker thread for one operator: it polls its yield source for
every watched asset and submits to the asset's open tasks. Feeds share a
threading.Event for shutdown and never die on a rejected submission or a
failed fetch.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional, Set

from cryptography.hazmat.primitives.asymmetric import ec

from yieldsync.core.economics.constants import FEED_POLL_INTERVAL_SECONDS
from yieldsync.core.errors import DuplicateSubmissionError, ExternalFetchError
from yieldsync.core.interfaces import GroundTruthSource, sign_message, submission_message

logger = logging.getLogger(__name__)


class OperatorFeed(threading.Thread):
    """
    Usage:
        stop = threading.Event()
        feed = OperatorFeed(service, operator_id, source, ["stETH"], stop_event=stop)
        feed.start()
        ...
        stop.set(); feed.join()
    """

    def __init__(
        self,
        service,
        operator: str,
        source: GroundTruthSource,
        assets: Iterable[str],
        interval: float = FEED_POLL_INTERVAL_SECONDS,
        stop_event: Optional[threading.Event] = None,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
    ):
        super().__init__(name=f"feed-{operator[:8]}", daemon=True)
        self.service = service
        self.operator = operator
        self.source = source
        self.assets = list(assets)
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.private_key = private_key

        self._submitted: Set[int] = set()
        self.accepted = 0
        self.rejected = 0
        self.fetch_failures = 0

    def poll_once(self) -> int:
        """Submit to every open task this operator has not answered yet. Returns submissions accepted."""
        accepted = 0
        open_ids: Set[int] = set()
        for asset in self.assets:
            open_tasks = self.service.open_tasks(asset)
            open_ids.update(t.task_id for t in open_tasks)
            tasks = [t for t in open_tasks if t.task_id not in self._submitted]
            if not tasks:
                continue
            try:
                observation = self.source.fetch_yield(asset)
            except ExternalFetchError as e:
                self.fetch_failures += 1
                logger.warning(f"[{self.operator[:8]}] fetch failed for {asset}: {e}")
                continue

            for task in tasks:
                signature = None
                if self.private_key is not None:
                    signature = sign_message(
                        self.private_key,
                        submission_message(asset, task.task_id, observation.rate_bps),
                    )
                ack = self.service.submit_response(
                    task.task_id,
                    self.operator,
                    observation.rate_bps,
                    signature=signature,
                    evidence={"source": asset, "proof": observation.proof},
                    timestamp=observation.timestamp,
                )
                if ack["accepted"]:
                    self._submitted.add(task.task_id)
                    self.accepted += 1
                    accepted += 1
                else:
                    # Stale or transient rejections are retried on the next poll
                    if ack.get("error") == DuplicateSubmissionError.__name__:
                        self._submitted.add(task.task_id)
                    self.rejected += 1

        # Tasks that left RESPONSE_OPEN are never offered again
        self._submitted &= open_ids
        return accepted

    def run(self) -> None:
        logger.info(f"[{self.operator[:8]}] feed started for {self.assets} (interval={self.interval}s)")
        while not self.stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"[{self.operator[:8]}] feed error: {e}")
            self.stop_event.wait(self.interval)
        logger.info(f"[{self.operator[:8]}] feed stopped")

    def get_stats(self) -> Dict[str, int]:
        return {
            "accepted": self.accepted,
            "rejected": self.rejected,
            "fetch_failures": self.fetch_failures,
        }


class FeedPool:
    """A set of operator feeds sharing one stop signal."""

    def __init__(self):
        self.stop_event = threading.Event()
        self.feeds: List[OperatorFeed] = []

    def add(self, service, operator: str, source: GroundTruthSource, assets: Iterable[str],
            interval: float = FEED_POLL_INTERVAL_SECONDS,
            private_key: Optional[ec.EllipticCurvePrivateKey] = None) -> OperatorFeed:
        feed = OperatorFeed(service, operator, source, assets, interval, self.stop_event, private_key)
        self.feeds.append(feed)
        return feed

    def start_all(self) -> None:
        for feed in self.feeds:
            feed.start()
        logger.info(f"Started {len(self.feeds)} operator feeds")

    def stop_all(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        for feed in self.feeds:
            if feed.is_alive():
                feed.join(timeout)
        logger.info("Operator feeds stopped")
