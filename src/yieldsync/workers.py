"""
Background workers.

A PeriodicWorker runs one step function every `interval` seconds on its own
thread until its stop event is set. A failing step is logged and the loop
carries on; the worker only exits on stop.
"""

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicWorker(threading.Thread):
    """
    Usage:
        worker = PeriodicWorker("yieldsync-sweep", service.tick, interval=5.0)
        worker.start()
        ...
        worker.stop()
    """

    def __init__(
        self,
        name: str,
        step: Callable[[], Any],
        interval: float,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__(name=name, daemon=True)
        self.step = step
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.runs = 0
        self.errors = 0

    def run(self) -> None:
        logger.info(f"{self.name} started (interval={self.interval}s)")
        while not self.stop_event.wait(self.interval):
            try:
                self.step()
                self.runs += 1
            except Exception as e:
                self.errors += 1
                logger.error(f"{self.name} error: {e}")
        logger.info(f"{self.name} stopped")

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        if self.is_alive():
            self.join(timeout)

    def get_stats(self) -> dict:
        return {
            "running": self.is_alive(),
            "interval": self.interval,
            "runs": self.runs,
            "errors": self.errors,
        }
