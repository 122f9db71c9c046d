"""
Shared pytest fixtures for test suite.

Provides:
- Deterministic clock for window and cooldown tests
- Operator registry with ten staked operators
- Static ground-truth source
- Fully wired YieldSyncService and a consensus helper
"""

import os
import sys
from typing import Callable, List

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from yieldsync.config import YieldSyncConfig
from yieldsync.core.interfaces import InMemoryOperatorRegistry
from yieldsync.core.sources import StaticYieldSource
from yieldsync.events import EventSink
from yieldsync.service import YieldSyncService


START_TIME = 1_700_000_000.0
OPERATOR_STAKE = 32.0


# =============================================================================
# CLOCK
# =============================================================================

class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# OPERATORS
# =============================================================================

def operator_ids(count: int = 10) -> List[str]:
    return [f"op-{i}" for i in range(count)]


@pytest.fixture
def registry():
    """Ten registered operators with equal stake."""
    reg = InMemoryOperatorRegistry()
    for op in operator_ids():
        reg.register(op, stake=OPERATOR_STAKE)
    return reg


# =============================================================================
# GROUND TRUTH
# =============================================================================

@pytest.fixture
def source(clock):
    return StaticYieldSource(clock=clock)


# =============================================================================
# SERVICE
# =============================================================================

@pytest.fixture
def events(clock):
    return EventSink(clock=clock)


@pytest.fixture
def service(registry, source, events, clock):
    """Service with default protocol parameters and a no-op sleep."""
    return YieldSyncService(
        YieldSyncConfig(),
        registry=registry,
        source=source,
        events=events,
        clock=clock,
        sleep=lambda _: None,
    )


@pytest.fixture
def reach_consensus(service) -> Callable[..., int]:
    """
    Factory: create a stETH task and have `count` operators report `value`.

    Returns the task id. With the default ten operators, seven agreeing
    reports reach the 67% quorum.
    """

    def _reach(value: int, count: int = 7, asset: str = "stETH") -> int:
        task_id = service.create_task(asset)
        for op in operator_ids()[:count]:
            service.submit(task_id, op, value, evidence={"source": asset})
        return task_id

    return _reach
