"""
Position side: pure adjustment math and the tracker that applies it.
"""

from yieldsync.core.positions.adjustment import (
    LinearTickShift,
    PositionAdjustmentCalculator,
    QuadraticILEstimate,
    compute_new_range,
    estimate_impermanent_loss_prevented,
    needs_adjustment,
)
from yieldsync.core.positions.tracker import PositionTracker

__all__ = [
    "PositionAdjustmentCalculator",
    "PositionTracker",
    "LinearTickShift",
    "QuadraticILEstimate",
    "compute_new_range",
    "estimate_impermanent_loss_prevented",
    "needs_adjustment",
]
