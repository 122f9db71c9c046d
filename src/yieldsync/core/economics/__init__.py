"""
YieldSync Economics

All numeric defaults live in constants.py; SlashingLedger (slashing.py)
applies the accuracy and stake penalties.
"""

from yieldsync.core.economics.constants import (
    BPS_DENOMINATOR,
    CHALLENGE_TOLERANCE_BPS,
    CHALLENGE_WINDOW_SECONDS,
    CLUSTER_TOLERANCE_BPS,
    QUORUM_THRESHOLD_BPS,
    RESPONSE_WINDOW_SECONDS,
    SLASH_BPS,
    is_valid_adjustment_threshold,
    is_valid_tick,
    is_valid_yield_rate,
    within_tolerance,
)

__all__ = [
    "BPS_DENOMINATOR",
    "CHALLENGE_TOLERANCE_BPS",
    "CHALLENGE_WINDOW_SECONDS",
    "CLUSTER_TOLERANCE_BPS",
    "QUORUM_THRESHOLD_BPS",
    "RESPONSE_WINDOW_SECONDS",
    "SLASH_BPS",
    "is_valid_adjustment_threshold",
    "is_valid_tick",
    "is_valid_yield_rate",
    "within_tolerance",
]
