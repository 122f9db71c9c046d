"""
YieldSync Protocol Parameters - Centralized Configuration

This module defines ALL numeric defaults for the YieldSync core.
All values are documented and should be referenced from here, not hardcoded elsewhere.

=============================================================================
DESIGN PRINCIPLES
=============================================================================

1. BASIS POINTS EVERYWHERE: Yield rates, tolerances, thresholds and slashing
   ratios are integers in basis points (1 bps = 0.01%).

2. CONSENSUS BEFORE ACTION: No position is moved until a yield value has
   reached quorum AND survived its challenge window.

3. ECONOMIC SECURITY: Wrong reports are slashed, honest challengers are paid
   out of the slashed stake, frivolous challengers lose their bond.

4. CONFIGURABLE APPROXIMATIONS: The tick-shift and impermanent-loss formulas
   are linear/quadratic approximations. Their factors live here so they can
   be tuned without touching the calculator.

=============================================================================
"""

import math

# =============================================================================
# UNITS
# =============================================================================

BPS_DENOMINATOR = 10_000            # 100% in basis points
SECONDS_PER_YEAR = 365 * 24 * 3600  # Annual yield rates are integrated over this

# =============================================================================
# YIELD SUBMISSION BOUNDS
# =============================================================================

# Hard bounds applied to EVERY submission regardless of the LST.
# A zero yield is never a valid report; 50,000 bps (500%) is the sanity cap.
MIN_YIELD_RATE_BPS = 1
MAX_YIELD_RATE_BPS = 50_000

# Evidence older than this is rejected (per-asset override on LSTAsset)
DEFAULT_STALENESS_THRESHOLD_SECONDS = 300   # 5 minutes

# =============================================================================
# CONSENSUS
# =============================================================================

# Two submissions belong to the same cluster when they differ by at most
# 5% of the lower value.
CLUSTER_TOLERANCE_BPS = 500

# Largest cluster / total registered operators must reach 67%
QUORUM_THRESHOLD_BPS = 6_700

# =============================================================================
# TASK WINDOWS
# =============================================================================

BLOCK_TIME_SECONDS = 12                 # Ethereum slot time
RESPONSE_WINDOW_SECONDS = 600           # 10 minutes to reach quorum
CHALLENGE_WINDOW_BLOCKS = 100           # ~20 minutes at 12s blocks
CHALLENGE_WINDOW_SECONDS = CHALLENGE_WINDOW_BLOCKS * BLOCK_TIME_SECONDS

# =============================================================================
# CHALLENGES
# =============================================================================

CHALLENGE_TOLERANCE_BPS = 10        # 0.1% allowed deviation from ground truth
CHALLENGER_REWARD_SHARE = 0.5       # 50% of slashed stake goes to the challenger
CHALLENGE_BOND = 1.0                # Bond posted with every challenge (forfeited on failure)

# =============================================================================
# SLASHING & ACCURACY
# =============================================================================

SLASH_BPS = 1_000                   # 10% of effective stake per wrong report

ACCURACY_SCORE_MAX = 10_000         # Perfect score
INITIAL_ACCURACY_SCORE = 5_000      # New operators start in the middle
ACCURACY_REWARD = 10                # +10 per accurate contribution
ACCURACY_PENALTY_FACTOR = 0.9       # x0.9 per contribution on the losing side

# =============================================================================
# POSITION ADJUSTMENT
# =============================================================================

MIN_ADJUSTMENT_THRESHOLD_BPS = 10
MAX_ADJUSTMENT_THRESHOLD_BPS = 500
DEFAULT_ADJUSTMENT_THRESHOLD_BPS = 50

ADJUSTMENT_COOLDOWN_SECONDS = 21_600    # 6 hours between automatic adjustments

# Linear approximation: every bps of drift moves the range by 4 ticks
TICK_SHIFT_FACTOR = 4

# IL prevented ~= liquidity * drift^2 / 1e8 * 0.75
IL_DRIFT_SCALE = 100_000_000
IL_PREVENTION_FACTOR = 0.75

# Concentrated-liquidity tick domain
MIN_TICK = -887_272
MAX_TICK = 887_272

# =============================================================================
# EXTERNAL FETCHES
# =============================================================================

FETCH_TIMEOUT_SECONDS = 5.0         # Per-request timeout for ground truth lookups
FETCH_MAX_RETRIES = 3               # Attempts before falling back to latest known value
FETCH_BACKOFF_SECONDS = 0.5         # Base backoff, doubled after each failed attempt

# Observations kept per asset by the in-memory source
YIELD_HISTORY_LIMIT = 100

# =============================================================================
# SCHEDULING
# =============================================================================

TICK_INTERVAL_SECONDS = 5.0         # Background window sweep interval
FEED_POLL_INTERVAL_SECONDS = 30.0   # Operator feed polling interval
TASK_CREATION_INTERVAL_SECONDS = 30.0  # One new task per interval, round-robin over assets
CHALLENGE_CHECK_INTERVAL_SECONDS = 30.0  # Challenger scan of open challenge windows

# =============================================================================
# REFERENCE BASE RATES (annual, bps)
# =============================================================================

LST_BASE_RATES_BPS = {
    "stETH": 400,
    "rETH": 350,
    "cbETH": 320,
    "sfrxETH": 380,
}

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def blocks_to_seconds(blocks: int, block_time: float = BLOCK_TIME_SECONDS) -> float:
    """Convert a block count to wall-clock seconds."""
    return blocks * block_time


def is_valid_yield_rate(yield_rate_bps: int) -> tuple:
    """
    Validate a reported yield rate against the hard submission bounds.

    Returns: (is_valid, error_message)
    """
    if yield_rate_bps < MIN_YIELD_RATE_BPS:
        return False, f"Yield rate must be positive (got {yield_rate_bps} bps)"
    if yield_rate_bps > MAX_YIELD_RATE_BPS:
        return False, f"Yield rate {yield_rate_bps} bps exceeds maximum {MAX_YIELD_RATE_BPS} bps"
    return True, ""


def is_valid_adjustment_threshold(threshold_bps: int) -> tuple:
    """
    Validate a pool's adjustment threshold.

    Returns: (is_valid, error_message)
    """
    if threshold_bps < MIN_ADJUSTMENT_THRESHOLD_BPS:
        return False, f"Minimum adjustment threshold is {MIN_ADJUSTMENT_THRESHOLD_BPS} bps"
    if threshold_bps > MAX_ADJUSTMENT_THRESHOLD_BPS:
        return False, f"Maximum adjustment threshold is {MAX_ADJUSTMENT_THRESHOLD_BPS} bps"
    return True, ""


def is_valid_tick(tick: int) -> tuple:
    """
    Validate a tick against the concentrated-liquidity domain.

    Returns: (is_valid, error_message)
    """
    if tick < MIN_TICK or tick > MAX_TICK:
        return False, f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]"
    return True, ""


def within_tolerance(reported_bps: int, actual_bps: int, tolerance_bps: int = CHALLENGE_TOLERANCE_BPS) -> bool:
    """Whether a reported rate is within tolerance of the actual rate."""
    return abs(reported_bps - actual_bps) <= tolerance_bps


def backoff_delay(attempt: int, base: float = FETCH_BACKOFF_SECONDS) -> float:
    """
    Exponential backoff delay for a zero-based retry attempt.

    Examples:
        >>> backoff_delay(0)
        0.5
        >>> backoff_delay(2)
        2.0
    """
    return base * math.pow(2, attempt)


# =============================================================================
# SUMMARY TABLE (for reference)
# =============================================================================
"""
╔═══════════════════════════════════════════════════════════════════════════════╗
║                        YIELDSYNC PARAMETER SUMMARY                            ║
╠═══════════════════════════════════════════════════════════════════════════════╣
║ Submission bounds │ 1 - 50,000 bps          │ 0 and >500% rejected             ║
║ Cluster tolerance │ 5% of value             │ Pairwise within cluster          ║
║ Quorum            │ 67% of registered ops   │ Largest cluster size             ║
║ Response window   │ 600 s                   │ Expired without quorum           ║
║ Challenge window  │ 100 blocks (1,200 s)    │ Disputes accepted until end      ║
║ Challenge tol.    │ 10 bps                  │ |truth - reported|               ║
║ Slash             │ 10% of stake            │ 50% to challenger                ║
║ Accuracy          │ +10 / x0.9              │ Capped at 10,000                 ║
║ Cooldown          │ 21,600 s (6 h)          │ Between auto adjustments         ║
║ Tick shift        │ drift x 4               │ Width preserved                  ║
║ IL prevented      │ L x d^2 / 1e8 x 0.75    │ Directional estimate             ║
╚═══════════════════════════════════════════════════════════════════════════════╝
"""
