"""
YieldSync: quorum-based yield consensus for liquid staking tokens, with
challenge/slashing and yield-aware liquidity range adjustment.
"""

from yieldsync.version import __version__

__all__ = ["__version__"]
