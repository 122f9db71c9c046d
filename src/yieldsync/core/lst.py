"""
LST handler table.

Each supported protocol is a tagged LSTKind with an explicit evidence handler.
Adding a new LST is a data change: register an LSTAsset (CUSTOM kind with its
own handler, or a new entry in LST_HANDLERS), never a new branch elsewhere.

Evidence is a mapping produced by the operator's yield source. Handlers check
that it is attributable to the right protocol; they never re-derive the rate.
"""

import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, Tuple

from yieldsync.core.economics.constants import DEFAULT_STALENESS_THRESHOLD_SECONDS
from yieldsync.core.models import LSTAsset, LSTKind

logger = logging.getLogger(__name__)


EvidenceHandler = Callable[[Any], Tuple[bool, str]]


def _source_handler(*accepted_sources: str) -> EvidenceHandler:
    """Build a handler accepting evidence whose `source` is one of accepted_sources."""

    def handler(evidence: Any) -> Tuple[bool, str]:
        if not isinstance(evidence, Mapping):
            return False, "Evidence must be a mapping"
        source = evidence.get("source")
        if source is None:
            return False, "Evidence missing source"
        if source not in accepted_sources:
            return False, f"Evidence source '{source}' not accepted (expected one of {list(accepted_sources)})"
        return True, f"Evidence from {source}"

    return handler


LST_HANDLERS: Dict[LSTKind, EvidenceHandler] = {
    LSTKind.STETH: _source_handler("lido", "stETH"),
    LSTKind.RETH: _source_handler("rocketpool", "rETH"),
    LSTKind.CBETH: _source_handler("coinbase", "cbETH"),
    LSTKind.SFRXETH: _source_handler("frax", "sfrxETH"),
}


def handler_for(asset: LSTAsset) -> EvidenceHandler:
    """Resolve the evidence handler for an asset."""
    if asset.kind == LSTKind.CUSTOM:
        return asset.handler
    return LST_HANDLERS[asset.kind]


def default_assets(
    staleness_threshold_seconds: float = DEFAULT_STALENESS_THRESHOLD_SECONDS,
) -> Dict[str, LSTAsset]:
    """The four mainnet LSTs with a plausible expected yield band (1% - 15%)."""
    return {
        kind.value: LSTAsset(
            symbol=kind.value,
            kind=kind,
            min_yield_bps=100,
            max_yield_bps=1_500,
            staleness_threshold_seconds=staleness_threshold_seconds,
        )
        for kind in (LSTKind.STETH, LSTKind.RETH, LSTKind.CBETH, LSTKind.SFRXETH)
    }
