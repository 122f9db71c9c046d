"""
Slashing Ledger

Tracks operator economics: accuracy score, effective stake, slashing history,
challenger bonds and reward balances.

ACCURACY:
=========
- Accurate contribution (task finalized):         score = min(score + 10, 10000)
- Inaccurate contribution (challenge succeeded):   score = floor(score * 0.9)
- New operators start at 5000

SLASHING:
=========
    slashed = stake * bps / 10000

If the slash would take stake below zero (bps > 10000), the stake is clamped
to zero and the operator is flagged for deregistration. With strict=True an
InsufficientStakeError is raised instead and nothing changes.

BONDS:
======
Challengers post a bond when raising a challenge. The bond is returned when
the challenge succeeds and forfeited to the protocol when it fails.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from yieldsync.core.economics.constants import (
    ACCURACY_PENALTY_FACTOR,
    ACCURACY_REWARD,
    ACCURACY_SCORE_MAX,
    BPS_DENOMINATOR,
)
from yieldsync.core.errors import InsufficientStakeError, UnknownEntityError, ValidationError
from yieldsync.core.interfaces import OperatorRegistry
from yieldsync.core.models import OperatorRecord

logger = logging.getLogger(__name__)


@dataclass
class SlashRecord:
    """A single applied slash."""
    operator: str
    bps: int
    amount: float
    remaining_stake: float
    clamped: bool
    reason: str
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "operator": self.operator,
            "bps": self.bps,
            "amount": self.amount,
            "remaining_stake": self.remaining_stake,
            "clamped": self.clamped,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }


class SlashingLedger:
    """
    Usage:
        ledger = SlashingLedger(registry)
        ledger.record_accuracy(operator, was_accurate=True)
        amount = ledger.slash(operator, 1000)      # 10% of effective stake
        ledger.flagged_operators()                 # clamped operators
    """

    def __init__(
        self,
        registry: Optional[OperatorRegistry] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.clock = clock

        self._records: Dict[str, OperatorRecord] = {}
        self._bonds: Dict[int, float] = {}           # challenge_id -> escrowed bond
        self._balances: Dict[str, float] = {}        # address -> claimable rewards
        self._history: List[SlashRecord] = []
        self.forfeited_total = 0.0
        self._lock = threading.Lock()

    # =========================================================================
    # RECORDS
    # =========================================================================

    def _record_locked(self, operator: str) -> OperatorRecord:
        record = self._records.get(operator)
        if record is None:
            stake = self.registry.stake_of(operator) if self.registry else 0.0
            record = self._records[operator] = OperatorRecord(address=operator, stake=stake)
        return record

    def get_record(self, operator: str) -> OperatorRecord:
        """Return the operator's record, seeding it from the registry stake."""
        with self._lock:
            return self._record_locked(operator)

    def load_records(self, records: List[OperatorRecord]) -> None:
        """Replace in-memory records (used when restoring from storage)."""
        with self._lock:
            for record in records:
                self._records[record.address] = record
        logger.info(f"Loaded {len(records)} operator records")

    def records(self) -> List[OperatorRecord]:
        with self._lock:
            return [self._records[a] for a in sorted(self._records)]

    # =========================================================================
    # ACCURACY
    # =========================================================================

    def record_accuracy(self, operator: str, was_accurate: bool) -> int:
        """Apply the reward/penalty rule and return the new score."""
        with self._lock:
            record = self._record_locked(operator)
            old_score = record.accuracy_score
            if was_accurate:
                record.accuracy_score = min(old_score + ACCURACY_REWARD, ACCURACY_SCORE_MAX)
                record.accurate_reports += 1
            else:
                record.accuracy_score = math.floor(old_score * ACCURACY_PENALTY_FACTOR)
                record.inaccurate_reports += 1
            new_score = record.accuracy_score

        logger.debug(f"Accuracy {operator[:16]}...: {old_score} -> {new_score} "
                     f"({'accurate' if was_accurate else 'inaccurate'})")
        return new_score

    # =========================================================================
    # SLASHING
    # =========================================================================

    def slash(self, operator: str, bps: int, reason: str = "", strict: bool = False) -> float:
        """
        Reduce the operator's effective stake by bps/10000.

        Returns the amount slashed.

        Raises:
            ValidationError: negative bps
            InsufficientStakeError: strict=True and the slash exceeds the stake
        """
        if bps < 0:
            raise ValidationError(f"Slash bps must be non-negative, got {bps}", operator=operator)

        with self._lock:
            record = self._record_locked(operator)
            amount = record.stake * bps / BPS_DENOMINATOR
            clamped = amount > record.stake
            if clamped:
                if strict:
                    raise InsufficientStakeError(
                        f"Slash of {amount:.6f} exceeds stake {record.stake:.6f}",
                        operator=operator,
                    )
                amount = record.stake
                record.flagged_for_deregistration = True

            record.stake -= amount
            record.total_slashed += amount
            entry = SlashRecord(
                operator=operator,
                bps=bps,
                amount=amount,
                remaining_stake=record.stake,
                clamped=clamped,
                reason=reason,
                timestamp=self.clock(),
            )
            self._history.append(entry)

        if clamped:
            logger.warning(f"Slash clamped for {operator[:16]}...: stake exhausted, "
                           f"flagged for deregistration")
        logger.info(f"Slashed {operator[:16]}... {amount:.6f} ({bps}bps) - {reason or 'no reason'}")
        return amount

    def flagged_operators(self) -> List[str]:
        with self._lock:
            return sorted(a for a, r in self._records.items() if r.flagged_for_deregistration)

    def slash_history(self, operator: Optional[str] = None) -> List[SlashRecord]:
        with self._lock:
            return [s for s in self._history if operator is None or s.operator == operator]

    # =========================================================================
    # BONDS AND REWARDS
    # =========================================================================

    def post_bond(self, challenge_id: int, amount: float) -> None:
        if amount < 0:
            raise ValidationError(f"Bond must be non-negative, got {amount}")
        with self._lock:
            self._bonds[challenge_id] = amount

    def _release_bond(self, challenge_id: int) -> float:
        with self._lock:
            if challenge_id not in self._bonds:
                raise UnknownEntityError(f"No bond escrowed for challenge {challenge_id}")
            return self._bonds.pop(challenge_id)

    def return_bond(self, challenge_id: int, to: str) -> float:
        amount = self._release_bond(challenge_id)
        self.credit_reward(to, amount)
        logger.debug(f"Bond returned for challenge {challenge_id}: {amount:.6f}")
        return amount

    def forfeit_bond(self, challenge_id: int) -> float:
        amount = self._release_bond(challenge_id)
        with self._lock:
            self.forfeited_total += amount
        logger.info(f"Bond forfeited for challenge {challenge_id}: {amount:.6f}")
        return amount

    def escrowed_bond(self, challenge_id: int) -> Optional[float]:
        with self._lock:
            return self._bonds.get(challenge_id)

    def credit_reward(self, address: str, amount: float) -> None:
        with self._lock:
            self._balances[address] = self._balances.get(address, 0.0) + amount

    def balance_of(self, address: str) -> float:
        with self._lock:
            return self._balances.get(address, 0.0)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "operators": len(self._records),
                "flagged": sum(1 for r in self._records.values() if r.flagged_for_deregistration),
                "total_slashed": sum(r.total_slashed for r in self._records.values()),
                "slash_events": len(self._history),
                "escrowed_bonds": sum(self._bonds.values()),
                "forfeited_total": self.forfeited_total,
            }
