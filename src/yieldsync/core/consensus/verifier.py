"""
Yield Submission Verifier

This module enforces UNIVERSAL submission rules - the constraints that apply
to ALL operators and ALL assets - before a report can enter a consensus round.

Architecture:
============
The verification system has two layers:

1. SubmissionVerifier (this file) - Universal Constraints
   - Hard yield bounds (0 < rate <= 50,000 bps)
   - Evidence freshness against the asset's staleness threshold
   - Attestation of the operator's signature (when present)

2. LST handlers (core/lst.py) - Protocol-Specific Checks
   - Evidence attributable to the right staking protocol
   - Custom assets bring their own handler

The Verifier enforces *universal bounds*.
The handler enforces *protocol provenance*.
"""

import logging
from typing import Any, Optional

from yieldsync.core.economics.constants import is_valid_yield_rate
from yieldsync.core.errors import (
    AttestationInvalidError,
    InvalidRangeError,
    StaleDataError,
    ValidationError,
)
from yieldsync.core.interfaces import Attestation, OperatorRegistry, submission_message
from yieldsync.core.lst import handler_for
from yieldsync.core.models import LSTAsset

logger = logging.getLogger(__name__)


class SubmissionVerifier:
    """
    Verifies a single yield submission.

    Each check raises the matching taxonomy error; a submission that passes
    every check is safe to record.

    Usage:
        verifier = SubmissionVerifier(registry=registry, attestation=EcdsaAttestation())
        verifier.verify(asset, operator, 350, evidence, timestamp, now=now)
    """

    def __init__(
        self,
        registry: Optional[OperatorRegistry] = None,
        attestation: Optional[Attestation] = None,
    ):
        self.registry = registry
        self.attestation = attestation

    def verify(
        self,
        asset: LSTAsset,
        operator: str,
        yield_rate_bps: int,
        evidence: Any,
        timestamp: float,
        now: float,
        round_id: int = 0,
        signature: Optional[bytes] = None,
    ) -> None:
        # =====================================================================
        # UNIVERSAL CHECK 1: Registered operator
        # =====================================================================
        if self.registry is not None and not self.registry.is_registered(operator):
            raise ValidationError(
                f"Operator {operator[:16]}... is not registered",
                asset=asset.symbol, operator=operator,
            )

        # =====================================================================
        # UNIVERSAL CHECK 2: Hard yield bounds
        # =====================================================================
        ok, reason = is_valid_yield_rate(yield_rate_bps)
        if not ok:
            raise InvalidRangeError(reason, asset=asset.symbol, operator=operator)

        if not asset.in_expected_range(yield_rate_bps):
            # Outliers are left to clustering; they only lose the quorum vote.
            logger.warning(f"Submission outside expected range for {asset.symbol}: "
                           f"{yield_rate_bps} bps not in [{asset.min_yield_bps}, {asset.max_yield_bps}] "
                           f"(operator={operator[:16]}...)")

        # =====================================================================
        # UNIVERSAL CHECK 3: Freshness
        # =====================================================================
        age = now - timestamp
        if age > asset.staleness_threshold_seconds:
            raise StaleDataError(
                f"Evidence is {age:.0f}s old (max: {asset.staleness_threshold_seconds:.0f}s)",
                asset=asset.symbol, operator=operator,
            )
        if -age > asset.staleness_threshold_seconds:
            raise ValidationError(
                f"Evidence timestamp {-age:.0f}s in the future",
                asset=asset.symbol, operator=operator,
            )

        # =====================================================================
        # UNIVERSAL CHECK 4: Attestation
        # =====================================================================
        if signature is not None:
            self._verify_signature(asset, operator, yield_rate_bps, round_id, signature)

        # =====================================================================
        # PROTOCOL CHECK: Delegate to the LST handler
        # =====================================================================
        ok, reason = handler_for(asset)(evidence)
        if not ok:
            raise ValidationError(
                f"Evidence rejected for {asset.symbol}: {reason}",
                asset=asset.symbol, operator=operator,
            )

    def _verify_signature(
        self,
        asset: LSTAsset,
        operator: str,
        yield_rate_bps: int,
        round_id: int,
        signature: bytes,
    ) -> None:
        if self.attestation is None:
            raise AttestationInvalidError(
                "Signature supplied but no attestation verifier configured",
                asset=asset.symbol, operator=operator,
            )
        public_key = self.registry.public_key_of(operator) if self.registry else None
        if public_key is None:
            raise AttestationInvalidError(
                f"No public key registered for {operator[:16]}...",
                asset=asset.symbol, operator=operator,
            )
        message = submission_message(asset.symbol, round_id, yield_rate_bps)
        if not self.attestation.verify(public_key, message, signature):
            raise AttestationInvalidError(
                f"Invalid signature from {operator[:16]}...",
                asset=asset.symbol, operator=operator,
            )
