"""
Collaborator ports consumed by the YieldSync core.

- OperatorRegistry: who may submit and with what stake
- Attestation: signature verification/aggregation (scheme-agnostic)
- GroundTruthSource: independent yield observations for challenges

In-memory/ECDSA implementations live here too so that the core can run
end-to-end without a ledger.
"""

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)


# =============================================================================
# OPERATOR REGISTRY
# =============================================================================

class OperatorRegistry(ABC):
    """Tells the core which principals may submit yield data."""

    @abstractmethod
    def is_registered(self, operator: str) -> bool:
        ...

    @abstractmethod
    def stake_of(self, operator: str) -> float:
        ...

    @abstractmethod
    def total_registered_operators(self) -> int:
        ...

    def public_key_of(self, operator: str) -> Optional[bytes]:
        """Compressed public key used for attestation, if known."""
        return None


@dataclass
class _RegisteredOperator:
    address: str
    stake: float
    public_key: Optional[bytes] = None
    registered_at: float = field(default_factory=time.time)


class InMemoryOperatorRegistry(OperatorRegistry):
    """
    Thread-safe registry backed by a dict.

    Usage:
        registry = InMemoryOperatorRegistry()
        registry.register("0xabc...", stake=32.0)
        registry.is_registered("0xabc...")  # True
    """

    def __init__(self):
        self._operators: Dict[str, _RegisteredOperator] = {}
        self._lock = threading.Lock()

    def register(self, operator: str, stake: float, public_key: Optional[bytes] = None) -> None:
        with self._lock:
            self._operators[operator] = _RegisteredOperator(
                address=operator,
                stake=stake,
                public_key=public_key,
            )
        logger.info(f"Operator registered: {operator[:16]}... (stake={stake:.2f})")

    def deregister(self, operator: str) -> bool:
        with self._lock:
            if operator in self._operators:
                del self._operators[operator]
                logger.info(f"Operator deregistered: {operator[:16]}...")
                return True
        return False

    def is_registered(self, operator: str) -> bool:
        with self._lock:
            return operator in self._operators

    def stake_of(self, operator: str) -> float:
        with self._lock:
            entry = self._operators.get(operator)
            return entry.stake if entry else 0.0

    def total_registered_operators(self) -> int:
        with self._lock:
            return len(self._operators)

    def public_key_of(self, operator: str) -> Optional[bytes]:
        with self._lock:
            entry = self._operators.get(operator)
            return entry.public_key if entry else None

    def operators(self) -> List[str]:
        with self._lock:
            return sorted(self._operators)


# =============================================================================
# ATTESTATION
# =============================================================================

@dataclass(frozen=True)
class AggregatedProof:
    """Signatures of all contributing operators over a single message."""
    message_hash: str
    signers: Tuple[str, ...]
    signatures: Tuple[bytes, ...]

    def to_dict(self) -> dict:
        return {
            "message_hash": self.message_hash,
            "signers": list(self.signers),
            "signature_count": len(self.signatures),
        }


class Attestation(ABC):
    """Opaque signature capability. The concrete scheme is swappable."""

    @abstractmethod
    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool:
        ...

    @abstractmethod
    def aggregate(self, message: bytes, signatures: Mapping[str, bytes]) -> AggregatedProof:
        ...


class EcdsaAttestation(Attestation):
    """
    ECDSA over secp256k1 with SHA-256 digests.

    Public keys are X9.62 compressed points. "Aggregation" is a sorted bundle
    of the individual signatures; verifiers check each one.
    """

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool:
        try:
            key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
            key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
            return True
        except InvalidSignature:
            return False
        except (ValueError, TypeError) as e:
            logger.debug(f"Malformed attestation input: {e}")
            return False

    def aggregate(self, message: bytes, signatures: Mapping[str, bytes]) -> AggregatedProof:
        signers = tuple(sorted(signatures))
        return AggregatedProof(
            message_hash=hashlib.sha256(message).hexdigest(),
            signers=signers,
            signatures=tuple(signatures[s] for s in signers),
        )


def derive_operator_keypair(seed: str) -> Tuple[ec.EllipticCurvePrivateKey, bytes, str]:
    """
    Derive a deterministic operator identity from a secret seed.

    1. private_key = SHA256(seed) on secp256k1
    2. public_key = compressed point
    3. operator_id = SHA256(public_key)[:32]

    Returns (private_key, public_key_bytes, operator_id).
    """
    private_key_bytes = hashlib.sha256(seed.encode()).digest()
    private_key = ec.derive_private_key(int.from_bytes(private_key_bytes, "big"), ec.SECP256K1())
    public_key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )
    operator_id = hashlib.sha256(public_key_bytes).hexdigest()[:32]
    return private_key, public_key_bytes, operator_id


def sign_message(private_key: ec.EllipticCurvePrivateKey, message: bytes) -> bytes:
    """Sign a message for EcdsaAttestation."""
    return private_key.sign(message, ec.ECDSA(hashes.SHA256()))


def submission_message(asset: str, round_id: int, yield_rate_bps: int) -> bytes:
    """Canonical bytes an operator signs for a submission."""
    return f"{asset}:{round_id}:{yield_rate_bps}".encode()


# =============================================================================
# GROUND TRUTH
# =============================================================================

@dataclass(frozen=True)
class YieldObservation:
    """An independent yield observation for an asset."""
    asset: str
    rate_bps: int
    timestamp: float
    proof: Optional[str] = None
    stale: bool = False

    def to_dict(self) -> dict:
        return {
            "asset": self.asset,
            "rate_bps": self.rate_bps,
            "timestamp": self.timestamp,
            "proof": self.proof,
            "stale": self.stale,
        }


class GroundTruthSource(ABC):
    """Source of yield observations. May fail or return stale data."""

    @abstractmethod
    def fetch_yield(self, asset: str, at_time: Optional[float] = None) -> YieldObservation:
        """
        Fetch the yield for `asset` as of `at_time` (None = latest).

        Raises ExternalFetchError when the observation cannot be produced.
        """
        ...
