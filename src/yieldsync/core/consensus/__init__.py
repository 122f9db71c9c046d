"""
YieldSync Consensus Module

1. **SubmissionVerifier**: Universal constraints (yield bounds, freshness, attestation)
   plus the per-LST evidence handler
2. **ConsensusEngine**: Tolerance clustering with a 67% quorum of registered operators
3. **ChallengeVerifier**: Disputes against ground truth with slashing on success

Architecture:
=============
- One active round per asset, serialized by a per-asset lock
- Consensus value = truncated mean of the largest cluster
- One challenge per task, 10 bps tolerance, challenger earns 50% of slashed stake
"""

from yieldsync.core.consensus.verifier import SubmissionVerifier
from yieldsync.core.consensus.yield_consensus import (
    Cluster,
    ConsensusEngine,
    ConsensusResult,
    YieldSubmissionStore,
    find_clusters,
    select_cluster,
)
from yieldsync.core.consensus.challenge import ChallengeVerifier, VerificationResult

__all__ = [
    "SubmissionVerifier",
    "ConsensusEngine",
    "ConsensusResult",
    "YieldSubmissionStore",
    "Cluster",
    "find_clusters",
    "select_cluster",
    "ChallengeVerifier",
    "VerificationResult",
]
