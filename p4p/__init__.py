"""P4P: two-server private aggregation of bounded-norm integer vectors."""

from .bound_proof import BoundProof, RowProof
from .commitments import SquareProof
from .data_models import (
    AggregateResult,
    ChallengeMatrix,
    ProtocolParameters,
    RoundState,
    ShareSubmission,
    SubmissionResult,
)
from .errors import (
    AuditMismatch,
    DigestUnavailable,
    DimensionMismatch,
    InvalidParameter,
    P4PError,
    ProofVerificationFailed,
    RoundClosed,
    RoundInProgress,
)
from .peer import Peer
from .protocol import AggregationRound, combine_sums, run_distributed_demo
from .server import Server

__all__ = [
    "AggregateResult",
    "AggregationRound",
    "AuditMismatch",
    "BoundProof",
    "ChallengeMatrix",
    "DigestUnavailable",
    "DimensionMismatch",
    "InvalidParameter",
    "P4PError",
    "Peer",
    "ProofVerificationFailed",
    "ProtocolParameters",
    "RoundClosed",
    "RoundInProgress",
    "RoundState",
    "RowProof",
    "Server",
    "ShareSubmission",
    "SquareProof",
    "SubmissionResult",
    "combine_sums",
    "run_distributed_demo",
]
