"""Dataclasses shared by peers, servers and the transport adapters.

协议参数、挑战矩阵与消息结构 / Protocol parameters, the per-round challenge
matrix and the messages exchanged between peers and servers.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Dict, List, Sequence, Tuple

from .bound_proof import BoundProof, answered_rows, bound_bits_for
from .codec import decode_challenge_matrix, decode_field_vector, encode_challenge_matrix, encode_field_vector
from .commitments import PedersenGroup, derive_generators
from .constants import (
    CHALLENGE_SPACE,
    DEFAULT_GROUP_PRIME,
    DEFAULT_ZKP_ITERATIONS,
    DOMAIN_CHALLENGE_DIGEST,
    GENERATOR_SEED,
    MAX_FIELD_BITS,
    NORM_SLACK,
    SERVER_INDICES,
)
from .errors import InvalidParameter
from .field_math import hash_to_field


@dataclass(frozen=True)
class ProtocolParameters:
    """协议参数 / Immutable configuration shared by every node of a deployment.

    m: vector dimension, F: field order, l: norm bound bit length (L = 2^l - 1),
    N: number of checksum rows, g/h: commitment generators in Z_p^*.
    """

    m: int
    F: int
    l: int
    g: int
    h: int
    N: int = DEFAULT_ZKP_ITERATIONS
    p: int = DEFAULT_GROUP_PRIME

    def __post_init__(self) -> None:
        if self.F <= 0:
            raise InvalidParameter(f"field order F must be positive, got {self.F}")
        if self.m <= 0:
            raise InvalidParameter(f"dimension m must be positive, got {self.m}")
        if self.l <= 0:
            raise InvalidParameter(f"bound bit length l must be positive, got {self.l}")
        if self.N <= 0:
            raise InvalidParameter(f"number of checksums N must be positive, got {self.N}")
        if self.F.bit_length() > MAX_FIELD_BITS:
            raise InvalidParameter(f"field order must fit in {MAX_FIELD_BITS} bits, got {self.F.bit_length()}")
        if 4 * self.B >= self.F:
            raise InvalidParameter(
                f"field order {self.F} too small for checksum bound 2^{self.bound_bits} (need F > 4B)"
            )
        if self.q <= 4 * self.F:
            raise InvalidParameter("commitment group order must exceed 4F")
        # T - sum s_j^2 must not wrap around q when a cheater pushes the sum up to N*B^2
        if self.q <= self.N * self.B * self.B + (1 << self.norm_bits):
            raise InvalidParameter("commitment group order too small for the squared-checksum bound")
        self.group.validate()

    @property
    def L(self) -> int:
        return (1 << self.l) - 1

    @property
    def q(self) -> int:
        return (self.p - 1) // 2

    @property
    def bound_bits(self) -> int:
        return bound_bits_for(self.m, self.l)

    @property
    def B(self) -> int:
        return 1 << self.bound_bits

    @property
    def range_bits(self) -> int:
        # checksum + B lies in [0, 2B)
        return self.bound_bits + 1

    @property
    def norm_threshold(self) -> int:
        """Upper bound T on the sum of the N squared checksums."""
        return NORM_SLACK * self.N * self.L * self.L

    @property
    def norm_bits(self) -> int:
        return self.norm_threshold.bit_length()

    @cached_property
    def group(self) -> PedersenGroup:
        return PedersenGroup(self.p, self.g, self.h)

    @classmethod
    def with_derived_generators(
        cls,
        m: int,
        F: int,
        l: int,
        N: int = DEFAULT_ZKP_ITERATIONS,
        p: int = DEFAULT_GROUP_PRIME,
        seed: bytes = GENERATOR_SEED,
    ) -> "ProtocolParameters":
        g, h = derive_generators(p, seed)
        return cls(m=m, F=F, l=l, g=g, h=h, N=N, p=p)

    @classmethod
    def from_arg_string(cls, text: str, p: int = DEFAULT_GROUP_PRIME) -> "ProtocolParameters":
        """Parse the comma separated "m,F,l,N,g,h" command line form."""
        parts = [part.strip() for part in text.split(",")]
        if len(parts) != 6:
            raise InvalidParameter(f"expected 6 comma separated values m,F,l,N,g,h, got {len(parts)}")
        try:
            m, F, l, N, g, h = (int(part, 0) for part in parts)
        except ValueError as exc:
            raise InvalidParameter(f"malformed parameter string {text!r}") from exc
        return cls(m=m, F=F, l=l, g=g, h=h, N=N, p=p)

    def to_dict(self) -> Dict[str, int]:
        return {"m": self.m, "F": self.F, "l": self.l, "N": self.N, "g": self.g, "h": self.h, "p": self.p}

    @classmethod
    def from_dict(cls, data: Dict[str, int]) -> "ProtocolParameters":
        try:
            return cls(
                m=int(data["m"]),
                F=int(data["F"]),
                l=int(data["l"]),
                g=int(data["g"]),
                h=int(data["h"]),
                N=int(data.get("N", DEFAULT_ZKP_ITERATIONS)),
                p=int(data.get("p", DEFAULT_GROUP_PRIME)),
            )
        except KeyError as exc:
            raise InvalidParameter(f"missing protocol parameter {exc.args[0]!r}") from exc


@dataclass(frozen=True)
class ChallengeMatrix:
    """挑战矩阵 / N x m matrix over {-1, 0, 1} published by the servers for one round."""

    round_id: int
    rows: Tuple[Tuple[int, ...], ...]

    @classmethod
    def from_rows(cls, round_id: int, rows: Sequence[Sequence[int]]) -> "ChallengeMatrix":
        return cls(round_id, tuple(tuple(int(c) for c in row) for row in rows))

    @property
    def N(self) -> int:
        return len(self.rows)

    @property
    def m(self) -> int:
        return len(self.rows[0]) if self.rows else 0

    @cached_property
    def digest(self) -> int:
        """Binds every Fiat-Shamir transcript of the round to these exact rows."""
        messages: List[int] = [self.round_id, self.N, self.m]
        for row in self.rows:
            messages.extend(row)
        return hash_to_field(messages, CHALLENGE_SPACE, domain=DOMAIN_CHALLENGE_DIGEST)

    def rows_for(self, peer_id: int, share_digests: Sequence[str]) -> List[List[int]]:
        """Rows this peer answers once its shares are fixed by their digests."""
        return answered_rows(self.rows, self.round_id, self.digest, peer_id, share_digests)

    def to_bytes(self) -> bytes:
        return encode_challenge_matrix(self.round_id, self.rows)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ChallengeMatrix":
        round_id, rows = decode_challenge_matrix(data)
        return cls.from_rows(round_id, rows)


class RoundState(Enum):
    IDLE = "idle"
    CHALLENGE_PUBLISHED = "challenge_published"
    ACCEPTING = "accepting"
    FINALIZED = "finalized"


@dataclass
class PeerState:
    """Everything a peer holds for its current round."""

    round_id: int | None = None
    vector: List[int] | None = None
    shares: Tuple[List[int], List[int]] | None = None
    salts: Tuple[str, str] | None = None
    checksums: Tuple[List[int], List[int]] | None = None
    blindings: Tuple[List[int], List[int]] | None = None


@dataclass(frozen=True)
class ProofBundle:
    """Output of Peer.compute_proof_responses: public proof plus per-server private openings."""

    proof: BoundProof
    responses: Tuple[Tuple[int, ...], Tuple[int, ...]]
    openings: Tuple[Tuple[int, ...], Tuple[int, ...]]


@dataclass(frozen=True)
class ShareSubmission:
    """份额提交 / What a peer sends to one server."""

    peer_id: int
    round_id: int
    server_index: int
    share: Tuple[int, ...]
    responses: Tuple[int, ...]
    openings: Tuple[int, ...]
    proof: BoundProof
    salt: str

    def __post_init__(self) -> None:
        if self.server_index not in SERVER_INDICES:
            raise InvalidParameter(f"server index must be 0 or 1, got {self.server_index}")

    def private_payload(self) -> Dict[str, object]:
        """The part only the addressed server may see. The share uses the binary vector codec."""
        return {
            "share": base64.b64encode(encode_field_vector(self.share)).decode(),
            "salt": self.salt,
            "responses": list(self.responses),
            "openings": list(self.openings),
        }

    @staticmethod
    def share_from_payload(payload: Dict[str, object]) -> Tuple[int, ...]:
        return tuple(decode_field_vector(base64.b64decode(payload["share"], validate=True)))


@dataclass(frozen=True)
class SubmissionResult:
    peer_id: int
    round_id: int
    accepted: bool
    reason: str | None = None
    fingerprint: str | None = None

    @classmethod
    def accept(cls, peer_id: int, round_id: int, fingerprint: str) -> "SubmissionResult":
        return cls(peer_id, round_id, True, None, fingerprint)

    @classmethod
    def reject(cls, peer_id: int, round_id: int, reason: str, fingerprint: str | None = None) -> "SubmissionResult":
        return cls(peer_id, round_id, False, reason, fingerprint)


@dataclass(frozen=True)
class AggregateResult:
    """聚合结果 / One server's share of the aggregate once its round is finalised."""

    round_id: int
    server_index: int
    vector: Tuple[int, ...]
    admitted: Tuple[int, ...]
    audit_root: str


@dataclass
class SealedSubmission:
    """加密的份额包 / ShareSubmission in transit: private part sealed, proof in the clear."""

    peer_id: int
    server_index: int
    round_id: int
    encrypted_data: bytes
    nonce: bytes
    kem_public: bytes
    proof: BoundProof


@dataclass
class PerformanceStats:
    """性能统计数据类 / Collects timing and operation counts for each protocol phase."""

    phase_name: str
    duration: float
    operations: Dict[str, int] = field(default_factory=dict)
