"""Peer side of P4P: additive shares and the bound proof for one round."""

from __future__ import annotations

import logging
import secrets
import time
from typing import List, Sequence, Tuple

from .bound_proof import new_share_salt, prove_bound, share_digest
from .constants import DEFAULT_GROUP_PRIME
from .data_models import ChallengeMatrix, PeerState, ProofBundle, ProtocolParameters, ShareSubmission
from .errors import DimensionMismatch, InvalidParameter
from .field_math import mod
from .performance import PerformanceTracker
from .vector_ops import inner_product, vector_sub

logger = logging.getLogger(__name__)


class Peer:
    """数据持有者 / A peer holding a private vector d in Z_F^m.

    The peer splits d into u (for server 0) and v = d - u (for server 1) and
    proves, without revealing d, that every checksum c_j·d stays below the
    bound B and that the squared checksums sum to at most NORM_SLACK * N * L^2.
    """

    def __init__(self, params: ProtocolParameters, peer_id: int) -> None:
        self.params = params
        self.peer_id = peer_id
        self.state = PeerState()
        self.stats = PerformanceTracker()

    @classmethod
    def create(
        cls,
        m: int,
        F: int,
        l: int,
        N: int,
        g: int,
        h: int,
        peer_id: int = 0,
        p: int = DEFAULT_GROUP_PRIME,
    ) -> "Peer":
        """Positional (m, F, l, N, g, h) constructor."""
        if F <= 0:
            raise InvalidParameter(f"field order F must be positive, got {F}")
        params = ProtocolParameters(m=m, F=F, l=l, g=g, h=h, N=N, p=p)
        return cls(params, peer_id)

    @property
    def L(self) -> int:
        return self.params.L

    def _normalise(self, vector: Sequence[int]) -> List[int]:
        if len(vector) != self.params.m:
            raise DimensionMismatch(f"vector has dimension {len(vector)}, expected {self.params.m}")
        return [mod(int(value), self.params.F) for value in vector]

    def set_vector(self, vector: Sequence[int]) -> None:
        """Install the private vector for the next round, dropping any previous shares."""
        self.state = PeerState(vector=self._normalise(vector))

    def _vector_or_state(self, vector: Sequence[int] | None) -> List[int]:
        if vector is not None:
            return self._normalise(vector)
        if self.state.vector is None:
            raise InvalidParameter("no vector set on this peer")
        return self.state.vector

    def check_bound(self, vector: Sequence[int] | None = None) -> bool:
        """True if ||vector||_2 <= L; exact integer comparison of the squared norm."""
        data = self._vector_or_state(vector)
        return inner_product(data, data) <= self.params.L * self.params.L

    def compute_share(self, vector: Sequence[int] | None = None) -> Tuple[List[int], List[int]]:
        """Split the vector into (u, v) with u uniform in Z_F and u + v = vector mod F.

        Each share gets a fresh salt; the salted digests fix the shares before
        the peer learns which rows it has to answer.
        """
        data = self._vector_or_state(vector)
        F = self.params.F
        u = [mod(secrets.randbelow(F), F) for _ in range(self.params.m)]
        v = vector_sub(data, u, F)
        self.state.vector = data
        self.state.shares = (u, v)
        self.state.salts = (new_share_salt(), new_share_salt())
        self.state.checksums = None
        self.state.blindings = None
        return list(u), list(v)

    def share_digests(self) -> Tuple[str, str]:
        if self.state.shares is None or self.state.salts is None:
            raise InvalidParameter("no shares computed on this peer")
        u, v = self.state.shares
        salt_u, salt_v = self.state.salts
        return share_digest(u, salt_u), share_digest(v, salt_v)

    def compute_proof_responses(
        self,
        challenge: ChallengeMatrix,
        vector: Sequence[int] | None = None,
    ) -> ProofBundle:
        """Checksums of both shares against every answered row, plus the bound proof."""
        if vector is not None or self.state.shares is None:
            self.compute_share(vector)
        if challenge.m != self.params.m:
            raise DimensionMismatch(f"challenge rows have dimension {challenge.m}, expected {self.params.m}")

        start_time = time.time()
        params = self.params
        F = params.F
        group = params.group
        u, v = self.state.shares
        digests = self.share_digests()

        x_values: List[int] = []
        y_values: List[int] = []
        for row in challenge.rows_for(self.peer_id, digests):
            x_values.append(mod(inner_product(row, u), F))
            y_values.append(mod(inner_product(row, v), F))
        r_values = [group.random_exponent() for _ in x_values]
        t_values = [group.random_exponent() for _ in y_values]

        proof = prove_bound(
            params,
            self.peer_id,
            challenge.round_id,
            challenge.digest,
            digests,
            (x_values, y_values),
            (r_values, t_values),
        )
        self.state.round_id = challenge.round_id
        self.state.checksums = (x_values, y_values)
        self.state.blindings = (r_values, t_values)

        duration = time.time() - start_time
        self.stats.add(
            "份额与范数证明生成",
            duration,
            {
                "校验和计算 (每行两个份额)": 2 * challenge.N,
                "Pedersen承诺": (4 + params.range_bits) * challenge.N + params.norm_bits,
                "OR证明 (进位+比特)": (1 + params.range_bits) * challenge.N + params.norm_bits,
                "平方证明": challenge.N,
            },
        )
        logger.debug("peer %d built bound proof for round %d in %.2f ms", self.peer_id, challenge.round_id, duration * 1000)

        return ProofBundle(
            proof=proof,
            responses=(tuple(x_values), tuple(y_values)),
            openings=(tuple(r_values), tuple(t_values)),
        )

    def prepare_submissions(
        self,
        challenge: ChallengeMatrix,
        vector: Sequence[int] | None = None,
    ) -> Tuple[ShareSubmission, ShareSubmission]:
        """Fresh shares and proof for this challenge, one submission per server."""
        self.compute_share(vector)
        bundle = self.compute_proof_responses(challenge)
        return tuple(
            ShareSubmission(
                peer_id=self.peer_id,
                round_id=challenge.round_id,
                server_index=index,
                share=tuple(share),
                responses=bundle.responses[index],
                openings=bundle.openings[index],
                proof=bundle.proof,
                salt=salt,
            )
            for index, (share, salt) in enumerate(zip(self.state.shares, self.state.salts))
        )
