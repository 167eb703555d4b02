"""Server side of P4P: challenge publication, proof verification and the accumulator."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from .bound_proof import share_digest, verify_bound, verify_opening
from .constants import DEFAULT_GROUP_PRIME, SERVER_INDICES
from .data_models import (
    AggregateResult,
    ChallengeMatrix,
    ProtocolParameters,
    RoundState,
    ShareSubmission,
    SubmissionResult,
)
from .errors import InvalidParameter, ProofVerificationFailed, RoundClosed, RoundInProgress
from .field_math import mod, random_field_element
from .merkle import MerkleTree
from .performance import PerformanceTracker
from .vector_ops import inner_product, vector_add

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Verdict:
    """A successful verification, waiting to be admitted into the accumulator."""

    peer_id: int
    round_id: int
    epoch: int
    fingerprint: str
    share: Tuple[int, ...]


class Server:
    """聚合服务器 / One of the two non-colluding aggregation servers.

    Round lifecycle: IDLE -> CHALLENGE_PUBLISHED -> ACCEPTING -> FINALIZED,
    back to IDLE via init(). Verification only reads the round snapshot and
    may run on many threads at once; admission into the accumulator is
    serialised by the server lock and checked against the challenge epoch.
    """

    def __init__(self, params: ProtocolParameters, server_index: int) -> None:
        if server_index not in SERVER_INDICES:
            raise InvalidParameter(f"server index must be 0 or 1, got {server_index}")
        self.params = params
        self.server_index = server_index
        self.stats = PerformanceTracker()

        self._lock = threading.Lock()
        self._state = RoundState.IDLE
        self._challenge: ChallengeMatrix | None = None
        self._epoch = 0
        self._in_flight = 0
        self._next_round_id = 1
        self._sum: List[int] = [0] * params.m
        self._admitted: Dict[int, str] = {}

    @classmethod
    def create(
        cls,
        m: int,
        F: int,
        l: int,
        N: int,
        g: int,
        h: int,
        server_index: int = 0,
        p: int = DEFAULT_GROUP_PRIME,
    ) -> "Server":
        if F <= 0:
            raise InvalidParameter(f"field order F must be positive, got {F}")
        return cls(ProtocolParameters(m=m, F=F, l=l, g=g, h=h, N=N, p=p), server_index)

    @property
    def state(self) -> RoundState:
        with self._lock:
            return self._state

    @property
    def challenge(self) -> ChallengeMatrix | None:
        with self._lock:
            return self._challenge

    @property
    def sum(self) -> List[int]:
        with self._lock:
            return list(self._sum)

    @property
    def admitted_peers(self) -> List[int]:
        with self._lock:
            return sorted(self._admitted)

    # 轮次管理 / round management

    def init(self) -> None:
        """Zero the accumulator and return to IDLE."""
        with self._lock:
            if self._in_flight:
                raise RoundInProgress(f"{self._in_flight} verification(s) still running")
            self._reset_round()
            self._state = RoundState.IDLE
            self._challenge = None
        logger.info("server %d initialised", self.server_index)

    def _reset_round(self) -> None:
        self._sum = [0] * self.params.m
        self._admitted = {}

    def _require_idle(self) -> None:
        if self._state is RoundState.FINALIZED:
            raise RoundClosed("round is finalised; call init() before starting a new one")
        if self._state is not RoundState.IDLE or self._in_flight:
            raise RoundInProgress("a round is still open; close it before issuing a new challenge")

    def _install(self, matrix: ChallengeMatrix) -> None:
        self._challenge = matrix
        self._epoch += 1
        self._next_round_id = max(self._next_round_id, matrix.round_id + 1)
        self._reset_round()
        self._state = RoundState.CHALLENGE_PUBLISHED

    def generate_challenge_vectors(self, round_id: int | None = None) -> ChallengeMatrix:
        """Draw a fresh N x m matrix with entries uniform in {-1, 0, 1}."""
        start_time = time.time()
        with self._lock:
            self._require_idle()
            if round_id is None:
                round_id = self._next_round_id
            rows = [
                [random_field_element(4) - 2 for _ in range(self.params.m)]
                for _ in range(self.params.N)
            ]
            matrix = ChallengeMatrix.from_rows(round_id, rows)
            self._install(matrix)
        self.stats.add("挑战矩阵生成", time.time() - start_time, {"随机挑战元素 (N×m)": self.params.N * self.params.m})
        logger.info("server %d published challenge for round %d (N=%d, m=%d)", self.server_index, round_id, matrix.N, matrix.m)
        return matrix

    def adopt_challenge(self, matrix: ChallengeMatrix) -> None:
        """Install the challenge generated by the other server."""
        if matrix.N != self.params.N or matrix.m != self.params.m:
            raise InvalidParameter(
                f"challenge is {matrix.N}x{matrix.m}, expected {self.params.N}x{self.params.m}"
            )
        for row in matrix.rows:
            if any(c not in (-1, 0, 1) for c in row):
                raise InvalidParameter("challenge entries must lie in {-1, 0, 1}")
        with self._lock:
            self._require_idle()
            self._install(matrix)
        logger.info("server %d adopted challenge for round %d", self.server_index, matrix.round_id)

    def publish_challenge(self, round_id: int | None = None) -> ChallengeMatrix:
        with self._lock:
            matrix = self._challenge
        if matrix is None:
            raise InvalidParameter("no challenge has been published yet")
        if round_id is not None and round_id != matrix.round_id:
            raise InvalidParameter(f"no challenge for round {round_id}; current round is {matrix.round_id}")
        return matrix

    def close_round(self) -> None:
        """Stop accepting shares. Idempotent once FINALIZED."""
        with self._lock:
            if self._state is RoundState.IDLE:
                raise RoundClosed("no round is open")
            self._state = RoundState.FINALIZED
            admitted = len(self._admitted)
        logger.info("server %d closed round with %d admitted peer(s)", self.server_index, admitted)

    def finalize_sum(self) -> List[int]:
        """Close the round if still open and return a copy of the accumulator."""
        with self._lock:
            if self._state in (RoundState.CHALLENGE_PUBLISHED, RoundState.ACCEPTING):
                self._state = RoundState.FINALIZED
            return list(self._sum)

    def get_aggregate(self, round_id: int) -> AggregateResult:
        with self._lock:
            if self._state is not RoundState.FINALIZED:
                raise RoundInProgress("aggregate is only available after the round is finalised")
            if self._challenge is None or self._challenge.round_id != round_id:
                raise InvalidParameter(f"no finalised aggregate for round {round_id}")
            admitted = dict(self._admitted)
            vector = tuple(self._sum)
        return AggregateResult(
            round_id=round_id,
            server_index=self.server_index,
            vector=vector,
            admitted=tuple(sorted(admitted)),
            audit_root=self._merkle(admitted).root.hash,
        )

    # 审计 / audit

    @staticmethod
    def _merkle(admitted: Dict[int, str]) -> MerkleTree:
        return MerkleTree.for_admissions(admitted)

    def audit_root(self) -> str:
        """Merkle root over (peer id, proof fingerprint) of every admitted peer."""
        with self._lock:
            admitted = dict(self._admitted)
        return self._merkle(admitted).root.hash

    def inclusion_proof(self, peer_id: int) -> List[Tuple[str, str]]:
        with self._lock:
            admitted = dict(self._admitted)
        if peer_id not in admitted:
            raise InvalidParameter(f"peer {peer_id} was not admitted this round")
        return self._merkle(admitted).get_proof(sorted(admitted).index(peer_id))

    # 验证与累加 / verification and accumulation

    def verify(self, submission: ShareSubmission) -> Verdict:
        """Check a submission against the current challenge without touching the accumulator.

        Raises ProofVerificationFailed with the first failing check.
        """
        with self._lock:
            if self._state is RoundState.FINALIZED:
                raise RoundClosed("round is finalised; no further submissions are accepted")
            challenge = self._challenge
            epoch = self._epoch
            if challenge is None:
                raise ProofVerificationFailed("no challenge has been published", submission.peer_id)
            self._in_flight += 1

        start_time = time.time()
        try:
            verdict = self._check(submission, challenge, epoch)
        finally:
            with self._lock:
                self._in_flight -= 1
        self.stats.add(
            "份额验证",
            time.time() - start_time,
            {
                "校验和重算 (N行)": self.params.N,
                "承诺打开检查": self.params.N,
                "OR证明验证 (进位+比特)": self.params.N * (1 + self.params.range_bits) + self.params.norm_bits,
                "平方证明验证": self.params.N,
            },
        )
        return verdict

    def _check(self, submission: ShareSubmission, challenge: ChallengeMatrix, epoch: int) -> Verdict:
        params = self.params
        F = params.F
        proof = submission.proof
        peer_id = submission.peer_id

        if submission.server_index != self.server_index:
            raise ProofVerificationFailed(
                f"submission addressed to server {submission.server_index}, this is server {self.server_index}",
                peer_id,
            )
        if submission.round_id != challenge.round_id or proof.round_id != challenge.round_id:
            raise ProofVerificationFailed(
                f"submission is for round {submission.round_id}, current round is {challenge.round_id}", peer_id
            )
        if proof.peer_id != peer_id:
            raise ProofVerificationFailed("proof belongs to a different peer", peer_id)
        if proof.challenge_digest != challenge.digest:
            raise ProofVerificationFailed("proof was built against a different challenge", peer_id)
        if len(submission.share) != params.m:
            raise ProofVerificationFailed(f"share has dimension {len(submission.share)}, expected {params.m}", peer_id)
        if any(mod(value, F) != value for value in submission.share):
            raise ProofVerificationFailed("share is not in canonical field form", peer_id)
        if len(submission.responses) != challenge.N or len(proof.rows) != challenge.N:
            raise ProofVerificationFailed(f"expected {challenge.N} checksum responses", peer_id)

        try:
            digest = share_digest(submission.share, submission.salt)
        except ValueError as exc:
            raise ProofVerificationFailed(f"malformed share salt: {exc}", peer_id) from exc
        if digest != proof.share_digests[self.server_index]:
            raise ProofVerificationFailed("share does not match the digest in the proof", peer_id)

        for j, row in enumerate(challenge.rows_for(peer_id, proof.share_digests)):
            expected = mod(inner_product(row, submission.share), F)
            if submission.responses[j] != expected:
                raise ProofVerificationFailed(f"row {j}: response does not match the share checksum", peer_id)

        verify_opening(params, proof, self.server_index, submission.responses, submission.openings)
        verify_bound(params, proof)

        return Verdict(
            peer_id=peer_id,
            round_id=challenge.round_id,
            epoch=epoch,
            fingerprint=proof.fingerprint(),
            share=tuple(submission.share),
        )

    def _admission_error(self, verdict: Verdict) -> str | None:
        """Why the verdict cannot be admitted now, or None. Caller holds the lock."""
        if self._state is RoundState.FINALIZED:
            raise RoundClosed("round is finalised; no further submissions are accepted")
        if self._challenge is None or verdict.epoch != self._epoch:
            return "verdict is for a stale challenge"
        if verdict.peer_id in self._admitted:
            return "peer already admitted this round"
        return None

    def _fold(self, verdict: Verdict) -> None:
        vector_add(self._sum, verdict.share, self._sum, self.params.F)
        self._admitted[verdict.peer_id] = verdict.fingerprint
        self._state = RoundState.ACCEPTING

    def admit(self, verdict: Verdict) -> SubmissionResult:
        """Fold a verified share into the accumulator. All-or-nothing per peer per round."""
        with self._lock:
            reason = self._admission_error(verdict)
            if reason is None:
                self._fold(verdict)
        if reason is not None:
            return SubmissionResult.reject(verdict.peer_id, verdict.round_id, reason, verdict.fingerprint)
        logger.info("server %d admitted peer %d in round %d", self.server_index, verdict.peer_id, verdict.round_id)
        return SubmissionResult.accept(verdict.peer_id, verdict.round_id, verdict.fingerprint)

    @staticmethod
    def admit_pair(servers: Sequence["Server"], verdicts: Sequence[Verdict]) -> SubmissionResult:
        """Admit one peer on server 0 and server 1 together, or on neither.

        Both locks are held across the check and the fold, always in server
        order, so a concurrent close_round() sees the peer on both sums or on none.
        """
        server_0, server_1 = servers
        verdict_0, verdict_1 = verdicts
        if server_0 is server_1:
            raise InvalidParameter("admit_pair needs two distinct servers")
        with server_0._lock, server_1._lock:
            reason = server_0._admission_error(verdict_0) or server_1._admission_error(verdict_1)
            if reason is None:
                server_0._fold(verdict_0)
                server_1._fold(verdict_1)
        if reason is not None:
            return SubmissionResult.reject(verdict_0.peer_id, verdict_0.round_id, reason, verdict_0.fingerprint)
        logger.info("servers admitted peer %d in round %d", verdict_0.peer_id, verdict_0.round_id)
        return SubmissionResult.accept(verdict_0.peer_id, verdict_0.round_id, verdict_0.fingerprint)

    def verify_and_accumulate(self, submission: ShareSubmission) -> SubmissionResult:
        try:
            verdict = self.verify(submission)
        except ProofVerificationFailed as exc:
            logger.warning("server %d rejected peer %d: %s", self.server_index, submission.peer_id, exc.reason)
            return SubmissionResult.reject(submission.peer_id, submission.round_id, exc.reason)
        return self.admit(verdict)

    def submit_share(self, submission: ShareSubmission) -> SubmissionResult:
        return self.verify_and_accumulate(submission)
