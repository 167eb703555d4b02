"""Threaded peer and server nodes driving one P4P round over the simulated network."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Sequence

from cryptography.exceptions import InvalidTag

from .crypto_manager import CryptoManager
from .data_models import ChallengeMatrix, ShareSubmission, SubmissionResult
from .errors import P4PError, ProofVerificationFailed
from .network_simulator import COORDINATOR, NetworkSimulator, peer_endpoint, server_endpoint
from .peer import Peer
from .server import Server, Verdict

logger = logging.getLogger(__name__)


class PeerNode(threading.Thread):
    """分布式数据持有者 / Peer thread: waits for the challenge, then seals one submission per server."""

    def __init__(self, peer: Peer, vector: Sequence[int], network: NetworkSimulator, timeout: float = 60.0) -> None:
        super().__init__(name=peer_endpoint(peer.peer_id))
        self.peer = peer
        self.vector = list(vector)
        self.network = network
        self.timeout = timeout
        self.endpoint = peer_endpoint(peer.peer_id)

        self.results: List[SubmissionResult] = []
        self.error: BaseException | None = None
        self.network_send_time: float = 0
        self.network_ops: Dict[str, int] = {}

        self.network.register(self.endpoint)

    def run(self) -> None:  # pragma: no cover - threaded entry point
        """数据持有者主流程 / Main thread routine for a peer."""
        try:
            challenge = self.receive_challenge()
            self.send_submissions(challenge)
            self.results = self.network.receive_results(self.endpoint, 2, self.timeout)
        except Exception as exc:
            self.error = exc
            logger.exception("peer %d failed", self.peer.peer_id)

    def receive_challenge(self) -> ChallengeMatrix:
        data = self.network.receive_challenge(self.endpoint, self.timeout)
        if data is None:
            raise TimeoutError(f"{self.endpoint}: no challenge received")
        return ChallengeMatrix.from_bytes(data)

    def send_submissions(self, challenge: ChallengeMatrix) -> None:
        """加密并发送份额 / Build shares and proof, seal each half for its server and send it."""
        submissions = self.peer.prepare_submissions(challenge, self.vector)

        send_start_time = time.time()
        sent_bytes = 0
        for submission in submissions:
            receiver = server_endpoint(submission.server_index)
            sealed = CryptoManager.seal_submission(submission, self.network.get_kem_public_key(receiver))
            data = CryptoManager.serialize_sealed_submission(sealed)
            self.network.send_submission(receiver, data)
            sent_bytes += len(data)
        self.network_send_time = time.time() - send_start_time
        self.network_ops['发送加密份额 (KEM+AES-GCM)'] = len(submissions)
        self.network_ops['发送字节数'] = sent_bytes
        logger.info(
            "peer %d sent %d sealed submissions (%d bytes, %.2f ms)",
            self.peer.peer_id, len(submissions), sent_bytes, self.network_send_time * 1000,
        )


class ServerNode(threading.Thread):
    """分布式聚合服务器 / Server thread for one round.

    Server 0 draws the challenge and broadcasts it; server 1 adopts it. Each
    server verifies what it receives, the two exchange their
    {peer: fingerprint} maps, and only peers both verified with the same
    proof are admitted.
    """

    def __init__(
        self,
        server: Server,
        network: NetworkSimulator,
        expected_peers: int,
        round_id: int,
        timeout: float = 120.0,
    ) -> None:
        super().__init__(name=server_endpoint(server.server_index))
        self.server = server
        self.network = network
        self.expected_peers = expected_peers
        self.round_id = round_id
        self.timeout = timeout
        self.endpoint = server_endpoint(server.server_index)
        self.other_endpoint = server_endpoint(1 - server.server_index)

        self.kem_private_key, self.kem_public_key = CryptoManager.generate_kem_keypair()
        self.results: Dict[int, SubmissionResult] = {}
        self.error: BaseException | None = None

        self.network.register(self.endpoint, self.kem_public_key)

    def run(self) -> None:  # pragma: no cover - threaded entry point
        try:
            self.setup_challenge()
            verdicts = self.verify_submissions()
            self.admit_agreed(verdicts)
            self.server.finalize_sum()
            self.network.send_aggregate(COORDINATOR, self.server.get_aggregate(self.round_id))
        except Exception as exc:
            self.error = exc
            logger.exception("server %d failed", self.server.server_index)

    def setup_challenge(self) -> ChallengeMatrix:
        if self.server.server_index == 0:
            matrix = self.server.generate_challenge_vectors(self.round_id)
            self.network.broadcast_challenge(self.endpoint, matrix.to_bytes())
            return matrix
        data = self.network.receive_challenge(self.endpoint, self.timeout)
        if data is None:
            raise TimeoutError(f"{self.endpoint}: no challenge received from server 0")
        matrix = ChallengeMatrix.from_bytes(data)
        self.server.adopt_challenge(matrix)
        return matrix

    def _open(self, data: bytes) -> ShareSubmission:
        """Decode and decrypt one submission; any malformed input becomes ProofVerificationFailed."""
        try:
            sealed = CryptoManager.deserialize_sealed_submission(data)
        except (P4PError, ValueError, KeyError, TypeError) as exc:
            raise ProofVerificationFailed(f"malformed submission: {exc}") from exc
        try:
            return CryptoManager.open_submission(sealed, self.kem_private_key)
        except InvalidTag as exc:
            raise ProofVerificationFailed("sealed submission failed authentication", sealed.peer_id) from exc
        except (P4PError, ValueError, KeyError, TypeError) as exc:
            raise ProofVerificationFailed(f"malformed submission: {exc}", sealed.peer_id) from exc

    def _reject(self, peer_id: int, reason: str) -> None:
        result = SubmissionResult.reject(peer_id, self.round_id, reason)
        self.results[peer_id] = result
        if self.network.is_registered(peer_endpoint(peer_id)):
            self.network.send_result(peer_endpoint(peer_id), result)
        else:
            logger.warning("server %d: no endpoint for peer %d, result dropped", self.server.server_index, peer_id)

    def verify_submissions(self) -> Dict[int, Verdict]:
        """接收并验证份额 / Receive, open and verify every submission addressed to this server."""
        received = self.network.receive_submissions(self.endpoint, self.expected_peers, self.timeout)
        verdicts: Dict[int, Verdict] = {}
        for data in received:
            try:
                submission = self._open(data)
                verdicts[submission.peer_id] = self.server.verify(submission)
            except ProofVerificationFailed as exc:
                logger.warning("server %d rejected peer %s: %s", self.server.server_index, exc.peer_id, exc.reason)
                if exc.peer_id is not None and exc.peer_id not in verdicts:
                    self._reject(exc.peer_id, exc.reason)
        return verdicts

    def admit_agreed(self, verdicts: Dict[int, Verdict]) -> None:
        """Admit only peers the other server verified with the same proof fingerprint."""
        self.network.send_verdicts(
            self.other_endpoint, self.endpoint, {peer_id: v.fingerprint for peer_id, v in verdicts.items()}
        )
        reply = self.network.receive_verdicts(self.endpoint, self.timeout)
        if reply is None:
            raise P4PError(f"{self.endpoint}: no verdicts received from {self.other_endpoint}")
        _, other_verdicts = reply

        for peer_id, verdict in sorted(verdicts.items()):
            if other_verdicts.get(peer_id) != verdict.fingerprint:
                self._reject(peer_id, "servers disagree on this peer's proof")
                continue
            result = self.server.admit(verdict)
            self.results[peer_id] = result
            self.network.send_result(peer_endpoint(peer_id), result)
