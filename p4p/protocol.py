"""High-level orchestration: two-server rounds and the distributed demo."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Sequence, Tuple

from .constants import MODP_1024_PRIME
from .data_models import ChallengeMatrix, PerformanceStats, ProtocolParameters, ShareSubmission, SubmissionResult
from .errors import AuditMismatch, ProofVerificationFailed
from .network_simulator import COORDINATOR, NetworkSimulator
from .participant import PeerNode, ServerNode
from .peer import Peer
from .performance import merge_max, print_performance_report
from .server import Server, Verdict
from .vector_ops import l2_norm, rand_vector, vector_add

logger = logging.getLogger(__name__)


def combine_sums(sum_0: Sequence[int], sum_1: Sequence[int], F: int) -> List[int]:
    """合并两个服务器的累加和 / The plaintext aggregate of every admitted vector."""
    return vector_add(sum_0, sum_1, None, F)


class AggregationRound:
    """Drives both servers through one round in process.

    A peer is admitted only if both servers verify its submission and see
    the same proof fingerprint; verification on the two servers runs
    concurrently and admission updates both accumulators under both locks.
    """

    def __init__(self, server_0: Server, server_1: Server, max_workers: int = 4) -> None:
        if (server_0.server_index, server_1.server_index) != (0, 1):
            raise ValueError("AggregationRound expects server 0 and server 1, in that order")
        self.servers = (server_0, server_1)
        self.max_workers = max_workers
        self.round_id: int | None = None

    @property
    def params(self) -> ProtocolParameters:
        return self.servers[0].params

    def open(self, round_id: int | None = None) -> ChallengeMatrix:
        matrix = self.servers[0].generate_challenge_vectors(round_id)
        self.servers[1].adopt_challenge(matrix)
        self.round_id = matrix.round_id
        return matrix

    @staticmethod
    def _try_verify(server: Server, submission: ShareSubmission) -> Verdict | ProofVerificationFailed:
        try:
            return server.verify(submission)
        except ProofVerificationFailed as exc:
            return exc

    def submit(self, submissions: Tuple[ShareSubmission, ShareSubmission]) -> SubmissionResult:
        first, second = submissions
        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(self._try_verify, server, sub) for server, sub in zip(self.servers, (first, second))]
            outcomes = [future.result() for future in futures]

        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, ProofVerificationFailed):
                logger.warning("server %d rejected peer %d: %s", index, first.peer_id, outcome.reason)
                return SubmissionResult.reject(first.peer_id, first.round_id, f"server {index}: {outcome.reason}")

        verdict_0, verdict_1 = outcomes
        if verdict_0.peer_id != verdict_1.peer_id or verdict_0.fingerprint != verdict_1.fingerprint:
            return SubmissionResult.reject(first.peer_id, first.round_id, "servers received different proofs")

        return Server.admit_pair(self.servers, (verdict_0, verdict_1))

    def submit_many(self, pairs: Iterable[Tuple[ShareSubmission, ShareSubmission]]) -> List[SubmissionResult]:
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return list(pool.map(self.submit, pairs))

    def finalize(self) -> List[int]:
        """Close both servers and combine their sums; the audit roots must agree."""
        sums = [server.finalize_sum() for server in self.servers]
        roots = [server.audit_root() for server in self.servers]
        if roots[0] != roots[1]:
            raise AuditMismatch(f"audit roots differ: {roots[0][:16]}... vs {roots[1][:16]}...")
        return combine_sums(sums[0], sums[1], self.params.F)


def run_distributed_demo(
    num_peers: int = 5,
    dimension: int = 8,
    F: int = 2**31 - 1,
    l: int = 10,
    N: int = 20,
    p: int = MODP_1024_PRIME,
    num_cheaters: int = 1,
    round_id: int = 1,
    params: ProtocolParameters | None = None,
) -> Dict[str, object]:
    """运行分布式 P4P 演示，覆盖挑战发布、份额提交、验证与聚合全流程."""
    if params is None:
        params = ProtocolParameters.with_derived_generators(m=dimension, F=F, l=l, N=N, p=p)

    print("\n" + "=" * 80)
    print("***  DISTRIBUTED P4P AGGREGATION TEST  ***".center(80))
    print("=" * 80 + "\n")

    print("*** Protocol Parameters ***")
    print(f"  • Number of peers:            {num_peers} ({num_cheaters} over the bound)")
    print(f"  • Vector dimension (m):       {params.m}")
    print(f"  • Field order (F):            {params.F}")
    print(f"  • Norm bound (L = 2^l - 1):   {params.L}")
    print(f"  • Checksum bound (B):         2^{params.bound_bits}")
    print(f"  • Checksum rows (N):          {params.N}")
    print(f"  • Commitment group:           {params.p.bit_length()}-bit safe prime")
    print(f"  • Encryption:                 X25519 + HKDF-SHA256 + AES-256-GCM")
    print("-" * 80 + "\n")

    network = NetworkSimulator()
    network.register(COORDINATOR)
    server_nodes = [
        ServerNode(Server(params, index), network, expected_peers=num_peers, round_id=round_id)
        for index in (0, 1)
    ]

    vectors: Dict[int, List[int]] = {}
    peer_nodes: List[PeerNode] = []
    for peer_id in range(1, num_peers + 1):
        if peer_id > num_peers - num_cheaters:
            vector = [0] * params.m
            vector[0] = 4 * params.B + params.L
        else:
            vector = rand_vector(params.m, params.F, params.L / 2)
        vectors[peer_id] = vector
        peer_nodes.append(PeerNode(Peer(params, peer_id), vector, network))

    start_time = time.time()
    for node in server_nodes + peer_nodes:
        node.start()
    for node in server_nodes + peer_nodes:
        node.join()
    total_time = time.time() - start_time

    for node in server_nodes + peer_nodes:
        if node.error is not None:
            raise node.error
    aggregates = sorted(network.receive_aggregates(COORDINATOR, 2, timeout=5.0), key=lambda a: a.server_index)

    print()
    accepted_ids = []
    for node in peer_nodes:
        peer_id = node.peer.peer_id
        accepted = len(node.results) == 2 and all(result.accepted for result in node.results)
        reasons = sorted({result.reason for result in node.results if result.reason})
        status = "✓ ACCEPTED" if accepted else "✗ REJECTED"
        print(f"  Peer {peer_id}: {status} - ||d|| = {l2_norm(vectors[peer_id]):.1f}" + (f" | {'; '.join(reasons)}" if reasons else ""))
        if accepted:
            accepted_ids.append(peer_id)

    if len(aggregates) != 2:
        raise AuditMismatch("did not receive an aggregate from both servers")
    if aggregates[0].audit_root != aggregates[1].audit_root:
        raise AuditMismatch("servers finished with different audit roots")
    aggregate = combine_sums(aggregates[0].vector, aggregates[1].vector, params.F)

    expected = [0] * params.m
    for peer_id in accepted_ids:
        expected = vector_add(expected, vectors[peer_id], None, params.F)

    print(f"\n  ⏱  Total execution time: {total_time*1000:.2f} ms")
    print(f"  📊 Total messages sent: {network.messages_sent} ({network.bytes_sent:,} bytes of encoded payload)")
    print(f"\n  🔐 Audit root: {aggregates[0].audit_root[:16]}...")
    print(f"  Σ  Aggregate: {aggregate}")
    print(f"     Matches admitted inputs: {'✓' if aggregate == expected else '✗'}")

    stats = merge_max([node.peer.stats.snapshot() for node in peer_nodes])
    stats += merge_max([node.server.stats.snapshot() for node in server_nodes])
    network_ops: Dict[str, int] = {}
    for node in peer_nodes:
        for op_name, count in node.network_ops.items():
            network_ops[op_name] = network_ops.get(op_name, 0) + count
    if peer_nodes:
        max_send_time = max(node.network_send_time for node in peer_nodes)
        stats.append(PerformanceStats("网络通信", max_send_time, network_ops))
    print_performance_report(stats)

    return {
        "aggregate": aggregate,
        "expected": expected,
        "accepted": accepted_ids,
        "audit_root": aggregates[0].audit_root,
    }
