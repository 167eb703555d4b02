import dataclasses
import threading
import unittest
from unittest import mock

from helpers import TEST_PRIME, group_generators, make_params

from p4p.bound_proof import BoundProof, bound_bits_for, ceil_sqrt
from p4p.data_models import ChallengeMatrix, ProtocolParameters, RoundState
from p4p.errors import DimensionMismatch, InvalidParameter, ProofVerificationFailed, RoundClosed, RoundInProgress
from p4p.field_math import mod
from p4p.merkle import MerkleTree
from p4p.peer import Peer
from p4p.protocol import AggregationRound, combine_sums
from p4p.server import Server


def server_pair(params):
    return Server(params, 0), Server(params, 1)


class TestProtocolParameters(unittest.TestCase):
    def test_derived_values(self):
        params = make_params(m=4, F=65537, l=10)
        self.assertEqual(params.L, 1023)
        self.assertEqual(params.bound_bits, 11)
        self.assertEqual(params.B, 2048)
        self.assertEqual(params.range_bits, 12)
        self.assertEqual(params.norm_threshold, 5 * 6 * 1023 * 1023)
        self.assertEqual(params.norm_bits, params.norm_threshold.bit_length())
        self.assertEqual(params.q, (TEST_PRIME - 1) // 2)

    def test_bound_bits(self):
        self.assertEqual([ceil_sqrt(m) for m in (1, 2, 4, 5, 9, 10)], [1, 2, 2, 3, 3, 4])
        self.assertEqual(bound_bits_for(1, 10), 10)
        self.assertEqual(bound_bits_for(5, 10), 12)
        self.assertEqual(bound_bits_for(16, 8), 10)

    def test_validation(self):
        g, h = group_generators()
        for kwargs in (
            dict(m=4, F=0, l=10),
            dict(m=0, F=65537, l=10),
            dict(m=4, F=65537, l=0),
            dict(m=4, F=65537, l=10, N=0),
            dict(m=4, F=8000, l=10),
            dict(m=4, F=(1 << 63) + 1, l=10),
        ):
            with self.subTest(**kwargs):
                with self.assertRaises(InvalidParameter):
                    ProtocolParameters(g=g, h=h, p=TEST_PRIME, **kwargs)
        with self.assertRaises(InvalidParameter):
            ProtocolParameters(m=4, F=65537, l=10, g=g, h=g, p=TEST_PRIME)
        with self.assertRaises(InvalidParameter):
            ProtocolParameters(m=4, F=65537, l=10, g=1, h=h, p=TEST_PRIME)
        with self.assertRaises(InvalidParameter):
            ProtocolParameters(m=4, F=1 << 1100, l=10, g=g, h=h, p=TEST_PRIME)

    def test_arg_string_and_dict(self):
        g, h = group_generators()
        params = ProtocolParameters.from_arg_string(f"4, 65537, 10, 50, {g}, {h}", p=TEST_PRIME)
        self.assertEqual((params.m, params.F, params.l, params.N), (4, 65537, 10, 50))
        self.assertEqual(ProtocolParameters.from_dict(params.to_dict()), params)
        with self.assertRaises(InvalidParameter):
            ProtocolParameters.from_arg_string("4,65537,10", p=TEST_PRIME)
        with self.assertRaises(InvalidParameter):
            ProtocolParameters.from_arg_string(f"4,abc,10,50,{g},{h}", p=TEST_PRIME)
        with self.assertRaises(InvalidParameter):
            ProtocolParameters.from_dict({"m": 4})


class TestChallengeMatrix(unittest.TestCase):
    def test_generated_entries(self):
        server = Server(make_params(N=30), 0)
        matrix = server.generate_challenge_vectors()
        self.assertEqual((matrix.N, matrix.m), (30, 4))
        entries = {c for row in matrix.rows for c in row}
        self.assertTrue(entries <= {-1, 0, 1})
        self.assertEqual(entries, {-1, 0, 1})

    def test_bytes_round_trip_keeps_digest(self):
        matrix = ChallengeMatrix.from_rows(3, [[1, 0, -1, 1], [0, 0, 1, -1]])
        decoded = ChallengeMatrix.from_bytes(matrix.to_bytes())
        self.assertEqual(decoded, matrix)
        self.assertEqual(decoded.digest, matrix.digest)
        self.assertNotEqual(ChallengeMatrix.from_rows(4, matrix.rows).digest, matrix.digest)


class TestPeer(unittest.TestCase):
    def setUp(self):
        self.params = make_params()
        self.peer = Peer(self.params, 1)

    def test_create_rejects_bad_field(self):
        g, h = group_generators()
        with self.assertRaises(InvalidParameter):
            Peer.create(4, 0, 10, 50, g, h, p=TEST_PRIME)
        peer = Peer.create(4, 65537, 10, 50, g, h, peer_id=3, p=TEST_PRIME)
        self.assertEqual((peer.peer_id, peer.L), (3, 1023))

    def test_shares_recombine(self):
        vector = [3, -5, 12, 0]
        u, v = self.peer.compute_share(vector)
        self.assertEqual([mod(a + b, self.params.F) for a, b in zip(u, v)], vector)
        self.assertTrue(all(mod(x, self.params.F) == x for x in u + v))

    def test_shares_are_fresh(self):
        first = self.peer.compute_share([1, 2, 3, 4])[0]
        second = self.peer.compute_share([1, 2, 3, 4])[0]
        self.assertNotEqual(first, second)

    def test_check_bound(self):
        self.assertTrue(self.peer.check_bound([1023, 0, 0, 0]))
        self.assertTrue(self.peer.check_bound([511, -511, 511, 511]))
        self.assertFalse(self.peer.check_bound([1024, 0, 0, 0]))
        self.assertFalse(self.peer.check_bound([800, 800, 0, 0]))

    def test_dimension_checked(self):
        with self.assertRaises(DimensionMismatch):
            self.peer.set_vector([1, 2, 3])
        matrix = ChallengeMatrix.from_rows(1, [[1, 0, 1]] * self.params.N)
        with self.assertRaises(DimensionMismatch):
            self.peer.compute_proof_responses(matrix, [1, 2, 3, 4])

    def test_needs_a_vector(self):
        with self.assertRaises(InvalidParameter):
            self.peer.compute_share()

    def test_responses_are_share_checksums(self):
        matrix = Server(self.params, 0).generate_challenge_vectors()
        bundle = self.peer.compute_proof_responses(matrix, [3, -5, 12, 0])
        u, v = self.peer.state.shares
        rows = matrix.rows_for(1, bundle.proof.share_digests)
        self.assertEqual(bundle.proof.share_digests, self.peer.share_digests())
        for j, row in enumerate(rows):
            x, y = bundle.responses[0][j], bundle.responses[1][j]
            self.assertEqual(x, mod(sum(c * a for c, a in zip(row, u)), self.params.F))
            self.assertEqual(y, mod(sum(c * b for c, b in zip(row, v)), self.params.F))
        self.assertEqual(len(bundle.proof.rows), self.params.N)

    def test_proof_survives_json(self):
        matrix = Server(self.params, 0).generate_challenge_vectors()
        proof = self.peer.compute_proof_responses(matrix, [1, 2, 3, 4]).proof
        restored = BoundProof.from_dict(proof.to_dict())
        self.assertEqual(restored, proof)
        self.assertEqual(restored.fingerprint(), proof.fingerprint())


FIXED_ROWS = [
    [1, 1, 1, 1],
    [1, -1, 0, 1],
    [-1, 0, 1, -1],
    [0, 1, 1, 0],
    [1, 0, -1, -1],
    [-1, -1, 1, 0],
]


class TestServerVerification(unittest.TestCase):
    def setUp(self):
        self.params = make_params(N=len(FIXED_ROWS))
        self.server_0, self.server_1 = server_pair(self.params)
        self.round = AggregationRound(self.server_0, self.server_1)
        self.matrix = ChallengeMatrix.from_rows(1, FIXED_ROWS)
        self.server_0.adopt_challenge(self.matrix)
        self.server_1.adopt_challenge(self.matrix)

    def test_honest_peer_accepted(self):
        sub_0, sub_1 = Peer(self.params, 1).prepare_submissions(self.matrix, [3, -5, 12, 0])
        self.assertTrue(self.server_0.verify_and_accumulate(sub_0).accepted)
        self.assertTrue(self.server_1.submit_share(sub_1).accepted)
        self.assertEqual(self.server_0.state, RoundState.ACCEPTING)
        total = combine_sums(self.server_0.finalize_sum(), self.server_1.finalize_sum(), self.params.F)
        self.assertEqual(total, [3, -5, 12, 0])

    def test_boundary_vector_accepted(self):
        result = self.round.submit(Peer(self.params, 1).prepare_submissions(self.matrix, [511, -511, 511, 511]))
        self.assertTrue(result.accepted, result.reason)

    def test_rejection_leaves_sum_untouched(self):
        self.round.submit(Peer(self.params, 1).prepare_submissions(self.matrix, [1, 2, 3, 4]))
        before = self.server_0.sum
        sub_0, _ = Peer(self.params, 2).prepare_submissions(self.matrix, [5, 5, 5, 5])
        tampered = dataclasses.replace(sub_0, responses=(sub_0.responses[0] + 1,) + sub_0.responses[1:])
        result = self.server_0.verify_and_accumulate(tampered)
        self.assertFalse(result.accepted)
        self.assertIn("response", result.reason)
        self.assertEqual(self.server_0.sum, before)
        self.assertEqual(self.server_0.admitted_peers, [1])

    def test_tampered_share_rejected(self):
        sub_0, _ = Peer(self.params, 1).prepare_submissions(self.matrix, [1, 2, 3, 4])
        share = list(sub_0.share)
        share[0] = mod(share[0] + 1, self.params.F)
        result = self.server_0.verify_and_accumulate(dataclasses.replace(sub_0, share=tuple(share)))
        self.assertFalse(result.accepted)
        self.assertIn("digest", result.reason)

    def test_forged_checksum_rejected(self):
        # responses recomputed for the altered share, but the commitment still holds the old value
        sub_0, _ = Peer(self.params, 1).prepare_submissions(self.matrix, [1, 2, 3, 4])
        share = list(sub_0.share)
        share[0] = mod(share[0] + 1, self.params.F)
        rows = self.matrix.rows_for(1, sub_0.proof.share_digests)
        responses = tuple(mod(sum(c * a for c, a in zip(row, share)), self.params.F) for row in rows)
        forged = dataclasses.replace(sub_0, share=tuple(share), responses=responses)
        with self.assertRaises(ProofVerificationFailed):
            self.server_0.verify(forged)

    def test_wrong_server_rejected(self):
        _, sub_1 = Peer(self.params, 1).prepare_submissions(self.matrix, [1, 2, 3, 4])
        result = self.server_0.verify_and_accumulate(sub_1)
        self.assertFalse(result.accepted)
        self.assertIn("server", result.reason)

    def test_proof_for_other_challenge_rejected(self):
        other = Server(self.params, 0).generate_challenge_vectors(1)
        sub_0, _ = Peer(self.params, 1).prepare_submissions(other, [1, 2, 3, 4])
        result = self.server_0.verify_and_accumulate(sub_0)
        self.assertFalse(result.accepted)
        self.assertIn("challenge", result.reason)

    def test_proof_for_other_peer_rejected(self):
        sub_0, _ = Peer(self.params, 1).prepare_submissions(self.matrix, [1, 2, 3, 4])
        result = self.server_0.verify_and_accumulate(dataclasses.replace(sub_0, peer_id=2))
        self.assertFalse(result.accepted)

    def test_duplicate_peer_rejected(self):
        pair = Peer(self.params, 1).prepare_submissions(self.matrix, [1, 2, 3, 4])
        self.assertTrue(self.round.submit(pair).accepted)
        before = self.server_0.sum
        again = Peer(self.params, 1).prepare_submissions(self.matrix, [1, 2, 3, 4])
        result = self.round.submit(again)
        self.assertFalse(result.accepted)
        self.assertIn("already", result.reason)
        self.assertEqual(self.server_0.sum, before)

    def test_servers_must_see_same_proof(self):
        peer = Peer(self.params, 1)
        sub_0, _ = peer.prepare_submissions(self.matrix, [1, 2, 3, 4])
        _, sub_1 = peer.prepare_submissions(self.matrix, [1, 2, 3, 4])
        self.assertTrue(self.server_1.verify(sub_1))
        result = self.round.submit((sub_0, sub_1))
        self.assertFalse(result.accepted)
        self.assertEqual(self.server_0.admitted_peers, [])
        self.assertEqual(self.server_1.admitted_peers, [])

    def test_pair_admission_is_all_or_nothing(self):
        sub_0, sub_1 = Peer(self.params, 1).prepare_submissions(self.matrix, [1, 2, 3, 4])
        verdicts = (self.server_0.verify(sub_0), self.server_1.verify(sub_1))
        self.server_1.close_round()
        with self.assertRaises(RoundClosed):
            Server.admit_pair((self.server_0, self.server_1), verdicts)
        self.assertEqual(self.server_0.admitted_peers, [])
        self.assertEqual(self.server_0.sum, [0, 0, 0, 0])

    def test_pair_admission_rejects_duplicates_on_both(self):
        sub_0, sub_1 = Peer(self.params, 1).prepare_submissions(self.matrix, [1, 2, 3, 4])
        verdicts = (self.server_0.verify(sub_0), self.server_1.verify(sub_1))
        self.assertTrue(Server.admit_pair((self.server_0, self.server_1), verdicts).accepted)
        result = Server.admit_pair((self.server_0, self.server_1), verdicts)
        self.assertFalse(result.accepted)
        self.assertIn("already", result.reason)
        self.assertEqual(combine_sums(self.server_0.sum, self.server_1.sum, self.params.F), [1, 2, 3, 4])
        with self.assertRaises(InvalidParameter):
            Server.admit_pair((self.server_0, self.server_0), verdicts)

    def test_order_independence(self):
        other = Server(self.params, 0)
        other.adopt_challenge(self.matrix)
        vectors = {1: [1, 2, 3, 4], 2: [-7, 0, 7, 100], 3: [300, -300, 0, 1]}
        submissions = [Peer(self.params, pid).prepare_submissions(self.matrix, v)[0] for pid, v in vectors.items()]
        for sub in submissions:
            self.assertTrue(self.server_0.verify_and_accumulate(sub).accepted)
        for sub in reversed(submissions):
            self.assertTrue(other.verify_and_accumulate(sub).accepted)
        self.assertEqual(self.server_0.finalize_sum(), other.finalize_sum())
        self.assertEqual(self.server_0.audit_root(), other.audit_root())


class TestSoundnessAtFullStrength(unittest.TestCase):
    """m=4, F=65537, l=10 with the default N=50 checksum rows."""

    def setUp(self):
        self.params = make_params(m=4, F=65537, l=10, N=50)
        self.server_0, self.server_1 = server_pair(self.params)
        self.round = AggregationRound(self.server_0, self.server_1)
        self.matrix = self.round.open()

    def test_honest_vector_accepted_on_both_servers(self):
        result = self.round.submit(Peer(self.params, 1).prepare_submissions(self.matrix, [3, -5, 12, 0]))
        self.assertTrue(result.accepted, result.reason)
        self.assertEqual(self.round.finalize(), [3, -5, 12, 0])

    def test_cheating_vector_rejected(self):
        before = (self.server_0.sum, self.server_1.sum)
        pair = Peer(self.params, 2).prepare_submissions(self.matrix, [10000, 0, 0, 0])
        result = self.round.submit(pair)
        self.assertFalse(result.accepted)
        self.assertIn("bound", result.reason)
        self.assertEqual((self.server_0.sum, self.server_1.sum), before)
        with self.assertRaises(ProofVerificationFailed):
            self.server_0.verify(pair[0])


class TestSpreadVectors(unittest.TestCase):
    """m=256, l=4: L = 15 and B = 256, so a vector spread over every coordinate keeps most checksums small."""

    TRIALS = 3

    def setUp(self):
        self.params = make_params(m=256, F=65537, l=4, N=50)

    def fresh_round(self):
        server_0, server_1 = server_pair(self.params)
        aggregation = AggregationRound(server_0, server_1)
        return aggregation, aggregation.open()

    def test_spread_vector_over_bound_rejected_every_trial(self):
        vector = [8] * 256  # ||d|| = 128, about 8.5 L
        self.assertFalse(Peer(self.params, 1).check_bound(vector))
        for trial in range(self.TRIALS):
            with self.subTest(trial=trial):
                aggregation, matrix = self.fresh_round()
                result = aggregation.submit(Peer(self.params, 1).prepare_submissions(matrix, vector))
                self.assertFalse(result.accepted)
                self.assertIn("bound", result.reason)
                self.assertEqual([server.admitted_peers for server in aggregation.servers], [[], []])

    def test_spread_vector_within_bound_accepted(self):
        vector = [1] * 225 + [0] * 31  # ||d|| = 15 = L
        self.assertTrue(Peer(self.params, 1).check_bound(vector))
        aggregation, matrix = self.fresh_round()
        result = aggregation.submit(Peer(self.params, 1).prepare_submissions(matrix, vector))
        self.assertTrue(result.accepted, result.reason)
        self.assertEqual(aggregation.finalize(), vector)


class TestRoundLifecycle(unittest.TestCase):
    def setUp(self):
        self.params = make_params(N=4)
        self.server = Server(self.params, 0)

    def test_initial_state(self):
        self.assertEqual(self.server.state, RoundState.IDLE)
        self.assertEqual(self.server.sum, [0, 0, 0, 0])
        with self.assertRaises(InvalidParameter):
            self.server.publish_challenge()

    def test_publish_challenge(self):
        matrix = self.server.generate_challenge_vectors(9)
        self.assertEqual(self.server.state, RoundState.CHALLENGE_PUBLISHED)
        self.assertIs(self.server.publish_challenge(9), matrix)
        with self.assertRaises(InvalidParameter):
            self.server.publish_challenge(10)

    def test_round_ids_advance(self):
        first = self.server.generate_challenge_vectors()
        self.server.close_round()
        self.server.init()
        second = self.server.generate_challenge_vectors()
        self.assertEqual(second.round_id, first.round_id + 1)

    def test_regeneration_refused_while_open(self):
        self.server.generate_challenge_vectors()
        with self.assertRaises(RoundInProgress):
            self.server.generate_challenge_vectors()
        with self.assertRaises(RoundInProgress):
            self.server.adopt_challenge(ChallengeMatrix.from_rows(5, [[0, 0, 0, 0]] * self.params.N))

    def test_round_closed(self):
        matrix = self.server.generate_challenge_vectors()
        sub_0, _ = Peer(self.params, 1).prepare_submissions(matrix, [1, 1, 1, 1])
        self.server.close_round()
        self.assertEqual(self.server.state, RoundState.FINALIZED)
        with self.assertRaises(RoundClosed):
            self.server.verify_and_accumulate(sub_0)
        with self.assertRaises(RoundClosed):
            self.server.generate_challenge_vectors()
        self.server.close_round()

    def test_close_without_round(self):
        with self.assertRaises(RoundClosed):
            self.server.close_round()

    def test_init_makes_rounds_reusable(self):
        matrix = self.server.generate_challenge_vectors()
        sub_0, _ = Peer(self.params, 1).prepare_submissions(matrix, [1, 1, 1, 1])
        self.assertTrue(self.server.verify_and_accumulate(sub_0).accepted)
        self.server.finalize_sum()
        self.server.init()
        self.assertEqual(self.server.state, RoundState.IDLE)
        self.assertEqual(self.server.sum, [0, 0, 0, 0])
        self.assertEqual(self.server.admitted_peers, [])
        self.server.generate_challenge_vectors()

    def test_init_refused_while_verifying(self):
        matrix = self.server.generate_challenge_vectors()
        sub_0, _ = Peer(self.params, 1).prepare_submissions(matrix, [1, 1, 1, 1])
        started = threading.Event()
        release = threading.Event()
        real_check = self.server._check
        outcome = []

        def blocked_check(*args):
            started.set()
            release.wait(10)
            return real_check(*args)

        with mock.patch.object(self.server, "_check", side_effect=blocked_check):
            worker = threading.Thread(target=lambda: outcome.append(self.server.verify(sub_0)))
            worker.start()
            try:
                self.assertTrue(started.wait(10))
                self.server.close_round()
                with self.assertRaises(RoundInProgress):
                    self.server.init()
            finally:
                release.set()
                worker.join(10)

        self.assertEqual([verdict.peer_id for verdict in outcome], [1])
        self.server.init()
        self.assertEqual(self.server.state, RoundState.IDLE)

    def test_stale_verdict_not_admitted(self):
        matrix = self.server.generate_challenge_vectors()
        sub_0, _ = Peer(self.params, 1).prepare_submissions(matrix, [1, 1, 1, 1])
        verdict = self.server.verify(sub_0)
        self.server.close_round()
        self.server.init()
        self.server.generate_challenge_vectors()
        result = self.server.admit(verdict)
        self.assertFalse(result.accepted)
        self.assertIn("stale", result.reason)
        self.assertEqual(self.server.sum, [0, 0, 0, 0])

    def test_unpublished_round_rejects(self):
        matrix = Server(self.params, 1).generate_challenge_vectors()
        sub_0, _ = Peer(self.params, 1).prepare_submissions(matrix, [1, 1, 1, 1])
        self.assertFalse(self.server.verify_and_accumulate(sub_0).accepted)

    def test_get_aggregate_and_audit(self):
        server_1 = Server(self.params, 1)
        aggregation = AggregationRound(self.server, server_1)
        matrix = aggregation.open(4)
        with self.assertRaises(RoundInProgress):
            self.server.get_aggregate(4)
        results = aggregation.submit_many(
            Peer(self.params, pid).prepare_submissions(matrix, [pid, -pid, 2 * pid, 0]) for pid in (1, 2, 3)
        )
        self.assertTrue(all(result.accepted for result in results))
        self.assertEqual(aggregation.finalize(), [6, -6, 12, 0])

        aggregate = self.server.get_aggregate(4)
        self.assertEqual(aggregate.admitted, (1, 2, 3))
        self.assertEqual(list(aggregate.vector), self.server.sum)
        self.assertEqual(aggregate.audit_root, server_1.get_aggregate(4).audit_root)
        with self.assertRaises(InvalidParameter):
            self.server.get_aggregate(5)

        fingerprint = next(r.fingerprint for r in results if r.peer_id == 2)
        proof = self.server.inclusion_proof(2)
        self.assertTrue(MerkleTree.verify_proof(MerkleTree.leaf_hash(2, fingerprint), proof, aggregate.audit_root))
        with self.assertRaises(InvalidParameter):
            self.server.inclusion_proof(9)


if __name__ == "__main__":
    unittest.main()
