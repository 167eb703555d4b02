import unittest

from helpers import make_params

from p4p.bound_proof import (
    BoundProof,
    answered_rows,
    new_share_salt,
    prove_bound,
    share_digest,
    verify_bound,
    verify_norm,
    verify_row,
)
from p4p.errors import ProofVerificationFailed

DIGESTS = ("00" * 32, "11" * 32)


def build(params, sums):
    """Proof for checksum sums s_j, all carried by the first share."""
    group = params.group
    n = len(sums)
    blindings = ([group.random_exponent() for _ in range(n)], [group.random_exponent() for _ in range(n)])
    return prove_bound(params, 1, 1, 99, DIGESTS, (list(sums), [0] * n), blindings)


class TestNormBound(unittest.TestCase):
    def setUp(self):
        # m=16, l=10: B = 4096 and T = 5 * 6 * 1023^2
        self.params = make_params(m=16, N=6)

    def test_small_checksums_pass(self):
        proof = build(self.params, [100, -250, 0, 1023, -1023, 7])
        verify_bound(self.params, proof)
        self.assertEqual(BoundProof.from_dict(proof.to_dict()), proof)

    def test_threshold_is_inclusive(self):
        params = make_params(m=16, N=5)
        self.assertEqual(params.norm_threshold, 25 * 1023 * 1023)
        # (3 * 1023)^2 + (4 * 1023)^2 lands exactly on T
        verify_bound(params, build(params, [3069, -4092, 0, 0, 0]))
        with self.assertRaises(ProofVerificationFailed):
            verify_bound(params, build(params, [3069, -4092, 1, 0, 0]))

    def test_every_row_in_range_but_squares_too_large(self):
        proof = build(self.params, [4095] * 6)
        for j in range(6):
            verify_row(self.params, proof, j)
        with self.assertRaises(ProofVerificationFailed) as ctx:
            verify_norm(self.params, proof)
        self.assertIn("squared checksums", ctx.exception.reason)

    def test_row_out_of_range(self):
        proof = build(self.params, [4096, 0, 0, 0, 0, 0])
        with self.assertRaises(ProofVerificationFailed) as ctx:
            verify_row(self.params, proof, 0)
        self.assertIn("norm bound", ctx.exception.reason)

    def test_square_commitments_cannot_be_swapped(self):
        proof = build(self.params, [10, 20, 30, 40, 50, 60])
        data = proof.to_dict()
        data["rows"][0]["square_commitment"], data["rows"][1]["square_commitment"] = (
            data["rows"][1]["square_commitment"],
            data["rows"][0]["square_commitment"],
        )
        with self.assertRaises(ProofVerificationFailed):
            verify_row(self.params, BoundProof.from_dict(data), 0)


class TestAnsweredRows(unittest.TestCase):
    def setUp(self):
        self.rows = [[1, 0, -1, 1, 0, 0, 1, -1]] * 20

    def test_entries_stay_ternary(self):
        rows = answered_rows(self.rows, 1, 5, 3, DIGESTS)
        self.assertEqual(len(rows), 20)
        self.assertTrue({c for row in rows for c in row} <= {-1, 0, 1})

    def test_depends_on_share_digests(self):
        first = answered_rows(self.rows, 1, 5, 3, DIGESTS)
        self.assertEqual(first, answered_rows(self.rows, 1, 5, 3, DIGESTS))
        self.assertNotEqual(first, answered_rows(self.rows, 1, 5, 3, ("22" * 32, DIGESTS[1])))
        self.assertNotEqual(first, answered_rows(self.rows, 1, 5, 4, DIGESTS))

    def test_share_digest(self):
        salt = new_share_salt()
        self.assertEqual(len(salt), 64)
        self.assertEqual(share_digest([1, -2, 3], salt), share_digest([1, -2, 3], salt))
        self.assertNotEqual(share_digest([1, -2, 3], salt), share_digest([1, -2, 4], salt))
        self.assertNotEqual(share_digest([1, -2, 3], salt), share_digest([1, -2, 3], new_share_salt()))
        with self.assertRaises(ValueError):
            share_digest([1], "not hex")


if __name__ == "__main__":
    unittest.main()
