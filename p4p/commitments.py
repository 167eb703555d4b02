"""Pedersen commitments and the sigma protocols built on them.

承诺方案 / Commitments live in the order-q subgroup of quadratic residues of a
safe prime p = 2q + 1. Binding rests on the discrete-log assumption; hiding is
perfect because blindings are (statistically) uniform in Z_q.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from functools import cached_property
from typing import Dict, List, Sequence, Tuple

from .constants import CHALLENGE_SPACE, DOMAIN_GENERATOR, DOMAIN_OR_PROOF, DOMAIN_SQUARE_PROOF, GENERATOR_SEED
from .errors import InvalidParameter
from .field_math import hash_to_field, random_field_element


@dataclass(frozen=True)
class PedersenGroup:
    p: int
    g: int
    h: int

    @property
    def q(self) -> int:
        return (self.p - 1) // 2

    @cached_property
    def g_inverse(self) -> int:
        return pow(self.g, -1, self.p)

    def is_member(self, x: int) -> bool:
        """x is a non-identity element of the order-q subgroup."""
        return 1 < x < self.p and pow(x, self.q, self.p) == 1

    def validate(self) -> None:
        if self.p < 7 or self.p % 2 == 0:
            raise InvalidParameter("commitment modulus must be an odd safe prime")
        for name, value in (("g", self.g), ("h", self.h)):
            if not self.is_member(value):
                raise InvalidParameter(f"generator {name} is not in the order-q subgroup of Z_p^*")
        if self.g == self.h:
            raise InvalidParameter("generators g and h must differ")

    def commit(self, value: int, blinding: int) -> int:
        """g^value * h^blinding mod p."""
        return pow(self.g, value % self.q, self.p) * pow(self.h, blinding % self.q, self.p) % self.p

    def random_exponent(self) -> int:
        return random_field_element(self.q)

    def g_power(self, exponent: int) -> int:
        return pow(self.g, exponent % self.q, self.p)


def derive_generators(p: int, seed: bytes = GENERATOR_SEED) -> Tuple[int, int]:
    """Derive two generators of the QR subgroup by hashing and squaring.

    Nobody knows log_g(h) because both come out of the hash.
    """
    found: List[int] = []
    counter = 0
    while len(found) < 2:
        t = hash_to_field([counter], p, domain=DOMAIN_GENERATOR + seed)
        candidate = pow(t, 2, p)
        if candidate not in (0, 1) and candidate not in found:
            found.append(candidate)
        counter += 1
    return found[0], found[1]


@dataclass(frozen=True)
class OrProof:
    """Non-interactive OR proof of knowledge of log_h of one of several targets (CDS94)."""

    challenges: Tuple[int, ...]
    responses: Tuple[int, ...]

    def to_dict(self) -> Dict[str, List[int]]:
        return {"challenges": list(self.challenges), "responses": list(self.responses)}

    @classmethod
    def from_dict(cls, data: Dict[str, List[int]]) -> "OrProof":
        return cls(tuple(int(v) for v in data["challenges"]), tuple(int(v) for v in data["responses"]))


def _or_challenge(group: PedersenGroup, targets: Sequence[int], announcements: Sequence[int], context: Sequence[int]) -> int:
    messages = list(context) + [len(targets)] + list(targets) + list(announcements)
    return hash_to_field(messages, CHALLENGE_SPACE, domain=DOMAIN_OR_PROOF)


def prove_dlog_or(
    group: PedersenGroup,
    targets: Sequence[int],
    index: int,
    witness: int,
    context: Sequence[int],
) -> OrProof:
    """Prove knowledge of w with h^w == targets[index] without revealing index.

    The other branches are simulated with their challenges chosen up front.
    """
    n = len(targets)
    if not 0 <= index < n:
        raise InvalidParameter(f"branch index {index} out of range for {n} targets")
    p, q, h = group.p, group.q, group.h

    challenges = [0] * n
    responses = [0] * n
    announcements = [0] * n
    for i in range(n):
        if i == index:
            continue
        challenges[i] = secrets.randbelow(CHALLENGE_SPACE)
        responses[i] = group.random_exponent()
        announcements[i] = pow(h, responses[i], p) * pow(targets[i], -challenges[i], p) % p

    nonce = group.random_exponent()
    announcements[index] = pow(h, nonce, p)

    total = _or_challenge(group, targets, announcements, context)
    challenges[index] = (total - sum(challenges)) % CHALLENGE_SPACE
    responses[index] = (nonce + challenges[index] * witness) % q
    return OrProof(tuple(challenges), tuple(responses))


def verify_dlog_or(group: PedersenGroup, targets: Sequence[int], proof: OrProof, context: Sequence[int]) -> bool:
    n = len(targets)
    if len(proof.challenges) != n or len(proof.responses) != n:
        return False
    p, q, h = group.p, group.q, group.h

    announcements = []
    for target, e, z in zip(targets, proof.challenges, proof.responses):
        if not 0 <= e < CHALLENGE_SPACE or not 0 <= z < q:
            return False
        announcements.append(pow(h, z, p) * pow(target, -e, p) % p)

    expected = _or_challenge(group, targets, announcements, context)
    return sum(proof.challenges) % CHALLENGE_SPACE == expected


@dataclass(frozen=True)
class SquareProof:
    """Proof that Z commits to the square of the value committed in S.

    Shows knowledge of (s, sigma, w) with S = g^s h^sigma and Z = S^s h^w,
    which makes Z = g^(s^2) h^(s*sigma + w).
    """

    announcements: Tuple[int, int]
    responses: Tuple[int, int, int]

    def to_dict(self) -> Dict[str, List[int]]:
        return {"announcements": list(self.announcements), "responses": list(self.responses)}

    @classmethod
    def from_dict(cls, data: Dict[str, List[int]]) -> "SquareProof":
        a_1, a_2 = (int(v) for v in data["announcements"])
        z, z_1, z_2 = (int(v) for v in data["responses"])
        return cls((a_1, a_2), (z, z_1, z_2))


def _square_challenge(commitment: int, square_commitment: int, announcements: Sequence[int], context: Sequence[int]) -> int:
    messages = list(context) + [commitment, square_commitment] + list(announcements)
    return hash_to_field(messages, CHALLENGE_SPACE, domain=DOMAIN_SQUARE_PROOF)


def prove_square(
    group: PedersenGroup,
    value: int,
    blinding: int,
    square_blinding: int,
    context: Sequence[int],
) -> Tuple[int, int, SquareProof]:
    """Commit to value and value^2 and prove the relation.

    Returns (S, Z, proof) with S = commit(value, blinding) and
    Z = commit(value^2, square_blinding).
    """
    p, q = group.p, group.q
    s = value % q
    commitment = group.commit(value, blinding)
    square_commitment = group.commit(value * value, square_blinding)
    w = (square_blinding - s * blinding) % q

    a, b_1, b_2 = group.random_exponent(), group.random_exponent(), group.random_exponent()
    announcements = (group.commit(a, b_1), pow(commitment, a, p) * pow(group.h, b_2, p) % p)
    e = _square_challenge(commitment, square_commitment, announcements, context)
    responses = ((a + e * s) % q, (b_1 + e * blinding) % q, (b_2 + e * w) % q)
    return commitment, square_commitment, SquareProof(announcements, responses)


def verify_square(
    group: PedersenGroup,
    commitment: int,
    square_commitment: int,
    proof: SquareProof,
    context: Sequence[int],
) -> bool:
    p, q = group.p, group.q
    a_1, a_2 = proof.announcements
    z, z_1, z_2 = proof.responses
    if not (group.is_member(a_1) and group.is_member(a_2)):
        return False
    if not all(0 <= v < q for v in proof.responses):
        return False

    e = _square_challenge(commitment, square_commitment, proof.announcements, context)
    if group.commit(z, z_1) != a_1 * pow(commitment, e, p) % p:
        return False
    return pow(commitment, z, p) * pow(group.h, z_2, p) % p == a_2 * pow(square_commitment, e, p) % p


def bit_targets(group: PedersenGroup, commitment: int) -> List[int]:
    """[C, C/g]: C commits to 0 iff log_h(C) is known, to 1 iff log_h(C/g) is known."""
    return [commitment, commitment * group.g_inverse % group.p]


@dataclass(frozen=True)
class RangeProof:
    """Bit decomposition of a committed value in [0, 2^n)."""

    bit_commitments: Tuple[int, ...]
    bit_proofs: Tuple[OrProof, ...]

    def to_dict(self) -> Dict[str, list]:
        return {
            "bit_commitments": list(self.bit_commitments),
            "bit_proofs": [proof.to_dict() for proof in self.bit_proofs],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, list]) -> "RangeProof":
        return cls(
            tuple(int(v) for v in data["bit_commitments"]),
            tuple(OrProof.from_dict(item) for item in data["bit_proofs"]),
        )


def prove_range(group: PedersenGroup, value: int, n_bits: int, context: Sequence[int]) -> Tuple[int, RangeProof]:
    """Commit to the low n_bits bits of value.

    Returns (blinding, proof) where prod E_i^(2^i) == g^value h^blinding
    whenever 0 <= value < 2^n_bits. Outside that range the bits are
    truncated and the product no longer matches.
    """
    commitments: List[int] = []
    proofs: List[OrProof] = []
    blinding = 0
    for i in range(n_bits):
        bit = (value >> i) & 1
        rho = group.random_exponent()
        commitment = group.commit(bit, rho)
        proof = prove_dlog_or(group, bit_targets(group, commitment), bit, rho, list(context) + [i])
        commitments.append(commitment)
        proofs.append(proof)
        blinding = (blinding + (rho << i)) % group.q
    return blinding, RangeProof(tuple(commitments), tuple(proofs))


def verify_range(group: PedersenGroup, commitment: int, proof: RangeProof, n_bits: int, context: Sequence[int]) -> bool:
    """Check that commitment opens to a value in [0, 2^n_bits)."""
    if len(proof.bit_commitments) != n_bits or len(proof.bit_proofs) != n_bits:
        return False
    for i, (bit_commitment, bit_proof) in enumerate(zip(proof.bit_commitments, proof.bit_proofs)):
        if not group.is_member(bit_commitment):
            return False
        if not verify_dlog_or(group, bit_targets(group, bit_commitment), bit_proof, list(context) + [i]):
            return False

    # Horner: prod E_i^(2^i)
    acc = 1
    for bit_commitment in reversed(proof.bit_commitments):
        acc = acc * acc % group.p * bit_commitment % group.p
    return acc == commitment % group.p
