"""The verifiable L2-bound sub-protocol shared by Peer and Server.

范数界证明 / The peer first fixes its two shares by salted SHA-256 digests.
Those digests, mixed into the published challenge matrix, give the rows
c_j the peer actually answers, so a vector cannot be chosen to fit the
challenge. For every row the peer commits to its two share checksums
x_j = c_j·u and y_j = c_j·v, to their field sum s_j = c_j·d and to s_j^2.
It proves that X_j·Y_j / S_j hides a multiple kF of g with k in {-1, 0, 1}
(the carry of the modular addition), that s_j lies in [-B, B) by bit
decomposition, and that Z_j hides s_j^2. A final range proof shows
sum_j s_j^2 <= NORM_SLACK * N * L^2. Each server opens only the commitment
of its own share.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Sequence, Tuple

from .codec import encode_field_vector
from .commitments import (
    OrProof,
    PedersenGroup,
    RangeProof,
    SquareProof,
    prove_dlog_or,
    prove_range,
    prove_square,
    verify_dlog_or,
    verify_range,
    verify_square,
)
from .constants import CHALLENGE_SPACE, DOMAIN_NORM_CONTEXT, DOMAIN_ROW_CONTEXT, DOMAIN_ROW_MASK, SHARE_SALT_BYTES
from .errors import ProofVerificationFailed
from .field_math import hash_to_field, mod

if TYPE_CHECKING:
    from .data_models import ProtocolParameters

CARRY_TAG = 0
RANGE_TAG = 1
SQUARE_TAG = 2


def ceil_sqrt(m: int) -> int:
    """Smallest integer r with r*r >= m."""
    root = 0
    while root * root < m:
        root += 1
    return root


def bound_bits_for(m: int, l: int) -> int:
    """Bits b such that sqrt(m) * (2^l - 1) < 2^b, i.e. l + ceil(log2(ceil(sqrt(m))))."""
    return l + (ceil_sqrt(m) - 1).bit_length()


def new_share_salt() -> str:
    return secrets.token_hex(SHARE_SALT_BYTES)


def share_digest(share: Sequence[int], salt: str) -> str:
    """SHA-256 over the salt and the wire encoding of the share."""
    return hashlib.sha256(bytes.fromhex(salt) + encode_field_vector(share)).hexdigest()


def _digest_ints(share_digests: Sequence[str]) -> List[int]:
    return [int(digest, 16) for digest in share_digests]


def answered_rows(
    rows: Sequence[Sequence[int]],
    round_id: int,
    challenge_digest: int,
    peer_id: int,
    share_digests: Sequence[str],
) -> List[List[int]]:
    """The rows a peer answers: published entries plus a digest-derived mask, mod 3.

    Entries stay uniform in {-1, 0, 1} as long as the published matrix is.
    """
    answered = []
    for j, row in enumerate(rows):
        mask = hash_to_field(
            [peer_id, round_id, challenge_digest, j] + _digest_ints(share_digests),
            3 ** len(row),
            domain=DOMAIN_ROW_MASK,
        )
        mixed = []
        for c in row:
            mask, trit = divmod(mask, 3)
            mixed.append((c + trit + 1) % 3 - 1)
        answered.append(mixed)
    return answered


@dataclass(frozen=True)
class RowProof:
    commitments: Tuple[int, int]  # (X_j, Y_j): one per server
    sum_commitment: int  # S_j
    square_commitment: int  # Z_j
    carry_proof: OrProof
    range_proof: RangeProof
    square_proof: SquareProof

    def to_dict(self) -> Dict[str, object]:
        return {
            "commitments": list(self.commitments),
            "sum_commitment": self.sum_commitment,
            "square_commitment": self.square_commitment,
            "carry_proof": self.carry_proof.to_dict(),
            "range_proof": self.range_proof.to_dict(),
            "square_proof": self.square_proof.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "RowProof":
        x_commitment, y_commitment = (int(v) for v in data["commitments"])
        return cls(
            commitments=(x_commitment, y_commitment),
            sum_commitment=int(data["sum_commitment"]),
            square_commitment=int(data["square_commitment"]),
            carry_proof=OrProof.from_dict(data["carry_proof"]),
            range_proof=RangeProof.from_dict(data["range_proof"]),
            square_proof=SquareProof.from_dict(data["square_proof"]),
        )


@dataclass(frozen=True)
class BoundProof:
    """公开证明 / Public part of a peer's submission, identical for both servers."""

    peer_id: int
    round_id: int
    challenge_digest: int
    share_digests: Tuple[str, str]
    rows: Tuple[RowProof, ...]
    norm_proof: RangeProof

    def to_dict(self) -> Dict[str, object]:
        return {
            "peer_id": self.peer_id,
            "round_id": self.round_id,
            "challenge_digest": self.challenge_digest,
            "share_digests": list(self.share_digests),
            "rows": [row.to_dict() for row in self.rows],
            "norm_proof": self.norm_proof.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "BoundProof":
        digest_0, digest_1 = (str(v) for v in data["share_digests"])
        return cls(
            peer_id=int(data["peer_id"]),
            round_id=int(data["round_id"]),
            challenge_digest=int(data["challenge_digest"]),
            share_digests=(digest_0, digest_1),
            rows=tuple(RowProof.from_dict(row) for row in data["rows"]),
            norm_proof=RangeProof.from_dict(data["norm_proof"]),
        )

    def header(self) -> List[int]:
        return [self.peer_id, self.round_id, self.challenge_digest] + _digest_ints(self.share_digests)

    def fingerprint(self) -> str:
        """SHA-256 over the canonical JSON form; both servers compare it before admitting."""
        return hashlib.sha256(json.dumps(self.to_dict(), sort_keys=True).encode()).hexdigest()


def row_context(header: Sequence[int], row_index: int, x_commitment: int, y_commitment: int) -> int:
    return hash_to_field(
        list(header) + [row_index, x_commitment, y_commitment],
        CHALLENGE_SPACE,
        domain=DOMAIN_ROW_CONTEXT,
    )


def norm_context(header: Sequence[int]) -> int:
    return hash_to_field(list(header), CHALLENGE_SPACE, domain=DOMAIN_NORM_CONTEXT)


def carry_targets(group: PedersenGroup, F: int, x_commitment: int, y_commitment: int, sum_commitment: int) -> List[int]:
    """D·g^(-kF) for k = -1, 0, 1 where D = X·Y/S."""
    p = group.p
    d = x_commitment * y_commitment % p * pow(sum_commitment, -1, p) % p
    shift = group.g_power(F)
    return [d * shift % p, d, d * pow(shift, -1, p) % p]


def norm_target(params: "ProtocolParameters", rows: Sequence[RowProof]) -> int:
    """g^T / prod Z_j, a commitment to T - sum_j s_j^2."""
    group = params.group
    product = 1
    for row in rows:
        product = product * row.square_commitment % group.p
    return group.g_power(params.norm_threshold) * pow(product, -1, group.p) % group.p


def prove_bound(
    params: "ProtocolParameters",
    peer_id: int,
    round_id: int,
    challenge_digest: int,
    share_digests: Tuple[str, str],
    checksums: Tuple[Sequence[int], Sequence[int]],
    blindings: Tuple[Sequence[int], Sequence[int]],
) -> BoundProof:
    """Build the full proof from both share checksum columns and their blindings."""
    group = params.group
    F = params.F
    q = group.q
    header = [peer_id, round_id, challenge_digest] + _digest_ints(share_digests)

    staged = []
    for j, (x, y) in enumerate(zip(*checksums)):
        r, t = blindings[0][j], blindings[1][j]
        s = mod(x + y, F)
        x_commitment = group.commit(x, r)
        y_commitment = group.commit(y, t)
        context = row_context(header, j, x_commitment, y_commitment)
        # s + B in [0, 2B) for every honest row; out-of-bound rows get truncated bits
        sigma, range_proof = prove_range(group, s + params.B, params.range_bits, [context, RANGE_TAG])
        staged.append((x, y, r, t, s, sigma, x_commitment, y_commitment, context, range_proof))

    squares = sum(s * s for _, _, _, _, s, *_ in staged)
    norm_blinding, norm_proof = prove_range(
        group, params.norm_threshold - squares, params.norm_bits, [norm_context(header)]
    )
    # g^T / prod Z_j must open with norm_blinding, so the Z_j blindings sum to its negation
    square_blindings = [group.random_exponent() for _ in range(len(staged) - 1)]
    square_blindings.append((-norm_blinding - sum(square_blindings)) % q)

    rows: List[RowProof] = []
    for (x, y, r, t, s, sigma, x_commitment, y_commitment, context, range_proof), zeta in zip(staged, square_blindings):
        sum_commitment, square_commitment, square_proof = prove_square(group, s, sigma, zeta, [context, SQUARE_TAG])
        targets = carry_targets(group, F, x_commitment, y_commitment, sum_commitment)
        carry = (x + y - s) // F
        rows.append(
            RowProof(
                commitments=(x_commitment, y_commitment),
                sum_commitment=sum_commitment,
                square_commitment=square_commitment,
                carry_proof=prove_dlog_or(group, targets, carry + 1, (r + t - sigma) % q, [context, CARRY_TAG, sum_commitment]),
                range_proof=range_proof,
                square_proof=square_proof,
            )
        )

    return BoundProof(
        peer_id=peer_id,
        round_id=round_id,
        challenge_digest=challenge_digest,
        share_digests=share_digests,
        rows=tuple(rows),
        norm_proof=norm_proof,
    )


def verify_row(params: "ProtocolParameters", proof: BoundProof, row_index: int) -> None:
    """Check the public part of one row; raise ProofVerificationFailed on failure."""
    group = params.group
    row = proof.rows[row_index]
    x_commitment, y_commitment = row.commitments
    for commitment in (x_commitment, y_commitment, row.sum_commitment, row.square_commitment):
        if not group.is_member(commitment):
            raise ProofVerificationFailed(f"row {row_index}: commitment outside the group", proof.peer_id)

    context = row_context(proof.header(), row_index, x_commitment, y_commitment)

    targets = carry_targets(group, params.F, x_commitment, y_commitment, row.sum_commitment)
    if not verify_dlog_or(group, targets, row.carry_proof, [context, CARRY_TAG, row.sum_commitment]):
        raise ProofVerificationFailed(f"row {row_index}: checksum sum does not match the share commitments", proof.peer_id)

    shifted = row.sum_commitment * group.g_power(params.B) % group.p
    if not verify_range(group, shifted, row.range_proof, params.range_bits, [context, RANGE_TAG]):
        raise ProofVerificationFailed(f"row {row_index}: checksum exceeds the norm bound", proof.peer_id)

    if not verify_square(group, row.sum_commitment, row.square_commitment, row.square_proof, [context, SQUARE_TAG]):
        raise ProofVerificationFailed(f"row {row_index}: square commitment does not hide the squared checksum", proof.peer_id)


def verify_norm(params: "ProtocolParameters", proof: BoundProof) -> None:
    """Check that the squared checksums sum to at most NORM_SLACK * N * L^2."""
    target = norm_target(params, proof.rows)
    if not verify_range(params.group, target, proof.norm_proof, params.norm_bits, [norm_context(proof.header())]):
        raise ProofVerificationFailed("sum of squared checksums exceeds the norm bound", proof.peer_id)


def verify_bound(params: "ProtocolParameters", proof: BoundProof) -> None:
    """Every row, then the aggregate over all rows."""
    for j in range(len(proof.rows)):
        verify_row(params, proof, j)
    verify_norm(params, proof)


def verify_opening(
    params: "ProtocolParameters",
    proof: BoundProof,
    server_index: int,
    checksums: Sequence[int],
    openings: Sequence[int],
) -> None:
    """Check that a server's own commitment column opens to its recomputed checksums."""
    group = params.group
    if len(checksums) != len(proof.rows) or len(openings) != len(proof.rows):
        raise ProofVerificationFailed("opening count does not match the proof", proof.peer_id)
    for j, (row, checksum, opening) in enumerate(zip(proof.rows, checksums, openings)):
        if group.commit(checksum, opening) != row.commitments[server_index]:
            raise ProofVerificationFailed(f"row {j}: share commitment does not open to the checksum", proof.peer_id)
