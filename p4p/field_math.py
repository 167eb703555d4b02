"""Finite-field arithmetic, field-bounded randomness and real/field conversion.

All protocol arithmetic happens in Z_F with elements kept in the canonical
signed range: [-floor(F/2), floor(F/2)] for odd F, [-F/2, F/2 - 1] for even F.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Sequence

import numpy as np

from .codec import div_round_up, int_to_bytes
from .constants import STATISTICAL_SECURITY
from .errors import DigestUnavailable, InvalidParameter

HASH_ALGORITHM = "sha512"


def mod(x: int, m: int) -> int:
    """Return the canonical representative of x modulo m.

    The result differs from x by a multiple of m and lies in [-m/2, m/2).
    """
    if m <= 0:
        raise InvalidParameter(f"modulus must be positive, got {m}")
    r = x % m
    if r >= (m + 1) // 2:
        r -= m
    return r


def random_field_element(bound: int) -> int:
    """随机域元素 / Draw a value in [1, bound-1].

    We take bit_length(bound) + t random bits and reduce mod bound, so the
    statistical distance to the uniform distribution is at most 2^-t (Shoup,
    A Computational Introduction to Number Theory and Algebra, p. 157). Zero
    is resampled.
    """
    if bound < 2:
        raise InvalidParameter(f"bound must be at least 2, got {bound}")
    n_bits = bound.bit_length() + STATISTICAL_SECURITY
    while True:
        r = secrets.randbits(n_bits) % bound
        if r != 0:
            return r


def _encode_message(value: int) -> bytes:
    # minimal two's complement, big-endian
    length = value.bit_length() // 8 + 1
    return value.to_bytes(length, "big", signed=True)


def hash_to_field(messages: Sequence[int], q: int, domain: bytes = b"") -> int:
    """Hash an ordered list of integers to an element of Z_q.

    SHA-512 blocks are computed over the domain tag, the length-prefixed
    messages and the block index, and concatenated until they cover
    bit_length(q) + 1 + t bits.
    """
    if q <= 0:
        raise InvalidParameter(f"hash modulus must be positive, got {q}")
    try:
        hasher = hashlib.new(HASH_ALGORITHM)
    except (ValueError, TypeError) as exc:
        raise DigestUnavailable(f"hash algorithm {HASH_ALGORITHM!r} is not available") from exc

    needed_bits = q.bit_length() + 1 + STATISTICAL_SECURITY
    n_blocks = div_round_up(needed_bits, hasher.digest_size * 8)
    encoded = [_encode_message(int(value)) for value in messages]

    blocks = []
    for index in range(n_blocks):
        md = hasher.copy()
        md.update(int_to_bytes(len(domain)))
        md.update(domain)
        for chunk in encoded:
            md.update(int_to_bytes(len(chunk)))
            md.update(chunk)
        md.update(int_to_bytes(index))
        blocks.append(md.digest())

    return int.from_bytes(b"".join(blocks), "big") % q


def _window(values: np.ndarray, offset: int, length: int | None) -> np.ndarray:
    end = None if length is None else offset + length
    return values[..., offset:end]


def itor(data, F: int, R: float, offset: int = 0, length: int | None = None) -> np.ndarray:
    """Map field integers to reals in [-R, R] with scale alpha = 2R/F.

    Accepts 1-D or 2-D input; offset/length select along the last axis.
    """
    if F <= 0:
        raise InvalidParameter(f"field order must be positive, got {F}")
    alpha = 2.0 * R / F
    values = _window(np.asarray(data, dtype=float), offset, length)
    return values * alpha


def rtoi(data, F: int, R: float, offset: int = 0, length: int | None = None) -> list:
    """Map reals in [-R, R] back to field integers, rounding half away from zero.

    Returns Python ints (nested lists for 2-D input) so results can be used in
    exact field arithmetic.
    """
    if F <= 0:
        raise InvalidParameter(f"field order must be positive, got {F}")
    if R <= 0:
        raise InvalidParameter(f"real range must be positive, got {R}")
    alpha = 2.0 * R / F
    scaled = _window(np.asarray(data, dtype=float), offset, length) / alpha
    rounded = np.sign(scaled) * np.floor(np.abs(scaled) + 0.5)
    return np.vectorize(int, otypes=[object])(rounded).tolist()
