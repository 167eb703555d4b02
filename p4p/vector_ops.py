"""Dense vector algebra over Z_F and over the reals."""

from __future__ import annotations

import secrets
from typing import List, MutableSequence, Sequence

import numpy as np

from .constants import RAND_VECTOR_WINDOW
from .errors import DimensionMismatch, InvalidParameter
from .field_math import mod


def _check_lengths(*vectors: Sequence) -> int:
    m = len(vectors[0])
    for vector in vectors[1:]:
        if len(vector) != m:
            raise DimensionMismatch(
                f"dimensionalities do not match: {[len(v) for v in vectors]}"
            )
    return m


def inner_product(v1: Sequence, v2: Sequence):
    """Σ v1[i]*v2[i]. Exact for Python ints, so no reduction is needed until the caller's mod."""
    m = _check_lengths(v1, v2)
    s = 0
    for i in range(m):
        s += v1[i] * v2[i]
    return s


def laxpy(a, x: Sequence, y: MutableSequence, F: int | None = None) -> MutableSequence:
    """In place y = a*x + y.

    With F the result is reduced into canonical field form; without it this is
    the plain real-valued version (works on lists and numpy arrays).
    """
    m = _check_lengths(x, y)
    for i in range(m):
        value = a * x[i] + y[i]
        y[i] = mod(value, F) if F is not None else value
    return y


def vector_add(v1: Sequence[int], v2: Sequence[int], out: MutableSequence[int] | None, F: int) -> MutableSequence[int]:
    """out[j] = mod(v1[j] + v2[j], F). out may alias v1 or v2; None allocates."""
    if out is None:
        out = [0] * len(v1)
    m = _check_lengths(out, v1, v2)
    for j in range(m):
        out[j] = mod(v1[j] + v2[j], F)
    return out


def vector_three_add(
    v1: Sequence[int],
    v2: Sequence[int],
    v3: Sequence[int],
    out: MutableSequence[int] | None,
    F: int,
) -> MutableSequence[int]:
    if out is None:
        out = [0] * len(v1)
    m = _check_lengths(out, v1, v2, v3)
    for j in range(m):
        out[j] = mod(v1[j] + v2[j] + v3[j], F)
    return out


def vector_sub(v1: Sequence[int], v2: Sequence[int], F: int) -> List[int]:
    m = _check_lengths(v1, v2)
    return [mod(v1[j] - v2[j], F) for j in range(m)]


def _round_half_away(value: float) -> int:
    if value >= 0:
        return int(np.floor(value + 0.5))
    return -int(np.floor(-value + 0.5))


def rand_vector(m: int, F: int, l2: float) -> List[int]:
    """Random vector over Z_F, optionally with L2 norm (approximately) l2.

    l2 <= 0: every element is uniform in Z_F. Otherwise elements are drawn
    from [-W, W] rather than the whole field: a full-field vector is so long
    that scaling it down to l2 rounds every coordinate to zero. The vector
    is then scaled to the target length.
    """
    if m <= 0:
        raise InvalidParameter(f"dimension must be positive, got {m}")
    if F <= 0:
        raise InvalidParameter(f"field order must be positive, got {F}")

    if l2 <= 0:
        half = F // 2
        return [secrets.randbelow(F) - half for _ in range(m)]

    window = RAND_VECTOR_WINDOW
    while True:
        data = np.array([secrets.randbelow(2 * window + 1) - window for _ in range(m)], dtype=float)
        norm = float(np.linalg.norm(data))
        if norm > 0:
            break
    scale = l2 / norm
    return [_round_half_away(value * scale) for value in data]


def l2_norm(data) -> float:
    return float(np.linalg.norm(np.asarray(data, dtype=float)))


def _scalar(value):
    # object arrays (big ints) hand back plain Python objects
    return value.item() if isinstance(value, np.generic) else value


def min_value(data):
    """Smallest element of a 1-D or 2-D array."""
    array = np.asarray(data)
    if array.size == 0:
        raise InvalidParameter("min of an empty array")
    return _scalar(array.min())


def max_value(data):
    """Largest element of a 1-D or 2-D array."""
    array = np.asarray(data)
    if array.size == 0:
        raise InvalidParameter("max of an empty array")
    return _scalar(array.max())


def max_abs(data, offset: int = 0, length: int | None = None):
    """Largest absolute value; offset/length select a window of a 1-D array. Empty input gives 0."""
    array = np.asarray(data)
    if array.ndim == 1:
        end = None if length is None else offset + length
        array = array[offset:end]
    if array.size == 0:
        return 0
    return _scalar(np.abs(array).max())
