"""Little-endian byte helpers and compact wire codecs.

字节编码工具 / Fixed-width little-endian encode/decode helpers plus the binary
formats used to ship challenge matrices and field vectors between nodes.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from .errors import DimensionMismatch

CHALLENGE_MAGIC = 0x5034  # "P4"
VECTOR_MAGIC = 0x5056  # "PV"
_CHALLENGE_HEADER = 2 + 4 + 4 + 8
_VECTOR_HEADER = 2 + 4
_ENTRIES_PER_WORD = 16


def bytes_from_short(array: bytearray, offset: int, value: int) -> None:
    """Store the low 16 bits of value at array[offset:offset+2], little-endian."""
    array[offset + 0] = (value >> 0) & 0xFF
    array[offset + 1] = (value >> 8) & 0xFF


def bytes_from_int(array: bytearray, offset: int, value: int, length: int = 4) -> None:
    """Store the low length*8 bits of value, little-endian. length must be 1, 2 or 4."""
    if length not in (1, 2, 4):
        raise ValueError(f"unsupported length {length}")
    if length == 1:
        array[offset] = value & 0xFF
    elif length == 2:
        bytes_from_short(array, offset, value)
    else:
        for i in range(4):
            array[offset + i] = (value >> (8 * i)) & 0xFF


def int_to_bytes(value: int) -> bytes:
    """Return the 4-byte little-endian string of value."""
    array = bytearray(4)
    bytes_from_int(array, 0, value)
    return bytes(array)


def bytes_from_long(array: bytearray, offset: int, value: int) -> None:
    """Store the low 64 bits of value at array[offset:offset+8], little-endian."""
    for i in range(8):
        array[offset + i] = (value >> (8 * i)) & 0xFF


def bytes_to_short(array: bytes, offset: int) -> int:
    return extend(bytes_to_unsigned_short(array, offset), 0, 16)


def bytes_to_unsigned_short(array: bytes, offset: int) -> int:
    return array[offset] | (array[offset + 1] << 8)


def bytes_to_int(array: bytes, offset: int, length: int = 4) -> int:
    """Read a signed little-endian integer of 1, 2 or 4 bytes."""
    if length not in (1, 2, 4):
        raise ValueError(f"unsupported length {length}")
    if length == 1:
        return extend(array[offset], 0, 8)
    if length == 2:
        return bytes_to_short(array, offset)
    value = 0
    for i in range(4):
        value |= array[offset + i] << (8 * i)
    return extend(value, 0, 32)


def bytes_to_long(array: bytes, offset: int) -> int:
    value = 0
    for i in range(8):
        value |= array[offset + i] << (8 * i)
    return extend(value, 0, 64)


def bytes_to_string(array: bytes, offset: int, length: int) -> str:
    """Decode at most length bytes, stopping at the first NUL."""
    end = offset
    while end < offset + length and array[end] != 0:
        end += 1
    return bytes(array[offset:end]).decode("latin-1")


def extract(bits: int, lowest: int, size: int) -> int:
    """Mask out and shift down the size-bit substring starting at bit lowest."""
    return (bits >> lowest) & ((1 << size) - 1)


def extend(bits: int, lowest: int, size: int) -> int:
    """Like extract, then sign-extend the substring from its top bit."""
    value = extract(bits, lowest, size)
    if value & (1 << (size - 1)):
        value -= 1 << size
    return value


def flag_set(flag: int, bits: int) -> bool:
    """True if any bit of flag is set in bits."""
    return (bits & flag) != 0


def to_hex_string(value: int, pad: int = 8) -> str:
    """Upper-case hex string of value, zero padded to at least pad digits."""
    return format(value, "X").rjust(pad, "0")


def div_round_up(a: int, b: int) -> int:
    if a < 0 or b <= 0:
        raise ValueError("div_round_up expects a >= 0 and b > 0")
    return (a + (b - 1)) // b


def encode_challenge_matrix(round_id: int, rows: Sequence[Sequence[int]]) -> bytes:
    """Pack an N x m matrix over {-1, 0, 1} as 2-bit two's complement fields.

    Layout: magic (short), N (int), m (int), round id (long), then
    ceil(N*m/16) little-endian 32-bit words.
    """
    n_rows = len(rows)
    m = len(rows[0]) if n_rows else 0
    total = n_rows * m
    n_words = div_round_up(total, _ENTRIES_PER_WORD)
    out = bytearray(_CHALLENGE_HEADER + 4 * n_words)
    bytes_from_short(out, 0, CHALLENGE_MAGIC)
    bytes_from_int(out, 2, n_rows)
    bytes_from_int(out, 6, m)
    bytes_from_long(out, 10, round_id)

    word = 0
    position = 0
    for row in rows:
        if len(row) != m:
            raise DimensionMismatch("challenge rows have different lengths")
        for entry in row:
            if entry not in (-1, 0, 1):
                raise ValueError(f"challenge entry {entry} is not in {{-1, 0, 1}}")
            slot = position % _ENTRIES_PER_WORD
            word |= (entry & 0b11) << (2 * slot)
            position += 1
            if slot == _ENTRIES_PER_WORD - 1:
                bytes_from_int(out, _CHALLENGE_HEADER + 4 * (position // _ENTRIES_PER_WORD - 1), word)
                word = 0
    if position % _ENTRIES_PER_WORD:
        bytes_from_int(out, _CHALLENGE_HEADER + 4 * (n_words - 1), word)
    return bytes(out)


def decode_challenge_matrix(data: bytes) -> Tuple[int, List[List[int]]]:
    """Inverse of encode_challenge_matrix; returns (round_id, rows)."""
    if len(data) < _CHALLENGE_HEADER or bytes_to_unsigned_short(data, 0) != CHALLENGE_MAGIC:
        raise ValueError("not an encoded challenge matrix")
    n_rows = bytes_to_int(data, 2)
    m = bytes_to_int(data, 6)
    round_id = bytes_to_long(data, 10)
    if n_rows < 0 or m < 0:
        raise ValueError("negative challenge dimensions")
    n_words = div_round_up(n_rows * m, _ENTRIES_PER_WORD)
    if len(data) != _CHALLENGE_HEADER + 4 * n_words:
        raise ValueError("challenge matrix payload has the wrong length")

    rows: List[List[int]] = []
    position = 0
    for _ in range(n_rows):
        row: List[int] = []
        for _ in range(m):
            word = bytes_to_int(data, _CHALLENGE_HEADER + 4 * (position // _ENTRIES_PER_WORD))
            entry = extend(word, 2 * (position % _ENTRIES_PER_WORD), 2)
            if entry == -2:
                raise ValueError("invalid challenge entry encoding")
            row.append(entry)
            position += 1
        rows.append(row)
    return round_id, rows


def encode_field_vector(vector: Sequence[int]) -> bytes:
    """Fixed-width encoding: magic (short), length (int), signed 64-bit elements."""
    out = bytearray(_VECTOR_HEADER + 8 * len(vector))
    bytes_from_short(out, 0, VECTOR_MAGIC)
    bytes_from_int(out, 2, len(vector))
    for i, value in enumerate(vector):
        if not -(1 << 63) <= value < (1 << 63):
            raise ValueError(f"field element {value} does not fit in 64 bits")
        bytes_from_long(out, _VECTOR_HEADER + 8 * i, value)
    return bytes(out)


def decode_field_vector(data: bytes) -> List[int]:
    if len(data) < _VECTOR_HEADER or bytes_to_unsigned_short(data, 0) != VECTOR_MAGIC:
        raise ValueError("not an encoded field vector")
    length = bytes_to_int(data, 2)
    if length < 0 or len(data) != _VECTOR_HEADER + 8 * length:
        raise ValueError("field vector payload has the wrong length")
    return [bytes_to_long(data, _VECTOR_HEADER + 8 * i) for i in range(length)]
