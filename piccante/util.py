"""Hex parsing and fixed-width integer packing helpers."""

_MASK32 = 0xFFFFFFFF
_DECIMAL_BASE = 10


def parse_hex_char(char: str) -> int:
    """Return the value of a single hex digit; anything else counts as 0."""
    if len(char) != 1:
        raise ValueError(f"expected a single character, got {char!r}")
    if "0" <= char <= "9":
        return ord(char) - ord("0")
    if "A" <= char <= "F":
        return _DECIMAL_BASE + ord(char) - ord("A")
    if "a" <= char <= "f":
        return _DECIMAL_BASE + ord(char) - ord("a")
    return 0


def parse_hex(text: str) -> int:
    """Parse a hex string into an unsigned 32-bit value: 'DEADBEEF' -> 3735928559.

    Characters that are not hex digits count as 0; digits beyond the low
    32 bits are dropped.
    """
    result = 0
    for char in text:
        result = ((result << 4) + parse_hex_char(char)) & _MASK32
    return result


def _truncate(value: int, size: int) -> int:
    if size <= 0:
        raise ValueError(f"size must be positive, got {size}")
    return value & ((1 << (8 * size)) - 1)


def pack_le(value: int, size: int) -> bytes:
    """Encode ``value`` as ``size`` little-endian bytes, wrapping like an unsigned type."""
    return _truncate(value, size).to_bytes(size, "little")


def pack_be(value: int, size: int) -> bytes:
    """Encode ``value`` as ``size`` big-endian bytes, wrapping like an unsigned type."""
    return _truncate(value, size).to_bytes(size, "big")