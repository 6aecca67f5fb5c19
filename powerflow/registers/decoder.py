"""Typed decoding of embedded-controller register payloads.

Registers arrive as a fixed-size byte buffer plus a 4-character type tag. The
decoder turns that pair into a number (or text for character types). Anything
it does not understand decodes to ``None``; a decode failure must never look
like a legitimate zero reading.
"""

import logging
import struct
from dataclasses import dataclass

logger = logging.getLogger(__name__)

BUFFER_CAPACITY = 32

# (byte width, signed)
INTEGER_TYPES: dict[str, tuple[int, bool]] = {
    "ui8": (1, False),
    "ui16": (2, False),
    "ui32": (4, False),
    "ui64": (8, False),
    "si8": (1, True),
    "si16": (2, True),
    "si32": (4, True),
    "si64": (8, True),
}

# Fixed-point tags: (divisor, signed). The tag encodes the binary point position.
FIXED_POINT_TYPES: dict[str, tuple[float, bool]] = {
    "fp1f": (32768.0, False),
    "fp2e": (16384.0, False),
    "fp3d": (8192.0, False),
    "fp4c": (4096.0, False),
    "fp5b": (2048.0, False),
    "fp6a": (1024.0, False),
    "fp79": (512.0, False),
    "fp88": (256.0, False),
    "fpa6": (64.0, False),
    "fpc4": (16.0, False),
    "fpe2": (4.0, False),
    "sp1e": (16384.0, True),
    "sp2d": (8192.0, True),
    "sp3c": (4096.0, True),
    "sp4b": (2048.0, True),
    "sp5a": (1024.0, True),
    "sp69": (512.0, True),
    "sp78": (256.0, True),
    "sp87": (128.0, True),
    "sp96": (64.0, True),
    "spa5": (32.0, True),
    "spb4": (16.0, True),
    "spf0": (1.0, True),
}


def normalize_type_tag(type_tag: str | bytes | int) -> str:
    """Normalize a type tag to its lower-case trimmed form.

    Accepts the tag as text, as raw 4 bytes, or packed big-endian into an int
    the way the controller reports it in key-info responses.
    """
    if isinstance(type_tag, int):
        type_tag = type_tag.to_bytes(4, "big")
    if isinstance(type_tag, bytes):
        type_tag = type_tag.decode("ascii", errors="ignore")
    return "".join(ch for ch in type_tag if ch.isprintable()).strip().lower()


def is_character_type(type_tag: str) -> bool:
    return type_tag.startswith("ch")


def _unsigned_le(data: bytes, width: int) -> int:
    return int.from_bytes(data[:width], "little", signed=False)


def _twos_complement(raw: int, width: int) -> int:
    bits = width * 8
    if raw & (1 << (bits - 1)):
        return raw - (1 << bits)
    return raw


def decode_numeric(type_tag: str, data: bytes) -> float | None:
    """Decode ``data`` according to ``type_tag``.

    Args:
        type_tag: Normalized register type tag (e.g. ``flt``, ``sp78``)
        data: Raw payload bytes, little-endian

    Returns:
        Decoded value, or None if the tag is unknown or the buffer too short
    """
    if type_tag == "flt":
        if len(data) < 4:
            return None
        return float(struct.unpack("<f", data[:4])[0])

    if type_tag == "flag":
        if not data:
            return None
        return 0.0 if data[0] == 0 else 1.0

    if type_tag in INTEGER_TYPES:
        width, signed = INTEGER_TYPES[type_tag]
        if len(data) < width:
            return None
        raw = _unsigned_le(data, width)
        return float(_twos_complement(raw, width) if signed else raw)

    if type_tag in FIXED_POINT_TYPES:
        divisor, signed = FIXED_POINT_TYPES[type_tag]
        if len(data) < 2:
            return None
        raw = _unsigned_le(data, 2)
        if signed:
            raw = _twos_complement(raw, 2)
        return raw / divisor

    logger.debug(f"Unsupported register type '{type_tag}'")
    return None


def decode_string(type_tag: str, data: bytes, data_size: int) -> str | None:
    """Decode a character-array register, or None if empty or not text."""
    if not is_character_type(type_tag):
        return None
    size = max(0, min(data_size, len(data)))
    if size == 0:
        return None
    raw = data[:size].split(b"\x00", 1)[0]
    text = raw.decode("utf-8", errors="replace").strip()
    return text or None


@dataclass(frozen=True)
class RegisterValue:
    """One decoded register reading."""

    key: str
    data_size: int
    data_type: str
    data: bytes

    def __post_init__(self):
        object.__setattr__(self, "data_type", normalize_type_tag(self.data_type))
        object.__setattr__(self, "data", bytes(self.data[:BUFFER_CAPACITY]))

    def float_value(self) -> float | None:
        return decode_numeric(self.data_type, self.data)

    def string_value(self) -> str | None:
        return decode_string(self.data_type, self.data, self.data_size)

    def payload(self) -> bytes:
        """Bytes within the declared data size."""
        size = max(0, min(self.data_size, len(self.data)))
        return self.data[:size]

    def raw_hex(self) -> str | None:
        payload = self.payload()
        if not payload:
            return None
        return payload.hex().upper()


def encode_value(type_tag: str, value: float | int | str | bool) -> bytes:
    """Encode ``value`` into a register payload for ``type_tag``.

    Used to build register dumps and test fixtures.

    Raises:
        ValueError: If the type tag is not supported
    """
    type_tag = normalize_type_tag(type_tag)
    if type_tag == "flt":
        return struct.pack("<f", float(value))
    if type_tag == "flag":
        return bytes([1 if value else 0])
    if type_tag in INTEGER_TYPES:
        width, signed = INTEGER_TYPES[type_tag]
        return int(value).to_bytes(width, "little", signed=signed)
    if type_tag in FIXED_POINT_TYPES:
        divisor, signed = FIXED_POINT_TYPES[type_tag]
        return int(round(float(value) * divisor)).to_bytes(2, "little", signed=signed)
    if is_character_type(type_tag):
        return str(value).encode("utf-8")
    raise ValueError(f"Cannot encode register type '{type_tag}'")
