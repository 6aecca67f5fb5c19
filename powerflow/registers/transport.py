"""Embedded-controller transport interface.

The raw controller call lives outside this package. The core only needs to ask
for a key's metadata and for its bytes; :class:`StaticRegisterTransport` serves
both from memory, which is how register dumps are replayed on machines without
the hardware.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml

from .decoder import encode_value, normalize_type_tag

logger = logging.getLogger(__name__)


class RegisterTransport(ABC):
    """Raw read access to controller registers."""

    @abstractmethod
    def open(self) -> bool:
        """Open the connection. Returns False if the controller is unavailable."""

    @abstractmethod
    def read_key_info(self, key: str) -> tuple[int, str] | None:
        """Return (byte size, type tag) for ``key`` or None if absent."""

    @abstractmethod
    def read_key_bytes(self, key: str, size: int) -> bytes | None:
        """Return ``size`` bytes of payload for ``key`` or None on failure."""

    def close(self) -> None:  # noqa: B027
        """Release the connection."""


class StaticRegisterTransport(RegisterTransport):
    """In-memory transport backed by a key -> (type, payload) table."""

    def __init__(self, registers: dict[str, tuple[str, bytes]] | None = None, available: bool = True):
        self.registers: dict[str, tuple[str, bytes]] = dict(registers or {})
        self.available = available
        self.info_reads = 0
        self.byte_reads: list[str] = []

    @classmethod
    def from_values(cls, values: dict[str, tuple[str, Any]]) -> "StaticRegisterTransport":
        """Build from ``{key: (type_tag, value)}`` with values encoded per type."""
        registers = {
            key: (normalize_type_tag(type_tag), encode_value(type_tag, value))
            for key, (type_tag, value) in values.items()
        }
        return cls(registers)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "StaticRegisterTransport":
        """Load a register dump.

        The file maps keys to ``{type: <tag>, value: <number|string>}`` or
        ``{type: <tag>, hex: <payload hex>}``.
        """
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        registers: dict[str, tuple[str, bytes]] = {}
        for key, entry in raw.get("registers", raw).items():
            if not isinstance(entry, dict) or "type" not in entry:
                logger.warning(f"Skipping malformed register entry {key!r} in {path}")
                continue
            type_tag = normalize_type_tag(entry["type"])
            try:
                if "hex" in entry:
                    payload = bytes.fromhex(str(entry["hex"]))
                else:
                    payload = encode_value(type_tag, entry.get("value", 0))
            except ValueError as e:
                logger.warning(f"Skipping register {key!r}: {e}")
                continue
            registers[str(key)] = (type_tag, payload)

        logger.info(f"Loaded {len(registers)} register(s) from {path}")
        return cls(registers)

    def set_value(self, key: str, type_tag: str, value: Any) -> None:
        self.registers[key] = (normalize_type_tag(type_tag), encode_value(type_tag, value))

    def remove(self, key: str) -> None:
        self.registers.pop(key, None)

    def open(self) -> bool:
        return self.available

    def read_key_info(self, key: str) -> tuple[int, str] | None:
        self.info_reads += 1
        entry = self.registers.get(key)
        if entry is None:
            return None
        type_tag, payload = entry
        return len(payload), type_tag

    def read_key_bytes(self, key: str, size: int) -> bytes | None:
        self.byte_reads.append(key)
        entry = self.registers.get(key)
        if entry is None:
            return None
        return entry[1][:size]
