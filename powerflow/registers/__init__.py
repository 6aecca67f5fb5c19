"""Embedded-controller register access."""

from .decoder import RegisterValue, decode_numeric, encode_value
from .probe import CapabilityCache, CpuTemperatureProbe
from .reader import PowerReadingSet, ReadHints, RegisterSourceReader
from .transport import RegisterTransport, StaticRegisterTransport

__all__ = [
    "RegisterValue",
    "decode_numeric",
    "encode_value",
    "CapabilityCache",
    "CpuTemperatureProbe",
    "PowerReadingSet",
    "ReadHints",
    "RegisterSourceReader",
    "RegisterTransport",
    "StaticRegisterTransport",
]
