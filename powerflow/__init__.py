"""Powerflow - real-time laptop power flow reconciliation."""

from .constants import DetailLevel
from .models import PowerSettings, PowerSnapshot

__version__ = "0.1.0"
__all__ = ["DetailLevel", "PowerSettings", "PowerSnapshot"]
