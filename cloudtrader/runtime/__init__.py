"""
Runtime scheduling (cycle loop with injectable clock and sleep).
"""
from cloudtrader.runtime.scheduler import CycleScheduler

__all__ = [
    "CycleScheduler",
]
