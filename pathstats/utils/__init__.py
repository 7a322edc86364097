"""
Utilities Module
"""
from .dates import day_bounds, day_ceil, day_floor, epoch_seconds, last_n_days, utcnow
from .sequence import batched, run_sequential

__all__ = [
    "day_bounds",
    "day_ceil",
    "day_floor",
    "epoch_seconds",
    "last_n_days",
    "utcnow",
    "batched",
    "run_sequential",
]
