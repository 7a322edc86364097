"""
Accumulators Module
"""
from .counters import Counter, CountMapReducer, Summer
from .fields import action_counters, traffic_counters

__all__ = [
    "Counter",
    "CountMapReducer",
    "Summer",
    "action_counters",
    "traffic_counters",
]
