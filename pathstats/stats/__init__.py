"""
Stats Module

Daily aggregate generation over the session graph.
"""
from .cleanup import clear_client_day
from .generators import (
    ActionStatGenerator,
    ClientStatGenerator,
    PageStatGenerator,
    PathStatGenerator,
    ReferrerStatGenerator,
    UserStatGenerator,
)
from .shared import Counts, EdgeIndex, stat_value_for_date

__all__ = [
    "clear_client_day",
    "ActionStatGenerator",
    "ClientStatGenerator",
    "PageStatGenerator",
    "PathStatGenerator",
    "ReferrerStatGenerator",
    "UserStatGenerator",
    "Counts",
    "EdgeIndex",
    "stat_value_for_date",
]
