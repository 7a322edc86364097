"""
Data Generation Module
"""
from .generators import Journey, JourneyGenerator, PlannedVisit, seed_journeys

__all__ = [
    "Journey",
    "JourneyGenerator",
    "PlannedVisit",
    "seed_journeys",
]
