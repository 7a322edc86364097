"""
Session Path Graph & Analytics Aggregation Engine

Chains page views and actions into materialized-path session trees with
inherited attribution, and folds the day's chains into per-day aggregates.
"""

__version__ = "0.9.0"
