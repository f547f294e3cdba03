"""
Dashboard statistics for InventDB.
"""

from .aggregator import Statistics, StatisticsAggregator, compute_statistics

__all__ = ["Statistics", "StatisticsAggregator", "compute_statistics"]
