"""
SlipSight Analysis - Statistics computed from decoded replays.

This module contains:
- events: Hits and stock losses derived from frame data
- conversions: Grouping hits into openings and punishes
- techniques: Technique and input counting
- aggregator: Per-player stats and match outcome
- reports: Aggregate summaries over stored matches (pandas)
"""

from slipsight.analysis.aggregator import StatAggregator, aggregate_stats
from slipsight.analysis.conversions import Conversion, extract_conversions

__all__ = ["StatAggregator", "aggregate_stats", "Conversion", "extract_conversions"]
