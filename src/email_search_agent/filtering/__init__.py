"""Deduplication and noise filtering."""

from email_search_agent.filtering.engine import FilterEngine, FilteringStats, filtering_stats
from email_search_agent.filtering.rules import FilterConfig, FilterRule, RuleType

__all__ = [
    "FilterConfig",
    "FilterEngine",
    "FilterRule",
    "FilteringStats",
    "RuleType",
    "filtering_stats",
]
