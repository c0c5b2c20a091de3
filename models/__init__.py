"""
Core data models for the Niche Radar engine.
"""

from .schemas import (
    SearchTermRecord,
    ProductRecord,
    TagRule,
    ClusterTag,
    ClusterMetrics,
    LinkedProductMetrics,
    SearchTermCluster,
    ProductCluster,
    OpportunityResult,
    Competitor,
    CompetitionResult,
    TrendResult,
    InsightBundle,
    parse_records,
    to_number,
)

__all__ = [
    "SearchTermRecord",
    "ProductRecord",
    "TagRule",
    "ClusterTag",
    "ClusterMetrics",
    "LinkedProductMetrics",
    "SearchTermCluster",
    "ProductCluster",
    "OpportunityResult",
    "Competitor",
    "CompetitionResult",
    "TrendResult",
    "InsightBundle",
    "parse_records",
    "to_number",
]
