"""
Niche Scoring Agent
-------------------
Scores whole niches from the category-level export (one row per customer
need) and flags emerging and seasonal demand.

Input  : list[dict | NicheRecord]
Output : list[NicheScore]  (sorted by opportunity, descending)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from agents.base import Agent
from agents.scorer import emergence_score, refined_opportunity_score, seasonality_index
from config.settings import settings
from models.schemas import number_field, parse_records, text_field

logger = logging.getLogger(__name__)


# ─── Data Structures ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class NicheRecord:
    customer_need: str
    search_volume: float = 0.0              # past 360 days
    search_volume_growth: float = 0.0       # past 180 days
    search_volume_90d: float = 0.0
    search_volume_growth_90d: float = 0.0
    num_top_clicked_products: int = 0
    units_sold_lower: float = 0.0
    units_sold_upper: float = 0.0
    average_units_sold_lower: float = 0.0
    average_units_sold_upper: float = 0.0
    average_price: float = 0.0
    min_price: float = 0.0
    max_price: float = 0.0
    return_rate: float = 0.0
    top_search_terms: tuple = ()

    @property
    def units_sold(self) -> float:
        return (self.units_sold_lower + self.units_sold_upper) / 2

    @property
    def average_units_sold(self) -> float:
        return (self.average_units_sold_lower + self.average_units_sold_upper) / 2

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> Optional["NicheRecord"]:
        if isinstance(row, cls):
            return row
        need = text_field(row, "customer_need", "Customer Need")
        if not need:
            logger.warning("Niche row without a customer need skipped")
            return None

        def num(*keys: str) -> float:
            return number_field(row, *keys) or 0.0

        terms = row.get("top_search_terms") or [
            row.get(f"Top Search Term {i}") for i in (1, 2, 3)
        ]
        return cls(
            customer_need=need,
            search_volume=num("search_volume", "Search Volume (Past 360 days)"),
            search_volume_growth=num("search_volume_growth", "Search Volume Growth (Past 180 days)"),
            search_volume_90d=num("search_volume_90d", "Search Volume (Past 90 days)"),
            search_volume_growth_90d=num("search_volume_growth_90d", "Search Volume Growth (Past 90 days)"),
            num_top_clicked_products=int(num("num_top_clicked_products", "# of Top Clicked Products")),
            units_sold_lower=num("units_sold_lower", "Units Sold Lower Bound (Past 360 days)"),
            units_sold_upper=num("units_sold_upper", "Units Sold Upper Bound (Past 360 days)"),
            average_units_sold_lower=num(
                "average_units_sold_lower", "Range of Average Units Sold Lower Bound (Past 360 days)"
            ),
            average_units_sold_upper=num(
                "average_units_sold_upper", "Range of Average Units Sold Upper Bound (Past 360 days)"
            ),
            average_price=num("average_price", "Average Price (USD)"),
            min_price=num("min_price", "Minimum Price (Past 360 days) (USD)"),
            max_price=num("max_price", "Maximum Price (Past 360 days) (USD)"),
            return_rate=num("return_rate", "Return Rate (Past 360 days)"),
            top_search_terms=tuple(str(t).strip() for t in terms if t and str(t).strip()),
        )


@dataclass
class NicheScore:
    niche: NicheRecord
    opportunity: int
    emergence: float
    seasonality: float
    is_emerging: bool = False
    is_seasonal: bool = False
    metrics: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_need": self.niche.customer_need,
            "top_search_terms": list(self.niche.top_search_terms),
            "metrics": self.metrics,
            "scores": {
                "opportunity": self.opportunity,
                "emergence": round(self.emergence, 4),
                "seasonality": round(self.seasonality, 4),
            },
            "flags": {"is_emerging": self.is_emerging, "is_seasonal": self.is_seasonal},
        }


def score_niche(niche: NicheRecord) -> NicheScore:
    emergence = emergence_score(
        niche.search_volume, niche.search_volume_growth_90d, niche.search_volume_growth
    )
    seasonality = seasonality_index(
        niche.search_volume_growth_90d,
        niche.search_volume_growth,
        niche.search_volume_90d,
        niche.search_volume,
    )
    opportunity = refined_opportunity_score(
        niche.search_volume, niche.search_volume_growth, niche.num_top_clicked_products
    )
    return NicheScore(
        niche=niche,
        opportunity=opportunity,
        emergence=emergence,
        seasonality=seasonality,
        is_emerging=emergence > settings.EMERGING_FLAG_THRESHOLD,
        is_seasonal=seasonality > settings.SEASONAL_FLAG_THRESHOLD,
        metrics={
            "search_volume": niche.search_volume,
            "search_volume_growth": niche.search_volume_growth,
            "search_volume_90d": niche.search_volume_90d,
            "search_volume_growth_90d": niche.search_volume_growth_90d,
            "units_sold": niche.units_sold,
            "average_units_sold": niche.average_units_sold,
            "num_top_clicked_products": niche.num_top_clicked_products,
            "average_price": niche.average_price,
            "min_price": niche.min_price,
            "max_price": niche.max_price,
            "return_rate": niche.return_rate,
        },
    )


# ─── Agent ───────────────────────────────────────────────────────────────────


class NicheScoringAgent(Agent):

    def __init__(self):
        super().__init__(name="NicheScoringAgent")

    def run(self, rows: Sequence[Any]) -> List[NicheScore]:
        niches = parse_records(rows, NicheRecord)
        scores = sorted((score_niche(n) for n in niches), key=lambda s: -s.opportunity)
        emerging = sum(1 for s in scores if s.is_emerging)
        seasonal = sum(1 for s in scores if s.is_seasonal)
        self.logger.info(
            f"Scored {len(scores)} niches ({emerging} emerging, {seasonal} seasonal)"
        )
        return scores
