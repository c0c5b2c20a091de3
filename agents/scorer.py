"""
Score Calculator
----------------
Pure numeric scoring used by every clustering path and by niche scoring.

  Opportunity (cluster form)  = round(clamp(volume · growth / competition, 0, 100))
  Opportunity (refined form)  = round(clamp(nv · ng · np · 100, 0, 100))
      nv = log10(max(10, volume)) / 6
      ng = clamp((growth + 0.5) / 1.5, 0, 1)
      np = clamp(competing_products / 50, 0, 1)
  Emergence   = min(1, max(0, 1 - v/500k) · clamp(g90/2, 0, 1) · accel)
  Seasonality = min(1, max(0, g90 - g180)·0.7 + min(1, 4·v90/v_total)·0.3)

Temporal metrics take a cluster's chronological snapshots: regression-slope
growth, trailing moving averages, term-overlap stability and a history-based
emergence blend.

All inputs are already-normalized fractions; percentage strings are
coerced by the model adapters before anything reaches this module.
"""

import math
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from config.settings import settings
from models.schemas import ClusterMetrics, ClusterTag, ProductRecord, SearchTermRecord, number_field

logger = logging.getLogger(__name__)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if value is None or math.isnan(value):
        return low
    return max(low, min(high, value))


# ─── Opportunity ─────────────────────────────────────────────────────────────


def opportunity_score(volume: float, growth: float, competition: float) -> int:
    """Generic cluster opportunity in [0, 100]; non-positive competition scores 0."""
    if not competition or competition <= 0:
        return 0
    raw = (volume or 0.0) * (growth or 0.0) / competition
    return int(round(clamp(raw, 0, 100)))


def refined_opportunity_score(
    volume: float,
    growth_rate: float,
    num_competing_products: float,
) -> int:
    """
    Whole-niche opportunity. Each factor is normalized on its own, so any
    factor at zero drives the score to zero.
    """
    normalized_volume = math.log10(max(10.0, volume or 0.0)) / 6
    normalized_growth = clamp(((growth_rate or 0.0) + 0.5) / 1.5)
    normalized_products = clamp((num_competing_products or 0.0) / settings.COMPETING_PRODUCTS_CAP)
    score = normalized_volume * normalized_growth * normalized_products * 100
    return int(round(clamp(score, 0, 100)))


def product_opportunity_score(
    total_clicks: float,
    average_rating: Optional[float],
    average_bsr: Optional[float],
) -> int:
    """Product-cluster opportunity from niche clicks, rating and BSR."""
    click_factor = (total_clicks or 0.0) / 10_000
    rating_factor = (average_rating or 0.0) / 5
    bsr_factor = clamp(1 - (average_bsr or 0.0) / 100_000)
    return int(round(clamp(click_factor * rating_factor * bsr_factor * 100, 0, 100)))


# ─── Emergence / seasonality ─────────────────────────────────────────────────


def emergence_score(volume: float, growth_90d: float, growth_180d: float) -> float:
    ceiling = settings.EMERGENCE_VOLUME_CEILING
    volume = volume or 0.0
    if volume > ceiling:
        return 0.0
    growth_90d = growth_90d or 0.0
    volume_factor = max(0.0, 1 - volume / ceiling)
    growth_factor = clamp(growth_90d / 2)
    acceleration = 1.2 if growth_90d > (growth_180d or 0.0) else 1.0
    return min(1.0, volume_factor * growth_factor * acceleration)


def seasonality_index(
    growth_90d: float,
    growth_180d: float,
    volume_90d: float,
    total_volume: float,
) -> float:
    if not total_volume:
        return 0.0
    spike = max(0.0, (growth_90d or 0.0) - (growth_180d or 0.0))
    concentration = min(1.0, ((volume_90d or 0.0) / total_volume) * 4)
    return min(1.0, spike * 0.7 + concentration * 0.3)


# ─── Aggregates ──────────────────────────────────────────────────────────────


def total_volume(volumes: Iterable[Optional[float]]) -> float:
    return float(sum(v for v in volumes if v))


def weighted_click_share(pairs: Iterable[tuple]) -> float:
    """Σ(share·volume) / Σ volume over (share, volume) pairs; 0 when volume is 0."""
    pairs = [(s or 0.0, v or 0.0) for s, v in pairs]
    total = sum(v for _, v in pairs)
    if total <= 0:
        return 0.0
    return sum(s * v for s, v in pairs) / total


def mean_of(values: Iterable[Optional[float]]) -> Optional[float]:
    """Mean over values that are present; None when none are."""
    present = [v for v in values if v is not None]
    if not present:
        return None
    return float(np.mean(present))


def search_term_metrics(members: Sequence[SearchTermRecord]) -> ClusterMetrics:
    volume = total_volume(m.volume for m in members)
    click_share = weighted_click_share((m.click_share, m.volume) for m in members)
    growth = mean_of(m.growth for m in members) or 0.0
    return ClusterMetrics(
        total_volume=volume,
        weighted_click_share=click_share,
        # click share in percentage points is the competition proxy
        opportunity_score=opportunity_score(volume, growth, click_share * 100),
        average_growth=growth,
    )


def product_metrics(members: Sequence[ProductRecord]) -> ClusterMetrics:
    clicks = total_volume(m.click_count for m in members)
    average_rating = mean_of(m.rating for m in members)
    average_bsr = mean_of(m.bsr for m in members)
    shares = [m.market_share for m in members if m.market_share is not None]
    return ClusterMetrics(
        total_volume=clicks,
        weighted_click_share=weighted_click_share((m.market_share, m.click_count) for m in members),
        opportunity_score=product_opportunity_score(clicks, average_rating, average_bsr),
        average_price=mean_of(m.price for m in members),
        average_rating=average_rating,
        total_reviews=int(sum(m.review_count or 0 for m in members)),
        market_share=float(np.mean(shares)) if shares else 0.0,
    )


# ─── Band tags ───────────────────────────────────────────────────────────────


def volume_band(average_volume: float) -> str:
    if average_volume > settings.HIGH_VOLUME_BAND:
        return "High"
    if average_volume > settings.MEDIUM_VOLUME_BAND:
        return "Medium"
    return "Low"


def growth_band(average_growth: float) -> str:
    if average_growth > settings.HIGH_GROWTH_BAND:
        return "High"
    if average_growth > 0:
        return "Stable"
    return "Declining"


def search_term_tags(members: Sequence[SearchTermRecord]) -> List[ClusterTag]:
    """Volume / Growth bands plus the members' explicit attribute tags."""
    tags = [
        ClusterTag("Volume", volume_band(mean_of(m.volume for m in members) or 0.0)),
        ClusterTag("Growth", growth_band(mean_of(m.growth_180d or 0.0 for m in members) or 0.0)),
    ]
    for category, attr in (("Format", "format_tag"), ("Function", "function_tag"), ("Values", "values_tag")):
        counts = Counter(getattr(m, attr) for m in members if getattr(m, attr))
        tags.extend(ClusterTag(category, value) for value, _ in counts.most_common())
    return list(dict.fromkeys(tags))


# ─── Temporal metrics ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class HistoryPoint:
    """One snapshot of a cluster: aggregate metrics plus the terms it held."""
    volume: float = 0.0
    click_share: float = 0.0
    competition: float = 0.0
    terms: tuple = ()
    timestamp: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HistoryPoint":
        if isinstance(data, cls):
            return data
        click_share = number_field(data, "click_share", "clickShare") or 0.0
        competition = number_field(data, "competition")
        timestamp = data.get("timestamp")
        return cls(
            volume=number_field(data, "volume") or 0.0,
            click_share=click_share,
            competition=click_share if competition is None else competition,
            terms=tuple(str(t) for t in data.get("terms") or [] if t),
            timestamp=str(timestamp) if timestamp is not None else None,
        )


@dataclass
class TemporalMetrics:
    growth_rate: float = 0.0
    volume_trend: List[float] = field(default_factory=list)
    click_share_trend: List[float] = field(default_factory=list)
    competition_trend: List[float] = field(default_factory=list)
    stability: float = 1.0
    emergence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "growth_rate": round(self.growth_rate, 4),
            "volume_trend": [round(v, 4) for v in self.volume_trend],
            "click_share_trend": [round(v, 4) for v in self.click_share_trend],
            "competition_trend": [round(v, 4) for v in self.competition_trend],
            "stability": round(self.stability, 4),
            "emergence": round(self.emergence, 4),
        }


def growth_rate(values: Sequence[float]) -> float:
    """Least-squares slope of `values` against their index."""
    if len(values) < 2:
        return 0.0
    slope, _ = np.polyfit(np.arange(len(values)), np.asarray(values, dtype=float), 1)
    return float(slope)


def moving_average(values: Sequence[float], window: Optional[int] = None) -> List[float]:
    """Trailing mean; the first points average over what is available."""
    window = window or settings.TREND_WINDOW
    return [float(np.mean(values[max(0, i - window + 1):i + 1])) for i in range(len(values))]


def term_stability(history: Sequence[HistoryPoint]) -> float:
    """Mean overlap of consecutive snapshots' term sets, 1.0 for fewer than two."""
    if len(history) < 2:
        return 1.0
    overlaps = []
    for previous, current in zip(history, history[1:]):
        before, after = set(previous.terms), set(current.terms)
        largest = max(len(before), len(after))
        overlaps.append(len(before & after) / largest if largest else 1.0)
    return float(np.mean(overlaps))


def temporal_emergence_score(volumes: Sequence[float], rate: float, stability: float) -> float:
    """0.4 · growth + 0.4 · acceleration + 0.2 · churn, each mapped from [-1, 1] to [0, 1]."""
    deltas = [0.0] + [b - a for a, b in zip(volumes, volumes[1:])]
    acceleration = growth_rate(deltas)
    return (
        clamp((rate + 1) / 2) * 0.4
        + clamp((acceleration + 1) / 2) * 0.4
        + (1 - stability) * 0.2
    )


def temporal_metrics(history: Sequence[Any]) -> TemporalMetrics:
    """
    Trend metrics for a cluster tracked across chronological snapshots
    (HistoryPoint or dicts with volume / clickShare / competition / terms).
    Snapshots in any other shape are skipped.
    """
    points = []
    for entry in history or []:
        if not isinstance(entry, (HistoryPoint, Mapping)):
            logger.warning(f"Unsupported history point {type(entry).__name__} skipped")
            continue
        points.append(HistoryPoint.from_dict(entry))
    if not points:
        return TemporalMetrics()

    volumes = [p.volume for p in points]
    rate = growth_rate(volumes)
    stability = term_stability(points)
    return TemporalMetrics(
        growth_rate=rate,
        volume_trend=moving_average(volumes),
        click_share_trend=moving_average([p.click_share for p in points]),
        competition_trend=moving_average([p.competition for p in points]),
        stability=stability,
        emergence=temporal_emergence_score(volumes, rate, stability),
    )
