"""
Core data models / schemas for the Niche Radar engine.

Records arrive as plain dicts from the spreadsheet adapter; `from_dict`
accepts both the snake_case field names used here and the column names of
the marketplace exports, and returns None for rows that lack a required field.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

_ASIN_RE = re.compile(r"^[A-Z0-9]{10}$")


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------

def to_number(value: Any) -> Optional[float]:
    """
    Coerce a spreadsheet cell to float.

    "1,234" -> 1234.0, "15%" -> 0.15, "" / None / "n/a" -> None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return None if math.isnan(number) or math.isinf(number) else number
    text = str(value).strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("%", "").replace("$", "").strip()
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return number / 100.0 if "%" in text else number


def _pick(row: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def text_field(row: Mapping[str, Any], *keys: str) -> Optional[str]:
    value = _pick(row, *keys)
    return str(value).strip() if value is not None else None


def number_field(row: Mapping[str, Any], *keys: str) -> Optional[float]:
    return to_number(_pick(row, *keys))


def _non_negative(value: Optional[float], name: str) -> Optional[float]:
    if value is not None and value < 0:
        logger.warning(f"Negative {name} ({value}) treated as missing")
        return None
    return value


def _round_dict(values: Dict[str, Any], digits: int = 4) -> Dict[str, Any]:
    return {
        k: round(v, digits) if isinstance(v, float) else v
        for k, v in values.items()
    }


# ---------------------------------------------------------------------------
# Raw ingestion
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SearchTermRecord:
    term: str
    volume: float = 0.0
    growth_180d: Optional[float] = None     # signed fraction, 0.2 == +20%
    growth_90d: Optional[float] = None
    click_share: Optional[float] = None     # 0–1
    conversion_rate: Optional[float] = None # 0–1
    format_tag: Optional[str] = None
    function_tag: Optional[str] = None
    values_tag: Optional[str] = None
    top_clicked_asins: Tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return self.term

    @property
    def growth(self) -> float:
        """180-day growth, falling back to 90-day growth, then 0."""
        if self.growth_180d is not None:
            return self.growth_180d
        if self.growth_90d is not None:
            return self.growth_90d
        return 0.0

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> Optional["SearchTermRecord"]:
        if isinstance(row, cls):
            return row
        term = text_field(row, "term", "search_term", "Search_Term", "Search Term", "keyword")
        if not term:
            logger.warning("Search term row without a term skipped")
            return None

        asins = row.get("top_clicked_asins")
        if not asins:
            asins = [
                text_field(row, f"Top_Clicked_Product_{i}_ASIN", f"top_clicked_product_{i}_asin")
                for i in (1, 2, 3)
            ]
        asins = tuple(str(a).strip().upper() for a in asins if a)

        volume = _non_negative(number_field(row, "volume", "Volume", "search_volume", "Search Volume"), "volume")
        return cls(
            term=term,
            volume=volume or 0.0,
            growth_180d=number_field(row, "growth_180d", "growth_180", "growth180", "Growth_180"),
            growth_90d=number_field(row, "growth_90d", "growth_90", "growth90", "Growth_90"),
            click_share=number_field(row, "click_share", "Click_Share"),
            conversion_rate=number_field(row, "conversion_rate", "Conversion_Rate"),
            format_tag=text_field(row, "format_tag", "Format_Inferred"),
            function_tag=text_field(row, "function_tag", "Function_Inferred"),
            values_tag=text_field(row, "values_tag", "Values_Inferred"),
            top_clicked_asins=asins,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "volume": self.volume,
            "growth_180d": self.growth_180d,
            "growth_90d": self.growth_90d,
            "click_share": self.click_share,
            "conversion_rate": self.conversion_rate,
            "format_tag": self.format_tag,
            "function_tag": self.function_tag,
            "values_tag": self.values_tag,
            "top_clicked_asins": list(self.top_clicked_asins),
        }


@dataclass(frozen=True)
class ProductRecord:
    name: str
    asin: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = None
    rating: Optional[float] = None          # 0–5
    review_count: Optional[int] = None
    market_share: Optional[float] = None    # click share within the niche
    bsr: Optional[int] = None               # lower = better selling
    category: Optional[str] = None
    click_count: Optional[float] = None     # niche click count

    @property
    def text(self) -> str:
        return self.name

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> Optional["ProductRecord"]:
        if isinstance(row, cls):
            return row
        name = text_field(row, "name", "product_name", "Product_Name", "Product Name", "title")
        if not name:
            logger.warning("Product row without a name skipped")
            return None

        asin = text_field(row, "asin", "ASIN")
        if asin is not None:
            asin = asin.upper()
            if not _ASIN_RE.match(asin):
                logger.warning(f"Invalid ASIN {asin!r} on {name!r} dropped")
                asin = None

        rating = number_field(row, "rating", "Rating", "Average_Customer_Rating")
        if rating is not None and not 0.0 <= rating <= 5.0:
            logger.warning(f"Rating {rating} out of range on {name!r} dropped")
            rating = None

        review_count = _non_negative(
            number_field(row, "review_count", "Review_Count", "total_ratings"), "review count"
        )
        bsr = number_field(row, "bsr", "BSR", "Average_BSR")
        return cls(
            name=name,
            asin=asin,
            brand=text_field(row, "brand", "Brand"),
            price=_non_negative(number_field(row, "price", "Price", "average_selling_price"), "price"),
            rating=rating,
            review_count=int(review_count) if review_count is not None else None,
            market_share=number_field(row, "market_share", "Market_Share", "click_share", "Click_Share"),
            bsr=int(bsr) if bsr is not None and bsr > 0 else None,
            category=text_field(row, "category", "Category"),
            click_count=_non_negative(
                number_field(row, "click_count", "Niche_Click_Count"), "click count"
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asin": self.asin,
            "name": self.name,
            "brand": self.brand,
            "price": self.price,
            "rating": self.rating,
            "review_count": self.review_count,
            "market_share": self.market_share,
            "bsr": self.bsr,
            "category": self.category,
            "click_count": self.click_count,
        }


@dataclass(frozen=True)
class TagRule:
    category: str
    tag: str
    triggers: Tuple[str, ...] = ()


def parse_records(rows: Iterable[Any], model) -> List[Any]:
    """Build `model` instances from rows, skipping rows that fail validation."""
    records = []
    for row in rows or []:
        if not isinstance(row, (model, Mapping)):
            logger.warning(f"Unsupported {model.__name__} row {type(row).__name__} skipped")
            continue
        record = model.from_dict(row)
        if record is not None:
            records.append(record)
    return records


# ---------------------------------------------------------------------------
# Cluster-level artefacts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClusterTag:
    category: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"category": self.category, "value": self.value}


def parse_cluster_tags(raw: Any) -> List[ClusterTag]:
    """[{"category": ..., "value": ...}, ...] → ClusterTags; other entries are skipped."""
    if not raw:
        return []
    if isinstance(raw, (str, Mapping)) or not isinstance(raw, Iterable):
        logger.warning(f"Cluster tags must be a list, got {type(raw).__name__}; ignored")
        return []
    tags = []
    for entry in raw:
        if isinstance(entry, ClusterTag):
            tags.append(entry)
        elif isinstance(entry, Mapping):
            tags.append(ClusterTag(str(entry.get("category", "")), str(entry.get("value", ""))))
        else:
            logger.warning(f"Unsupported cluster tag {entry!r} skipped")
    return tags


@dataclass
class ClusterMetrics:
    total_volume: float = 0.0
    weighted_click_share: float = 0.0
    opportunity_score: int = 0
    average_growth: float = 0.0
    average_price: Optional[float] = None
    average_rating: Optional[float] = None
    total_reviews: int = 0
    market_share: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return _round_dict({
            "total_volume": self.total_volume,
            "weighted_click_share": self.weighted_click_share,
            "opportunity_score": self.opportunity_score,
            "average_growth": self.average_growth,
            "average_price": self.average_price or 0.0,
            "average_rating": self.average_rating or 0.0,
            "total_reviews": self.total_reviews,
            "market_share": self.market_share,
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClusterMetrics":
        return cls(
            total_volume=number_field(data, "total_volume", "searchVolume", "totalVolume") or 0.0,
            weighted_click_share=number_field(data, "weighted_click_share", "clickShare", "weightedClickShare") or 0.0,
            opportunity_score=int(round(number_field(data, "opportunity_score", "opportunityScore") or 0)),
            average_growth=number_field(data, "average_growth", "avgGrowth") or 0.0,
            average_price=number_field(data, "average_price", "averagePrice"),
            average_rating=number_field(data, "average_rating", "averageRating"),
            total_reviews=int(number_field(data, "total_reviews", "totalReviews") or 0),
            market_share=number_field(data, "market_share", "marketShare") or 0.0,
        )


@dataclass
class LinkedProductMetrics:
    """Products reached through a cluster's top-clicked ASINs."""
    average_price: Optional[float] = None
    average_rating: Optional[float] = None
    total_reviews: int = 0
    dominant_brands: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _round_dict({
            "average_price": self.average_price,
            "average_rating": self.average_rating,
            "total_reviews": self.total_reviews,
            "dominant_brands": self.dominant_brands,
        })


@dataclass
class SearchTermCluster:
    id: str
    name: str
    description: str
    members: Tuple[SearchTermRecord, ...]
    metrics: ClusterMetrics
    tags: List[ClusterTag] = field(default_factory=list)
    linked_products: Optional[LinkedProductMetrics] = None

    @property
    def keywords(self) -> List[str]:
        return [m.term for m in self.members]

    def tag_value(self, category: str) -> Optional[str]:
        return next((t.value for t in self.tags if t.category == category), None)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "keywords": self.keywords,
            "members": [m.to_dict() for m in self.members],
            "metrics": self.metrics.to_dict(),
            "tags": [t.to_dict() for t in self.tags],
        }
        if self.linked_products is not None:
            data["linked_products"] = self.linked_products.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["SearchTermCluster"]:
        if isinstance(data, cls):
            return data
        if data.get("members"):
            members = parse_records(data["members"], SearchTermRecord)
        else:
            members = [SearchTermRecord(term=str(k)) for k in data.get("keywords") or [] if k]
        if not members:
            logger.warning(f"Search term cluster {data.get('id')!r} has no members, skipped")
            return None
        name = text_field(data, "name", "title") or members[0].term
        return cls(
            id=text_field(data, "id") or name,
            name=name,
            description=text_field(data, "description") or "",
            members=tuple(members),
            metrics=ClusterMetrics.from_dict(data.get("metrics") or data),
            tags=parse_cluster_tags(data.get("tags")),
        )


@dataclass
class ProductCluster:
    id: str
    name: str
    description: str
    members: Tuple[ProductRecord, ...]
    metrics: ClusterMetrics
    tags: List[ClusterTag] = field(default_factory=list)

    @property
    def product_names(self) -> List[str]:
        return [m.name for m in self.members]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "products": [m.to_dict() for m in self.members],
            "metrics": self.metrics.to_dict(),
            "tags": [t.to_dict() for t in self.tags],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["ProductCluster"]:
        if isinstance(data, cls):
            return data
        members = parse_records(data.get("members") or data.get("products") or [], ProductRecord)
        if not members:
            logger.warning(f"Product cluster {data.get('id')!r} has no members, skipped")
            return None
        name = text_field(data, "name", "title") or members[0].name
        return cls(
            id=text_field(data, "id") or name,
            name=name,
            description=text_field(data, "description") or "",
            members=tuple(members),
            metrics=ClusterMetrics.from_dict(data.get("metrics") or data),
            tags=parse_cluster_tags(data.get("tags")),
        )


# ---------------------------------------------------------------------------
# Cross-cluster reports
# ---------------------------------------------------------------------------

@dataclass
class OpportunityResult:
    id: str
    title: str
    description: str
    opportunity_score: float
    search_terms: List[str]
    products: List[str]
    search_volume: float
    competition: float
    growth: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "opportunity_score": round(self.opportunity_score, 2),
            "supporting_data": {
                "search_terms": self.search_terms,
                "products": self.products,
                "metrics": _round_dict({
                    "search_volume": self.search_volume,
                    "competition": self.competition,
                    "growth": self.growth,
                }),
            },
        }


@dataclass
class Competitor:
    name: str
    market_share: float
    average_rating: Optional[float]
    average_price: Optional[float]
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _round_dict({
            "name": self.name,
            "market_share": self.market_share,
            "average_rating": self.average_rating,
            "average_price": self.average_price,
            "strengths": self.strengths,
            "weaknesses": self.weaknesses,
        })


@dataclass
class CompetitionResult:
    id: str
    title: str
    description: str
    competitors: List[Competitor]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "competitors": [c.to_dict() for c in self.competitors],
        }


@dataclass
class TrendResult:
    id: str
    title: str
    description: str
    trend: str                      # "up" | "down" | "stable"
    confidence: float
    search_terms: List[str]
    products: List[str]
    growth: float
    volume: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "trend": self.trend,
            "confidence": round(self.confidence, 4),
            "supporting_data": {
                "search_terms": self.search_terms,
                "products": self.products,
                "metrics": {"growth": self.growth, "volume": self.volume},
            },
        }


@dataclass
class InsightBundle:
    opportunities: List[OpportunityResult] = field(default_factory=list)
    competition: List[CompetitionResult] = field(default_factory=list)
    trends: List[TrendResult] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{len(self.opportunities)} opportunities, "
            f"{len(self.competition)} competition reports, "
            f"{len(self.trends)} trends"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "opportunities": [o.to_dict() for o in self.opportunities],
            "competition": [c.to_dict() for c in self.competition],
            "trends": [t.to_dict() for t in self.trends],
        }


def as_clusters(items: Optional[Sequence[Any]], model) -> List[Any]:
    """Accept cluster instances or their dict form."""
    clusters = []
    for item in items or []:
        if not isinstance(item, (model, Mapping)):
            logger.warning(f"Unsupported {model.__name__} input {type(item).__name__} skipped")
            continue
        cluster = model.from_dict(item)
        if cluster is not None:
            clusters.append(cluster)
    return clusters
