"""
Insight Agent
-------------
Correlates search-term clusters with product clusters:

  Opportunities : search clusters whose keywords appear in product names,
                  scored 100·(0.30·V + 0.20·(1−CS) + 0.20·P + 0.15·R + 0.15·(1−MS))
                  and kept when the score is above the significance threshold
  Competition   : per product cluster, brands ranked by market share with
                  strength / weakness labels
  Trends        : search clusters carrying a Growth tag, kept when the
                  trend confidence is above its threshold

Input  : list[SearchTermCluster]   (product clusters given to the agent)
Output : InsightBundle
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from agents.base import Agent
from agents.scorer import clamp, mean_of
from config.settings import settings
from models.schemas import (
    CompetitionResult,
    Competitor,
    InsightBundle,
    LinkedProductMetrics,
    OpportunityResult,
    ProductCluster,
    ProductRecord,
    SearchTermCluster,
    TrendResult,
    as_clusters,
    parse_records,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


# ─── Matching ────────────────────────────────────────────────────────────────


def related_product_clusters(
    cluster: SearchTermCluster,
    product_clusters: Sequence[ProductCluster],
) -> List[ProductCluster]:
    """Product clusters with a member whose name contains any cluster keyword."""
    keywords = [k.lower() for k in cluster.keywords if k and k.strip()]
    if not keywords:
        return []
    return [
        pc for pc in product_clusters
        if any(k in m.name.lower() for m in pc.members for k in keywords)
    ]


def _product_names(clusters: Sequence[ProductCluster]) -> List[str]:
    return [name for pc in clusters for name in pc.product_names]


# ─── Opportunities ───────────────────────────────────────────────────────────


def composite_opportunity_score(
    search_volume: float,
    click_share: float,
    average_price: Optional[float],
    average_rating: Optional[float],
    total_market_share: float,
) -> float:
    volume_factor = clamp((search_volume or 0.0) / settings.VOLUME_SATURATION)
    click_factor = clamp(1 - (click_share or 0.0))
    price_factor = clamp((average_price or 0.0) / settings.PRICE_SATURATION)
    rating_factor = clamp((average_rating or 0.0) / 5)
    share_factor = clamp(1 - min(total_market_share or 0.0, 1.0))
    return 100 * (
        0.30 * volume_factor
        + 0.20 * click_factor
        + 0.20 * price_factor
        + 0.15 * rating_factor
        + 0.15 * share_factor
    )


def find_opportunities(
    search_term_clusters: Sequence[SearchTermCluster],
    product_clusters: Sequence[ProductCluster],
) -> List[OpportunityResult]:
    opportunities: List[OpportunityResult] = []
    for cluster in search_term_clusters:
        related = related_product_clusters(cluster, product_clusters)
        if not related:
            continue

        average_price = mean_of(pc.metrics.average_price for pc in related)
        average_rating = mean_of(pc.metrics.average_rating for pc in related)
        total_share = sum(pc.metrics.market_share for pc in related)
        score = composite_opportunity_score(
            cluster.metrics.total_volume,
            cluster.metrics.weighted_click_share,
            average_price,
            average_rating,
            total_share,
        )
        if score <= settings.OPPORTUNITY_SIGNIFICANCE_THRESHOLD:
            continue

        opportunities.append(OpportunityResult(
            id=_new_id(),
            title=f"Opportunity in {cluster.name}",
            description=(
                f"High-potential opportunity in {cluster.name} with "
                f"{cluster.metrics.total_volume:,.0f} monthly searches. "
                f"Current products average ${average_price or 0:.2f} with "
                f"{average_rating or 0:.1f} star ratings. "
                f"Market share is {total_share * 100:.1f}%, indicating room for growth."
            ),
            opportunity_score=score,
            search_terms=cluster.keywords,
            products=_product_names(related),
            search_volume=cluster.metrics.total_volume,
            competition=total_share,
            growth=0.2 if cluster.tag_value("Growth") == "High" else 0.1,
        ))
    return opportunities


# ─── Competition ─────────────────────────────────────────────────────────────


def _competitor(
    brand: str,
    products: Sequence[ProductRecord],
    cluster_price: Optional[float],
) -> Competitor:
    share = sum(p.market_share or 0.0 for p in products)
    rating = mean_of(p.rating for p in products)
    price = mean_of(p.price for p in products)

    strengths, weaknesses = [], []
    if rating is not None and rating > 4:
        strengths.append("High Customer Satisfaction")
    if share > 0.3:
        strengths.append("Strong Market Presence")
    if price is not None and cluster_price is not None and price < cluster_price:
        strengths.append("Competitive Pricing")

    if rating is not None and rating < 3.5:
        weaknesses.append("Low Customer Satisfaction")
    if share < 0.1:
        weaknesses.append("Weak Market Presence")
    if price is not None and cluster_price is not None and price > cluster_price * 1.2:
        weaknesses.append("Premium Pricing")

    return Competitor(
        name=brand,
        market_share=share,
        average_rating=rating,
        average_price=price,
        strengths=strengths,
        weaknesses=weaknesses,
    )


def analyze_competition(product_clusters: Sequence[ProductCluster]) -> List[CompetitionResult]:
    reports: List[CompetitionResult] = []
    for cluster in product_clusters:
        by_brand: Dict[str, List[ProductRecord]] = {}
        for product in cluster.members:
            if product.brand:
                by_brand.setdefault(product.brand, []).append(product)
        if not by_brand:
            continue

        competitors = sorted(
            (_competitor(b, ps, cluster.metrics.average_price) for b, ps in by_brand.items()),
            key=lambda c: -c.market_share,
        )
        top = competitors[0]
        total_share = sum(c.market_share for c in competitors)
        reports.append(CompetitionResult(
            id=_new_id(),
            title=f"Competition in {cluster.name}",
            description=(
                f"Analysis of {len(competitors)} competitors in {cluster.name}. "
                f"Top competitor {top.name} holds {top.market_share * 100:.1f}% market share. "
                f"Total market concentration is {total_share * 100:.1f}%."
            ),
            competitors=competitors,
        ))
    return reports


# ─── Trends ──────────────────────────────────────────────────────────────────


_TREND_DIRECTION = {"High": "up", "Declining": "down"}
_TREND_GROWTH = {"High": 0.2, "Declining": -0.1}


def trend_confidence(cluster: SearchTermCluster) -> float:
    volume_weight = clamp(cluster.metrics.total_volume / settings.VOLUME_SATURATION)
    growth_weight = 1.0 if cluster.tag_value("Growth") == "High" else 0.5
    click_weight = clamp(1 - cluster.metrics.weighted_click_share)
    return volume_weight * 0.4 + growth_weight * 0.4 + click_weight * 0.2


def detect_trends(
    search_term_clusters: Sequence[SearchTermCluster],
    product_clusters: Sequence[ProductCluster],
) -> List[TrendResult]:
    trends: List[TrendResult] = []
    for cluster in search_term_clusters:
        growth_tag = cluster.tag_value("Growth")
        if growth_tag is None:
            continue
        confidence = trend_confidence(cluster)
        if confidence <= settings.TREND_CONFIDENCE_THRESHOLD:
            continue

        trend = _TREND_DIRECTION.get(growth_tag, "stable")
        direction = {"up": "growing", "down": "declining"}.get(trend, "stable")
        trends.append(TrendResult(
            id=_new_id(),
            title=f"Trend in {cluster.name}",
            description=(
                f"Search interest in {cluster.name} is {direction} with "
                f"{cluster.metrics.total_volume:,.0f} monthly searches. "
                f"Click share is {cluster.metrics.weighted_click_share * 100:.1f}%."
            ),
            trend=trend,
            confidence=confidence,
            search_terms=cluster.keywords,
            products=_product_names(related_product_clusters(cluster, product_clusters)),
            growth=_TREND_GROWTH.get(growth_tag, 0.0),
            volume=cluster.metrics.total_volume,
        ))
    return trends


def generate_insights(
    search_term_clusters: Sequence[Any],
    product_clusters: Sequence[Any],
) -> InsightBundle:
    """Accepts cluster objects or their dict form; malformed entries are skipped."""
    search_clusters = as_clusters(search_term_clusters, SearchTermCluster)
    products = as_clusters(product_clusters, ProductCluster)
    return InsightBundle(
        opportunities=find_opportunities(search_clusters, products),
        competition=analyze_competition(products),
        trends=detect_trends(search_clusters, products),
    )


# ─── ASIN linking ────────────────────────────────────────────────────────────


def link_products_by_asin(
    clusters: Sequence[SearchTermCluster],
    products: Sequence[Any],
) -> List[SearchTermCluster]:
    """
    Attach metrics of the products reached through each cluster's
    top-clicked ASINs. Clusters whose linked products rate below the
    low-rating threshold get their opportunity score boosted.
    """
    catalog: Dict[str, ProductRecord] = {}
    for product in parse_records(products, ProductRecord):
        if product.asin and product.asin not in catalog:
            catalog[product.asin] = product

    linked_clusters: List[SearchTermCluster] = []
    for cluster in clusters:
        asins = dict.fromkeys(a for m in cluster.members for a in m.top_clicked_asins)
        linked = [catalog[a] for a in asins if a in catalog]
        if not linked:
            linked_clusters.append(cluster)
            continue

        brands = Counter(p.brand for p in linked if p.brand)
        metrics = LinkedProductMetrics(
            average_price=mean_of(p.price for p in linked),
            average_rating=mean_of(p.rating for p in linked),
            total_reviews=sum(p.review_count or 0 for p in linked),
            dominant_brands=[b for b, _ in brands.most_common(3)],
        )
        score = cluster.metrics.opportunity_score
        if metrics.average_rating is not None and metrics.average_rating < settings.LOW_RATING_THRESHOLD:
            score = min(100, int(round(score * settings.LOW_RATING_BOOST)))

        linked_clusters.append(dataclasses.replace(
            cluster,
            metrics=dataclasses.replace(cluster.metrics, opportunity_score=score),
            linked_products=metrics,
        ))
    return linked_clusters


# ─── Agents ──────────────────────────────────────────────────────────────────


class AsinLinkingAgent(Agent):
    """Links search-term clusters to product rows through top-clicked ASINs."""

    def __init__(self, products: Sequence[Any]):
        super().__init__(name="AsinLinkingAgent")
        self.products = products

    def run(self, clusters: Sequence[SearchTermCluster]) -> List[SearchTermCluster]:
        linked = link_products_by_asin(clusters, self.products)
        hits = sum(1 for c in linked if c.linked_products is not None)
        self.logger.info(f"Linked products to {hits}/{len(linked)} clusters")
        return linked


class InsightAgent(Agent):

    def __init__(self, product_clusters: Sequence[ProductCluster]):
        super().__init__(name="InsightAgent")
        self.product_clusters = product_clusters

    def run(self, search_term_clusters: Sequence[SearchTermCluster]) -> InsightBundle:
        bundle = generate_insights(search_term_clusters, self.product_clusters)
        self.logger.info(f"Insights: {bundle.summary()}")
        return bundle
