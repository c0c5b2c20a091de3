"""
Rule-Based Clustering Agent
---------------------------
Deterministic greedy seeded clustering:

  1. pop the first unassigned record as the seed
  2. scan the remaining records (reverse index order) and move every
     record with similarity(seed, record) >= threshold into the cluster
  3. keep the cluster if it has >= min_size members, otherwise its
     members are dropped for the rest of the pass
  4. stop when nothing is unassigned or max_clusters is reached

Search terms are compared by normalized edit distance, products by the mean
of category / price / rating / BSR closeness.

Input  : list[SearchTermRecord] | list[ProductRecord]
Output : list[SearchTermCluster] | list[ProductCluster]
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from agents.base import Agent
from agents.scorer import product_metrics, search_term_metrics, search_term_tags
from agents.tagger import match_tags, prepare_rules
from config.settings import ClusterSettings, settings
from models.schemas import (
    ClusterTag,
    ProductCluster,
    ProductRecord,
    SearchTermCluster,
    SearchTermRecord,
    TagRule,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_WORD_START = re.compile(r"\b\w")
_NON_SLUG = re.compile(r"[^a-z0-9]+")


# ─── Similarity ──────────────────────────────────────────────────────────────


def levenshtein(a: str, b: str) -> int:
    """Edit distance with unit insert / delete / substitute costs."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j - 1], previous[j], current[j - 1]))
        previous = current
    return previous[-1]


def edit_similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def search_term_similarity(a: SearchTermRecord, b: SearchTermRecord) -> float:
    """
    Case-insensitive normalized edit similarity in [0, 1].

    Terms are compared as written and with their words sorted, and the
    higher of the two wins, so "sleep gummies" and "gummy sleep aid" are
    compared on wording rather than word order.
    """
    t1, t2 = a.term.lower().strip(), b.term.lower().strip()
    direct = edit_similarity(t1, t2)
    reordered = edit_similarity(" ".join(sorted(t1.split())), " ".join(sorted(t2.split())))
    return max(direct, reordered)


def _closeness(x: Optional[float], y: Optional[float]) -> float:
    if x is None or y is None:
        return 0.0
    top = max(x, y)
    if top <= 0:
        return 1.0
    return max(0.0, 1.0 - abs(x - y) / top)


def product_similarity(a: ProductRecord, b: ProductRecord) -> float:
    """Unweighted mean of category match, price, rating and BSR closeness."""
    category = 1.0 if a.category and a.category == b.category else 0.0
    if a.rating is None or b.rating is None:
        rating = 0.0
    else:
        rating = 1.0 - abs(a.rating - b.rating) / 5
    factors = (
        category,
        _closeness(a.price, b.price),
        rating,
        _closeness(a.bsr, b.bsr),
    )
    return sum(factors) / len(factors)


# ─── Greedy grouping ─────────────────────────────────────────────────────────


def cluster_by_rules(
    records: Sequence[T],
    similarity_fn: Callable[[T, T], float],
    min_size: int,
    max_clusters: int,
    threshold: float,
) -> List[Tuple[T, ...]]:
    """
    Greedy seeded expansion. Returns member groups with members in input
    order; records of undersized groups are not offered to later seeds.
    """
    unassigned = list(enumerate(records))
    groups: List[Tuple[T, ...]] = []
    dropped = 0

    while unassigned and len(groups) < max_clusters:
        seed_index, seed = unassigned.pop(0)
        members = [(seed_index, seed)]
        for i in range(len(unassigned) - 1, -1, -1):
            candidate = unassigned[i][1]
            if similarity_fn(seed, candidate) >= threshold:
                members.append(unassigned.pop(i))

        if len(members) >= min_size:
            members.sort(key=lambda pair: pair[0])
            groups.append(tuple(record for _, record in members))
        else:
            dropped += len(members)

    if dropped or unassigned:
        logger.debug(
            f"Rule clustering left {dropped} records in undersized groups "
            f"and {len(unassigned)} unvisited"
        )
    return groups


# ─── Naming ──────────────────────────────────────────────────────────────────


def title_case(text: str) -> str:
    return _WORD_START.sub(lambda m: m.group().upper(), text)


def slugify(name: str) -> str:
    return _NON_SLUG.sub("-", name.lower()).strip("-") or "cluster"


def unique_slug(name: str, seen: Set[str]) -> str:
    """Slug for `name` that is not in `seen`; records the result in `seen`."""
    base = slugify(name)
    slug, n = base, 2
    while slug in seen:
        slug = f"{base}-{n}"
        n += 1
    seen.add(slug)
    return slug


def common_words_name(keywords: Sequence[str]) -> str:
    """Words shared by every keyword, in the first keyword's order."""
    if not keywords:
        return ""
    word_sets = [set(k.lower().split()) for k in keywords]
    common = [
        w for w in dict.fromkeys(keywords[0].lower().split())
        if all(w in ws for ws in word_sets)
    ]
    if common:
        return title_case(" ".join(common))
    return keywords[0]


def _format_number(value: float) -> str:
    value = float(value or 0)
    return str(int(value)) if value.is_integer() else f"{value:.2f}"


def search_term_description(members: Sequence[SearchTermRecord]) -> str:
    volumes = [m.volume or 0.0 for m in members]
    average = sum(volumes) / len(volumes) if volumes else 0.0
    return (
        f"Cluster of {len(members)} search terms with average volume of "
        f"{round(average)} and maximum volume of {_format_number(max(volumes, default=0))}"
    )


def product_cluster_name(members: Sequence[ProductRecord]) -> str:
    categories = Counter(m.category for m in members if m.category)
    if not categories:
        return "Uncategorized Products"
    return f"{categories.most_common(1)[0][0]} Products"


def ontology_tags(
    members: Iterable[SearchTermRecord],
    rules: Optional[Sequence[TagRule]],
) -> List[ClusterTag]:
    """`rules` must already be normalized by `prepare_rules`."""
    if not rules:
        return []
    tags: List[ClusterTag] = []
    for member in members:
        for category, values in match_tags(member.term, rules).items():
            tags.extend(ClusterTag(category, v) for v in values)
    return list(dict.fromkeys(tags))


# ─── Cluster builders ────────────────────────────────────────────────────────


def build_search_term_cluster(
    members: Sequence[SearchTermRecord],
    seen_ids: Set[str],
    rules: Optional[Sequence[TagRule]] = None,
    name: Optional[str] = None,
    description: Optional[str] = None,
    extra_tags: Sequence[ClusterTag] = (),
) -> SearchTermCluster:
    members = tuple(members)
    name = name or common_words_name([m.term for m in members])
    tags = [*extra_tags, *search_term_tags(members), *ontology_tags(members, rules)]
    return SearchTermCluster(
        id=unique_slug(name, seen_ids),
        name=name,
        description=description or search_term_description(members),
        members=members,
        metrics=search_term_metrics(members),
        tags=list(dict.fromkeys(tags)),
    )


def build_product_cluster(members: Sequence[ProductRecord], seen_ids: Set[str]) -> ProductCluster:
    members = tuple(members)
    name = product_cluster_name(members)
    metrics = product_metrics(members)
    return ProductCluster(
        id=unique_slug(name, seen_ids),
        name=name,
        description=(
            f"Cluster of {len(members)} products with average price of "
            f"${metrics.average_price or 0:.2f} and average rating of "
            f"{metrics.average_rating or 0:.1f}"
        ),
        members=members,
        metrics=metrics,
    )


# ─── Agents ──────────────────────────────────────────────────────────────────


class SearchTermClusteringAgent(Agent):
    """Rule-based clustering of search terms by edit-distance similarity."""

    def __init__(
        self,
        cluster_settings: Optional[ClusterSettings] = None,
        tag_rules: Optional[Sequence[TagRule]] = None,
    ):
        super().__init__(name="SearchTermClusteringAgent")
        self.settings = cluster_settings or settings.cluster_defaults()
        self.tag_rules = prepare_rules(tag_rules) if tag_rules else None

    def run(self, records: Sequence[SearchTermRecord]) -> List[SearchTermCluster]:
        groups = cluster_by_rules(
            records,
            search_term_similarity,
            min_size=self.settings.min_cluster_size,
            max_clusters=self.settings.max_clusters,
            threshold=self.settings.similarity_threshold,
        )
        seen: Set[str] = set()
        clusters = [build_search_term_cluster(g, seen, self.tag_rules) for g in groups]
        self.logger.info(f"{len(records)} search terms → {len(clusters)} clusters")
        return clusters


class ProductClusteringAgent(Agent):
    """Rule-based clustering of products by attribute closeness."""

    def __init__(self, cluster_settings: Optional[ClusterSettings] = None):
        super().__init__(name="ProductClusteringAgent")
        self.settings = cluster_settings or settings.cluster_defaults()

    def run(self, records: Sequence[ProductRecord]) -> List[ProductCluster]:
        groups = cluster_by_rules(
            records,
            product_similarity,
            min_size=self.settings.min_cluster_size,
            max_clusters=self.settings.max_clusters,
            threshold=self.settings.similarity_threshold,
        )
        seen: Set[str] = set()
        clusters = [build_product_cluster(g, seen) for g in groups]
        self.logger.info(f"{len(records)} products → {len(clusters)} clusters")
        return clusters
