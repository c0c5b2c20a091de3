"""
Embedding Clustering Agent
--------------------------
Groups search terms by meaning rather than spelling:

  1. one embedding per term from an injected provider (bounded concurrency,
     per-call timeout; a failed call drops only that term)
  2. L2-normalize, then DBSCAN over an ascending epsilon grid with
     min_samples = max(2, ⌊√(N/3)⌋); keep the epsilon with the strictly
     highest  clusters·10 − noise
  3. noise points are bucketed by descriptive keyword (flavor, format,
     pack size) with a catch-all "misc" bucket
  4. when no density cluster forms, or fewer than two embeddings succeed,
     the whole input is bucketed instead
  5. density clusters are merged pairwise by centroid cosine similarity into
     a binary hierarchy (buckets stay outside it)

Every emitted cluster is themed from its combined keyword text; an optional
completion provider may replace the theme with its own title/description/tags.

Input  : list[SearchTermRecord]
Output : list[SearchTermCluster]  (ClusterTree with the hierarchy)
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import (
    Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple, Union,
    runtime_checkable,
)

import numpy as np
from pydantic import BaseModel, Field
from sklearn.cluster import DBSCAN
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity
from sklearn.preprocessing import normalize

from agents.base import Agent
from agents.rule_clusterer import build_search_term_cluster
from agents.tagger import prepare_rules
from config.settings import settings
from models.schemas import ClusterTag, SearchTermCluster, SearchTermRecord, TagRule

logger = logging.getLogger(__name__)


# ─── Provider interfaces ─────────────────────────────────────────────────────


@runtime_checkable
class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> Sequence[float]:
        ...


@runtime_checkable
class CompletionProvider(Protocol):
    def complete(self, prompt: str) -> str:
        ...


EmbedFn = Callable[[str], Union[Sequence[float], Awaitable[Sequence[float]]]]
CompleteFn = Callable[[str], Union[str, Awaitable[str]]]


def _capability(provider: Any, method: str) -> Callable:
    """Accept a provider object exposing `method` or a bare callable."""
    fn = getattr(provider, method, None)
    if callable(fn):
        return fn
    if callable(provider):
        return provider
    raise TypeError(f"{provider!r} does not provide {method}()")


async def _invoke(fn: Callable, argument: str) -> Any:
    """Run a sync or async capability without blocking the event loop."""
    if inspect.iscoroutinefunction(fn):
        result = await fn(argument)
    else:
        result = await asyncio.to_thread(fn, argument)
    if inspect.isawaitable(result):
        result = await result
    return result


class SentenceTransformerEmbedder:
    """EmbeddingProvider backed by a local sentence-transformers model."""

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self._model = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading sentence-transformer: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed(self, text: str) -> List[float]:
        return self.model.encode(text, show_progress_bar=False).tolist()


class TfidfEmbedder:
    """
    EmbeddingProvider over a TF-IDF vocabulary fitted on a known corpus
    (character n-grams, so "gummy" and "gummies" share features).
    """

    def __init__(self, corpus: Sequence[str], max_features: int = 2048):
        self._vectorizer = TfidfVectorizer(
            analyzer="char_wb", ngram_range=(3, 4), max_features=max_features
        )
        self._vectorizer.fit([c.lower() for c in corpus if c])

    def embed(self, text: str) -> List[float]:
        return self._vectorizer.transform([text.lower()]).toarray()[0].tolist()


# ─── Keyword buckets & themes ────────────────────────────────────────────────

# first match wins; order matters
BUCKET_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("Honey Mustard", ("honey mustard",)),
    ("Cinnamon Sugar", ("cinnamon sugar",)),
    ("Parmesan Garlic", ("parmesan garlic",)),
    ("BBQ", ("bbq", "barbecue")),
    ("Southwest", ("southwest",)),
    ("Seasoned", ("seasoned",)),
    ("Original", ("original",)),
    ("Variety Pack", ("variety pack",)),
    ("Individual Bags", ("individual bags", "single serve")),
    ("Family Size", ("family-size", "family size")),
    ("Grocery Size", ("grocery sized", "grocery size")),
    ("Gummies", ("gummy", "gummies", "chewable")),
    ("Capsules", ("capsule", "softgel", "tablet", "pill")),
    ("Powder", ("powder",)),
    ("Liquid", ("liquid", "drops", "tincture", "syrup")),
    ("Tea", ("tea",)),
)
MISC_BUCKET = "misc"


@dataclass(frozen=True)
class Theme:
    name: str
    triggers: Tuple[str, ...]
    summary: str


THEMES: Tuple[Theme, ...] = (
    Theme("Sleep Support", ("sleep", "melatonin", "insomnia", "night"),
          "Shoppers looking for help falling or staying asleep."),
    Theme("Energy & Focus", ("energy", "focus", "caffeine", "nootropic", "brain"),
          "Shoppers looking for daytime energy and mental focus."),
    Theme("Stress & Mood", ("stress", "anxiety", "calm", "mood", "relax"),
          "Shoppers looking to unwind and manage stress."),
    Theme("Immune Support", ("immune", "elderberry", "vitamin c", "zinc"),
          "Shoppers looking to support their immune system."),
    Theme("Digestive Health", ("probiotic", "digest", "gut", "fiber"),
          "Shoppers looking for digestive and gut health support."),
    Theme("Kids Products", ("kid", "children", "child", "toddler"),
          "Parents shopping for products made for children."),
    Theme("Snacks", ("chips", "snack", "pretzel", "cracker", "popcorn"),
          "Shoppers browsing snack foods and flavors."),
)
DEFAULT_THEME = Theme("General Interest", (), "Search terms without a dominant theme.")


def bucket_label(text: str) -> str:
    lowered = text.lower()
    for label, triggers in BUCKET_PATTERNS:
        if any(t in lowered for t in triggers):
            return label
    return MISC_BUCKET


def bucket_records(records: Sequence[SearchTermRecord]) -> List[Tuple[str, Tuple[SearchTermRecord, ...]]]:
    """Group records by keyword bucket; buckets in pattern order, misc last."""
    buckets: Dict[str, List[SearchTermRecord]] = {}
    for record in records:
        buckets.setdefault(bucket_label(record.term), []).append(record)
    order = [label for label, _ in BUCKET_PATTERNS] + [MISC_BUCKET]
    return [(label, tuple(buckets[label])) for label in order if buckets.get(label)]


def pick_theme(keywords: Sequence[str]) -> Theme:
    combined = " ".join(keywords).lower()
    for theme in THEMES:
        if any(t in combined for t in theme.triggers):
            return theme
    return DEFAULT_THEME


# ─── Embedding fan-out ───────────────────────────────────────────────────────


def _as_vector(raw: Any, text: str) -> Optional[np.ndarray]:
    try:
        vector = np.asarray(raw, dtype=float)
    except (TypeError, ValueError):
        logger.warning(f"Embedding for {text[:50]!r} is not numeric, skipped")
        return None
    if vector.ndim != 1 or vector.size == 0 or not np.all(np.isfinite(vector)):
        logger.warning(f"Embedding for {text[:50]!r} is empty or malformed, skipped")
        return None
    if not np.any(vector):
        logger.warning(f"Embedding for {text[:50]!r} is all zeros, skipped")
        return None
    return vector


async def embed_records(
    records: Sequence[SearchTermRecord],
    embed: Union[EmbeddingProvider, EmbedFn],
    concurrency: int = 1,
    timeout: Optional[float] = None,
) -> List[Optional[np.ndarray]]:
    """
    One embedding per record, in input order; None where the call failed,
    timed out or returned something unusable.
    """
    fn = _capability(embed, "embed")
    semaphore = asyncio.Semaphore(max(1, concurrency))
    timeout = settings.EMBEDDING_TIMEOUT_SECONDS if timeout is None else timeout

    async def embed_one(record: SearchTermRecord) -> Optional[np.ndarray]:
        async with semaphore:
            try:
                raw = await asyncio.wait_for(_invoke(fn, record.term), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Embedding timed out after {timeout}s for {record.term[:50]!r}")
                return None
            except Exception as e:
                logger.warning(f"Embedding failed for {record.term[:50]!r}: {e}")
                return None
        return _as_vector(raw, record.term)

    vectors = list(await asyncio.gather(*(embed_one(r) for r in records)))

    # all vectors must share the first valid vector's dimension
    dimension = next((v.size for v in vectors if v is not None), None)
    for i, vector in enumerate(vectors):
        if vector is not None and vector.size != dimension:
            logger.warning(
                f"Embedding for {records[i].term[:50]!r} has dimension {vector.size}, "
                f"expected {dimension}; skipped"
            )
            vectors[i] = None
    return vectors


# ─── Density search ──────────────────────────────────────────────────────────


@dataclass
class DensitySearchResult:
    epsilon: float
    labels: np.ndarray
    cluster_count: int
    noise_count: int

    @property
    def score(self) -> int:
        return self.cluster_count * 10 - self.noise_count


def min_points(n: int) -> int:
    return max(settings.MIN_PTS_FLOOR, int(math.floor(math.sqrt(n / 3))))


def density_search(
    vectors: np.ndarray,
    epsilons: Optional[Sequence[float]] = None,
) -> Optional[DensitySearchResult]:
    """DBSCAN at each epsilon; the first strictly best score wins."""
    epsilons = epsilons or settings.EPSILON_CANDIDATES
    points = normalize(np.asarray(vectors, dtype=float))
    min_samples = min_points(len(points))

    best: Optional[DensitySearchResult] = None
    for epsilon in sorted(epsilons):
        labels = DBSCAN(eps=epsilon, min_samples=min_samples).fit_predict(points)
        candidate = DensitySearchResult(
            epsilon=epsilon,
            labels=labels,
            cluster_count=len(set(labels.tolist()) - {-1}),
            noise_count=int(np.sum(labels == -1)),
        )
        logger.debug(
            f"eps={epsilon}: {candidate.cluster_count} clusters, "
            f"{candidate.noise_count} noise (score {candidate.score})"
        )
        if best is None or candidate.score > best.score:
            best = candidate
    return best


# ─── Cluster metadata ────────────────────────────────────────────────────────


class SuggestedTag(BaseModel):
    category: str
    value: str
    confidence: Optional[float] = Field(None, ge=0, le=1)


class ClusterMetadata(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    tags: List[SuggestedTag] = Field(default_factory=list)


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def metadata_prompt(members: Sequence[SearchTermRecord]) -> str:
    terms = [m.term for m in members]
    total = sum(m.volume for m in members)
    growth = sum(m.growth_180d or 0.0 for m in members) / len(members)
    click_share = sum(m.click_share or 0.0 for m in members) / len(members)
    more = f"\n(... and {len(terms) - 25} more)" if len(terms) > 25 else ""
    return (
        "Analyze the following search terms cluster representing user search behavior.\n"
        "Cluster Metrics:\n"
        f"- Total Search Volume: {total:,.0f}\n"
        f"- Average Growth (180d): {growth * 100:.1f}%\n"
        f"- Average Click Share: {click_share * 100:.1f}%\n\n"
        f"Search Terms (sample): {', '.join(terms[:25])}{more}\n\n"
        "Based ONLY on the provided terms and metrics, generate:\n"
        "1. A concise, descriptive 'title' (max 10 words) summarizing the core user intent.\n"
        "2. A brief 'description' (1-2 sentences) explaining the theme and user behavior.\n"
        "3. Up to 7 'tags' categorized under Format, Function, Values, Audience, Behavior, "
        "each with a confidence between 0 and 1.\n\n"
        "Respond with JSON only:\n"
        '{"title": "string", "description": "string", '
        '"tags": [{"category": "string", "value": "string", "confidence": 0.0}]}'
    )


def parse_metadata(text: str) -> ClusterMetadata:
    """Raises ValueError on anything that is not the expected JSON object."""
    payload = json.loads(_FENCE.sub("", (text or "").strip()))
    if not isinstance(payload, dict):
        raise ValueError("completion is not a JSON object")
    return ClusterMetadata(**payload)


async def suggest_metadata(
    members: Sequence[SearchTermRecord],
    complete: Union[CompletionProvider, CompleteFn],
    timeout: Optional[float] = None,
) -> Optional[ClusterMetadata]:
    timeout = settings.COMPLETION_TIMEOUT_SECONDS if timeout is None else timeout
    try:
        fn = _capability(complete, "complete")
        text = await asyncio.wait_for(_invoke(fn, metadata_prompt(members)), timeout)
        return parse_metadata(text)
    except asyncio.TimeoutError:
        logger.warning(f"Cluster metadata completion timed out after {timeout}s")
    except Exception as e:
        logger.warning(f"Cluster metadata completion unusable, keeping theme: {e}")
    return None


# ─── Hierarchy ───────────────────────────────────────────────────────────────


@dataclass
class HierarchyNode:
    id: str
    cluster_ids: List[str]
    level: int = 0
    similarity: float = 1.0
    children: List["HierarchyNode"] = field(default_factory=list)
    parent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "cluster_ids": self.cluster_ids,
            "level": self.level,
            "similarity": round(self.similarity, 4),
            "parent_id": self.parent_id,
            "children": [c.to_dict() for c in self.children],
        }


def build_hierarchy(leaves: Sequence[Tuple[str, np.ndarray]]) -> Optional[HierarchyNode]:
    """
    Agglomerate density clusters into a binary tree.

    `leaves` pairs each cluster id with the matrix of its members' vectors.
    Each step merges the two nodes whose centroids (mean of all member
    vectors) have the highest cosine similarity; the first pair in index
    order wins ties. A merged node sits one level above its higher child.
    """
    if not leaves:
        return None
    nodes = [HierarchyNode(id=cid, cluster_ids=[cid]) for cid, _ in leaves]
    members = [np.atleast_2d(np.asarray(m, dtype=float)) for _, m in leaves]

    merges = 0
    while len(nodes) > 1:
        centroids = np.vstack([m.mean(axis=0) for m in members])
        rows, cols = np.triu_indices(len(nodes), k=1)
        similarities = cosine_similarity(centroids)[rows, cols]
        best = int(np.argmax(similarities))
        i, j = int(rows[best]), int(cols[best])

        merges += 1
        left, right = nodes[i], nodes[j]
        merged = HierarchyNode(
            id=f"merged-{merges}",
            cluster_ids=left.cluster_ids + right.cluster_ids,
            level=max(left.level, right.level) + 1,
            similarity=float(similarities[best]),
            children=[left, right],
        )
        left.parent_id = right.parent_id = merged.id
        logger.debug(f"Merged {left.id} + {right.id} at similarity {merged.similarity:.3f}")

        merged_members = np.vstack([members[i], members[j]])
        nodes = [n for k, n in enumerate(nodes) if k not in (i, j)] + [merged]
        members = [m for k, m in enumerate(members) if k not in (i, j)] + [merged_members]
    return nodes[0]


@dataclass
class ClusterTree:
    clusters: List[SearchTermCluster]
    root: Optional[HierarchyNode] = None   # None unless density clusters formed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clusters": [c.to_dict() for c in self.clusters],
            "hierarchy": self.root.to_dict() if self.root is not None else None,
        }


# ─── Clustering ──────────────────────────────────────────────────────────────


@dataclass
class _Group:
    members: Tuple[SearchTermRecord, ...]
    bucket: Optional[str] = None
    vectors: Optional[np.ndarray] = None


def _groups_from_labels(
    records: Sequence[SearchTermRecord],
    vectors: np.ndarray,
    labels: np.ndarray,
) -> Tuple[List[_Group], List[SearchTermRecord]]:
    by_label: Dict[int, List[int]] = {}
    noise: List[SearchTermRecord] = []
    for index, label in enumerate(labels.tolist()):
        if label == -1:
            noise.append(records[index])
        else:
            by_label.setdefault(label, []).append(index)
    groups = [
        _Group(tuple(records[i] for i in rows), vectors=vectors[rows])
        for _, rows in sorted(by_label.items())
    ]
    return groups, noise


def _bucket_groups(records: Sequence[SearchTermRecord]) -> List[_Group]:
    return [_Group(members, bucket=label) for label, members in bucket_records(records)]


async def _emit(
    groups: Sequence[_Group],
    complete: Optional[Union[CompletionProvider, CompleteFn]],
    rules: Optional[Sequence[TagRule]],
) -> List[SearchTermCluster]:
    seen: Set[str] = set()
    clusters: List[SearchTermCluster] = []
    for group in groups:
        theme = pick_theme([m.term for m in group.members])
        name = theme.name if group.bucket is None else f"{theme.name} ({group.bucket})"
        description = (
            f"{theme.summary} {len(group.members)} search terms with total volume "
            f"of {sum(m.volume for m in group.members):,.0f}."
        )
        extra = [ClusterTag("Theme", theme.name)]
        if group.bucket is not None:
            extra.append(ClusterTag("Bucket", group.bucket))

        if complete is not None:
            suggested = await suggest_metadata(group.members, complete)
            if suggested is not None:
                name = suggested.title.strip()
                description = suggested.description.strip() or description
                extra.extend(ClusterTag(t.category, t.value) for t in suggested.tags)

        clusters.append(build_search_term_cluster(
            group.members, seen, rules, name=name, description=description, extra_tags=extra,
        ))
    return clusters


async def cluster_tree_by_embedding(
    records: Sequence[SearchTermRecord],
    embed: Optional[Union[EmbeddingProvider, EmbedFn]],
    *,
    complete: Optional[Union[CompletionProvider, CompleteFn]] = None,
    rules: Optional[Sequence[TagRule]] = None,
    concurrency: Optional[int] = None,
    timeout: Optional[float] = None,
    epsilons: Optional[Sequence[float]] = None,
) -> ClusterTree:
    """
    Density clustering over embeddings with keyword bucketing for the
    leftovers, plus the merge hierarchy of the density clusters. Never
    returns an empty cluster list for non-empty input.
    """
    records = list(records)
    if not records:
        return ClusterTree([])
    rules = prepare_rules(rules) if rules else None

    if embed is None:
        logger.warning("No embedding provider supplied, bucketing by keyword")
        return ClusterTree(await _emit(_bucket_groups(records), complete, rules))

    vectors = await embed_records(
        records,
        embed,
        concurrency=concurrency or settings.EMBEDDING_CONCURRENCY,
        timeout=timeout,
    )
    embedded = [(r, v) for r, v in zip(records, vectors) if v is not None]
    logger.info(f"Embedded {len(embedded)}/{len(records)} search terms")

    if len(embedded) < 2:
        logger.warning("Fewer than two usable embeddings, bucketing by keyword")
        return ClusterTree(await _emit(_bucket_groups(records), complete, rules))

    kept = [r for r, _ in embedded]
    points = normalize(np.vstack([v for _, v in embedded]))
    result = density_search(points, epsilons)
    if result is None or result.cluster_count == 0:
        logger.info("No density clusters at any epsilon, bucketing by keyword")
        return ClusterTree(await _emit(_bucket_groups(records), complete, rules))

    groups, noise = _groups_from_labels(kept, points, result.labels)
    logger.info(
        f"DBSCAN eps={result.epsilon}: {result.cluster_count} clusters, "
        f"{result.noise_count} noise points"
    )
    clusters = await _emit(groups + _bucket_groups(noise), complete, rules)
    root = build_hierarchy([(c.id, g.vectors) for c, g in zip(clusters, groups)])
    return ClusterTree(clusters, root)


async def cluster_by_embedding(
    records: Sequence[SearchTermRecord],
    embed: Optional[Union[EmbeddingProvider, EmbedFn]],
    *,
    complete: Optional[Union[CompletionProvider, CompleteFn]] = None,
    rules: Optional[Sequence[TagRule]] = None,
    concurrency: Optional[int] = None,
    timeout: Optional[float] = None,
    epsilons: Optional[Sequence[float]] = None,
) -> List[SearchTermCluster]:
    """`cluster_tree_by_embedding` without the hierarchy."""
    tree = await cluster_tree_by_embedding(
        records, embed, complete=complete, rules=rules,
        concurrency=concurrency, timeout=timeout, epsilons=epsilons,
    )
    return tree.clusters


# ─── Agent ───────────────────────────────────────────────────────────────────


class EmbeddingClusteringAgent(Agent):
    """
    Synchronous wrapper for pipeline use. Callers already inside an event
    loop should await `cluster_tree_by_embedding` directly. The merge
    hierarchy of the last run is kept on `hierarchy`.
    """

    def __init__(
        self,
        embed: Optional[Union[EmbeddingProvider, EmbedFn]],
        complete: Optional[Union[CompletionProvider, CompleteFn]] = None,
        tag_rules: Optional[Sequence[TagRule]] = None,
    ):
        super().__init__(name="EmbeddingClusteringAgent")
        self.embed = embed
        self.complete = complete
        self.tag_rules = tag_rules
        self.hierarchy: Optional[HierarchyNode] = None

    def run(self, records: Sequence[SearchTermRecord]) -> List[SearchTermCluster]:
        tree = asyncio.run(cluster_tree_by_embedding(
            records, self.embed, complete=self.complete, rules=self.tag_rules,
        ))
        self.hierarchy = tree.root
        depth = tree.root.level if tree.root is not None else 0
        self.logger.info(
            f"{len(records)} search terms → {len(tree.clusters)} clusters (hierarchy depth {depth})"
        )
        return tree.clusters
