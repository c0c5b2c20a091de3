"""
Pipeline entry points: the functions the calling layer uses.

Architecture:
  rows → SearchTermClusteringAgent | EmbeddingClusteringAgent
       → AsinLinkingAgent → InsightAgent
  rows → ProductClusteringAgent            (feeds the InsightAgent)
  rows → NicheScoringAgent                 (category-level export)

Every entry point accepts model instances or plain dicts and returns objects
exposing `to_dict()`.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from agents.base import Agent, AgentResult, Orchestrator
from agents.embedding_clusterer import (
    CompleteFn,
    CompletionProvider,
    EmbedFn,
    EmbeddingClusteringAgent,
    EmbeddingProvider,
    HierarchyNode,
    cluster_by_embedding,
)
from agents.insights import AsinLinkingAgent, InsightAgent
from agents.insights import generate_insights as _generate_insights
from agents.niche_scorer import NicheScore, NicheScoringAgent
from agents.rule_clusterer import ProductClusteringAgent, SearchTermClusteringAgent
from agents.tagger import TagMap, apply_tags, parse_tag_ontology
from config.settings import ClusterSettings, settings
from models.schemas import (
    InsightBundle,
    ProductCluster,
    ProductRecord,
    SearchTermCluster,
    SearchTermRecord,
    TagRule,
    parse_records,
)

logger = logging.getLogger(__name__)

MODES = ("rules", "embedding")

SettingsInput = Optional[Union[ClusterSettings, Mapping[str, Any]]]

_SETTING_ALIASES = {
    "maxClusters": "max_clusters",
    "minClusterSize": "min_cluster_size",
    "similarityThreshold": "similarity_threshold",
}


def resolve_settings(value: SettingsInput = None) -> ClusterSettings:
    """ClusterSettings from a model, a snake_case/camelCase dict, or defaults."""
    if value is None:
        return settings.cluster_defaults()
    if isinstance(value, ClusterSettings):
        return value
    data = settings.cluster_defaults().model_dump()
    data.update({_SETTING_ALIASES.get(k, k): v for k, v in value.items()})
    return ClusterSettings(**data)


def _rules(tag_rules: Optional[Sequence[Any]]) -> Optional[List[TagRule]]:
    if tag_rules is None:
        return None
    return parse_tag_ontology(list(tag_rules))


def _check_mode(mode: str) -> None:
    if mode not in MODES:
        raise ValueError(f"Unknown clustering mode {mode!r}; expected one of {MODES}")


def _note_unused_settings(mode: str, cluster_settings: SettingsInput) -> None:
    if mode == "embedding" and cluster_settings is not None:
        logger.debug("cluster_settings are ignored in embedding mode; DBSCAN picks its own epsilon")


# ─── Entry points ────────────────────────────────────────────────────────────


def tag_record(text: str, tag_rules: Sequence[Any]) -> TagMap:
    return apply_tags(text, _rules(tag_rules) or [])


async def cluster_search_terms_async(
    records: Sequence[Any],
    mode: str = "rules",
    cluster_settings: SettingsInput = None,
    embed: Optional[Union[EmbeddingProvider, EmbedFn]] = None,
    complete: Optional[Union[CompletionProvider, CompleteFn]] = None,
    tag_rules: Optional[Sequence[Any]] = None,
) -> List[SearchTermCluster]:
    _check_mode(mode)
    _note_unused_settings(mode, cluster_settings)
    terms = parse_records(records, SearchTermRecord)
    rules = _rules(tag_rules)
    if mode == "embedding":
        return await cluster_by_embedding(terms, embed, complete=complete, rules=rules)
    return SearchTermClusteringAgent(resolve_settings(cluster_settings), rules).run(terms)


def cluster_search_terms(
    records: Sequence[Any],
    mode: str = "rules",
    cluster_settings: SettingsInput = None,
    embed: Optional[Union[EmbeddingProvider, EmbedFn]] = None,
    complete: Optional[Union[CompletionProvider, CompleteFn]] = None,
    tag_rules: Optional[Sequence[Any]] = None,
) -> List[SearchTermCluster]:
    """
    Cluster search terms by edit distance ("rules") or embeddings
    ("embedding"). Raises ValueError for any other mode.

    `cluster_settings` only applies to "rules"; embedding mode chooses its
    own DBSCAN epsilon and ignores it.
    """
    _check_mode(mode)
    _note_unused_settings(mode, cluster_settings)
    terms = parse_records(records, SearchTermRecord)
    rules = _rules(tag_rules)
    if mode == "embedding":
        return EmbeddingClusteringAgent(embed, complete, rules).run(terms)
    return SearchTermClusteringAgent(resolve_settings(cluster_settings), rules).run(terms)


def cluster_products(records: Sequence[Any], cluster_settings: SettingsInput = None) -> List[ProductCluster]:
    products = parse_records(records, ProductRecord)
    return ProductClusteringAgent(resolve_settings(cluster_settings)).run(products)


def generate_insights(search_term_clusters: Sequence[Any], product_clusters: Sequence[Any]) -> InsightBundle:
    return _generate_insights(search_term_clusters, product_clusters)


def score_niches(rows: Sequence[Any]) -> List[NicheScore]:
    return NicheScoringAgent().run(rows)


# ─── Full analysis ───────────────────────────────────────────────────────────


@dataclass
class AnalysisResult:
    run_id: str
    executed_at: datetime
    mode: str
    search_term_clusters: List[SearchTermCluster] = field(default_factory=list)
    product_clusters: List[ProductCluster] = field(default_factory=list)
    insights: InsightBundle = field(default_factory=InsightBundle)
    niches: List[NicheScore] = field(default_factory=list)
    stages: List[AgentResult] = field(default_factory=list)
    hierarchy: Optional[HierarchyNode] = None

    @property
    def success(self) -> bool:
        return all(s.success for s in self.stages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "executed_at": self.executed_at.isoformat(),
            "mode": self.mode,
            "search_term_clusters": [c.to_dict() for c in self.search_term_clusters],
            "product_clusters": [c.to_dict() for c in self.product_clusters],
            "insights": self.insights.to_dict(),
            "niches": [n.to_dict() for n in self.niches],
            "hierarchy": self.hierarchy.to_dict() if self.hierarchy is not None else None,
            "stages": [
                {"agent": s.agent_name, "success": s.success, "error": s.error,
                 "duration_seconds": s.duration_seconds}
                for s in self.stages
            ],
        }


def _stage_data(result: AgentResult, stage: str, default):
    if not result.success:
        logger.error(f"{stage} stage failed: {result.error}")
        return default
    return result.data


def run_analysis(
    search_terms: Sequence[Any],
    products: Sequence[Any] = (),
    niches: Sequence[Any] = (),
    mode: str = "rules",
    cluster_settings: SettingsInput = None,
    product_settings: SettingsInput = None,
    embed: Optional[Union[EmbeddingProvider, EmbedFn]] = None,
    complete: Optional[Union[CompletionProvider, CompleteFn]] = None,
    tag_rules: Optional[Sequence[Any]] = None,
) -> AnalysisResult:
    """
    Runs every stage and returns an AnalysisResult. A failing stage is
    recorded in `stages` and leaves its outputs empty. `cluster_settings`
    is ignored when mode="embedding"; `product_settings` always applies.
    """
    _check_mode(mode)
    _note_unused_settings(mode, cluster_settings)
    rules = _rules(tag_rules)
    terms = parse_records(search_terms, SearchTermRecord)
    product_rows = parse_records(products, ProductRecord)
    logger.info(
        f"Analysis starting: {len(terms)} search terms, {len(product_rows)} products, "
        f"{len(niches or [])} niches, mode={mode}"
    )

    product_stage = ProductClusteringAgent(resolve_settings(product_settings)).execute(product_rows)
    product_clusters = _stage_data(product_stage, "Product clustering", [])

    clusterer: Agent
    if mode == "embedding":
        clusterer = EmbeddingClusteringAgent(embed, complete, rules)
    else:
        clusterer = SearchTermClusteringAgent(resolve_settings(cluster_settings), rules)

    pipeline = Orchestrator([
        clusterer,
        AsinLinkingAgent(product_rows),
        InsightAgent(product_clusters),
    ])
    pipeline.execute(terms)
    logger.info(pipeline.summary())

    history = {r.agent_name: r for r in pipeline.run_history}
    linked = history.get("AsinLinkingAgent")
    clustered = history.get(clusterer.name)
    if linked is not None and linked.success:
        search_clusters = linked.data
    elif clustered is not None and clustered.success:
        search_clusters = clustered.data
    else:
        search_clusters = []
    insight_stage = history.get("InsightAgent")
    insights = insight_stage.data if insight_stage is not None and insight_stage.success else InsightBundle()

    stages = [product_stage, *pipeline.run_history]
    niche_scores: List[NicheScore] = []
    if niches:
        niche_stage = NicheScoringAgent().execute(list(niches))
        niche_scores = _stage_data(niche_stage, "Niche scoring", [])
        stages.append(niche_stage)

    return AnalysisResult(
        run_id=str(uuid.uuid4()),
        executed_at=datetime.now(timezone.utc),
        mode=mode,
        search_term_clusters=search_clusters,
        product_clusters=product_clusters,
        insights=insights,
        niches=niche_scores,
        stages=stages,
        hierarchy=clusterer.hierarchy if isinstance(clusterer, EmbeddingClusteringAgent) else None,
    )
