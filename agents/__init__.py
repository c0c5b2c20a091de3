from .base import Agent, AgentResult, Orchestrator
from .tagger import TaggingAgent
from .rule_clusterer import SearchTermClusteringAgent, ProductClusteringAgent
from .embedding_clusterer import EmbeddingClusteringAgent
from .insights import AsinLinkingAgent, InsightAgent
from .niche_scorer import NicheScoringAgent

__all__ = [
    "Agent", "AgentResult", "Orchestrator",
    "TaggingAgent", "SearchTermClusteringAgent", "ProductClusteringAgent",
    "EmbeddingClusteringAgent", "AsinLinkingAgent", "InsightAgent",
    "NicheScoringAgent",
]
