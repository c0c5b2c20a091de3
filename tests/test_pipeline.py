"""
End-to-end pipeline tests over the bundled sample exports.
Run with: python -m pytest tests/ -v
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json
import logging

import pytest
from pydantic import ValidationError
from agents.base import Agent, Orchestrator
from agents.embedding_clusterer import TfidfEmbedder
from config.settings import ClusterSettings, settings
from utils.pipeline import (
    cluster_search_terms,
    cluster_search_terms_async,
    generate_insights,
    resolve_settings,
    run_analysis,
    score_niches,
    tag_record,
)

SAMPLES = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "samples")

SEARCH_SETTINGS = {"max_clusters": 8, "min_cluster_size": 2, "similarity_threshold": 0.5}
PRODUCT_SETTINGS = {"max_clusters": 6, "min_cluster_size": 2, "similarity_threshold": 0.6}


def _load(name):
    with open(os.path.join(SAMPLES, f"{name}.json"), encoding="utf-8") as fh:
        return json.load(fh)


# ─── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def search_rows():
    return _load("search_terms")


@pytest.fixture(scope="module")
def product_rows():
    return _load("products")


@pytest.fixture(scope="module")
def ontology():
    return _load("tag_ontology")


@pytest.fixture(scope="module")
def rules_result(search_rows, product_rows, ontology):
    return run_analysis(
        search_terms=search_rows,
        products=product_rows,
        niches=_load("niches"),
        cluster_settings=SEARCH_SETTINGS,
        product_settings=PRODUCT_SETTINGS,
        tag_rules=ontology,
    )


class Echo(Agent):
    def __init__(self):
        super().__init__(name="Echo")

    def run(self, data):
        return data


class Boom(Agent):
    def __init__(self):
        super().__init__(name="Boom")

    def run(self, data):
        raise RuntimeError("stage exploded")


# ─── Orchestrator ────────────────────────────────────────────────────────────

class TestOrchestrator:
    def test_stops_on_failure(self):
        pipeline = Orchestrator([Boom(), Echo()])
        result = pipeline.execute([1, 2])
        assert not result.success
        assert result.error == "stage exploded"
        assert len(pipeline.run_history) == 1

    def test_continues_when_allowed(self):
        pipeline = Orchestrator([Boom(), Echo()], stop_on_failure=False)
        result = pipeline.execute([1, 2])
        assert result.success
        assert result.agent_name == "Echo"
        assert result.data == [1, 2]
        assert "Boom" in pipeline.summary()

    def test_empty_pipeline(self):
        result = Orchestrator([]).execute("x")
        assert result.success
        assert result.data == "x"


# ─── Settings ────────────────────────────────────────────────────────────────

class TestSettings:
    def test_defaults(self):
        defaults = resolve_settings()
        assert defaults.max_clusters == settings.MAX_CLUSTERS
        assert defaults.min_cluster_size == settings.MIN_CLUSTER_SIZE
        assert defaults.similarity_threshold == settings.SIMILARITY_THRESHOLD

    def test_camel_case_merged_over_defaults(self):
        resolved = resolve_settings({"maxClusters": 4, "similarityThreshold": 0.9})
        assert resolved.max_clusters == 4
        assert resolved.similarity_threshold == 0.9
        assert resolved.min_cluster_size == settings.MIN_CLUSTER_SIZE

    def test_model_passes_through(self):
        model = ClusterSettings(max_clusters=2)
        assert resolve_settings(model) is model

    @pytest.mark.parametrize("bad", [
        {"max_clusters": 21},
        {"min_cluster_size": 0},
        {"similarity_threshold": 1.5},
    ])
    def test_out_of_range_rejected(self, bad):
        with pytest.raises(ValidationError):
            resolve_settings(bad)


# ─── Full analysis ───────────────────────────────────────────────────────────

class TestRunAnalysis:
    def test_all_stages_succeed(self, rules_result):
        assert rules_result.success
        assert [s.agent_name for s in rules_result.stages] == [
            "ProductClusteringAgent",
            "SearchTermClusteringAgent",
            "AsinLinkingAgent",
            "InsightAgent",
            "NicheScoringAgent",
        ]

    def test_search_clusters(self, rules_result):
        clusters = rules_result.search_term_clusters
        assert 0 < len(clusters) <= SEARCH_SETTINGS["max_clusters"]
        assert all(len(c.members) >= 2 for c in clusters)
        ids = [c.id for c in clusters]
        assert len(ids) == len(set(ids))

    def test_sleep_gummies_linked_to_products(self, rules_result):
        sleep = next(c for c in rules_result.search_term_clusters if "sleep gummies" in c.keywords)
        assert "sleep gummy" in sleep.keywords
        assert sleep.linked_products is not None
        assert "Dreamwell" in sleep.linked_products.dominant_brands
        assert any(t.category == "Format" and t.value == "Gummies" for t in sleep.tags)

    def test_product_clusters(self, rules_result):
        assert rules_result.product_clusters
        for cluster in rules_result.product_clusters:
            assert cluster.name.endswith("Products")

    def test_niches_scored(self, rules_result):
        assert [n.niche.customer_need for n in rules_result.niches][0] == "sleep gummies"
        assert len(rules_result.niches) == 4

    def test_serializable(self, rules_result):
        payload = json.loads(json.dumps(rules_result.to_dict()))
        assert payload["mode"] == "rules"
        assert payload["search_term_clusters"][0]["keywords"]
        assert set(payload["insights"]) == {"opportunities", "competition", "trends"}

    def test_embedding_mode_covers_every_term(self, search_rows, product_rows):
        terms = [r["Search_Term"] for r in search_rows if r["Search_Term"]]
        result = run_analysis(
            search_terms=search_rows,
            products=product_rows,
            mode="embedding",
            product_settings=PRODUCT_SETTINGS,
            embed=TfidfEmbedder(terms),
        )
        assert result.success
        assert result.stages[1].agent_name == "EmbeddingClusteringAgent"
        covered = sorted(k for c in result.search_term_clusters for k in c.keywords)
        assert covered == sorted(terms)
        assert result.niches == []

    def test_embedding_outage(self, search_rows):
        def down(text):
            raise ConnectionError("provider unavailable")

        result = run_analysis(search_terms=search_rows, mode="embedding", embed=down)
        assert result.success
        assert result.search_term_clusters

    def test_unknown_mode(self, search_rows):
        with pytest.raises(ValueError):
            run_analysis(search_terms=search_rows, mode="hierarchical")

    def test_empty_input(self):
        result = run_analysis(search_terms=[])
        assert result.success
        assert result.search_term_clusters == []
        assert result.insights.summary() == "0 opportunities, 0 competition reports, 0 trends"


# ─── Entry points ────────────────────────────────────────────────────────────

class TestEntryPoints:
    def test_tag_record(self, ontology):
        tags = tag_record("Melatonin free sleep gummies", ontology)
        assert "Gummies" in tags.get("Format", [])

    def test_embedding_mode_notes_unused_settings(self, search_rows, caplog):
        with caplog.at_level(logging.DEBUG, logger="utils.pipeline"):
            clusters = cluster_search_terms(search_rows, mode="embedding", cluster_settings=SEARCH_SETTINGS)
        assert clusters
        assert "cluster_settings are ignored in embedding mode" in caplog.text

    def test_rules_mode_does_not_note_settings(self, search_rows, caplog):
        with caplog.at_level(logging.DEBUG, logger="utils.pipeline"):
            cluster_search_terms(search_rows, cluster_settings=SEARCH_SETTINGS)
        assert "ignored in embedding mode" not in caplog.text

    def test_async_rules_mode(self, search_rows):
        clusters = asyncio.run(cluster_search_terms_async(search_rows, cluster_settings=SEARCH_SETTINGS))
        assert clusters
        assert all(len(c.members) >= 2 for c in clusters)

    def test_generate_insights_from_dicts(self, rules_result):
        bundle = generate_insights(
            [c.to_dict() for c in rules_result.search_term_clusters],
            [c.to_dict() for c in rules_result.product_clusters],
        )
        assert len(bundle.competition) == len(rules_result.insights.competition)

    def test_score_niches(self):
        scores = score_niches(_load("niches"))
        assert [s.opportunity for s in scores] == sorted((s.opportunity for s in scores), reverse=True)

    def test_score_niches_skips_bad_rows(self):
        scores = score_niches(["not a row", {"Customer Need": "sleep", "Search Volume (Past 360 days)": 1000}])
        assert [s.niche.customer_need for s in scores] == ["sleep"]
