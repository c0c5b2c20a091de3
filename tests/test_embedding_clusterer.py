"""
Embedding clustering tests.
Providers are in-process fakes; no model is downloaded.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import logging
import math

import numpy as np
import pytest
from agents.embedding_clusterer import (
    DEFAULT_THEME,
    EmbeddingClusteringAgent,
    EmbeddingProvider,
    MISC_BUCKET,
    TfidfEmbedder,
    bucket_label,
    bucket_records,
    build_hierarchy,
    cluster_by_embedding,
    cluster_tree_by_embedding,
    density_search,
    embed_records,
    min_points,
    parse_metadata,
    pick_theme,
)
from models.schemas import ClusterTag, SearchTermRecord
from utils.pipeline import cluster_search_terms, cluster_search_terms_async, run_analysis


def _unit(angle):
    return [math.cos(angle), math.sin(angle), 0.0]


VECTORS = {
    "sleep gummies": _unit(0.0),
    "sleep tea": _unit(0.28),
    "stress relief": _unit(math.pi / 2),
    "calm stress": _unit(math.pi / 2 + 0.28),
    "honey mustard pretzels": [0.0, 0.0, 1.0],
}


# ─── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def records():
    return [SearchTermRecord(term=t, volume=100) for t in ("sleep gummies", "sleep tea", "stress relief", "calm stress")]


@pytest.fixture
def lookup():
    def embed(text):
        return VECTORS[text]
    return embed


class FakeEmbedder:
    def __init__(self, vectors):
        self.vectors = vectors
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        return self.vectors[text]


def _keywords(clusters):
    return [c.keywords for c in clusters]


# ─── Buckets & themes ────────────────────────────────────────────────────────

class TestBucketsAndThemes:
    def test_first_pattern_wins(self):
        assert bucket_label("Family-Size BBQ chips") == "BBQ"
        assert bucket_label("sleep gummies") == "Gummies"
        assert bucket_label("chewable vitamin c") == "Gummies"

    def test_unmatched_goes_to_misc(self):
        assert bucket_label("standing desk") == MISC_BUCKET

    def test_bucket_order(self):
        terms = ["standing desk", "sleep tea", "bbq chips", "sleep gummies", "bbq pretzels"]
        buckets = bucket_records([SearchTermRecord(term=t) for t in terms])
        assert [label for label, _ in buckets] == ["BBQ", "Gummies", "Tea", MISC_BUCKET]
        assert [m.term for m in buckets[0][1]] == ["bbq chips", "bbq pretzels"]

    def test_pick_theme(self):
        assert pick_theme(["melatonin gummies"]).name == "Sleep Support"
        assert pick_theme(["kids sleep gummies"]).name == "Sleep Support"
        assert pick_theme(["honey mustard pretzels"]).name == "Snacks"
        assert pick_theme(["standing desk"]) is DEFAULT_THEME
        assert pick_theme([]) is DEFAULT_THEME


# ─── Embedding fan-out ───────────────────────────────────────────────────────

class TestEmbedRecords:
    def test_failed_call_yields_none(self, records, caplog):
        def flaky(text):
            if text == "sleep tea":
                raise RuntimeError("rate limited")
            return VECTORS[text]

        with caplog.at_level(logging.WARNING):
            vectors = asyncio.run(embed_records(records, flaky))
        assert vectors[1] is None
        assert all(v is not None for i, v in enumerate(vectors) if i != 1)
        assert "Embedding failed" in caplog.text

    def test_timeout_yields_none(self, records, caplog):
        async def slow(text):
            if text == "stress relief":
                await asyncio.sleep(1)
            return VECTORS[text]

        with caplog.at_level(logging.WARNING):
            vectors = asyncio.run(embed_records(records, slow, concurrency=4, timeout=0.05))
        assert vectors[2] is None
        assert sum(v is not None for v in vectors) == 3
        assert "timed out" in caplog.text

    def test_concurrency_bound_and_order(self):
        terms = ["a", "bbbb", "cc", "ddddd", "eee", "f"]
        state = {"active": 0, "peak": 0}

        async def tracked(text):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.01 * (6 - len(text)))
            state["active"] -= 1
            return [1.0, float(len(text))]

        vectors = asyncio.run(embed_records([SearchTermRecord(term=t) for t in terms], tracked, concurrency=2))
        assert state["peak"] <= 2
        assert [v[1] for v in vectors] == [float(len(t)) for t in terms]

    def test_cancellation_propagates(self, records):
        async def cancelled(text):
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(embed_records(records, cancelled))

    def test_dimension_mismatch_dropped(self, records, caplog):
        def uneven(text):
            return [1.0, 0.0] if text == "calm stress" else VECTORS[text]

        with caplog.at_level(logging.WARNING):
            vectors = asyncio.run(embed_records(records, uneven))
        assert vectors[3] is None
        assert "dimension" in caplog.text

    @pytest.mark.parametrize("raw", [[], [0.0, 0.0, 0.0], [float("nan"), 1.0, 0.0], "abc", [[1.0], [2.0]]])
    def test_unusable_vectors_dropped(self, raw):
        vectors = asyncio.run(embed_records([SearchTermRecord(term="x")], lambda text: raw))
        assert vectors == [None]

    def test_provider_object(self, records):
        provider = FakeEmbedder(VECTORS)
        assert isinstance(provider, EmbeddingProvider)
        asyncio.run(embed_records(records, provider))
        assert sorted(provider.calls) == sorted(r.term for r in records)


# ─── Density search ──────────────────────────────────────────────────────────

class TestDensitySearch:
    def test_min_points(self):
        assert min_points(4) == 2
        assert min_points(12) == 2
        assert min_points(300) == 10

    def test_best_epsilon(self, records):
        vectors = np.array([VECTORS[r.term] for r in records])
        result = density_search(vectors)
        assert result.epsilon == 0.3
        assert result.cluster_count == 2
        assert result.noise_count == 0
        assert result.score == 20

    def test_ties_keep_smallest_epsilon(self):
        vectors = np.eye(3)
        result = density_search(vectors, [0.4, 0.25, 0.3])
        assert result.epsilon == 0.25
        assert result.cluster_count == 0
        assert result.noise_count == 3


# ─── Clustering ──────────────────────────────────────────────────────────────

class TestClusterByEmbedding:
    def test_semantic_groups(self, records, lookup):
        clusters = asyncio.run(cluster_by_embedding(records, lookup))
        assert _keywords(clusters) == [["sleep gummies", "sleep tea"], ["stress relief", "calm stress"]]
        assert [c.name for c in clusters] == ["Sleep Support", "Stress & Mood"]
        assert [c.id for c in clusters] == ["sleep-support", "stress-mood"]
        assert ClusterTag("Theme", "Sleep Support") in clusters[0].tags
        assert clusters[0].metrics.total_volume == 200

    def test_noise_is_bucketed(self, lookup):
        terms = ["sleep gummies", "sleep tea", "honey mustard pretzels"]
        clusters = asyncio.run(cluster_by_embedding([SearchTermRecord(term=t) for t in terms], lookup))
        assert [c.name for c in clusters] == ["Sleep Support", "Snacks (Honey Mustard)"]
        assert ClusterTag("Bucket", "Honey Mustard") in clusters[1].tags

    def test_no_density_clusters_buckets_everything(self):
        terms = ["honey mustard pretzels", "sleep gummies", "stress relief tea"]
        one_hot = {t: row.tolist() for t, row in zip(terms, np.eye(3))}
        clusters = asyncio.run(cluster_by_embedding(
            [SearchTermRecord(term=t) for t in terms], lambda text: one_hot[text],
        ))
        assert [c.name for c in clusters] == [
            "Snacks (Honey Mustard)", "Sleep Support (Gummies)", "Stress & Mood (Tea)",
        ]

    def test_provider_outage_still_clusters_everything(self):
        def down(text):
            raise ConnectionError("provider unavailable")

        terms = ["sleep gummies", "honey mustard pretzels", "sleep tea"]
        clusters = asyncio.run(cluster_by_embedding([SearchTermRecord(term=t) for t in terms], down))
        assert len(clusters) == 3
        covered = sorted(k for c in clusters for k in c.keywords)
        assert covered == sorted(terms)

    def test_single_embedding_falls_back(self, lookup):
        clusters = asyncio.run(cluster_by_embedding([SearchTermRecord(term="sleep gummies")], lookup))
        assert _keywords(clusters) == [["sleep gummies"]]
        assert clusters[0].name == "Sleep Support (Gummies)"

    def test_partial_failure_drops_only_failed_term(self, records, lookup):
        # no vector for "unknown term", so the lookup raises KeyError
        extended = records + [SearchTermRecord(term="unknown term")]
        clusters = asyncio.run(cluster_by_embedding(extended, lookup))
        assert len(clusters) == 2
        assert all("unknown term" not in c.keywords for c in clusters)

    def test_empty_input(self, lookup):
        assert asyncio.run(cluster_by_embedding([], lookup)) == []

    def test_no_provider_buckets(self, records):
        clusters = asyncio.run(cluster_by_embedding(records, None))
        assert sorted(k for c in clusters for k in c.keywords) == sorted(r.term for r in records)

    def test_ids_unique(self, records, lookup):
        duplicated = records + [SearchTermRecord(term="sleep tea")]
        clusters = asyncio.run(cluster_by_embedding(duplicated, lookup))
        ids = [c.id for c in clusters]
        assert len(ids) == len(set(ids))


# ─── Completion provider ─────────────────────────────────────────────────────

class TestCompletion:
    REPLY = (
        '```json\n{"title": "Restful Nights", "description": "Shoppers who want better sleep.",'
        ' "tags": [{"category": "Audience", "value": "Adults", "confidence": 0.9}]}\n```'
    )

    def test_completion_overrides_theme(self, records, lookup):
        clusters = asyncio.run(cluster_by_embedding(records[:2], lookup, complete=lambda prompt: self.REPLY))
        cluster = clusters[0]
        assert cluster.name == "Restful Nights"
        assert cluster.id == "restful-nights"
        assert cluster.description == "Shoppers who want better sleep."
        assert ClusterTag("Audience", "Adults") in cluster.tags

    def test_async_completion(self, records, lookup):
        async def complete(prompt):
            assert "sleep gummies" in prompt
            return self.REPLY

        clusters = asyncio.run(cluster_by_embedding(records[:2], lookup, complete=complete))
        assert clusters[0].name == "Restful Nights"

    def test_invalid_reply_keeps_theme(self, records, lookup, caplog):
        with caplog.at_level(logging.WARNING):
            clusters = asyncio.run(cluster_by_embedding(records[:2], lookup, complete=lambda p: "not json"))
        assert clusters[0].name == "Sleep Support"
        assert "keeping theme" in caplog.text

    def test_parse_metadata_rejects_missing_title(self):
        with pytest.raises(ValueError):
            parse_metadata('{"description": "no title"}')
        with pytest.raises(ValueError):
            parse_metadata("[1, 2]")


# ─── Agent & pipeline ────────────────────────────────────────────────────────

class TestEmbeddingEntryPoints:
    def test_agent_without_provider(self, records):
        result = EmbeddingClusteringAgent(None).execute(records)
        assert result.success
        assert sum(len(c.members) for c in result.data) == len(records)

    def test_sync_entry_point_with_tfidf(self):
        terms = ["sleep gummies", "sleep gummy", "honey mustard pretzels", "honey mustard pretzel"]
        embedder = TfidfEmbedder(terms)
        clusters = cluster_search_terms([{"term": t} for t in terms], mode="embedding", embed=embedder)
        covered = sorted(k for c in clusters for k in c.keywords)
        assert covered == sorted(terms)

    def test_async_entry_point(self, lookup):
        rows = [{"term": t, "volume": 10} for t in ("sleep gummies", "sleep tea", "stress relief", "calm stress")]
        clusters = asyncio.run(cluster_search_terms_async(rows, mode="embedding", embed=lookup))
        assert len(clusters) == 2


# ─── Hierarchy ───────────────────────────────────────────────────────────────

class TestHierarchy:
    def test_most_similar_pair_merges_first(self):
        leaves = [
            ("a", np.array([[1.0, 0.0, 0.0]])),
            ("b", np.array([[0.9, 0.1, 0.0]])),
            ("c", np.array([[0.0, 0.0, 1.0]])),
        ]
        root = build_hierarchy(leaves)
        assert root.id == "merged-2"
        assert root.level == 2
        assert root.cluster_ids == ["c", "a", "b"]
        c, ab = root.children
        assert c.id == "c" and c.level == 0 and c.parent_id == "merged-2"
        assert ab.id == "merged-1"
        assert ab.level == 1
        assert ab.parent_id == "merged-2"
        assert ab.similarity == pytest.approx(0.9 / math.sqrt(0.82))
        assert [child.parent_id for child in ab.children] == ["merged-1", "merged-1"]

    def test_ties_merge_first_pair(self):
        root = build_hierarchy([(cid, row[None, :]) for cid, row in zip("abc", np.eye(3))])
        assert root.children[1].cluster_ids == ["a", "b"]
        assert root.similarity == pytest.approx(0.0)

    def test_single_and_empty(self):
        leaf = build_hierarchy([("only", np.array([[1.0, 0.0]]))])
        assert leaf.id == "only"
        assert leaf.level == 0
        assert leaf.children == []
        assert build_hierarchy([]) is None

    def test_tree_over_density_clusters(self, records, lookup):
        tree = asyncio.run(cluster_tree_by_embedding(records, lookup))
        assert [c.id for c in tree.clusters] == ["sleep-support", "stress-mood"]
        assert tree.root.cluster_ids == ["sleep-support", "stress-mood"]
        assert tree.root.level == 1
        assert tree.root.similarity == pytest.approx(0.0, abs=1e-9)
        assert tree.to_dict()["hierarchy"]["children"][0]["parent_id"] == tree.root.id

    def test_buckets_stay_outside_tree(self, lookup):
        terms = ["sleep gummies", "sleep tea", "honey mustard pretzels"]
        tree = asyncio.run(cluster_tree_by_embedding([SearchTermRecord(term=t) for t in terms], lookup))
        assert len(tree.clusters) == 2
        assert tree.root.cluster_ids == ["sleep-support"]
        assert tree.root.children == []

    def test_no_tree_without_density_clusters(self, records):
        tree = asyncio.run(cluster_tree_by_embedding(records, None))
        assert tree.clusters
        assert tree.root is None
        assert tree.to_dict()["hierarchy"] is None

    def test_agent_keeps_last_hierarchy(self, records, lookup):
        agent = EmbeddingClusteringAgent(lookup)
        agent.run(records)
        assert agent.hierarchy.cluster_ids == ["sleep-support", "stress-mood"]

    def test_analysis_result_carries_hierarchy(self, lookup):
        rows = [{"term": t, "volume": 10} for t in ("sleep gummies", "sleep tea", "stress relief", "calm stress")]
        result = run_analysis(search_terms=rows, mode="embedding", embed=lookup)
        assert result.hierarchy is not None
        assert result.to_dict()["hierarchy"]["level"] == 1
        assert run_analysis(search_terms=rows).hierarchy is None
