"""
Entry point for Niche Radar.

Usage:
  # Demo run over the bundled sample exports (rule-based clustering):
  python main.py demo

  # Same, clustering search terms by embeddings:
  python main.py demo embedding     # TF-IDF character embeddings
  python main.py demo sbert         # sentence-transformers model

  # Full analysis as JSON on stdout:
  python main.py json [rules|embedding]

  # Run tests:
  python main.py test
"""

from __future__ import annotations

import os
import sys
import json
import logging
from typing import Any, List

from config.settings import settings

logging.basicConfig(
    level=settings.LOG_LEVEL or ("DEBUG" if settings.DEBUG else "INFO"),
    format="%(asctime)s  %(levelname)-8s  %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger("main")

SAMPLES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "samples")


def load_sample(name: str) -> List[Any]:
    with open(os.path.join(SAMPLES_DIR, f"{name}.json"), encoding="utf-8") as fh:
        return json.load(fh)


def analyze(variant: str = "rules"):
    from agents.embedding_clusterer import SentenceTransformerEmbedder, TfidfEmbedder
    from utils.pipeline import run_analysis

    search_terms = load_sample("search_terms")
    embed = None
    if variant == "embedding":
        embed = TfidfEmbedder([row["Search_Term"] for row in search_terms])
    elif variant == "sbert":
        embed = SentenceTransformerEmbedder()

    return run_analysis(
        search_terms=search_terms,
        products=load_sample("products"),
        niches=load_sample("niches"),
        mode="rules" if variant == "rules" else "embedding",
        cluster_settings={"max_clusters": 8, "min_cluster_size": 2, "similarity_threshold": 0.5},
        product_settings={"max_clusters": 6, "min_cluster_size": 2, "similarity_threshold": 0.6},
        embed=embed,
        tag_rules=load_sample("tag_ontology"),
    )


def demo(variant: str = "rules"):
    """Prints a formatted report to stdout."""
    logger.info(f"=== {settings.APP_NAME} v{settings.APP_VERSION}: Demo Run ({variant}) ===")
    result = analyze(variant)

    print("\n" + "=" * 70)
    print("  NICHE RADAR REPORT")
    print("=" * 70)
    print(f"  Run ID     : {result.run_id}")
    print(f"  Mode       : {result.mode}")
    print(f"  Clusters   : {len(result.search_term_clusters)} search / "
          f"{len(result.product_clusters)} product")
    print(f"  Insights   : {result.insights.summary()}")
    print(f"  Timestamp  : {result.executed_at.isoformat()}")
    print("=" * 70)

    print("\n📊 SEARCH TERM CLUSTERS")
    print("-" * 70)
    for c in result.search_term_clusters:
        tags = ", ".join(f"{t.category}:{t.value}" for t in c.tags[:5])
        print(
            f"  {c.name:<32} n={len(c.members):>2}  "
            f"volume={c.metrics.total_volume:>9,.0f}  "
            f"opportunity={c.metrics.opportunity_score:>3}"
        )
        print(f"       Keywords: {', '.join(c.keywords[:4])}")
        print(f"       Tags    : {tags}")

    print("\n📦 PRODUCT CLUSTERS")
    print("-" * 70)
    for c in result.product_clusters:
        print(f"  {c.name:<32} {c.description}")

    print("\n🏆 OPPORTUNITIES")
    print("-" * 70)
    for o in result.insights.opportunities or []:
        print(f"  {o.title:<40} score={o.opportunity_score:.1f}")
    if not result.insights.opportunities:
        print("  No opportunity above the significance threshold.")

    print("\n📈 TRENDS")
    print("-" * 70)
    for t in result.insights.trends:
        print(f"  {t.title:<40} {t.trend:<7} confidence={t.confidence:.2f}")

    print("\n🧭 NICHES")
    print("-" * 70)
    for n in result.niches:
        flags = [f for f, on in (("emerging", n.is_emerging), ("seasonal", n.is_seasonal)) if on]
        print(
            f"  {n.niche.customer_need:<32} opportunity={n.opportunity:>3}  "
            f"emergence={n.emergence:.2f}  seasonality={n.seasonality:.2f}  "
            f"{' '.join(flags)}"
        )
    print("=" * 70)
    return result


def run_tests():
    """Run pytest."""
    import subprocess
    result = subprocess.run(
        ["pytest", "tests/", "-v", "--tb=short"],
        cwd=os.path.dirname(os.path.abspath(__file__)),
    )
    sys.exit(result.returncode)


if __name__ == "__main__":
    command = sys.argv[1] if len(sys.argv) > 1 else "demo"
    variant = sys.argv[2] if len(sys.argv) > 2 else "rules"

    if command == "demo":
        demo(variant)
    elif command == "json":
        print(json.dumps(analyze(variant).to_dict(), indent=2))
    elif command == "test":
        run_tests()
    else:
        print(f"Unknown command: {command}")
        print("Usage: python main.py [demo|json|test] [rules|embedding|sbert]")
        sys.exit(1)
