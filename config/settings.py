"""
Configuration & Settings
Niche Radar: Clustering & Scoring Engine
"""

from pydantic import BaseModel, Field
from typing import Optional, Tuple


class ClusterSettings(BaseModel):
    """Per-request clustering parameters supplied by the calling layer."""
    max_clusters: int = Field(6, ge=1, le=20)
    min_cluster_size: int = Field(3, ge=1, le=10)
    similarity_threshold: float = Field(0.7, ge=0, le=1)


class Settings(BaseModel):
    # App
    APP_NAME: str = "Niche Radar"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Rule-based clustering defaults
    MAX_CLUSTERS: int = 6
    MIN_CLUSTER_SIZE: int = 3
    SIMILARITY_THRESHOLD: float = 0.7

    # Embeddings
    EMBEDDING_MODEL: str = "all-MiniLM-L6-v2"
    EMBEDDING_TIMEOUT_SECONDS: float = 30.0
    EMBEDDING_CONCURRENCY: int = 1
    COMPLETION_TIMEOUT_SECONDS: float = 60.0

    # Density clustering: candidate neighbourhood radii, tried in order
    EPSILON_CANDIDATES: Tuple[float, ...] = (0.25, 0.3, 0.35, 0.4)
    MIN_PTS_FLOOR: int = 2

    # Score calculator
    EMERGENCE_VOLUME_CEILING: float = 500_000
    COMPETING_PRODUCTS_CAP: int = 50
    EMERGING_FLAG_THRESHOLD: float = 0.6
    SEASONAL_FLAG_THRESHOLD: float = 0.7

    # Temporal cluster metrics
    TREND_WINDOW: int = 3

    # Cluster tag bands
    HIGH_VOLUME_BAND: float = 10_000
    MEDIUM_VOLUME_BAND: float = 1_000
    HIGH_GROWTH_BAND: float = 0.1

    # Insight generation
    VOLUME_SATURATION: float = 10_000
    PRICE_SATURATION: float = 100.0
    OPPORTUNITY_SIGNIFICANCE_THRESHOLD: float = 70.0
    TREND_CONFIDENCE_THRESHOLD: float = 0.7
    LOW_RATING_BOOST: float = 1.2
    LOW_RATING_THRESHOLD: float = 3.5

    # Logging
    LOG_LEVEL: Optional[str] = None

    def cluster_defaults(self) -> ClusterSettings:
        return ClusterSettings(
            max_clusters=self.MAX_CLUSTERS,
            min_cluster_size=self.MIN_CLUSTER_SIZE,
            similarity_threshold=self.SIMILARITY_THRESHOLD,
        )


settings = Settings()
