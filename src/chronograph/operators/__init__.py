"""Operators: temporal reads, embeddings and community detection."""

from src.chronograph.operators.temporal import TemporalQueryProcessor, TimeMode
from src.chronograph.operators.embedding_cache import EmbeddingCache, EmbeddingCacheConfig, CacheStats
from src.chronograph.operators.encoder import Encoder, EncoderConfig
from src.chronograph.operators.community import (
    CommunityDetector,
    CommunityConfig,
    LabelPropagation,
)

__all__ = [
    "TemporalQueryProcessor",
    "TimeMode",
    "EmbeddingCache",
    "EmbeddingCacheConfig",
    "CacheStats",
    "Encoder",
    "EncoderConfig",
    "CommunityDetector",
    "CommunityConfig",
    "LabelPropagation",
]
