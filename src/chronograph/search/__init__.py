"""Hybrid search: lexical scoring, fusion and reranking."""

from src.chronograph.search.bm25 import BM25Index, BM25Config, tokenize
from src.chronograph.search.fusion import (
    cosine_similarity,
    reciprocal_rank_fusion,
    mmr,
)
from src.chronograph.search.reranker import (
    HybridReranker,
    RerankerConfig,
    FusionMode,
    GraphContext,
    SearchResult,
    SignalBreakdown,
)

__all__ = [
    "BM25Index",
    "BM25Config",
    "tokenize",
    "cosine_similarity",
    "reciprocal_rank_fusion",
    "mmr",
    "HybridReranker",
    "RerankerConfig",
    "FusionMode",
    "GraphContext",
    "SearchResult",
    "SignalBreakdown",
]
