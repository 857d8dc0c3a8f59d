"""Similarity search for knowledge chunks and schedule events."""

from .searchers import (
    ExactSimilaritySearcher,
    FallbackSimilaritySearcher,
    IndexedSimilaritySearcher,
    OverFetch,
    SimilaritySearcher,
    build_searcher,
)
from .semantic import SemanticSearchEngine
from .similarity import cosine_similarities, cosine_similarity

__all__ = [
    "ExactSimilaritySearcher",
    "FallbackSimilaritySearcher",
    "IndexedSimilaritySearcher",
    "OverFetch",
    "SimilaritySearcher",
    "build_searcher",
    "SemanticSearchEngine",
    "cosine_similarities",
    "cosine_similarity",
]
