"""
Cache package for Mindmap Agent
"""

from .generic_cache import GenericCache, CacheEntry
from .similarity_cache import SimilarityCache, SimilarityScore, similarity_cache_key
from .semantic_cache import SemanticCache, generate_cache_key, generate_semantic_tokens, jaccard_similarity

__all__ = [
    "GenericCache",
    "CacheEntry",
    "SimilarityCache",
    "SimilarityScore",
    "similarity_cache_key",
    "SemanticCache",
    "generate_cache_key",
    "generate_semantic_tokens",
    "jaccard_similarity"
]
