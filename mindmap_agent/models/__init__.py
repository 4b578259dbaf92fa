"""
Data models package for Mindmap Agent
"""

from .mindmap_models import (
    ConsolidatedTheme,
    ConsolidationMethod,
    ExpansionDecision,
    StopReason,
    SubThemeStub,
    Theme,
    flatten_hierarchy,
    generate_id,
    relevel,
    union_preserving_order,
)
from .responses import (
    BatchSimilarityResponse,
    BatchSimilarityResult,
    CrossLevelResponse,
    DomainResponse,
    DuplicateGroup,
    DuplicateGroupsResponse,
    ExpansionDecisionResponse,
    NamingResponse,
    SecondPassResponse,
    SimilarityResponse,
    SubThemesResponse,
)

__all__ = [
    "Theme", "ConsolidatedTheme", "ConsolidationMethod", "StopReason",
    "SubThemeStub", "ExpansionDecision", "flatten_hierarchy", "generate_id",
    "union_preserving_order", "relevel",
    "SimilarityResponse", "BatchSimilarityResult", "BatchSimilarityResponse",
    "ExpansionDecisionResponse", "SubThemesResponse", "NamingResponse",
    "DomainResponse", "DuplicateGroup", "DuplicateGroupsResponse",
    "SecondPassResponse", "CrossLevelResponse",
]
