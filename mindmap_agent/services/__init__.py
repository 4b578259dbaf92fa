"""
Services package for Mindmap Agent
"""

from .classifier import DomainClassification, ThemeClassifier
from .theme_similarity import ThemeSimilarityService
from .expansion_decision import ExpansionDecisionService
from .theme_expansion import ExpansionStats, StopRecord, ThemeExpansionService
from .hierarchical_similarity import (
    CrossLevelMatch,
    HierarchicalSimilarityService,
    HierarchyDeduplicationResult,
    HierarchyValidationResult,
    validate_hierarchy_integrity
)

__all__ = [
    "DomainClassification",
    "ThemeClassifier",
    "ThemeSimilarityService",
    "ExpansionDecisionService",
    "ExpansionStats",
    "StopRecord",
    "ThemeExpansionService",
    "CrossLevelMatch",
    "HierarchicalSimilarityService",
    "HierarchyDeduplicationResult",
    "HierarchyValidationResult",
    "validate_hierarchy_integrity"
]
