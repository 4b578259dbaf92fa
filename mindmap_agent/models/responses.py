"""
Structured response shapes returned by the inference collaborator
Each prompt kind has one model; responses are validated at the extraction boundary
"""

from typing import List, Literal, Optional

from pydantic import Field

from .mindmap_models import MindmapBaseModel, SubThemeStub


class SimilarityResponse(MindmapBaseModel):
    """Structured output for a single pairwise merge decision"""
    should_merge: bool = Field(description="Whether the two themes describe the same change")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = Field(default="")


class BatchSimilarityResult(MindmapBaseModel):
    """One pair inside a batched merge decision"""
    pair_id: str = Field(description="Correlation id of the submitted pair")
    should_merge: bool
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = Field(default="Batch processed")


class BatchSimilarityResponse(MindmapBaseModel):
    """Structured output for batched merge decisions"""
    results: List[BatchSimilarityResult] = Field(default_factory=list)


class ExpansionDecisionResponse(MindmapBaseModel):
    """Structured output for the expansion decision prompt"""
    should_expand: bool
    is_atomic: bool = False
    reasoning: str = ""
    sub_themes: Optional[List[SubThemeStub]] = None


class SubThemesResponse(MindmapBaseModel):
    """Structured output for the enumerate-children prompt"""
    sub_themes: List[SubThemeStub] = Field(default_factory=list)


class NamingResponse(MindmapBaseModel):
    """Structured output for merged theme naming"""
    name: str
    description: str = ""


class DomainResponse(MindmapBaseModel):
    """Structured output for business domain classification"""
    domain: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""


class DuplicateGroup(MindmapBaseModel):
    """A set of 1-based theme indices describing the same change"""
    theme_indices: List[int] = Field(default_factory=list)
    reasoning: str = ""


class DuplicateGroupsResponse(MindmapBaseModel):
    """Structured output for the first sibling deduplication pass"""
    groups: List[DuplicateGroup] = Field(default_factory=list)


class SecondPassResponse(MindmapBaseModel):
    """Structured output for the cross-batch deduplication pass"""
    duplicate_groups: List[DuplicateGroup] = Field(default_factory=list)


RelationshipType = Literal["duplicate", "overlap", "related", "distinct"]
MergeAction = Literal["merge_up", "merge_down", "merge_sibling", "keep_separate"]


class CrossLevelResponse(MindmapBaseModel):
    """Structured output for cross-branch relationship classification"""
    similarity_score: float = Field(default=0.2, ge=0.0, le=1.0)
    relationship_type: RelationshipType = "distinct"
    action: MergeAction = "keep_separate"
    confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    reasoning: str = ""

__all__ = [
    "SimilarityResponse", "BatchSimilarityResult", "BatchSimilarityResponse",
    "ExpansionDecisionResponse", "SubThemesResponse", "NamingResponse", "DomainResponse",
    "DuplicateGroup", "DuplicateGroupsResponse", "SecondPassResponse", "CrossLevelResponse",
]
