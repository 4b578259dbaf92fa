"""
Core data models for Mindmap Agent
Flat input themes, the consolidated theme tree and expansion decisions
"""

from datetime import datetime
from enum import Enum
from typing import Iterable, Iterator, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MindmapBaseModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConsolidationMethod(str, Enum):
    """How a consolidated theme came to exist"""
    SINGLE = "single"
    MERGE = "merge"
    HIERARCHY = "hierarchy"
    EXPANSION = "expansion"


class StopReason(str, Enum):
    """Why expansion stopped at a node"""
    GUARDRAIL = "guardrail"
    ATOMIC = "atomic"
    AI_DECISION = "ai-decision"
    MAX_DEPTH = "max-depth"
    ERROR = "error"


def generate_id(prefix: str = "theme") -> str:
    """Generate a globally unique theme id"""
    return f"{prefix}-{uuid.uuid4().hex}"


class Theme(MindmapBaseModel):
    """Flat theme produced by the upstream change analyzer"""
    id: str = Field(description="Unique theme id")
    name: str = Field(description="Short theme name")
    description: str = Field(default="", description="What the change does")
    affected_files: List[str] = Field(default_factory=list, description="Files touched by the change")
    code_snippets: List[str] = Field(default_factory=list, description="Literal code change snippets")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    business_impact: str = Field(default="", description="Business impact description")
    context: str = Field(default="", description="Free-text analysis context")
    timestamp: datetime = Field(default_factory=datetime.now)


class ConsolidatedTheme(MindmapBaseModel):
    """Tree node holding one or many merged themes"""
    id: str = Field(default_factory=generate_id)
    name: str
    description: str = ""
    level: int = Field(default=0, ge=0)
    parent_id: Optional[str] = None
    child_themes: List["ConsolidatedTheme"] = Field(default_factory=list)

    affected_files: List[str] = Field(default_factory=list)
    code_snippets: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    business_impact: str = ""
    context: str = ""

    source_themes: List[str] = Field(default_factory=list)
    consolidation_method: ConsolidationMethod = ConsolidationMethod.SINGLE
    last_analysis: datetime = Field(default_factory=datetime.now)

    is_atomic: bool = False
    expansion_reason: Optional[str] = None
    stop_reason: Optional[StopReason] = None

    def line_count(self) -> int:
        """Count non-blank lines across all code snippets"""
        return sum(
            1
            for snippet in self.code_snippets
            for line in snippet.splitlines()
            if line.strip()
        )

    def iter_tree(self) -> Iterator["ConsolidatedTheme"]:
        """Yield this node and all descendants depth-first"""
        yield self
        for child in self.child_themes:
            yield from child.iter_tree()

    @classmethod
    def from_theme(cls, theme: Theme) -> "ConsolidatedTheme":
        return cls(
            id=theme.id,
            name=theme.name,
            description=theme.description,
            level=0,
            affected_files=list(theme.affected_files),
            code_snippets=list(theme.code_snippets),
            confidence=theme.confidence,
            business_impact=theme.business_impact,
            context=theme.context,
            source_themes=[theme.id],
            consolidation_method=ConsolidationMethod.SINGLE,
            last_analysis=theme.timestamp,
        )


class SubThemeStub(MindmapBaseModel):
    """Proposed child of a theme being expanded"""
    name: str
    description: str = ""
    business_context: str = ""
    files: List[str] = Field(default_factory=list)
    rationale: str = ""


class ExpansionDecision(MindmapBaseModel):
    """Outcome of asking whether a theme should be decomposed"""
    should_expand: bool
    is_atomic: bool
    reasoning: str = ""
    sub_themes: Optional[List[SubThemeStub]] = None
    stop_reason: Optional[StopReason] = None


def flatten_hierarchy(themes: Iterable[ConsolidatedTheme]) -> List[ConsolidatedTheme]:
    """Flatten a forest into a depth-first list of nodes"""
    flat: List[ConsolidatedTheme] = []
    for theme in themes:
        flat.extend(theme.iter_tree())
    return flat


def relevel(theme: ConsolidatedTheme, level: int, parent_id: Optional[str]) -> ConsolidatedTheme:
    """Copy a subtree so its root sits at `level` under `parent_id`, children following"""
    children = [relevel(child, level + 1, theme.id) for child in theme.child_themes]
    return theme.model_copy(update={"level": level, "parent_id": parent_id, "child_themes": children})


def union_preserving_order(*groups: Iterable[str]) -> List[str]:
    """Union string lists keeping first-seen order"""
    seen = {}
    for group in groups:
        for value in group:
            seen.setdefault(value, None)
    return list(seen)


ConsolidatedTheme.model_rebuild()

__all__ = [
    "MindmapBaseModel", "ConsolidationMethod", "StopReason", "Theme", "ConsolidatedTheme",
    "SubThemeStub", "ExpansionDecision", "generate_id", "flatten_hierarchy", "relevel",
    "union_preserving_order",
]
