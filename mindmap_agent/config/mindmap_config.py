"""
Pipeline configuration for Mindmap Agent
Every tunable of the consolidation, expansion and cleanup stages lives here
"""

import os
import logging
from typing import Optional
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

class MindmapConfig(BaseModel):
    """Configuration for the theme consolidation and expansion pipeline"""

    # Consolidation
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0, description="Minimum pairwise score to merge two themes")
    max_themes_per_group: Optional[int] = Field(default=None, ge=1, description="Optional upper bound on themes folded into one merge group")
    min_themes_for_parent: int = Field(default=2, ge=2, description="Domain members needed before a parent node is created")

    # Expansion
    max_hierarchy_depth: int = Field(default=20, ge=1, description="Safety valve against runaway recursion")
    atomic_line_threshold: int = Field(default=5, ge=1, description="Single-file nodes under this many snippet lines skip inference")
    max_atomic_lines: int = Field(default=15, ge=1, description="Merged children above this size are re-evaluated")
    max_atomic_files: int = Field(default=1, ge=1, description="Merged children touching more files are re-evaluated")
    skip_sibling_dedup: bool = Field(default=False, description="Disable sibling deduplication after expansion")
    min_themes_for_batch_dedup: int = Field(default=5, ge=2)
    min_themes_for_second_pass: int = Field(default=10, ge=2)
    expansion_concurrency: Optional[int] = Field(default=None, ge=1, description="Child fan-out limit, dynamic when unset")

    # Cross-level cleanup
    cross_level_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    max_level_difference: int = Field(default=1, ge=0)

    # Inference queue
    inference_max_concurrency: int = Field(default=5, ge=1)
    inference_min_spacing_ms: int = Field(default=200, ge=0)

    @model_validator(mode="after")
    def _check_atomic_limits(self) -> "MindmapConfig":
        if self.atomic_line_threshold > self.max_atomic_lines:
            raise ValueError("atomic_line_threshold cannot exceed max_atomic_lines")
        return self

def _env_value(name: str):
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value

def get_mindmap_config() -> MindmapConfig:
    """
    Build pipeline configuration from MINDMAP_* environment overrides

    Returns:
        MindmapConfig: Validated pipeline settings
    """
    overrides = {}
    for field_name, field_info in MindmapConfig.model_fields.items():
        raw = _env_value(f"MINDMAP_{field_name.upper()}")
        if raw is None:
            continue
        if field_info.annotation is bool:
            overrides[field_name] = raw.lower() in ("1", "true", "yes", "on")
        else:
            overrides[field_name] = raw

    if overrides:
        logger.info(f"Applying pipeline overrides from environment: {sorted(overrides)}")

    return MindmapConfig(**overrides)

__all__ = ["MindmapConfig", "get_mindmap_config"]
