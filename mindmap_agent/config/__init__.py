"""
Configuration package for Mindmap Agent
"""

from .llm_config import (
    LLMProvider,
    LLMConfig,
    get_llm_config,
    setup_langsmith,
    setup_logging
)
from .mindmap_config import MindmapConfig, get_mindmap_config

__all__ = [
    "LLMProvider",
    "LLMConfig",
    "get_llm_config",
    "setup_langsmith",
    "setup_logging",
    "MindmapConfig",
    "get_mindmap_config"
]
