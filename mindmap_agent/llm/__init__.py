"""
LLM package for Mindmap Agent
"""

from .llm_client import (
    MindmapLLMClient,
    LLMResponse,
    create_llm_client
)
from .inference_client import InferenceClient, QueueStatus
from .json_extractor import (
    ExtractionResult,
    extract_json,
    extract_and_validate,
    extract_model,
    validate_json_schema
)

__all__ = [
    "MindmapLLMClient",
    "LLMResponse",
    "create_llm_client",
    "InferenceClient",
    "QueueStatus",
    "ExtractionResult",
    "extract_json",
    "extract_and_validate",
    "extract_model",
    "validate_json_schema"
]
