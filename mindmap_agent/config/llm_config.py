"""
LLM Configuration for Mindmap Agent
Both supported providers are reached through an OpenAI-compatible chat API
"""

import os
import logging
from typing import Optional
from pydantic import BaseModel, Field
from enum import Enum

logger = logging.getLogger(__name__)

class LLMProvider(str, Enum):
    """Supported LLM providers"""
    OPENAI = "openai"
    GROK = "grok"

class LLMConfig(BaseModel):
    """LLM Configuration model"""
    model_config = {"protected_namespaces": ()}

    provider: LLMProvider = Field(default=LLMProvider.OPENAI)
    llm_model: str = Field(default="gpt-4o-mini")
    api_key: Optional[str] = Field(default=None)
    base_url: Optional[str] = Field(default=None)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4000, gt=0)
    max_retries: int = Field(default=0, ge=0)
    request_timeout: int = Field(default=120, gt=0)

def get_llm_config() -> LLMConfig:
    """
    Get LLM configuration from environment variables
    Auto-detects provider based on API key format if not explicitly set

    Returns:
        LLMConfig: Configured LLM settings
    """
    grok_api_key = os.getenv("GROK_API_KEY")
    openai_api_key = os.getenv("OPENAI_API_KEY")

    provider_env = os.getenv("MINDMAP_LLM_PROVIDER", "").lower()

    if provider_env == "grok":
        provider = LLMProvider.GROK
    elif provider_env == "openai":
        provider = LLMProvider.OPENAI
    elif grok_api_key and grok_api_key.startswith("xai-") and not openai_api_key:
        provider = LLMProvider.GROK
        logger.info("Auto-detected Grok provider based on xAI API key format")
    else:
        provider = LLMProvider.OPENAI

    # Retries are owned by the inference queue, so the SDK default is zero
    common = dict(
        temperature=float(os.getenv("MINDMAP_LLM_TEMPERATURE", "0.1")),
        max_tokens=int(os.getenv("MINDMAP_LLM_MAX_TOKENS", "4000")),
        max_retries=int(os.getenv("MINDMAP_LLM_MAX_RETRIES", "0")),
        request_timeout=int(os.getenv("MINDMAP_LLM_TIMEOUT", "120")),
    )

    if provider == LLMProvider.GROK:
        return LLMConfig(
            provider=provider,
            llm_model=os.getenv("MINDMAP_LLM_MODEL", "grok-3-mini"),
            api_key=grok_api_key,
            base_url=os.getenv("GROK_BASE_URL") or "https://api.x.ai/v1",
            **common
        )

    return LLMConfig(
        provider=provider,
        llm_model=os.getenv("MINDMAP_LLM_MODEL", "gpt-4o-mini"),
        api_key=openai_api_key,
        base_url=os.getenv("OPENAI_BASE_URL") or None,
        **common
    )

def setup_langsmith() -> None:
    """
    Configure LangSmith tracing when credentials are available

    Environment variables:
    - LANGCHAIN_API_KEY: LangSmith API key
    - LANGCHAIN_PROJECT: Project name (optional, defaults to 'mindmap-agent')
    """
    if os.getenv("LANGCHAIN_API_KEY"):
        os.environ["LANGCHAIN_TRACING_V2"] = "true"
        if not os.getenv("LANGCHAIN_PROJECT"):
            os.environ["LANGCHAIN_PROJECT"] = "mindmap-agent"
        logger.info(f"LangSmith enabled for project: {os.getenv('LANGCHAIN_PROJECT')}")
    else:
        logger.debug("LangSmith not configured - set LANGCHAIN_API_KEY to enable tracing")

def setup_logging(level: str = "INFO") -> None:
    """
    Setup logging configuration for the application

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if level.upper() == "DEBUG":
        logging.getLogger("mindmap_agent").setLevel(logging.DEBUG)
        logging.getLogger("langchain").setLevel(logging.INFO)
    else:
        logging.getLogger("langchain").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

__all__ = ["LLMProvider", "LLMConfig", "get_llm_config", "setup_langsmith", "setup_logging"]
