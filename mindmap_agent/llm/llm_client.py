"""
LLM Client for Mindmap Agent
Text-in/text-out wrapper around an OpenAI-compatible chat model using LangChain
"""

import logging
from typing import Any, Dict, Optional
from dataclasses import dataclass

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import SystemMessage, HumanMessage
from langchain_openai import ChatOpenAI

from ..config.llm_config import LLMConfig, LLMProvider, get_llm_config, setup_langsmith
from ..errors import AuthenticationError, InferenceError, RateLimitError, is_authentication_error, is_rate_limit_error

logger = logging.getLogger(__name__)

@dataclass
class LLMResponse:
    """Standardized LLM response"""
    content: str
    metadata: Dict[str, Any]
    model_used: str
    tokens_used: Optional[int] = None

class MindmapLLMClient:
    """
    Chat model client used as the inference backend
    Errors are translated into the Mindmap error taxonomy so the queue can classify them
    """

    def __init__(self, config: Optional[LLMConfig] = None, llm: Optional[BaseChatModel] = None):
        """
        Initialize LLM client

        Args:
            config: Optional LLM configuration, read from the environment when omitted
            llm: Optional pre-built chat model (used instead of building ChatOpenAI)
        """
        setup_langsmith()

        self.config = config or get_llm_config()
        self.llm = llm or self._initialize_llm()

        logger.info(f"Initialized LLM client with provider: {self.config.provider.value}, model: {self.config.llm_model}")

    def _initialize_llm(self) -> ChatOpenAI:
        """
        Build the chat model for the configured provider

        Returns:
            ChatOpenAI: Configured chat model
        """
        if not self.config.api_key:
            key_name = "GROK_API_KEY" if self.config.provider == LLMProvider.GROK else "OPENAI_API_KEY"
            raise AuthenticationError(f"{key_name} environment variable is required for {self.config.provider.value}")

        base_url = self.config.base_url
        if self.config.provider == LLMProvider.GROK:
            base_url = base_url or "https://api.x.ai/v1"

        return ChatOpenAI(
            model=self.config.llm_model,
            api_key=self.config.api_key,
            base_url=base_url,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            max_retries=self.config.max_retries,
            timeout=self.config.request_timeout
        )

    async def generate_response(self, prompt: str, system_message: Optional[str] = None) -> LLMResponse:
        """
        Generate a text response

        Args:
            prompt: User prompt
            system_message: Optional system message

        Returns:
            LLMResponse: Standardized response object
        """
        messages = []
        if system_message:
            messages.append(SystemMessage(content=system_message))
        messages.append(HumanMessage(content=prompt))

        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            message = str(e)
            if is_authentication_error(e):
                raise AuthenticationError(message) from e
            if is_rate_limit_error(e):
                raise RateLimitError(message) from e
            logger.error(f"Error generating LLM response: {message}")
            raise InferenceError(message) from e

        metadata = getattr(response, "response_metadata", None) or {}
        return LLMResponse(
            content=response.content if isinstance(response.content, str) else str(response.content),
            metadata=metadata,
            model_used=self.config.llm_model,
            tokens_used=metadata.get("token_usage", {}).get("total_tokens")
        )

    async def complete(self, prompt: str) -> str:
        """Inference backend entry point: prompt text in, raw text out"""
        response = await self.generate_response(prompt)
        return response.content

def create_llm_client(config: Optional[LLMConfig] = None) -> MindmapLLMClient:
    """
    Factory function to create LLM client

    Args:
        config: Optional LLM configuration

    Returns:
        MindmapLLMClient: Configured LLM client
    """
    return MindmapLLMClient(config)

__all__ = ["LLMResponse", "MindmapLLMClient", "create_llm_client"]
