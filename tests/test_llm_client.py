import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from mindmap_agent.config import LLMConfig, LLMProvider
from mindmap_agent.errors import AuthenticationError, InferenceError, RateLimitError
from mindmap_agent.llm import MindmapLLMClient


class FailingChatModel:
    def __init__(self, message):
        self.message = message

    async def ainvoke(self, messages):
        raise RuntimeError(self.message)


@pytest.mark.asyncio
async def test_complete_returns_text():
    llm = FakeListChatModel(responses=['{"shouldMerge": true}'])
    client = MindmapLLMClient(LLMConfig(api_key="test"), llm=llm)

    assert await client.complete("TASK: SIMILARITY") == '{"shouldMerge": true}'


@pytest.mark.asyncio
@pytest.mark.parametrize("message, error", [
    ("Error code: 429 - Too Many Requests", RateLimitError),
    ("Error code: 401 - invalid api key", AuthenticationError),
    ("Connection reset by peer", InferenceError),
])
async def test_backend_errors_are_classified(message, error):
    client = MindmapLLMClient(LLMConfig(api_key="test"), llm=FailingChatModel(message))

    with pytest.raises(error):
        await client.complete("TASK: SIMILARITY")


def test_missing_api_key_is_an_authentication_error():
    with pytest.raises(AuthenticationError, match="GROK_API_KEY"):
        MindmapLLMClient(LLMConfig(provider=LLMProvider.GROK, api_key=None))
