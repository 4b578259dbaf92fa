import pytest

from mindmap_agent.errors import (
    AuthenticationError,
    InferenceError,
    RateLimitError,
    is_authentication_error,
    is_rate_limit_error,
)


class ProviderError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize("message", [
    "Error code: 401 - Unauthorized",
    "HTTP 403: forbidden",
    "Invalid API key provided",
    "authentication failed",
])
def test_authentication_messages(message):
    assert is_authentication_error(message)


@pytest.mark.parametrize("message", [
    "Error code: 429",
    "Rate limit reached for gpt-4o-mini",
    "Too Many Requests",
])
def test_rate_limit_messages(message):
    assert is_rate_limit_error(message)


@pytest.mark.parametrize("message", [
    "Server error, request id req_4013a9f2",
    "Context is 4290 tokens over the limit of 4000",
    "upstream timeout after 14030 ms",
    "connection reset (trace 94291)",
])
def test_digits_inside_other_numbers_are_not_status_codes(message):
    assert not is_authentication_error(message)
    assert not is_rate_limit_error(message)


def test_provider_status_code_wins_over_message_digits():
    assert is_authentication_error(ProviderError("request req_1 failed", 401))
    assert is_rate_limit_error(ProviderError("slow down", 429))
    assert not is_authentication_error(ProviderError("Error code: 500 - see doc 401", 500))


def test_typed_errors_are_classified_by_type():
    assert is_authentication_error(AuthenticationError("no key"))
    assert is_rate_limit_error(RateLimitError("backend busy"))
    assert not is_rate_limit_error(InferenceError("Inference call failed: timeout"))
