"""
Error taxonomy for the Mindmap Agent
Transient inference failures are retried, malformed responses never raise,
authentication failures always escape to the top-level caller
"""

import re
from typing import Iterable, Optional

RATE_LIMIT_PATTERNS = (
    "rate_limit_error",
    "rate limit",
    "too many requests",
    "quota exceeded",
    "throttled",
)
RATE_LIMIT_STATUS_CODES = (429,)

AUTHENTICATION_PATTERNS = (
    "authentication",
    "invalid api key",
    "invalid_api_key",
    "permission denied",
)
AUTHENTICATION_STATUS_CODES = (401, 403)


class MindmapError(Exception):
    """Base class for all Mindmap Agent errors"""


class InferenceError(MindmapError):
    """External inference call failed"""

    def __init__(self, message: str, context: str = "general"):
        super().__init__(message)
        self.context = context


class RateLimitError(InferenceError):
    """External inference call was rejected by a rate limit"""


class AuthenticationError(MindmapError):
    """Permanent credential or permission failure, never retried"""


class CircuitOpenError(MindmapError):
    """A circuit breaker is open and the call was not attempted"""

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class BatchResultNotFoundError(MindmapError):
    """A batched response carried no sub-result for this caller"""

    def __init__(self, message: str = "Result not found in batch response"):
        super().__init__(message)


class HierarchyIntegrityError(MindmapError):
    """Raised on request when hierarchy validation found violations"""

    def __init__(self, issues: Iterable[str]):
        self.issues = list(issues)
        super().__init__("; ".join(self.issues) or "Hierarchy integrity violation")


def _status_code(error) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(getattr(error, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def _matches(error, patterns: Iterable[str], status_codes: Iterable[int]) -> bool:
    status = _status_code(error)
    if status in status_codes:
        return True
    lowered = str(error or "").lower()
    if any(pattern in lowered for pattern in patterns):
        return True
    if status is not None:
        return False
    # bare codes count only as whole numbers, never inside ids or token counts
    return any(re.search(rf"\b{code}\b", lowered) for code in status_codes)


def is_rate_limit_error(error) -> bool:
    """Check whether an error (or error message) looks like a rate limit"""
    if isinstance(error, RateLimitError):
        return True
    return _matches(error, RATE_LIMIT_PATTERNS, RATE_LIMIT_STATUS_CODES)


def is_authentication_error(error) -> bool:
    """Check whether an error (or error message) is a permanent auth failure"""
    if isinstance(error, AuthenticationError):
        return True
    return _matches(error, AUTHENTICATION_PATTERNS, AUTHENTICATION_STATUS_CODES)


__all__ = [
    "MindmapError",
    "InferenceError",
    "RateLimitError",
    "AuthenticationError",
    "CircuitOpenError",
    "BatchResultNotFoundError",
    "HierarchyIntegrityError",
    "is_rate_limit_error",
    "is_authentication_error",
    "RATE_LIMIT_PATTERNS",
    "AUTHENTICATION_PATTERNS",
]
