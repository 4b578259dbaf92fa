"""
Domain classification and merged theme naming
Inference-backed with semantic caching, falling back to deterministic keyword
rules and first-member naming when inference or parsing fails
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ..cache import SemanticCache
from ..errors import AuthenticationError, MindmapError
from ..llm.json_extractor import extract_model, log_extraction_failure
from ..models import ConsolidatedTheme, DomainResponse, NamingResponse
from ..prompts import MindmapPrompts as prompts

logger = logging.getLogger(__name__)

DOMAIN_CACHE_CONTEXT = "domain-classification"
DEFAULT_DOMAIN = "System Enhancement"
FALLBACK_DOMAIN_CONFIDENCE = 0.3

DOMAIN_KEYWORDS: List[Tuple[Tuple[str, ...], str]] = [
    (("test", "spec"), "Quality Assurance"),
    (("config", "setting"), "System Configuration"),
    (("auth", "login", "user"), "User Management"),
    (("api", "endpoint", "service"), "API Services"),
    (("ui", "component", "interface"), "User Interface"),
    (("data", "database", "storage"), "Data Management"),
    (("error", "fix", "bug"), "Error Resolution"),
]

MIN_NAME_LENGTH = 3
MAX_NAME_LENGTH = 50
BANNED_NAME_WORDS = ("error", "failed")
_SENTENCE_PUNCTUATION = re.compile(r"[.!?;](\s|$)")


@dataclass
class DomainClassification:
    """Business domain assigned to a theme"""
    domain: str
    confidence: float
    source: str = "ai"


def keyword_domain(text: str) -> str:
    """First keyword rule matching the text, or the default domain"""
    lowered = text.lower()
    for keywords, domain in DOMAIN_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return domain
    return DEFAULT_DOMAIN


def is_valid_theme_name(name: Optional[str]) -> bool:
    """3 to 50 characters, trimmed, no banned words and nothing sentence-like"""
    if not name:
        return False
    lowered = name.lower()
    return (
        MIN_NAME_LENGTH <= len(name) <= MAX_NAME_LENGTH
        and name.strip() == name
        and not any(word in lowered for word in BANNED_NAME_WORDS)
        and not _SENTENCE_PUNCTUATION.search(name)
    )


def fallback_name(themes: Sequence[ConsolidatedTheme]) -> NamingResponse:
    """Reuse the first member's name"""
    return NamingResponse(
        name=themes[0].name,
        description=f"Consolidated: {', '.join(theme.name for theme in themes)}"
    )


class ThemeClassifier:
    """Domain and naming collaborator used by consolidation and deduplication"""

    def __init__(self, inference, semantic_cache: Optional[SemanticCache] = None):
        """
        Initialize the classifier

        Args:
            inference: Shared InferenceClient
            semantic_cache: Cache for domain results, a private one when omitted
        """
        self.inference = inference
        self.semantic_cache = semantic_cache if semantic_cache is not None else SemanticCache()

    async def classify_domain(self, theme: ConsolidatedTheme) -> DomainClassification:
        """
        Classify the business domain of a theme

        Args:
            theme: Theme to classify

        Returns:
            DomainClassification: AI result, or the keyword fallback on failure
        """
        cache_input = {
            "name": theme.name,
            "description": theme.description,
            "businessImpact": theme.business_impact,
            "affectedFiles": theme.affected_files,
        }
        cached = self.semantic_cache.get(cache_input, DOMAIN_CACHE_CONTEXT)
        if cached is not None:
            return cached

        try:
            response = await self.inference.call(
                prompts.domain_classification_prompt(theme), context="domain_classification"
            )
        except AuthenticationError:
            raise
        except MindmapError as e:
            logger.warning(f"Domain classification failed for '{theme.name}', using keyword fallback: {e}")
            return self._fallback_domain(theme)

        extraction = extract_model(response, DomainResponse)
        if not extraction.success or not extraction.data.domain.strip():
            log_extraction_failure(extraction, f"Domain classification for '{theme.name}'")
            return self._fallback_domain(theme)

        parsed: DomainResponse = extraction.data
        result = DomainClassification(domain=parsed.domain.strip(), confidence=parsed.confidence)
        self.semantic_cache.set(cache_input, result, DOMAIN_CACHE_CONTEXT)
        logger.debug(f"Classified '{theme.name}' as {result.domain} ({result.confidence:.2f})")
        return result

    def _fallback_domain(self, theme: ConsolidatedTheme) -> DomainClassification:
        text = " ".join([theme.name, theme.description, theme.business_impact, *theme.affected_files])
        return DomainClassification(
            domain=keyword_domain(text),
            confidence=FALLBACK_DOMAIN_CONFIDENCE,
            source="keyword"
        )

    async def generate_name(self, themes: Sequence[ConsolidatedTheme]) -> NamingResponse:
        """
        Generate a unified name and description for themes being merged

        Args:
            themes: Non-empty list of themes being merged

        Returns:
            NamingResponse: AI suggestion, or the first member's name when invalid
        """
        if not themes:
            raise ValueError("generate_name requires at least one theme")

        try:
            response = await self.inference.call(
                prompts.merged_theme_naming_prompt(themes), context="theme_naming"
            )
        except AuthenticationError:
            raise
        except MindmapError as e:
            logger.warning(f"Theme naming failed, using first theme's name: {e}")
            return fallback_name(themes)

        extraction = extract_model(response, NamingResponse)
        if not extraction.success:
            log_extraction_failure(extraction, "Merged theme naming")
            return fallback_name(themes)

        naming: NamingResponse = extraction.data
        if not is_valid_theme_name(naming.name):
            logger.warning(f"Generated name invalid, using fallback: '{naming.name}'")
            return fallback_name(themes)

        if not naming.description:
            naming = NamingResponse(name=naming.name, description=fallback_name(themes).description)
        logger.debug(f"Generated merged theme name: '{naming.name}'")
        return naming


__all__ = [
    "ThemeClassifier",
    "DomainClassification",
    "DOMAIN_KEYWORDS",
    "DEFAULT_DOMAIN",
    "fallback_name",
    "is_valid_theme_name",
    "keyword_domain",
]
