"""
Expansion decisions
Decides per (theme, depth) whether a theme should be decomposed, short-circuiting
trivially small single-file themes before any inference call
"""

import logging
from typing import Optional, Sequence

from ..cache import GenericCache, generate_cache_key
from ..config import MindmapConfig
from ..errors import AuthenticationError, MindmapError
from ..llm.json_extractor import extract_model, log_extraction_failure
from ..models import ConsolidatedTheme, ExpansionDecision, ExpansionDecisionResponse, StopReason
from ..prompts import MindmapPrompts as prompts

logger = logging.getLogger(__name__)

DECISION_CACHE_TTL_SECONDS = 60 * 60


def content_hash(theme: ConsolidatedTheme) -> str:
    return generate_cache_key({
        "name": theme.name,
        "description": theme.description,
        "affectedFiles": theme.affected_files,
        "codeSnippets": theme.code_snippets,
    })


class ExpansionDecisionService:
    """Asks the inference collaborator whether a theme is atomic or should expand"""

    def __init__(self, inference, config: Optional[MindmapConfig] = None, cache: Optional[GenericCache] = None):
        self.inference = inference
        self.config = config or MindmapConfig()
        self.cache = cache if cache is not None else GenericCache(default_ttl=DECISION_CACHE_TTL_SECONDS)
        self.ai_calls = 0

    def is_obviously_atomic(self, theme: ConsolidatedTheme) -> bool:
        """Single file with fewer snippet lines than the guardrail threshold"""
        return len(theme.affected_files) == 1 and theme.line_count() < self.config.atomic_line_threshold

    @staticmethod
    def decision_cache_key(theme: ConsolidatedTheme, depth: int) -> str:
        return f"{theme.id}:{depth}:{content_hash(theme)}"

    async def should_expand(
        self,
        theme: ConsolidatedTheme,
        depth: int,
        parent: Optional[ConsolidatedTheme] = None,
        siblings: Sequence[ConsolidatedTheme] = ()
    ) -> ExpansionDecision:
        """
        Decide whether a theme should be expanded at a given depth

        Args:
            theme: Theme under evaluation
            depth: Current depth in the hierarchy
            parent: Parent theme, for context
            siblings: Other children of the parent, to avoid overlapping suggestions

        Returns:
            ExpansionDecision: Never raises except for authentication failures;
            inference or parse failures yield a "do not expand" decision
        """
        cache_key = self.decision_cache_key(theme, depth)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        if self.is_obviously_atomic(theme):
            decision = ExpansionDecision(
                should_expand=False,
                is_atomic=True,
                reasoning=f"Single file with {theme.line_count()} changed lines",
                stop_reason=StopReason.GUARDRAIL
            )
            self.cache.set(cache_key, decision)
            return decision

        self.ai_calls += 1
        try:
            response = await self.inference.call(
                prompts.expansion_decision_prompt(theme, depth, parent, siblings),
                context="expansion_decision"
            )
        except AuthenticationError:
            raise
        except MindmapError as e:
            logger.warning(f"Expansion decision failed for '{theme.name}' at depth {depth}: {e}")
            return ExpansionDecision(
                should_expand=False,
                is_atomic=False,
                reasoning=f"AI analysis failed: {e}",
                stop_reason=StopReason.ERROR
            )

        extraction = extract_model(response, ExpansionDecisionResponse)
        if not extraction.success:
            log_extraction_failure(extraction, f"Expansion decision for '{theme.name}'")
            return ExpansionDecision(
                should_expand=False,
                is_atomic=False,
                reasoning="Failed to parse AI response",
                stop_reason=StopReason.ERROR
            )

        parsed: ExpansionDecisionResponse = extraction.data
        # an atomic verdict wins over a contradictory expand flag
        should_expand = parsed.should_expand and not parsed.is_atomic
        decision = ExpansionDecision(
            should_expand=should_expand,
            is_atomic=parsed.is_atomic,
            reasoning=parsed.reasoning or "No reasoning provided",
            sub_themes=parsed.sub_themes or None
        )

        logger.debug(
            f"Decision for '{theme.name}' at depth {depth}: expand={decision.should_expand}, "
            f"atomic={decision.is_atomic} ({decision.reasoning})"
        )
        self.cache.set(cache_key, decision)
        return decision

    def clear_cache(self) -> None:
        self.cache.clear()


__all__ = ["ExpansionDecisionService", "content_hash"]
