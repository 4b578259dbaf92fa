"""
Recursive theme expansion
Walks each theme depth-first, asking whether it should be decomposed, building
children from suggested sub-themes, deduplicating siblings and re-checking
merged siblings that outgrew the atomic size limits
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..config import MindmapConfig
from ..errors import AuthenticationError, MindmapError
from ..llm.json_extractor import extract_model, log_extraction_failure
from ..models import (
    ConsolidatedTheme,
    ConsolidationMethod,
    DuplicateGroup,
    DuplicateGroupsResponse,
    SecondPassResponse,
    StopReason,
    SubThemeStub,
    SubThemesResponse,
    generate_id,
    relevel,
    union_preserving_order,
)
from ..prompts import MindmapPrompts as prompts
from ..utils import ConcurrencyContext, ConcurrencyManager, FailedItem
from .classifier import ThemeClassifier
from .expansion_decision import ExpansionDecisionService

logger = logging.getLogger(__name__)

SUB_THEME_CONFIDENCE = 0.8


@dataclass
class StopRecord:
    """Why expansion stopped at one node"""
    theme_id: str
    theme_name: str
    depth: int
    reason: StopReason
    details: str
    file_count: int
    line_count: int


@dataclass
class ExpansionStats:
    nodes_evaluated: int = 0
    nodes_expanded: int = 0
    atomic_identified: int = 0
    guardrail_hits: int = 0
    max_depth_stops: int = 0
    errors: int = 0
    duplicates_merged: int = 0
    re_evaluations: int = 0
    max_depth_reached: int = 0
    processing_time: float = 0.0
    stop_records: List[StopRecord] = field(default_factory=list)


def dedup_batch_size(theme_count: int) -> int:
    """Siblings per duplicate-detection call, scaled by sibling count"""
    if theme_count < 20:
        return 4
    if theme_count < 50:
        return 6
    if theme_count < 100:
        return 8
    return 10


def groups_from_indices(
    themes: Sequence[ConsolidatedTheme],
    duplicate_groups: Sequence[DuplicateGroup]
) -> List[List[ConsolidatedTheme]]:
    """
    Resolve 1-based index groups against a theme list

    Out-of-range and already-claimed indices are ignored. Themes not named by
    any group come back as singleton groups after the named ones.
    """
    claimed: Set[int] = set()
    groups: List[List[ConsolidatedTheme]] = []

    for duplicate_group in duplicate_groups:
        members = []
        for index in duplicate_group.theme_indices:
            position = index - 1
            if 0 <= position < len(themes) and position not in claimed:
                members.append(themes[position])
                claimed.add(position)
        if members:
            groups.append(members)

    for position, theme in enumerate(themes):
        if position not in claimed:
            groups.append([theme])
    return groups


def create_sub_theme(stub: SubThemeStub, parent: ConsolidatedTheme) -> ConsolidatedTheme:
    """
    Build a child node from a suggested stub

    The child keeps only the stub files the parent actually touched, falling
    back to the parent's first file, and only the parent snippets that mention
    one of its files.
    """
    valid_files = union_preserving_order(f for f in stub.files if f in parent.affected_files)
    files = valid_files or parent.affected_files[:1]
    snippets = [snippet for snippet in parent.code_snippets if any(f in snippet for f in files)]
    context = f"{parent.context}\n\nSub-theme: {stub.description}" if parent.context else f"Sub-theme: {stub.description}"

    return ConsolidatedTheme(
        id=generate_id("sub"),
        name=stub.name,
        description=stub.description,
        level=parent.level + 1,
        parent_id=parent.id,
        affected_files=files,
        code_snippets=snippets,
        confidence=SUB_THEME_CONFIDENCE,
        business_impact=stub.business_context or stub.rationale or stub.description,
        context=context,
        source_themes=list(parent.source_themes),
        consolidation_method=ConsolidationMethod.EXPANSION
    )


class ThemeExpansionService:
    """Expands consolidated themes into deeper hierarchies until every leaf is atomic"""

    def __init__(
        self,
        inference,
        decision_service: ExpansionDecisionService,
        classifier: ThemeClassifier,
        config: Optional[MindmapConfig] = None,
        concurrency: Optional[ConcurrencyManager] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the expansion service

        Args:
            inference: Shared InferenceClient
            decision_service: Expand-or-stop collaborator
            classifier: Naming collaborator for merged siblings
            config: Pipeline configuration
            concurrency: Pool for child fan-out and dedup batches
            clock: Time source for processing-time stats
        """
        self.inference = inference
        self.decision_service = decision_service
        self.classifier = classifier
        self.config = config or MindmapConfig()
        self.concurrency = concurrency or ConcurrencyManager()
        self._clock = clock
        self.stats = ExpansionStats()

    async def expand_all_to_atomic(self, themes: Sequence[ConsolidatedTheme]) -> List[ConsolidatedTheme]:
        """
        Expand every root theme recursively

        Args:
            themes: Root themes, possibly already owning children

        Returns:
            List[ConsolidatedTheme]: Expanded roots in input order; a root whose
            expansion failed is returned unchanged
        """
        self.stats = ExpansionStats()
        start_time = self._clock()
        logger.info(f"Starting hierarchical expansion of {len(themes)} themes")

        results = await self.concurrency.process_concurrently_with_limit(
            list(themes),
            lambda theme: self.expand_theme_recursively(theme, theme.level),
            concurrency_limit=self.config.expansion_concurrency,
            context=ConcurrencyContext.THEME_PROCESSING,
            on_progress=self._log_progress,
            on_error=lambda error, theme, attempt: logger.warning(
                f"Retry {attempt} for theme '{theme.name}': {error}"
            )
        )
        expanded = self._unwrap(results, "root theme")

        self.stats.processing_time = self._clock() - start_time
        logger.info(
            f"Expansion complete: {self.stats.nodes_expanded}/{self.stats.nodes_evaluated} evaluated themes expanded, "
            f"max depth {self.stats.max_depth_reached}, {self.stats.atomic_identified} atomic"
        )
        return expanded

    @staticmethod
    def _log_progress(completed: int, total: int) -> None:
        logger.debug(f"Root theme expansion progress: {completed}/{total}")

    @staticmethod
    def _unwrap(results: Sequence, label: str) -> List[ConsolidatedTheme]:
        """Replace tombstones with the original, unexpanded item"""
        unwrapped = []
        for result in results:
            if isinstance(result, FailedItem):
                logger.warning(f"Failed to expand {label} '{result.item.name}', keeping it unexpanded: {result.error}")
                unwrapped.append(result.item)
            else:
                unwrapped.append(result)
        return unwrapped

    async def expand_theme_recursively(
        self,
        theme: ConsolidatedTheme,
        depth: int,
        parent: Optional[ConsolidatedTheme] = None,
        siblings: Sequence[ConsolidatedTheme] = ()
    ) -> ConsolidatedTheme:
        """
        Expand one theme and its descendants

        Atomic themes come back untouched. Themes that already own children are
        not re-decided; their children are expanded instead.
        """
        self.stats.max_depth_reached = max(self.stats.max_depth_reached, depth)

        if theme.is_atomic:
            return theme

        if theme.child_themes:
            children = await self._expand_children(theme.child_themes, depth + 1, theme)
            return theme.model_copy(update={"child_themes": children})

        if depth >= self.config.max_hierarchy_depth:
            return self._stop(theme, depth, StopReason.MAX_DEPTH, f"Reached maximum depth {self.config.max_hierarchy_depth}")

        self.stats.nodes_evaluated += 1
        decision = await self.decision_service.should_expand(theme, depth, parent, siblings)

        if not decision.should_expand:
            reason = decision.stop_reason or (StopReason.ATOMIC if decision.is_atomic else StopReason.AI_DECISION)
            is_atomic = decision.is_atomic or reason == StopReason.GUARDRAIL
            return self._stop(theme, depth, reason, decision.reasoning, is_atomic)

        stubs = decision.sub_themes or await self._request_sub_themes(theme, depth, siblings)
        if not stubs:
            return self._stop(theme, depth, StopReason.AI_DECISION, "Expansion requested but no sub-themes were produced")

        self.stats.nodes_expanded += 1
        children = [create_sub_theme(stub, theme) for stub in stubs]
        logger.info(f"Expanding '{theme.name}' at depth {depth} into {len(children)} sub-themes")

        expanded_node = theme.model_copy(update={"child_themes": children})
        expanded_children = await self._expand_children(children, depth + 1, expanded_node)

        deduplicated, merged_ids = await self.deduplicate_sub_themes(expanded_children)
        final_children = await self._re_evaluate_merged(deduplicated, merged_ids, depth + 1, expanded_node)

        return theme.model_copy(update={
            "child_themes": final_children,
            "is_atomic": False,
            "stop_reason": None,
            "expansion_reason": decision.reasoning,
        })

    def _stop(
        self,
        theme: ConsolidatedTheme,
        depth: int,
        reason: StopReason,
        details: str,
        is_atomic: bool = False
    ) -> ConsolidatedTheme:
        record = StopRecord(
            theme_id=theme.id,
            theme_name=theme.name,
            depth=depth,
            reason=reason,
            details=details,
            file_count=len(theme.affected_files),
            line_count=theme.line_count()
        )
        self.stats.stop_records.append(record)

        if reason == StopReason.GUARDRAIL:
            self.stats.guardrail_hits += 1
        elif reason == StopReason.MAX_DEPTH:
            self.stats.max_depth_stops += 1
        elif reason == StopReason.ERROR:
            self.stats.errors += 1
        if is_atomic:
            self.stats.atomic_identified += 1

        logger.debug(
            f"'{theme.name}' stops at depth {depth} ({reason.value}, {record.file_count} files, "
            f"{record.line_count} lines): {details}"
        )
        return theme.model_copy(update={"is_atomic": is_atomic, "stop_reason": reason, "expansion_reason": details})

    async def _expand_children(
        self,
        children: Sequence[ConsolidatedTheme],
        depth: int,
        parent: ConsolidatedTheme
    ) -> List[ConsolidatedTheme]:
        async def expand(child: ConsolidatedTheme) -> ConsolidatedTheme:
            siblings = [sibling for sibling in children if sibling.id != child.id]
            return await self.expand_theme_recursively(child, depth, parent, siblings)

        results = await self.concurrency.process_concurrently_with_limit(
            list(children),
            expand,
            concurrency_limit=self.config.expansion_concurrency,
            context=ConcurrencyContext.THEME_PROCESSING
        )
        return self._unwrap(results, "child theme")

    async def _request_sub_themes(
        self,
        theme: ConsolidatedTheme,
        depth: int,
        siblings: Sequence[ConsolidatedTheme]
    ) -> List[SubThemeStub]:
        """Secondary call enumerating children when the decision named none"""
        try:
            response = await self.inference.call(
                prompts.sub_theme_prompt(theme, depth, siblings), context="sub_theme_generation"
            )
        except AuthenticationError:
            raise
        except MindmapError as e:
            logger.warning(f"Sub-theme generation failed for '{theme.name}': {e}")
            return []

        extraction = extract_model(response, SubThemesResponse)
        if not extraction.success:
            log_extraction_failure(extraction, f"Sub-themes for '{theme.name}'")
            return []
        return extraction.data.sub_themes

    async def deduplicate_sub_themes(
        self,
        themes: Sequence[ConsolidatedTheme]
    ) -> Tuple[List[ConsolidatedTheme], Set[str]]:
        """
        Merge siblings that describe the same change

        Returns:
            The surviving siblings and the ids of nodes created by merging
        """
        themes = list(themes)
        if len(themes) < 2 or self.config.skip_sibling_dedup:
            return themes, set()

        if len(themes) < self.config.min_themes_for_batch_dedup:
            batches = [themes]
        else:
            size = dedup_batch_size(len(themes))
            batches = [themes[start:start + size] for start in range(0, len(themes), size)]

        results = await self.concurrency.process_concurrently_with_limit(
            batches,
            self._deduplicate_batch,
            context=ConcurrencyContext.THEME_PROCESSING
        )

        groups: List[List[ConsolidatedTheme]] = []
        for batch, result in zip(batches, results):
            if isinstance(result, FailedItem):
                logger.warning(f"Deduplication batch failed, keeping {len(batch)} themes separate: {result.error}")
                groups.extend([theme] for theme in batch)
            else:
                groups.extend(result)

        survivors, merged_ids = await self._merge_groups(groups)

        if len(survivors) >= self.config.min_themes_for_second_pass:
            logger.info(f"Running second pass deduplication on {len(survivors)} themes")
            survivors, second_pass_ids = await self._second_pass(survivors)
            merged_ids |= second_pass_ids

        self.stats.duplicates_merged += len(themes) - len(survivors)
        if len(survivors) < len(themes):
            logger.info(f"Deduplication: {len(themes)} sub-themes -> {len(survivors)}")
        return survivors, merged_ids

    async def _merge_groups(
        self,
        groups: Sequence[Sequence[ConsolidatedTheme]]
    ) -> Tuple[List[ConsolidatedTheme], Set[str]]:
        async def resolve(group: Sequence[ConsolidatedTheme]) -> ConsolidatedTheme:
            if len(group) == 1:
                return group[0]
            return await self.merge_sub_themes(group)

        survivors = list(await asyncio.gather(*(resolve(group) for group in groups)))
        merged_ids = {survivor.id for survivor, group in zip(survivors, groups) if len(group) > 1}
        return survivors, merged_ids

    async def _deduplicate_batch(self, batch: Sequence[ConsolidatedTheme]) -> List[List[ConsolidatedTheme]]:
        singletons = [[theme] for theme in batch]
        try:
            response = await self.inference.call(
                prompts.duplicate_detection_prompt(batch), context="sibling_dedup"
            )
        except AuthenticationError:
            raise
        except MindmapError as e:
            logger.warning(f"Duplicate detection failed for {len(batch)} themes: {e}")
            return singletons

        extraction = extract_model(response, DuplicateGroupsResponse)
        if not extraction.success:
            log_extraction_failure(extraction, "Duplicate detection")
            return singletons

        groups = groups_from_indices(batch, extraction.data.groups)
        merged = sum(1 for group in groups if len(group) > 1)
        logger.debug(f"Batch deduplication: {len(batch)} themes -> {len(groups)} groups ({merged} merged)")
        return groups

    async def _second_pass(self, themes: List[ConsolidatedTheme]) -> Tuple[List[ConsolidatedTheme], Set[str]]:
        """Conservative review of all first-pass survivors, catching duplicates split across batches"""
        try:
            response = await self.inference.call(
                prompts.second_pass_dedup_prompt(themes), context="sibling_dedup_second_pass"
            )
        except AuthenticationError:
            raise
        except MindmapError as e:
            logger.warning(f"Second pass deduplication failed: {e}")
            return themes, set()

        extraction = extract_model(response, SecondPassResponse)
        if not extraction.success:
            log_extraction_failure(extraction, "Second pass deduplication")
            return themes, set()

        if not extraction.data.duplicate_groups:
            return themes, set()
        return await self._merge_groups(groups_from_indices(themes, extraction.data.duplicate_groups))

    async def merge_sub_themes(self, themes: Sequence[ConsolidatedTheme]) -> ConsolidatedTheme:
        """
        Merge duplicate siblings into one node

        Files and snippets are unioned, confidence averaged, provenance unioned
        and any children of the members are re-parented under the merged node.
        """
        if len(themes) == 1:
            return themes[0]

        naming = await self.classifier.generate_name(themes)
        base = themes[0]
        merged_id = generate_id("dedup")
        children = [relevel(child, base.level + 1, merged_id) for theme in themes for child in theme.child_themes]
        is_atomic = not children and all(theme.is_atomic for theme in themes)

        logger.debug(f"Merging {len(themes)} duplicate sub-themes into '{naming.name}'")
        return base.model_copy(update={
            "id": merged_id,
            "name": naming.name,
            "description": naming.description or base.description,
            "child_themes": children,
            "affected_files": union_preserving_order(*(theme.affected_files for theme in themes)),
            "code_snippets": [snippet for theme in themes for snippet in theme.code_snippets],
            "confidence": sum(theme.confidence for theme in themes) / len(themes),
            "business_impact": "; ".join(union_preserving_order(t.business_impact for t in themes if t.business_impact)),
            "context": "\n".join(theme.context for theme in themes if theme.context),
            "source_themes": union_preserving_order(*(theme.source_themes for theme in themes)),
            "consolidation_method": ConsolidationMethod.MERGE,
            "is_atomic": is_atomic,
            "stop_reason": base.stop_reason if is_atomic else None,
            "expansion_reason": f"Merged {len(themes)} duplicate sub-themes",
        })

    def exceeds_atomic_limits(self, theme: ConsolidatedTheme) -> bool:
        return (
            theme.line_count() > self.config.max_atomic_lines
            or len(theme.affected_files) > self.config.max_atomic_files
        )

    async def _re_evaluate_merged(
        self,
        children: Sequence[ConsolidatedTheme],
        merged_ids: Set[str],
        depth: int,
        parent: ConsolidatedTheme
    ) -> List[ConsolidatedTheme]:
        """Run the expansion decision again on merged children that outgrew the atomic limits"""
        candidates: Dict[str, ConsolidatedTheme] = {
            child.id: child
            for child in children
            if child.id in merged_ids and not child.child_themes and self.exceeds_atomic_limits(child)
        }
        if not candidates:
            return list(children)

        self.stats.re_evaluations += len(candidates)
        logger.info(f"Re-evaluating {len(candidates)} merged sub-themes that exceed atomic limits")

        async def re_evaluate(child: ConsolidatedTheme) -> ConsolidatedTheme:
            siblings = [sibling for sibling in children if sibling.id != child.id]
            reset = child.model_copy(update={"is_atomic": False, "stop_reason": None})
            return await self.expand_theme_recursively(reset, depth, parent, siblings)

        results = await self.concurrency.process_concurrently_with_limit(
            list(candidates.values()),
            re_evaluate,
            concurrency_limit=self.config.expansion_concurrency,
            context=ConcurrencyContext.THEME_PROCESSING
        )
        replaced = dict(zip(candidates, self._unwrap(results, "merged theme")))
        return [replaced.get(child.id, child) for child in children]

    def get_expansion_stats(self) -> Dict[str, object]:
        """Counters plus stop-reason breakdown for auditing the final tree shape"""
        reason_counts: Dict[str, int] = {}
        for record in self.stats.stop_records:
            reason_counts[record.reason.value] = reason_counts.get(record.reason.value, 0) + 1

        oversized_atomic = [
            {"theme": r.theme_name, "files": r.file_count, "lines": r.line_count, "depth": r.depth}
            for r in self.stats.stop_records
            if r.reason == StopReason.ATOMIC
            and (r.line_count > self.config.max_atomic_lines or r.file_count > self.config.max_atomic_files)
        ]

        evaluated = self.stats.nodes_evaluated
        return {
            "nodes_evaluated": evaluated,
            "nodes_expanded": self.stats.nodes_expanded,
            "expansion_rate": self.stats.nodes_expanded / evaluated if evaluated else 0.0,
            "atomic_identified": self.stats.atomic_identified,
            "guardrail_hits": self.stats.guardrail_hits,
            "max_depth_stops": self.stats.max_depth_stops,
            "errors": self.stats.errors,
            "duplicates_merged": self.stats.duplicates_merged,
            "re_evaluations": self.stats.re_evaluations,
            "max_depth_reached": self.stats.max_depth_reached,
            "processing_time": self.stats.processing_time,
            "stop_reasons": reason_counts,
            "oversized_atomic": oversized_atomic,
        }


__all__ = [
    "ThemeExpansionService",
    "ExpansionStats",
    "StopRecord",
    "create_sub_theme",
    "dedup_batch_size",
    "groups_from_indices",
]
