"""
Cross-branch cleanup of a finished hierarchy
Finds duplicate or overlapping nodes living in different branches or adjacent
levels, folds accepted pairs together and checks tree integrity
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..cache import GenericCache, generate_cache_key
from ..config import MindmapConfig
from ..errors import AuthenticationError, HierarchyIntegrityError, MindmapError
from ..llm.json_extractor import extract_model, log_extraction_failure
from ..models import (
    ConsolidatedTheme,
    ConsolidationMethod,
    CrossLevelResponse,
    flatten_hierarchy,
    union_preserving_order,
)
from ..prompts import MindmapPrompts as prompts
from ..utils import ConcurrencyContext, ConcurrencyManager, FailedItem

logger = logging.getLogger(__name__)

CROSS_LEVEL_CACHE_TTL_SECONDS = 30 * 60
MERGEABLE_RELATIONSHIPS = ("duplicate", "overlap")


@dataclass
class CrossLevelMatch:
    """Relationship verdict for one candidate pair"""
    theme1_id: str
    theme2_id: str
    similarity_score: float
    relationship_type: str
    action: str
    confidence: float
    reasoning: str
    should_merge: bool = False
    primary_id: Optional[str] = None
    secondary_id: Optional[str] = None


@dataclass
class HierarchyValidationResult:
    """Integrity report; violations are listed, never repaired"""
    is_valid: bool
    orphans: List[str] = field(default_factory=list)
    cycles: List[str] = field(default_factory=list)
    level_mismatches: List[str] = field(default_factory=list)
    duplicate_ids: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)

    def raise_for_issues(self) -> None:
        if not self.is_valid:
            raise HierarchyIntegrityError(self.issues)


@dataclass
class HierarchyDeduplicationResult:
    themes: List[ConsolidatedTheme]
    merges: List[CrossLevelMatch]
    validation: HierarchyValidationResult


def is_candidate_pair(theme1: ConsolidatedTheme, theme2: ConsolidatedTheme, max_level_difference: int) -> bool:
    """Skip already-deduplicated siblings, direct parent/child pairs and distant levels"""
    if theme1.id == theme2.id:
        return False
    if theme1.level == theme2.level and theme1.parent_id == theme2.parent_id:
        return False
    if theme1.parent_id == theme2.id or theme2.parent_id == theme1.id:
        return False
    return abs(theme1.level - theme2.level) <= max_level_difference


def ancestor_ids(nodes: Sequence[ConsolidatedTheme]) -> Dict[str, Set[str]]:
    """Ids of every ancestor per node, following parent pointers"""
    parents = {node.id: node.parent_id for node in nodes}
    ancestors: Dict[str, Set[str]] = {}
    for node in nodes:
        seen: Set[str] = set()
        current = parents.get(node.id)
        while current is not None and current not in seen:
            seen.add(current)
            current = parents.get(current)
        ancestors[node.id] = seen
    return ancestors


def provenance(themes: Sequence[ConsolidatedTheme]) -> Set[str]:
    """Every original theme id referenced anywhere in the forest"""
    return {source for node in flatten_hierarchy(themes) for source in node.source_themes}


def choose_primary(
    theme1: ConsolidatedTheme,
    theme2: ConsolidatedTheme,
    action: str
) -> Tuple[ConsolidatedTheme, ConsolidatedTheme]:
    """
    Pick which theme survives a merge

    merge_up keeps the theme higher in the tree (smaller level), anything else
    keeps the deeper one, preferring theme2 on ties.

    Returns:
        (primary, secondary)
    """
    if action == "merge_up":
        if theme1.level <= theme2.level:
            return theme1, theme2
        return theme2, theme1
    if theme1.level > theme2.level:
        return theme1, theme2
    return theme2, theme1


def _combine(first: str, second: str, separator: str) -> str:
    if not second or second in first:
        return first
    return f"{first}{separator}{second}".strip()


def absorb(primary: ConsolidatedTheme, secondary: ConsolidatedTheme) -> Dict[str, object]:
    """Field updates folding `secondary` into `primary`"""
    return {
        "description": _combine(primary.description, secondary.description, " "),
        "business_impact": _combine(primary.business_impact, secondary.business_impact, " "),
        "context": _combine(primary.context, secondary.context, "\n"),
        "affected_files": union_preserving_order(primary.affected_files, secondary.affected_files),
        "code_snippets": union_preserving_order(primary.code_snippets, secondary.code_snippets),
        "confidence": max(primary.confidence, secondary.confidence),
        "source_themes": union_preserving_order(primary.source_themes, secondary.source_themes),
        "consolidation_method": ConsolidationMethod.MERGE,
    }


def validate_hierarchy_integrity(themes: Sequence[ConsolidatedTheme]) -> HierarchyValidationResult:
    """
    Check a forest for orphans, parent-pointer cycles and level mismatches

    Args:
        themes: Root themes of the hierarchy

    Returns:
        HierarchyValidationResult: Every violation found, with readable issue lines
    """
    nodes = flatten_hierarchy(themes)
    by_id: Dict[str, ConsolidatedTheme] = {}
    result = HierarchyValidationResult(is_valid=True)

    for node in nodes:
        if node.id in by_id:
            result.duplicate_ids.append(node.id)
            result.issues.append(f"Duplicate node id '{node.id}'")
        by_id[node.id] = node

    for node in nodes:
        if node.parent_id is None:
            continue
        parent = by_id.get(node.parent_id)
        if parent is None:
            result.orphans.append(node.id)
            result.issues.append(f"Orphaned node '{node.name}' ({node.id}): parent '{node.parent_id}' not found")
        elif node.level != parent.level + 1:
            result.level_mismatches.append(node.id)
            result.issues.append(
                f"Level mismatch for '{node.name}' ({node.id}): level {node.level}, parent level {parent.level}"
            )

    reported: Set[str] = set()
    for node in nodes:
        path: List[str] = []
        on_path: Set[str] = set()
        current: Optional[ConsolidatedTheme] = node
        while current is not None and current.id not in reported:
            if current.id in on_path:
                cycle = path[path.index(current.id):]
                reported.update(cycle)
                result.cycles.append(current.id)
                result.issues.append(f"Cycle detected: {' -> '.join(cycle + [current.id])}")
                break
            path.append(current.id)
            on_path.add(current.id)
            current = by_id.get(current.parent_id) if current.parent_id else None

    result.is_valid = not result.issues
    if not result.is_valid:
        logger.warning(f"Hierarchy validation found {len(result.issues)} issues")
    return result


class HierarchicalSimilarityService:
    """Cross-level duplicate detection over a complete hierarchy"""

    def __init__(
        self,
        inference,
        config: Optional[MindmapConfig] = None,
        concurrency: Optional[ConcurrencyManager] = None,
        cache: Optional[GenericCache] = None
    ):
        self.inference = inference
        self.config = config or MindmapConfig()
        self.concurrency = concurrency or ConcurrencyManager()
        self.cache = cache if cache is not None else GenericCache(default_ttl=CROSS_LEVEL_CACHE_TTL_SECONDS)

    def candidate_pairs(
        self,
        themes: Sequence[ConsolidatedTheme]
    ) -> List[Tuple[ConsolidatedTheme, ConsolidatedTheme]]:
        nodes = flatten_hierarchy(themes)
        ancestors = ancestor_ids(nodes)
        return [
            (nodes[i], nodes[j])
            for i in range(len(nodes))
            for j in range(i + 1, len(nodes))
            if is_candidate_pair(nodes[i], nodes[j], self.config.max_level_difference)
            and nodes[i].id not in ancestors[nodes[j].id]
            and nodes[j].id not in ancestors[nodes[i].id]
        ]

    async def analyze_cross_level_similarity(self, themes: Sequence[ConsolidatedTheme]) -> List[CrossLevelMatch]:
        """
        Classify every candidate pair across branches and levels

        Args:
            themes: Root themes of the hierarchy

        Returns:
            List[CrossLevelMatch]: One verdict per candidate pair, merge proposals flagged
        """
        pairs = self.candidate_pairs(themes)
        if not pairs:
            return []

        logger.info(f"Analyzing {len(pairs)} cross-level theme pairs")
        results = await self.concurrency.process_concurrently_with_limit(
            pairs,
            lambda pair: self.compare_themes(pair[0], pair[1]),
            context=ConcurrencyContext.AI_BATCH
        )

        matches = []
        for (theme1, theme2), result in zip(pairs, results):
            if isinstance(result, FailedItem):
                logger.warning(f"Cross-level comparison failed for '{theme1.name}' / '{theme2.name}': {result.error}")
                continue
            matches.append(result)

        proposals = sum(1 for match in matches if match.should_merge)
        logger.info(f"Cross-level analysis complete: {proposals} merge proposals from {len(matches)} pairs")
        return matches

    async def compare_themes(self, theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> CrossLevelMatch:
        cache_key = self._cache_key(theme1, theme2)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return self._to_match(theme1, theme2, cached)

        try:
            response = await self.inference.call(
                prompts.cross_level_prompt(theme1, theme2), context="cross_level_similarity"
            )
        except AuthenticationError:
            raise
        except MindmapError as e:
            logger.warning(f"Cross-level inference failed for '{theme1.name}' / '{theme2.name}': {e}")
            return self._to_match(theme1, theme2, CrossLevelResponse(reasoning="Analysis failed"))

        extraction = extract_model(response, CrossLevelResponse)
        if not extraction.success:
            log_extraction_failure(extraction, "Cross-level similarity")
            return self._to_match(theme1, theme2, CrossLevelResponse(reasoning="Analysis failed"))

        self.cache.set(cache_key, extraction.data)
        return self._to_match(theme1, theme2, extraction.data)

    @staticmethod
    def _cache_key(theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> str:
        first, second = sorted([theme1, theme2], key=lambda theme: theme.id)
        return generate_cache_key({
            "pair": [first.id, second.id],
            "levels": [first.level, second.level],
            "names": [first.name, second.name],
            "files": [first.affected_files, second.affected_files],
        })

    def _to_match(
        self,
        theme1: ConsolidatedTheme,
        theme2: ConsolidatedTheme,
        response: CrossLevelResponse
    ) -> CrossLevelMatch:
        should_merge = (
            response.similarity_score > self.config.cross_level_threshold
            and response.relationship_type in MERGEABLE_RELATIONSHIPS
        )
        match = CrossLevelMatch(
            theme1_id=theme1.id,
            theme2_id=theme2.id,
            similarity_score=response.similarity_score,
            relationship_type=response.relationship_type,
            action=response.action,
            confidence=response.confidence,
            reasoning=response.reasoning,
            should_merge=should_merge
        )
        if should_merge:
            primary, secondary = choose_primary(theme1, theme2, response.action)
            match.primary_id = primary.id
            match.secondary_id = secondary.id
        return match

    async def deduplicate_hierarchy(self, themes: Sequence[ConsolidatedTheme]) -> HierarchyDeduplicationResult:
        """
        Apply accepted cross-level merges to a copy of the tree

        Proposals are applied strongest first; a node takes part in at most one
        merge per run. The absorbed node disappears and its children move under
        the surviving node.

        Args:
            themes: Root themes of the hierarchy

        Returns:
            HierarchyDeduplicationResult: New roots, applied merges and the re-run validation
        """
        matches = await self.analyze_cross_level_similarity(themes)
        proposals = sorted((m for m in matches if m.should_merge), key=lambda m: m.similarity_score, reverse=True)

        nodes = flatten_hierarchy(themes)
        by_id = {node.id: node for node in nodes}
        ancestors = ancestor_ids(nodes)
        touched: Set[str] = set()
        applied: List[CrossLevelMatch] = []
        updates: Dict[str, Dict[str, object]] = {}
        adopted: Dict[str, List[ConsolidatedTheme]] = {}
        absorbed: Set[str] = set()
        primaries: Set[str] = set()

        for match in proposals:
            if match.primary_id in touched or match.secondary_id in touched:
                continue
            # a survivor must stay reachable: never inside a subtree that is being absorbed
            if ancestors[match.primary_id] & absorbed:
                logger.debug(f"Skipping merge into '{match.primary_id}': it sits under an absorbed theme")
                continue
            if any(match.secondary_id in ancestors[primary_id] for primary_id in primaries):
                logger.debug(f"Skipping merge of '{match.secondary_id}': its subtree holds a surviving theme")
                continue
            primary, secondary = by_id[match.primary_id], by_id[match.secondary_id]
            touched.update([primary.id, secondary.id])
            absorbed.add(secondary.id)
            primaries.add(primary.id)
            updates[primary.id] = absorb(primary, secondary)
            adopted[primary.id] = list(secondary.child_themes)
            applied.append(match)
            logger.info(
                f"Merging '{secondary.name}' (level {secondary.level}) into '{primary.name}' "
                f"(level {primary.level}): {match.relationship_type}, score {match.similarity_score:.2f}"
            )

        rebuilt = self._rebuild(themes, absorbed, updates, adopted) if applied else list(themes)

        lost = provenance(themes) - provenance(rebuilt)
        if lost:
            logger.error(f"Cross-level merges would drop source themes {sorted(lost)}, keeping the original hierarchy")
            rebuilt, applied = list(themes), []

        validation = validate_hierarchy_integrity(rebuilt)
        return HierarchyDeduplicationResult(themes=rebuilt, merges=applied, validation=validation)

    def _rebuild(
        self,
        nodes: Sequence[ConsolidatedTheme],
        absorbed: Set[str],
        updates: Dict[str, Dict[str, object]],
        adopted: Dict[str, List[ConsolidatedTheme]],
        level: Optional[int] = None,
        parent_id: Optional[str] = None
    ) -> List[ConsolidatedTheme]:
        rebuilt = []
        for node in nodes:
            if node.id in absorbed:
                continue
            node_level = node.level if level is None else level
            children = list(node.child_themes) + adopted.get(node.id, [])
            rebuilt.append(node.model_copy(update={
                **updates.get(node.id, {}),
                "level": node_level,
                "parent_id": node.parent_id if level is None else parent_id,
                "child_themes": self._rebuild(children, absorbed, updates, adopted, node_level + 1, node.id),
            }))
        return rebuilt

    def validate_hierarchy_integrity(self, themes: Sequence[ConsolidatedTheme]) -> HierarchyValidationResult:
        return validate_hierarchy_integrity(themes)


__all__ = [
    "HierarchicalSimilarityService",
    "HierarchyValidationResult",
    "HierarchyDeduplicationResult",
    "CrossLevelMatch",
    "absorb",
    "ancestor_ids",
    "provenance",
    "choose_primary",
    "is_candidate_pair",
    "validate_hierarchy_integrity",
]
