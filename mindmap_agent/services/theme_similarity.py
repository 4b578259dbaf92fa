"""
Theme similarity and consolidation
Scores every theme pair, forms greedy merge groups above the merge threshold,
folds each group into one consolidated theme and buckets the result by
business domain into a two-level hierarchy
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..batch import BatchProcessor, BatchRequestType
from ..cache import SimilarityCache, SimilarityScore, similarity_cache_key
from ..config import MindmapConfig
from ..errors import AuthenticationError, MindmapError
from ..llm.json_extractor import extract_model, log_extraction_failure
from ..models import (
    BatchSimilarityResult,
    ConsolidatedTheme,
    ConsolidationMethod,
    SimilarityResponse,
    Theme,
    generate_id,
    relevel,
    union_preserving_order,
)
from ..prompts import MindmapPrompts as prompts, theme_payload
from ..utils import ConcurrencyContext, ConcurrencyManager
from .classifier import ThemeClassifier

logger = logging.getLogger(__name__)

PREFILTER_NAME_THRESHOLD = 0.1
NO_MERGE_DAMPING = 0.3
MAX_PARENT_SNIPPETS = 10

ThemePair = Tuple[ConsolidatedTheme, ConsolidatedTheme]


@dataclass
class SimilarityMetrics:
    """Counters describing how pair scores were obtained"""
    pairs_analyzed: int = 0
    prefilter_rejections: int = 0
    cache_hits: int = 0
    ai_calls: int = 0
    batch_requests: int = 0
    batch_fallbacks: int = 0
    parse_failures: int = 0
    merges: int = 0
    processing_time: float = 0.0


def combined_score(should_merge: bool, confidence: float) -> float:
    """Confidence when a merge is recommended, a dampened inverse otherwise"""
    if should_merge:
        return confidence
    return (1 - confidence) * NO_MERGE_DAMPING


def name_similarity(first: str, second: str) -> float:
    """Jaccard similarity of lowercase whitespace-separated words"""
    words1 = set(first.lower().split())
    words2 = set(second.lower().split())
    union = words1 | words2
    return len(words1 & words2) / len(union) if union else 0.0


def file_overlap(first: Sequence[str], second: Sequence[str]) -> float:
    set1, set2 = set(first), set(second)
    union = set1 | set2
    return len(set1 & set2) / len(union) if union else 0.0


def quick_similarity_check(theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> Optional[SimilarityScore]:
    """
    Cheap pre-filter ahead of inference

    Returns:
        A "not similar" score when the pair shares no file and almost no name
        words, otherwise None meaning inference is needed
    """
    if file_overlap(theme1.affected_files, theme2.affected_files) > 0:
        return None
    names = name_similarity(theme1.name, theme2.name)
    if names >= PREFILTER_NAME_THRESHOLD:
        return None
    return SimilarityScore(
        score=0.0,
        should_merge=False,
        confidence=1.0 - names,
        reasoning="Very different names and no file overlap",
        source="prefilter"
    )


def pair_batch_size(theme_count: int) -> int:
    """Pairs submitted per batch round, scaled by how many themes are compared"""
    if theme_count <= 10:
        return max(1, theme_count * (theme_count - 1) // 2)
    if theme_count <= 50:
        return 25
    if theme_count <= 200:
        return 50
    return 75


def form_merge_groups(
    theme_ids: Sequence[str],
    score_of: Callable[[str, str], float],
    threshold: float,
    max_group_size: Optional[int] = None
) -> List[List[str]]:
    """
    Greedy merge groups in iteration order

    Each not-yet-grouped theme seeds a group and absorbs every later
    not-yet-grouped theme scoring at least ``threshold`` against it. A theme
    joins whichever group reaches it first, so non-transitive scores can give
    different groupings for different input orders.
    """
    grouped = set()
    groups: List[List[str]] = []

    for index, seed in enumerate(theme_ids):
        if seed in grouped:
            continue
        group = [seed]
        grouped.add(seed)

        for other in theme_ids[index + 1:]:
            if max_group_size is not None and len(group) >= max_group_size:
                break
            if other in grouped:
                continue
            if score_of(seed, other) >= threshold:
                group.append(other)
                grouped.add(other)

        groups.append(group)

    return groups


def create_parent_theme(domain: str, children: Sequence[ConsolidatedTheme]) -> ConsolidatedTheme:
    """Synthetic domain node owning ``children`` one level below it"""
    parent_id = generate_id("parent")
    snippets = [snippet for child in children for snippet in child.code_snippets]
    return ConsolidatedTheme(
        id=parent_id,
        name=domain,
        description=(
            f"Consolidated theme for {len(children)} related changes: "
            f"{', '.join(child.name for child in children)}"
        ),
        level=0,
        child_themes=[relevel(child, 1, parent_id) for child in children],
        affected_files=union_preserving_order(*(child.affected_files for child in children)),
        code_snippets=snippets[:MAX_PARENT_SNIPPETS],
        confidence=sum(child.confidence for child in children) / len(children),
        business_impact=f"Umbrella theme covering {len(children)} related changes in {domain.lower()}",
        context="\n".join(child.context for child in children if child.context),
        source_themes=union_preserving_order(*(child.source_themes for child in children)),
        consolidation_method=ConsolidationMethod.HIERARCHY
    )


class ThemeSimilarityService:
    """Consolidates flat themes into a domain-grouped hierarchy"""

    def __init__(
        self,
        inference,
        classifier: ThemeClassifier,
        config: Optional[MindmapConfig] = None,
        similarity_cache: Optional[SimilarityCache] = None,
        batch_processor: Optional[BatchProcessor] = None,
        concurrency: Optional[ConcurrencyManager] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the similarity service

        Args:
            inference: Shared InferenceClient
            classifier: Domain and naming collaborator
            config: Pipeline configuration
            similarity_cache: Pair score cache, a private one when omitted
            batch_processor: Folds pair checks into batched calls when given
            concurrency: Pool for individual pair checks
            clock: Time source for processing-time metrics
        """
        self.inference = inference
        self.classifier = classifier
        self.config = config or MindmapConfig()
        self.cache = similarity_cache if similarity_cache is not None else SimilarityCache()
        self.batch_processor = batch_processor
        self.concurrency = concurrency or ConcurrencyManager()
        self._clock = clock
        self._pending: Dict[str, asyncio.Future] = {}
        self.metrics = SimilarityMetrics()

    async def consolidate_themes(self, themes: Sequence[Theme]) -> List[ConsolidatedTheme]:
        """
        Merge similar flat themes and group the result by business domain

        Args:
            themes: Flat input themes

        Returns:
            List[ConsolidatedTheme]: Root nodes of a hierarchy at most two levels deep
        """
        if not themes:
            return []

        start_time = self._clock()
        logger.info(f"Consolidating {len(themes)} themes")

        nodes = [ConsolidatedTheme.from_theme(theme) for theme in themes]
        scores = await self.calculate_pairwise_similarities(nodes)

        groups = form_merge_groups(
            [node.id for node in nodes],
            lambda first, second: scores[similarity_cache_key(first, second)].score,
            self.config.similarity_threshold,
            self.config.max_themes_per_group
        )
        logger.info(f"Formed {len(groups)} merge groups from {len(nodes)} themes")

        consolidated = await self._create_consolidated_themes(groups, nodes)
        hierarchy = await self.build_domain_hierarchy(consolidated)

        self.metrics.processing_time += self._clock() - start_time
        logger.info(
            f"Consolidation complete: {len(themes)} themes -> {len(hierarchy)} root themes "
            f"({self.metrics.ai_calls} AI calls, {self.metrics.prefilter_rejections} pre-filtered, "
            f"{self.metrics.cache_hits} cache hits)"
        )
        return hierarchy

    async def calculate_pairwise_similarities(self, themes: Sequence[ConsolidatedTheme]) -> Dict[str, SimilarityScore]:
        """
        Score every unordered theme pair

        Returns:
            Scores keyed by the symmetric pair key
        """
        scores: Dict[str, SimilarityScore] = {}
        needs_inference: List[ThemePair] = []

        for theme1, theme2 in itertools.combinations(themes, 2):
            self.metrics.pairs_analyzed += 1
            key = similarity_cache_key(theme1.id, theme2.id)
            resolved = self._resolve_without_inference(theme1, theme2)
            if resolved is not None:
                scores[key] = resolved
            else:
                needs_inference.append((theme1, theme2))

        if needs_inference:
            logger.debug(f"{len(needs_inference)} of {self.metrics.pairs_analyzed} pairs need inference")

        chunk_size = pair_batch_size(len(themes))
        for start in range(0, len(needs_inference), chunk_size):
            chunk = needs_inference[start:start + chunk_size]
            if self.batch_processor is not None:
                chunk_scores = await self._score_batch(chunk)
            else:
                chunk_scores = await self._score_individually(chunk)
            for (theme1, theme2), score in zip(chunk, chunk_scores):
                scores[similarity_cache_key(theme1.id, theme2.id)] = score

        return scores

    def _resolve_without_inference(self, theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> Optional[SimilarityScore]:
        cached = self.cache.get(theme1.id, theme2.id)
        if cached is not None:
            self.metrics.cache_hits += 1
            return cached

        prefiltered = quick_similarity_check(theme1, theme2)
        if prefiltered is not None:
            self.metrics.prefilter_rejections += 1
            self._store(theme1, theme2, prefiltered)
            return prefiltered
        return None

    def _store(self, theme1: ConsolidatedTheme, theme2: ConsolidatedTheme, score: SimilarityScore) -> None:
        self.cache.set(theme1.id, theme2.id, score, files=[*theme1.affected_files, *theme2.affected_files])

    async def calculate_similarity(self, theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> SimilarityScore:
        """
        Score one pair: cache, pre-filter, then a single inference call

        Concurrent requests for the same pair share one computation.
        """
        resolved = self._resolve_without_inference(theme1, theme2)
        if resolved is not None:
            return resolved

        key = similarity_cache_key(theme1.id, theme2.id)
        pending = self._pending.get(key)
        if pending is not None:
            return await pending

        task = asyncio.ensure_future(self._ai_similarity(theme1, theme2))
        self._pending[key] = task
        try:
            return await task
        finally:
            self._pending.pop(key, None)

    async def _ai_similarity(self, theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> SimilarityScore:
        self.metrics.ai_calls += 1
        try:
            response = await self.inference.call(prompts.similarity_prompt(theme1, theme2), context="theme_similarity")
        except AuthenticationError:
            raise
        except MindmapError as e:
            logger.warning(f"Similarity check failed for '{theme1.name}' vs '{theme2.name}': {e}")
            return self._conservative_score(str(e))

        extraction = extract_model(response, SimilarityResponse)
        if not extraction.success:
            self.metrics.parse_failures += 1
            log_extraction_failure(extraction, f"Similarity '{theme1.name}' vs '{theme2.name}'")
            return self._conservative_score("Unparseable similarity response")

        parsed: SimilarityResponse = extraction.data
        score = SimilarityScore(
            score=combined_score(parsed.should_merge, parsed.confidence),
            should_merge=parsed.should_merge,
            confidence=parsed.confidence,
            reasoning=parsed.reasoning
        )
        self._store(theme1, theme2, score)
        return score

    @staticmethod
    def _conservative_score(reason: str) -> SimilarityScore:
        return SimilarityScore(score=0.0, should_merge=False, confidence=0.0, reasoning=reason, source="fallback")

    async def _score_individually(self, pairs: Sequence[ThemePair]) -> List[SimilarityScore]:
        results = await self.concurrency.process_concurrently_with_limit(
            pairs,
            lambda pair: self.calculate_similarity(*pair),
            context=ConcurrencyContext.AI_BATCH,
            max_retries=0
        )
        return [
            result if isinstance(result, SimilarityScore) else self._conservative_score(str(result.error))
            for result in results
        ]

    async def _score_batch(self, pairs: Sequence[ThemePair]) -> List[SimilarityScore]:
        """Submit pairs through the batch processor, falling back per pair on any miss"""
        try:
            futures = [
                self.batch_processor.submit(
                    BatchRequestType.SIMILARITY_CHECK,
                    {"theme1": theme_payload(theme1), "theme2": theme_payload(theme2)}
                )
                for theme1, theme2 in pairs
            ]
        except MindmapError as e:
            logger.warning(f"Batch similarity unavailable, scoring {len(pairs)} pairs individually: {e}")
            self.metrics.batch_fallbacks += len(pairs)
            return await self._score_individually(pairs)

        self.metrics.batch_requests += 1
        await self.batch_processor.flush()
        outcomes = await asyncio.gather(*futures, return_exceptions=True)

        scores: List[Optional[SimilarityScore]] = []
        fallback_pairs: List[ThemePair] = []
        for pair, outcome in zip(pairs, outcomes):
            if isinstance(outcome, AuthenticationError):
                raise outcome
            if isinstance(outcome, BatchSimilarityResult):
                score = SimilarityScore(
                    score=combined_score(outcome.should_merge, outcome.confidence),
                    should_merge=outcome.should_merge,
                    confidence=outcome.confidence,
                    reasoning=outcome.reasoning,
                    source="batch"
                )
                self._store(pair[0], pair[1], score)
                scores.append(score)
            else:
                logger.debug(f"Batch result missing for '{pair[0].name}' vs '{pair[1].name}': {outcome}")
                scores.append(None)
                fallback_pairs.append(pair)

        if fallback_pairs:
            self.metrics.batch_fallbacks += len(fallback_pairs)
            logger.warning(f"Falling back to individual similarity for {len(fallback_pairs)} pairs")
            fallback_scores = iter(await self._score_individually(fallback_pairs))
            scores = [score if score is not None else next(fallback_scores) for score in scores]

        return scores

    async def _create_consolidated_themes(
        self,
        groups: Sequence[Sequence[str]],
        nodes: Sequence[ConsolidatedTheme]
    ) -> List[ConsolidatedTheme]:
        by_id = {node.id: node for node in nodes}

        async def build(group: Sequence[str]) -> ConsolidatedTheme:
            members = [by_id[theme_id] for theme_id in group]
            if len(members) == 1:
                return members[0]
            return await self.merge_themes(members)

        return list(await asyncio.gather(*(build(group) for group in groups)))

    async def merge_themes(self, themes: Sequence[ConsolidatedTheme]) -> ConsolidatedTheme:
        """
        Fold several themes into one node with an AI-generated name

        Args:
            themes: At least two themes judged to describe the same change

        Returns:
            ConsolidatedTheme: Merged node whose provenance is the union of the members'
        """
        naming = await self.classifier.generate_name(themes)
        self.metrics.merges += 1
        logger.debug(f"Merged {len(themes)} themes into '{naming.name}'")

        return ConsolidatedTheme(
            id=generate_id("merged"),
            name=naming.name,
            description=naming.description,
            level=0,
            affected_files=union_preserving_order(*(theme.affected_files for theme in themes)),
            code_snippets=[snippet for theme in themes for snippet in theme.code_snippets],
            confidence=sum(theme.confidence for theme in themes) / len(themes),
            business_impact="; ".join(theme.business_impact or theme.description for theme in themes),
            context="\n".join(theme.context for theme in themes if theme.context),
            source_themes=union_preserving_order(*(theme.source_themes for theme in themes)),
            consolidation_method=ConsolidationMethod.MERGE
        )

    async def build_domain_hierarchy(self, themes: Sequence[ConsolidatedTheme]) -> List[ConsolidatedTheme]:
        """
        Group themes under synthetic domain parents

        Domains with at least ``min_themes_for_parent`` members get a parent
        node; smaller domains keep their members as roots.
        """
        classifications = await asyncio.gather(*(self.classifier.classify_domain(theme) for theme in themes))

        domains: Dict[str, List[ConsolidatedTheme]] = {}
        for theme, classification in zip(themes, classifications):
            domains.setdefault(classification.domain, []).append(theme)
            logger.debug(f"Theme '{theme.name}' -> domain '{classification.domain}'")

        result: List[ConsolidatedTheme] = []
        for domain, members in domains.items():
            if len(members) >= self.config.min_themes_for_parent:
                logger.info(f"Creating parent theme '{domain}' for {len(members)} themes")
                result.append(create_parent_theme(domain, members))
            else:
                result.extend(members)

        return result

    def invalidate_by_files(self, modified_files: Sequence[str]) -> int:
        return self.cache.invalidate_by_files(modified_files)

    def get_effectiveness_metrics(self) -> Dict[str, float]:
        """How many pairs were settled by cache, pre-filter, batch or single calls"""
        analyzed = self.metrics.pairs_analyzed
        return {
            "pairs_analyzed": analyzed,
            "prefilter_rejections": self.metrics.prefilter_rejections,
            "prefilter_rate": self.metrics.prefilter_rejections / analyzed if analyzed else 0.0,
            "cache_hits": self.metrics.cache_hits,
            "cache_hit_rate": self.metrics.cache_hits / analyzed if analyzed else 0.0,
            "ai_calls": self.metrics.ai_calls,
            "batch_requests": self.metrics.batch_requests,
            "batch_fallbacks": self.metrics.batch_fallbacks,
            "parse_failures": self.metrics.parse_failures,
            "merges": self.metrics.merges,
            "processing_time": self.metrics.processing_time,
        }

    def reset_metrics(self) -> None:
        self.metrics = SimilarityMetrics()


__all__ = [
    "ThemeSimilarityService",
    "SimilarityMetrics",
    "combined_score",
    "create_parent_theme",
    "file_overlap",
    "form_merge_groups",
    "name_similarity",
    "pair_batch_size",
    "quick_similarity_check",
]
