"""
Mindmap Builder Workflow for Mindmap Agent
LangGraph workflow that consolidates flat themes, expands them into a deep
hierarchy and cleans up cross-branch duplication
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from langgraph.graph import StateGraph, END
from langgraph.checkpoint.memory import MemorySaver

from mindmap_agent.batch import AdaptiveBatchingController, BatchProcessor
from mindmap_agent.cache import GenericCache, SemanticCache, SimilarityCache
from mindmap_agent.config import MindmapConfig, get_mindmap_config
from mindmap_agent.errors import AuthenticationError
from mindmap_agent.llm import InferenceClient, create_llm_client
from mindmap_agent.models import ConsolidatedTheme, Theme, flatten_hierarchy
from mindmap_agent.services import (
    ExpansionDecisionService,
    HierarchicalSimilarityService,
    ThemeClassifier,
    ThemeExpansionService,
    ThemeSimilarityService,
    validate_hierarchy_integrity,
)
from mindmap_agent.utils import ConcurrencyManager

logger = logging.getLogger(__name__)

InferenceBackend = Callable[[str], Awaitable[str]]

@dataclass
class MindmapState:
    """State for the Mindmap Builder workflow"""
    themes: List[Theme] = field(default_factory=list)

    # Stage outputs, each stage starting from the previous one's hierarchy
    consolidated: List[ConsolidatedTheme] = field(default_factory=list)
    hierarchy: List[ConsolidatedTheme] = field(default_factory=list)
    validation: Dict[str, Any] = field(default_factory=dict)

    # Run options
    skip_expansion: bool = False
    skip_hierarchy_dedup: bool = False

    # Workflow metadata
    current_step: str = "initializing"
    errors: List[str] = field(default_factory=list)
    processing_stats: Dict[str, Any] = field(default_factory=dict)

class MindmapWorkflow:
    """
    LangGraph workflow turning flat themes into a mindmap hierarchy.

    Steps:
    1. Consolidate themes - merge similar themes and group them by business domain
    2. Expand hierarchy - recursively decompose themes until leaves are atomic
    3. Deduplicate hierarchy - merge duplicates living in different branches
    4. Validate hierarchy - report orphans, cycles and level mismatches

    Every stage falls back to the previous stage's hierarchy on failure; only
    authentication errors abort the run.
    """

    def __init__(self,
                 backend: Optional[InferenceBackend] = None,
                 config: Optional[MindmapConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 concurrency: Optional[ConcurrencyManager] = None,
                 batch_auto_start: bool = True):
        """
        Initialize Mindmap Builder workflow

        Args:
            backend: Coroutine function sending one prompt to the model, the LangChain client when omitted
            config: Pipeline configuration, read from MINDMAP_* environment variables when omitted
            clock: Time source shared by caches, batching and stats
            sleep: Sleep coroutine used by the inference queue and retry backoff
            concurrency: Shared concurrency manager
            batch_auto_start: Whether the batch processor runs its own flush ticker
        """
        self.config = config or get_mindmap_config()
        if backend is None:
            backend = create_llm_client().complete

        self.inference = InferenceClient(
            backend,
            max_concurrency=self.config.inference_max_concurrency,
            min_request_interval=self.config.inference_min_spacing_ms / 1000,
            clock=clock,
            sleep=sleep
        )
        self.concurrency = concurrency or ConcurrencyManager(sleep=sleep)
        self.batch_processor = BatchProcessor(
            self.inference,
            adaptive_controller=AdaptiveBatchingController(clock=clock),
            clock=clock,
            auto_start=batch_auto_start
        )

        self.classifier = ThemeClassifier(self.inference, SemanticCache(clock=clock))
        self.similarity_service = ThemeSimilarityService(
            self.inference,
            self.classifier,
            config=self.config,
            similarity_cache=SimilarityCache(clock=clock),
            batch_processor=self.batch_processor,
            concurrency=self.concurrency,
            clock=clock
        )
        self.decision_service = ExpansionDecisionService(
            self.inference,
            config=self.config,
            cache=GenericCache(clock=clock)
        )
        self.expansion_service = ThemeExpansionService(
            self.inference,
            self.decision_service,
            self.classifier,
            config=self.config,
            concurrency=self.concurrency,
            clock=clock
        )
        self.hierarchical_service = HierarchicalSimilarityService(
            self.inference,
            config=self.config,
            concurrency=self.concurrency,
            cache=GenericCache(default_ttl=30 * 60, clock=clock)
        )

        self.workflow = self._build_workflow()
        self.memory = MemorySaver()
        self._runs = 0

        logger.info("Initialized Mindmap Builder Workflow")
        logger.info(f"Similarity threshold: {self.config.similarity_threshold}")
        logger.info(f"Max hierarchy depth: {self.config.max_hierarchy_depth}")

    def _build_workflow(self) -> StateGraph:
        """Build the LangGraph workflow with conditional logic"""
        workflow = StateGraph(MindmapState)

        workflow.add_node("consolidate_themes", self._consolidate_themes)
        workflow.add_node("expand_hierarchy", self._expand_hierarchy)
        workflow.add_node("deduplicate_hierarchy", self._deduplicate_hierarchy)
        workflow.add_node("validate_hierarchy", self._validate_hierarchy)

        workflow.set_entry_point("consolidate_themes")
        workflow.add_conditional_edges("consolidate_themes", self._route_after_consolidation, {
            "expand_hierarchy": "expand_hierarchy",
            "end": END
        })
        workflow.add_edge("expand_hierarchy", "deduplicate_hierarchy")
        workflow.add_edge("deduplicate_hierarchy", "validate_hierarchy")
        workflow.add_edge("validate_hierarchy", END)

        return workflow

    async def execute(self,
                      themes: List[Theme],
                      skip_expansion: bool = False,
                      skip_hierarchy_dedup: bool = False) -> Dict[str, Any]:
        """
        Execute the Mindmap Builder workflow

        Args:
            themes: Flat input themes
            skip_expansion: Stop after consolidation
            skip_hierarchy_dedup: Skip the cross-branch cleanup

        Returns:
            Dict[str, Any]: Final workflow state values
        """
        initial_state = MindmapState(
            themes=list(themes),
            skip_expansion=skip_expansion,
            skip_hierarchy_dedup=skip_hierarchy_dedup
        )

        self._runs += 1
        app = self.workflow.compile(checkpointer=self.memory)
        config = {"configurable": {"thread_id": f"mindmap_{self._runs}"}}

        final_state = await app.ainvoke(initial_state, config=config)

        errors = final_state.get("errors", [])
        if errors:
            logger.warning(f"Mindmap built with {len(errors)} degraded stages")
        logger.info(f"Mindmap Builder completed at step: {final_state.get('current_step', 'unknown')}")
        return final_state

    def _route_after_consolidation(self, state: MindmapState) -> str:
        """Route after consolidation"""
        if not state.consolidated:
            logger.info("No themes to expand. Workflow will terminate.")
            return "end"
        return "expand_hierarchy"

    async def _consolidate_themes(self, state: MindmapState) -> Dict[str, Any]:
        """
        Step 1: Consolidate flat themes into a two-level hierarchy

        Falls back to one root node per input theme when consolidation fails.
        """
        logger.info(f"Step 1: Consolidating {len(state.themes)} themes")
        errors = list(state.errors)
        stats = dict(state.processing_stats)

        try:
            consolidated = await self.similarity_service.consolidate_themes(state.themes)
        except AuthenticationError:
            raise
        except Exception as e:
            error_msg = f"Step 1: Error consolidating themes: {str(e)}"
            logger.error(error_msg)
            errors.append(error_msg)
            consolidated = [ConsolidatedTheme.from_theme(theme) for theme in state.themes]

        stats.update({
            "input_themes": len(state.themes),
            "consolidated_root_themes": len(consolidated),
            "similarity": self.similarity_service.get_effectiveness_metrics(),
        })
        logger.info(f"Step 1: {len(state.themes)} themes -> {len(consolidated)} root themes")

        return {
            "consolidated": consolidated,
            "hierarchy": consolidated,
            "errors": errors,
            "processing_stats": stats,
            "current_step": "consolidated",
        }

    async def _expand_hierarchy(self, state: MindmapState) -> Dict[str, Any]:
        """Step 2: Expand every root theme until its leaves are atomic"""
        if state.skip_expansion:
            logger.info("Step 2: Expansion skipped")
            return {"current_step": "expansion_skipped"}

        logger.info(f"Step 2: Expanding {len(state.hierarchy)} root themes")
        errors = list(state.errors)
        stats = dict(state.processing_stats)
        hierarchy = state.hierarchy

        try:
            hierarchy = await self.expansion_service.expand_all_to_atomic(state.hierarchy)
        except AuthenticationError:
            raise
        except Exception as e:
            error_msg = f"Step 2: Error expanding hierarchy: {str(e)}"
            logger.error(error_msg)
            errors.append(error_msg)

        stats["expansion"] = self.expansion_service.get_expansion_stats()
        stats["total_nodes"] = len(flatten_hierarchy(hierarchy))

        return {
            "hierarchy": hierarchy,
            "errors": errors,
            "processing_stats": stats,
            "current_step": "expanded",
        }

    async def _deduplicate_hierarchy(self, state: MindmapState) -> Dict[str, Any]:
        """Step 3: Merge duplicates across branches and adjacent levels"""
        if state.skip_hierarchy_dedup:
            logger.info("Step 3: Cross-level deduplication skipped")
            return {"current_step": "deduplication_skipped"}

        logger.info("Step 3: Deduplicating across hierarchy levels")
        errors = list(state.errors)
        stats = dict(state.processing_stats)
        hierarchy = state.hierarchy

        try:
            result = await self.hierarchical_service.deduplicate_hierarchy(state.hierarchy)
            hierarchy = result.themes
            stats["cross_level_merges"] = len(result.merges)
        except AuthenticationError:
            raise
        except Exception as e:
            error_msg = f"Step 3: Error deduplicating hierarchy: {str(e)}"
            logger.error(error_msg)
            errors.append(error_msg)

        stats["total_nodes"] = len(flatten_hierarchy(hierarchy))
        return {
            "hierarchy": hierarchy,
            "errors": errors,
            "processing_stats": stats,
            "current_step": "deduplicated",
        }

    async def _validate_hierarchy(self, state: MindmapState) -> Dict[str, Any]:
        """Step 4: Report integrity violations without repairing them"""
        validation = validate_hierarchy_integrity(state.hierarchy)
        if validation.is_valid:
            logger.info("Step 4: Hierarchy is valid")
        else:
            for issue in validation.issues:
                logger.warning(f"Step 4: {issue}")

        stats = dict(state.processing_stats)
        stats["inference"] = self.inference.get_metrics()
        return {
            "validation": dataclasses.asdict(validation),
            "processing_stats": stats,
            "current_step": "completed",
        }

    async def close(self) -> None:
        """Stop the batch ticker and the inference dispatcher"""
        await self.batch_processor.close()
        await self.inference.close()

def create_mindmap_workflow(backend: Optional[InferenceBackend] = None,
                            config: Optional[MindmapConfig] = None) -> MindmapWorkflow:
    """
    Factory function to create Mindmap Builder workflow

    Args:
        backend: Optional inference backend
        config: Optional pipeline configuration

    Returns:
        MindmapWorkflow: Configured workflow
    """
    return MindmapWorkflow(backend=backend, config=config)

__all__ = ["MindmapWorkflow", "MindmapState", "create_mindmap_workflow"]
