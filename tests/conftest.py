"""Shared test fixtures for mindmap_agent."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Tuple, Union

import pytest

from mindmap_agent.config import MindmapConfig
from mindmap_agent.models import ConsolidatedTheme, Theme
from mindmap_agent.prompts import MindmapPrompts
from mindmap_agent.utils import ConcurrencyManager, SystemMetrics

TASKS = (
    MindmapPrompts.TASK_SIMILARITY,
    MindmapPrompts.TASK_BATCH_SIMILARITY,
    MindmapPrompts.TASK_NAMING,
    MindmapPrompts.TASK_DOMAIN,
    MindmapPrompts.TASK_EXPANSION_DECISION,
    MindmapPrompts.TASK_SUB_THEMES,
    MindmapPrompts.TASK_DUPLICATES,
    MindmapPrompts.TASK_SECOND_PASS,
    MindmapPrompts.TASK_CROSS_LEVEL,
)

Handler = Union[str, Dict[str, Any], Callable[[str], Any]]


def prompt_section(prompt: str, start: str, end: str = "\n\n") -> Any:
    """Parse the JSON block that follows `start` in a prompt"""
    return json.loads(prompt.split(start, 1)[1].split(end, 1)[0])


def batch_pairs(prompt: str) -> List[Dict[str, Any]]:
    return prompt_section(prompt, "Pairs:\n", "\n\nAnswer with:")


def evaluated_theme(prompt: str) -> Dict[str, Any]:
    return prompt_section(prompt, "Theme to evaluate:\n", "\n\nDecide")


def batch_similarity_answer(should_merge: Callable[[Dict[str, Any], Dict[str, Any]], bool]) -> Callable[[str], Dict]:
    """Answer every pair of a batch prompt with a predicate over the two theme payloads"""
    def answer(prompt: str) -> Dict[str, Any]:
        return {
            "results": [
                {
                    "pairId": pair["pairId"],
                    "shouldMerge": should_merge(pair["theme1"], pair["theme2"]),
                    "confidence": 0.9,
                    "reasoning": "scripted",
                }
                for pair in batch_pairs(prompt)
            ]
        }
    return answer


class ScriptedBackend:
    """Inference backend answering by the prompt's task header"""

    DEFAULTS: Dict[str, Handler] = {
        MindmapPrompts.TASK_SIMILARITY: {"shouldMerge": False, "confidence": 0.9, "reasoning": "distinct"},
        MindmapPrompts.TASK_BATCH_SIMILARITY: batch_similarity_answer(lambda first, second: False),
        MindmapPrompts.TASK_NAMING: {"name": "Merged Theme", "description": "Merged description"},
        MindmapPrompts.TASK_DOMAIN: {"domain": "General Changes", "confidence": 0.8},
        MindmapPrompts.TASK_EXPANSION_DECISION: {"shouldExpand": False, "isAtomic": True, "reasoning": "atomic"},
        MindmapPrompts.TASK_SUB_THEMES: {"subThemes": []},
        MindmapPrompts.TASK_DUPLICATES: {"groups": []},
        MindmapPrompts.TASK_SECOND_PASS: {"duplicateGroups": []},
        MindmapPrompts.TASK_CROSS_LEVEL: {
            "similarityScore": 0.1,
            "relationshipType": "distinct",
            "action": "keep_separate",
            "confidence": 0.9,
        },
    }

    def __init__(self, **overrides: Handler):
        self.handlers: Dict[str, Handler] = dict(self.DEFAULTS)
        self.handlers.update(overrides)
        self.calls: List[Tuple[str, str]] = []

    def on(self, task: str, handler: Handler) -> "ScriptedBackend":
        self.handlers[task] = handler
        return self

    def calls_for(self, task: str) -> List[str]:
        return [prompt for called_task, prompt in self.calls if called_task == task]

    async def __call__(self, prompt: str) -> str:
        task = prompt.split("\n", 1)[0].strip()
        if task not in self.handlers:
            raise AssertionError(f"Unexpected prompt header: {task!r}")
        self.calls.append((task, prompt))
        await asyncio.sleep(0)

        handler = self.handlers[task]
        if callable(handler):
            handler = handler(prompt)
        if isinstance(handler, str):
            return handler
        return json.dumps(handler)


class DirectInference:
    """InferenceClient stand-in calling the backend without queueing"""

    def __init__(self, backend: ScriptedBackend):
        self.backend = backend
        self.contexts: List[str] = []

    async def call(self, prompt: str, context: str = "general", operation=None) -> str:
        self.contexts.append(context)
        return await self.backend(prompt)


class FakeClock:
    """Manually advanced time source whose sleep moves time forward"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def steady_metrics() -> SystemMetrics:
    return SystemMetrics(cpu_count=4, memory_usage_ratio=0.3, process_rss_mb=100.0, is_under_memory_pressure=False)


def make_theme(theme_id: str, name: str, files=None, snippets=None, **kwargs) -> Theme:
    return Theme(
        id=theme_id,
        name=name,
        description=kwargs.pop("description", f"{name} change"),
        affected_files=list(files or []),
        code_snippets=list(snippets or []),
        confidence=kwargs.pop("confidence", 0.8),
        business_impact=kwargs.pop("business_impact", f"Improves {name.lower()}"),
        **kwargs
    )


def make_node(theme_id: str, name: str, files=None, lines: int = 0, **kwargs) -> ConsolidatedTheme:
    """Consolidated node whose single snippet has `lines` non-blank lines"""
    snippets = kwargs.pop("code_snippets", None)
    if snippets is None:
        snippets = ["\n".join(f"line {index}" for index in range(lines))] if lines else []
    return ConsolidatedTheme(
        id=theme_id,
        name=name,
        description=kwargs.pop("description", f"{name} change"),
        affected_files=list(files or []),
        code_snippets=snippets,
        source_themes=kwargs.pop("source_themes", [theme_id]),
        **kwargs
    )


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def inference(backend: ScriptedBackend) -> DirectInference:
    return DirectInference(backend)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def concurrency(clock: FakeClock) -> ConcurrencyManager:
    return ConcurrencyManager(sleep=clock.sleep, metrics_provider=steady_metrics, enable_jitter=False)


@pytest.fixture
def config() -> MindmapConfig:
    return MindmapConfig(inference_min_spacing_ms=0)
