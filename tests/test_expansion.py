import pytest

from mindmap_agent.config import MindmapConfig
from mindmap_agent.errors import AuthenticationError, InferenceError
from mindmap_agent.models import ConsolidationMethod, DuplicateGroup, StopReason, SubThemeStub
from mindmap_agent.prompts import MindmapPrompts
from mindmap_agent.services import ExpansionDecisionService, ThemeClassifier, ThemeExpansionService
from mindmap_agent.services.theme_expansion import create_sub_theme, dedup_batch_size, groups_from_indices

from conftest import evaluated_theme, make_node


def snippet(path, lines=10):
    return "\n".join([f"# {path}"] + [f"value_{index} = {index}" for index in range(lines)])


def decide(expansions):
    """Expand themes named in `expansions` into the given sub-themes, everything else is atomic"""
    def answer(prompt):
        theme = evaluated_theme(prompt)
        if theme["name"] not in expansions:
            return {"shouldExpand": False, "isAtomic": True, "reasoning": "single unit of change"}
        return {
            "shouldExpand": True,
            "isAtomic": False,
            "reasoning": "covers several capabilities",
            "subThemes": expansions[theme["name"]],
        }
    return answer


def stub(name, *files):
    return {"name": name, "description": f"{name} work", "files": list(files), "rationale": "distinct unit"}


def time_out(prompt):
    raise InferenceError("Inference call failed: timeout")


@pytest.fixture
def root():
    return make_node(
        "root", "Authentication", ["src/a.py", "src/b.py"],
        code_snippets=[snippet("src/a.py"), snippet("src/b.py")],
        source_themes=["t1", "t2"]
    )


def make_services(inference, config, concurrency, clock):
    decisions = ExpansionDecisionService(inference, config)
    expansion = ThemeExpansionService(inference, decisions, ThemeClassifier(inference), config, concurrency, clock)
    return decisions, expansion


class TestExpansionDecision:
    @pytest.mark.asyncio
    async def test_small_single_file_theme_hits_guardrail(self, backend, inference, config):
        service = ExpansionDecisionService(inference, config)
        theme = make_node("t", "Rename variable", ["src/a.py"], lines=3)

        decision = await service.should_expand(theme, 2)

        assert decision.should_expand is False
        assert decision.is_atomic is True
        assert decision.stop_reason == StopReason.GUARDRAIL
        assert backend.calls == []
        assert service.ai_calls == 0

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self, backend, inference, config):
        service = ExpansionDecisionService(inference, config)
        await service.should_expand(make_node("t", "Guard clause", ["src/a.py"], lines=5), 1)
        assert len(backend.calls_for(MindmapPrompts.TASK_EXPANSION_DECISION)) == 1

    @pytest.mark.asyncio
    async def test_atomic_verdict_wins_over_expand_flag(self, backend, inference, config):
        backend.on(MindmapPrompts.TASK_EXPANSION_DECISION, {"shouldExpand": True, "isAtomic": True, "reasoning": "both"})
        service = ExpansionDecisionService(inference, config)

        decision = await service.should_expand(make_node("t", "Login", ["src/a.py", "src/b.py"]), 0)

        assert decision.should_expand is False
        assert decision.is_atomic is True

    @pytest.mark.asyncio
    async def test_decisions_are_cached_per_depth(self, backend, inference, config):
        service = ExpansionDecisionService(inference, config)
        theme = make_node("t", "Login", ["src/a.py", "src/b.py"])

        await service.should_expand(theme, 1)
        await service.should_expand(theme, 1)
        await service.should_expand(theme, 2)

        assert service.ai_calls == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("handler", ["not a decision", time_out])
    async def test_failures_stop_without_expanding(self, backend, inference, config, handler):
        backend.on(MindmapPrompts.TASK_EXPANSION_DECISION, handler)
        service = ExpansionDecisionService(inference, config)

        decision = await service.should_expand(make_node("t", "Login", ["src/a.py", "src/b.py"]), 0)

        assert decision.should_expand is False
        assert decision.is_atomic is False
        assert decision.stop_reason == StopReason.ERROR


@pytest.mark.asyncio
async def test_guardrail_theme_needs_no_inference(backend, inference, config, concurrency, clock):
    _, expansion = make_services(inference, config, concurrency, clock)
    theme = make_node("t", "Rename variable", ["src/a.py"], lines=3)

    [result] = await expansion.expand_all_to_atomic([theme])

    assert result.is_atomic is True
    assert result.stop_reason == StopReason.GUARDRAIL
    assert result.child_themes == []
    assert backend.calls == []
    assert expansion.get_expansion_stats()["guardrail_hits"] == 1


@pytest.mark.asyncio
async def test_expansion_builds_consistent_tree(backend, inference, config, concurrency, clock, root):
    backend.on(MindmapPrompts.TASK_EXPANSION_DECISION, decide({
        "Authentication": [stub("Password Check", "src/a.py"), stub("Session Store", "src/b.py", "src/missing.py")],
    }))
    _, expansion = make_services(inference, config, concurrency, clock)

    [result] = await expansion.expand_all_to_atomic([root])

    assert result.id == "root"
    assert result.is_atomic is False
    assert result.expansion_reason == "covers several capabilities"
    assert [child.name for child in result.child_themes] == ["Password Check", "Session Store"]

    for child in result.child_themes:
        assert child.level == result.level + 1
        assert child.parent_id == result.id
        assert set(child.affected_files) <= set(result.affected_files)
        assert child.source_themes == ["t1", "t2"]
        assert child.consolidation_method == ConsolidationMethod.EXPANSION
        assert child.is_atomic is True
        assert child.stop_reason == StopReason.ATOMIC

    assert result.child_themes[1].affected_files == ["src/b.py"]
    assert result.child_themes[1].code_snippets == [snippet("src/b.py")]

    stats = expansion.get_expansion_stats()
    assert stats["nodes_evaluated"] == 3
    assert stats["nodes_expanded"] == 1
    assert stats["stop_reasons"] == {"atomic": 2}
    assert len(backend.calls_for(MindmapPrompts.TASK_DUPLICATES)) == 1


@pytest.mark.asyncio
async def test_expanding_twice_changes_nothing(backend, inference, config, concurrency, clock, root):
    backend.on(MindmapPrompts.TASK_EXPANSION_DECISION, decide({
        "Authentication": [stub("Password Check", "src/a.py"), stub("Session Store", "src/b.py")],
    }))
    _, expansion = make_services(inference, config, concurrency, clock)

    first = await expansion.expand_all_to_atomic([root])
    calls_after_first = len(backend.calls)
    second = await expansion.expand_all_to_atomic(first)

    assert second == first
    assert len(backend.calls) == calls_after_first


@pytest.mark.asyncio
async def test_atomic_theme_is_returned_untouched(backend, inference, config, concurrency, clock):
    _, expansion = make_services(inference, config, concurrency, clock)
    theme = make_node("t", "Big atomic change", ["src/a.py", "src/b.py"], lines=40, is_atomic=True)

    assert await expansion.expand_theme_recursively(theme, 0) is theme
    assert backend.calls == []


@pytest.mark.asyncio
async def test_sub_themes_requested_when_decision_names_none(backend, inference, config, concurrency, clock, root):
    backend.on(MindmapPrompts.TASK_EXPANSION_DECISION, decide({"Authentication": []}))
    backend.on(MindmapPrompts.TASK_SUB_THEMES, {"subThemes": [stub("Password Check", "src/a.py"), stub("Session Store", "src/b.py")]})
    _, expansion = make_services(inference, config, concurrency, clock)

    [result] = await expansion.expand_all_to_atomic([root])

    assert len(backend.calls_for(MindmapPrompts.TASK_SUB_THEMES)) == 1
    assert len(result.child_themes) == 2


@pytest.mark.asyncio
async def test_expand_without_sub_themes_stops(backend, inference, config, concurrency, clock, root):
    backend.on(MindmapPrompts.TASK_EXPANSION_DECISION, decide({"Authentication": []}))
    _, expansion = make_services(inference, config, concurrency, clock)

    [result] = await expansion.expand_all_to_atomic([root])

    assert result.child_themes == []
    assert result.stop_reason == StopReason.AI_DECISION


@pytest.mark.asyncio
async def test_max_depth_stops_without_marking_atomic(backend, inference, concurrency, clock, root):
    config = MindmapConfig(inference_min_spacing_ms=0, max_hierarchy_depth=1)
    backend.on(MindmapPrompts.TASK_EXPANSION_DECISION, decide({
        "Authentication": [stub("Password Check", "src/a.py"), stub("Session Store", "src/b.py")],
        "Password Check": [stub("Hashing", "src/a.py")],
    }))
    _, expansion = make_services(inference, config, concurrency, clock)

    [result] = await expansion.expand_all_to_atomic([root])

    for child in result.child_themes:
        assert child.stop_reason == StopReason.MAX_DEPTH
        assert child.is_atomic is False
        assert child.child_themes == []
    assert len(backend.calls_for(MindmapPrompts.TASK_EXPANSION_DECISION)) == 1
    assert expansion.get_expansion_stats()["max_depth_stops"] == 2


@pytest.mark.asyncio
async def test_duplicate_siblings_are_merged_and_re_evaluated(backend, inference, config, concurrency, clock, root):
    backend.on(MindmapPrompts.TASK_EXPANSION_DECISION, decide({
        "Authentication": [
            stub("Password Check", "src/a.py"),
            stub("Password Validation", "src/a.py"),
            stub("Session Store", "src/b.py"),
        ],
    }))
    backend.on(MindmapPrompts.TASK_DUPLICATES, {"groups": [{"themeIndices": [1, 2], "reasoning": "same check"}]})
    _, expansion = make_services(inference, config, concurrency, clock)

    [result] = await expansion.expand_all_to_atomic([root])

    merged, session = result.child_themes
    assert merged.id.startswith("dedup-")
    assert merged.name == "Merged Theme"
    assert merged.affected_files == ["src/a.py"]
    assert merged.parent_id == "root" and merged.level == 1
    assert merged.source_themes == ["t1", "t2"]
    assert session.name == "Session Store"

    # two copies of the same snippet push the merged node past the atomic line limit
    assert merged.line_count() > config.max_atomic_lines
    stats = expansion.get_expansion_stats()
    assert stats["re_evaluations"] == 1
    assert stats["duplicates_merged"] == 1
    assert merged.stop_reason == StopReason.ATOMIC


@pytest.mark.asyncio
async def test_second_pass_catches_duplicates_across_batches(backend, inference, config, concurrency, clock):
    backend.on(MindmapPrompts.TASK_SECOND_PASS, {"duplicateGroups": [{"themeIndices": [1, 10]}]})
    _, expansion = make_services(inference, config, concurrency, clock)
    siblings = [make_node(f"s{index}", f"Change {index}", [f"src/{index}.py"], lines=2) for index in range(10)]

    survivors, merged_ids = await expansion.deduplicate_sub_themes(siblings)

    assert len(backend.calls_for(MindmapPrompts.TASK_DUPLICATES)) == 3
    assert len(backend.calls_for(MindmapPrompts.TASK_SECOND_PASS)) == 1
    assert len(survivors) == 9
    assert len(merged_ids) == 1
    [merged] = [theme for theme in survivors if theme.id in merged_ids]
    assert merged.affected_files == ["src/0.py", "src/9.py"]


@pytest.mark.asyncio
async def test_failed_dedup_keeps_siblings_separate(backend, inference, config, concurrency, clock):
    backend.on(MindmapPrompts.TASK_DUPLICATES, "no idea")
    _, expansion = make_services(inference, config, concurrency, clock)
    siblings = [make_node("a", "Login", ["src/a.py"]), make_node("b", "Logout", ["src/b.py"])]

    survivors, merged_ids = await expansion.deduplicate_sub_themes(siblings)

    assert survivors == siblings
    assert merged_ids == set()


@pytest.mark.asyncio
async def test_authentication_failure_aborts_expansion(backend, inference, config, concurrency, clock, root):
    def reject(prompt):
        raise AuthenticationError("invalid api key")

    backend.on(MindmapPrompts.TASK_EXPANSION_DECISION, reject)
    _, expansion = make_services(inference, config, concurrency, clock)

    with pytest.raises(AuthenticationError):
        await expansion.expand_all_to_atomic([root])


def test_sub_theme_keeps_only_parent_files(root):
    child = create_sub_theme(SubThemeStub(name="Hashing", files=["src/a.py", "src/other.py"]), root)
    assert child.affected_files == ["src/a.py"]
    assert child.code_snippets == [snippet("src/a.py")]

    fallback = create_sub_theme(SubThemeStub(name="Elsewhere", files=["lib/x.py"]), root)
    assert fallback.affected_files == ["src/a.py"]
    assert fallback.level == 1 and fallback.parent_id == "root"


def test_groups_from_indices_ignores_bad_indices():
    themes = [make_node(name, name) for name in "abcd"]
    groups = groups_from_indices(themes, [
        DuplicateGroup(theme_indices=[1, 3, 9]),
        DuplicateGroup(theme_indices=[3, 4]),
        DuplicateGroup(theme_indices=[0]),
    ])
    assert [[theme.id for theme in group] for group in groups] == [["a", "c"], ["d"], ["b"]]


@pytest.mark.parametrize("count, size", [(5, 4), (19, 4), (20, 6), (60, 8), (150, 10)])
def test_dedup_batch_size(count, size):
    assert dedup_batch_size(count) == size
