import json

import pytest

from mindmap_agent.config import MindmapConfig
from mindmap_agent.errors import AuthenticationError
from mindmap_agent.mindmap_builder import MindmapWorkflow
from mindmap_agent.mindmap_builder import main as cli
from mindmap_agent.models import ConsolidationMethod, StopReason, flatten_hierarchy
from mindmap_agent.prompts import MindmapPrompts

from conftest import ScriptedBackend, batch_similarity_answer, make_theme


def login_pairs(first, second):
    return "Login" in first["name"] and "Login" in second["name"]


def snippet(lines):
    return "\n".join(f"check_{index}()" for index in range(lines))


@pytest.fixture
def pr_themes():
    return [
        make_theme("t1", "User Login Form", ["src/auth/login.py", "src/auth/form.py"], [snippet(10)]),
        make_theme("t2", "Login Form Validation", ["src/auth/login.py"], [snippet(8)]),
        make_theme("t3", "Readme Update", ["docs/README.md"], [snippet(3)]),
    ]


def make_workflow(backend, clock, concurrency, **config):
    return MindmapWorkflow(
        backend=backend,
        config=MindmapConfig(inference_min_spacing_ms=0, **config),
        clock=clock,
        sleep=clock.sleep,
        concurrency=concurrency,
        batch_auto_start=False
    )


@pytest.fixture
def scripted():
    return ScriptedBackend(**{MindmapPrompts.TASK_BATCH_SIMILARITY: batch_similarity_answer(login_pairs)})


@pytest.mark.asyncio
async def test_builds_mindmap_end_to_end(scripted, clock, concurrency, pr_themes):
    workflow = make_workflow(scripted, clock, concurrency)
    try:
        final_state = await workflow.execute(pr_themes)
    finally:
        await workflow.close()

    assert final_state["current_step"] == "completed"
    assert final_state["errors"] == []
    assert final_state["validation"]["is_valid"] is True

    [root] = final_state["hierarchy"]
    assert root.name == "General Changes"
    assert root.consolidation_method == ConsolidationMethod.HIERARCHY
    merged, readme = root.child_themes
    assert merged.source_themes == ["t1", "t2"]
    assert merged.stop_reason == StopReason.ATOMIC
    assert readme.stop_reason == StopReason.GUARDRAIL
    assert {node.id for node in flatten_hierarchy([root]) if node.parent_id} == {merged.id, readme.id}

    stats = final_state["processing_stats"]
    assert stats["input_themes"] == 3
    assert stats["consolidated_root_themes"] == 1
    assert stats["cross_level_merges"] == 0
    assert stats["total_nodes"] == 3
    assert stats["expansion"]["guardrail_hits"] == 1
    assert stats["inference"]["by_context"]["batch_similarity"]["calls"] == 1


@pytest.mark.asyncio
async def test_skip_expansion_stops_after_consolidation(scripted, clock, concurrency, pr_themes):
    workflow = make_workflow(scripted, clock, concurrency)
    try:
        final_state = await workflow.execute(pr_themes, skip_expansion=True, skip_hierarchy_dedup=True)
    finally:
        await workflow.close()

    assert final_state["current_step"] == "completed"
    assert scripted.calls_for(MindmapPrompts.TASK_EXPANSION_DECISION) == []
    assert scripted.calls_for(MindmapPrompts.TASK_CROSS_LEVEL) == []
    assert final_state["hierarchy"] == final_state["consolidated"]


@pytest.mark.asyncio
async def test_empty_input_ends_after_consolidation(scripted, clock, concurrency):
    workflow = make_workflow(scripted, clock, concurrency)
    try:
        final_state = await workflow.execute([])
    finally:
        await workflow.close()

    assert final_state["hierarchy"] == []
    assert final_state["current_step"] == "consolidated"
    assert scripted.calls == []


@pytest.mark.asyncio
async def test_consolidation_failure_falls_back_to_input_themes(scripted, clock, concurrency, pr_themes, monkeypatch):
    workflow = make_workflow(scripted, clock, concurrency)

    async def broken(themes):
        raise RuntimeError("similarity store unavailable")

    monkeypatch.setattr(workflow.similarity_service, "consolidate_themes", broken)
    try:
        final_state = await workflow.execute(pr_themes, skip_hierarchy_dedup=True)
    finally:
        await workflow.close()

    assert [theme.id for theme in final_state["consolidated"]] == ["t1", "t2", "t3"]
    assert len(final_state["errors"]) == 1
    assert "similarity store unavailable" in final_state["errors"][0]
    assert final_state["current_step"] == "completed"


@pytest.mark.asyncio
async def test_authentication_failure_aborts_the_run(clock, concurrency, pr_themes):
    def reject(prompt):
        raise AuthenticationError("401 invalid api key")

    backend = ScriptedBackend(**{MindmapPrompts.TASK_BATCH_SIMILARITY: reject})
    workflow = make_workflow(backend, clock, concurrency)
    try:
        with pytest.raises(AuthenticationError):
            await workflow.execute(pr_themes)
    finally:
        await workflow.close()


def test_build_output_uses_camel_case(pr_themes):
    from mindmap_agent.models import ConsolidatedTheme

    output = cli.build_output({
        "hierarchy": [ConsolidatedTheme.from_theme(pr_themes[0])],
        "processing_stats": {"input_themes": 1},
        "errors": [],
        "validation": {"is_valid": True},
    })

    [theme] = output["themes"]
    assert theme["affectedFiles"] == ["src/auth/login.py", "src/auth/form.py"]
    assert theme["sourceThemes"] == ["t1"]
    assert theme["childThemes"] == []
    assert output["validation"] == {"is_valid": True}


def test_load_themes_accepts_camel_case(tmp_path):
    path = tmp_path / "themes.json"
    path.write_text(json.dumps([
        {"id": "t1", "name": "Login", "affectedFiles": ["src/login.py"], "codeSnippets": ["x = 1"]},
        {"id": "t2", "name": "Logout", "affected_files": ["src/logout.py"]},
    ]))

    themes = cli.load_themes(str(path))

    assert [theme.affected_files for theme in themes] == [["src/login.py"], ["src/logout.py"]]
    assert themes[0].code_snippets == ["x = 1"]


@pytest.mark.asyncio
async def test_cli_writes_mindmap(tmp_path, scripted, clock, concurrency, monkeypatch, capsys):
    themes_path = tmp_path / "themes.json"
    output_path = tmp_path / "mindmap.json"
    themes_path.write_text(json.dumps([
        {"id": "t1", "name": "Login Form", "affectedFiles": ["src/login.py"], "codeSnippets": ["a = 1"]},
    ]))
    monkeypatch.setattr(
        cli, "MindmapWorkflow",
        lambda config: MindmapWorkflow(
            backend=scripted, config=config, clock=clock, sleep=clock.sleep,
            concurrency=concurrency, batch_auto_start=False
        )
    )

    await cli.main([str(themes_path), "--output", str(output_path), "--max-depth", "3", "--log-level", "WARNING"])

    output = json.loads(output_path.read_text())
    assert [theme["id"] for theme in output["themes"]] == ["t1"]
    assert output["themes"][0]["stopReason"] == "guardrail"
    assert output["errors"] == []
    assert "MINDMAP BUILD SUMMARY" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_cli_exits_on_unreadable_input(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        await cli.main([str(tmp_path / "missing.json"), "--log-level", "ERROR"])
    assert excinfo.value.code == 1
