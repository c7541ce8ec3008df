from pathlib import Path
import textwrap

import pytest

from forge_mcp.prompts import (
    PromptBuilder,
    PromptLoadError,
    PromptLoader,
    PromptTemplates,
    new_session_id,
    slugify_task,
)
from forge_mcp.prompts.builder import REVIEW_DIFF_LIMIT


def write_prompts(path: Path, *, planning_task: str) -> None:
    path.write_text(
        textwrap.dedent(
            """
            planning_task: "{planning_task}"
            review_task: "Review {{task}} carefully"
            """
        ).strip().format(planning_task=planning_task),
        encoding="utf-8",
    )


def test_loader_merges_paths(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    override = tmp_path / "override"
    override.mkdir()

    write_prompts(base / "prompts.yaml", planning_task="Base plan for {task}")
    write_prompts(override / "prompts.yml", planning_task="Override plan for {task}")

    templates = PromptLoader([base, override]).load()

    assert templates.planning_task == "Override plan for {task}"
    assert templates.review_task == "Review {task} carefully"
    assert templates.code_system == PromptTemplates().code_system


def test_loader_handles_missing_directories(tmp_path: Path) -> None:
    loader = PromptLoader([tmp_path / "nowhere"])

    assert loader.search_paths == []
    assert loader.load() == PromptTemplates()


def test_loader_reports_unknown_placeholders(tmp_path: Path) -> None:
    (tmp_path / "broken.yaml").write_text('fix_task: "Fix {ticket_id}"', encoding="utf-8")

    with pytest.raises(PromptLoadError) as excinfo:
        PromptLoader([tmp_path]).load()

    assert "ticket_id" in str(excinfo.value)


def test_loader_reports_non_mapping_documents(tmp_path: Path) -> None:
    (tmp_path / "list.yaml").write_text("- one\n- two\n", encoding="utf-8")
    (tmp_path / "bad.yml").write_text("key: [unclosed", encoding="utf-8")

    with pytest.raises(PromptLoadError) as excinfo:
        PromptLoader([tmp_path]).load()

    message = str(excinfo.value)
    assert "must contain a mapping" in message
    assert "Failed to parse YAML" in message


def test_slugify_task() -> None:
    assert slugify_task("Add a --verbose flag!") == "add-a-verbose-flag"
    assert slugify_task("Fix   bug #42 in   parser") == "fix-bug-42-in-parser"
    assert slugify_task("!!!") == "task"
    long_slug = slugify_task("word " * 40)
    assert len(long_slug) <= 50
    assert not long_slug.endswith("-")


def test_new_session_id_is_short_hex() -> None:
    session_id = new_session_id()

    assert len(session_id) == 12
    int(session_id, 16)
    assert new_session_id() != session_id


def test_builder_renders_each_phase() -> None:
    builder = PromptBuilder(mainline="trunk", commit_strategy="single", max_retries=5)

    code = builder.code("Add retries", "HTTP client is in app/http.py", branch_name="forge/add-retries")
    planning = builder.planning("Add retries")
    execution = builder.execution("Add retries", "1. wrap calls", branch_name="forge/add-retries")
    fix = builder.fix("Add retries", "1. missing test", branch_name="forge/add-retries")

    assert code.task == "Add retries"
    assert "forge/add-retries" in code.system
    assert "## Additional Context\nHTTP client is in app/http.py" in code.system
    assert "do NOT edit any files" in planning.system
    assert "## Additional Context" not in planning.system
    assert "1. wrap calls" in execution.system
    assert "single commit" in execution.system
    assert "up to 5 attempts" in execution.system
    assert "1. missing test" in fix.system


def test_review_prompt_truncates_large_diffs() -> None:
    builder = PromptBuilder(mainline="trunk")

    review = builder.review("Add retries", "the plan", "+" * (REVIEW_DIFF_LIMIT + 500))

    assert "Diff against trunk" in review.system
    assert "(diff truncated)" in review.system
    assert review.task == "Review the changes for: Add retries"
