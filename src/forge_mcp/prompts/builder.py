"""Render prompt templates and derive session identifiers."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass

from .models import PromptTemplates

REVIEW_DIFF_LIMIT = 60_000


def slugify_task(task: str, limit: int = 50) -> str:
    """Turn a task description into a branch-name fragment."""

    slug = task.lower()
    slug = re.sub(r"[^a-z0-9 -]", "", slug)
    slug = re.sub(r"\s+", "-", slug.strip())
    slug = re.sub(r"-+", "-", slug)
    slug = slug[:limit].strip("-")
    return slug or "task"


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(slots=True)
class RenderedPrompt:
    system: str
    task: str


class PromptBuilder:
    """Fill phase templates with session details."""

    def __init__(
        self,
        templates: PromptTemplates | None = None,
        *,
        mainline: str = "main",
        commit_strategy: str = "incremental",
        max_retries: int = 3,
    ) -> None:
        self._templates = templates or PromptTemplates()
        self._mainline = mainline
        self._commit_strategy = commit_strategy
        self._max_retries = max_retries

    @property
    def templates(self) -> PromptTemplates:
        return self._templates

    def _values(self, task: str, context: str | None, **extra: str) -> dict[str, str]:
        if self._commit_strategy == "incremental":
            commit_instruction = "Commit after each logical chunk of work with clear commit messages."
        else:
            commit_instruction = "Make all changes, then create a single commit at the end."
        values = {
            "task": task,
            "context_section": f"## Additional Context\n{context}" if context else "",
            "plan": "",
            "diff": "",
            "issues": "",
            "commit_instruction": commit_instruction,
            "max_retries": str(self._max_retries),
            "branch_name": "",
            "mainline": self._mainline,
        }
        values.update(extra)
        return values

    def _render(self, system: str, task_template: str, values: dict[str, str]) -> RenderedPrompt:
        return RenderedPrompt(
            system=system.format(**values).strip(),
            task=task_template.format(**values).strip(),
        )

    def code(self, task: str, context: str | None = None, *, branch_name: str = "") -> RenderedPrompt:
        values = self._values(task, context, branch_name=branch_name)
        return RenderedPrompt(system=self._templates.code_system.format(**values).strip(), task=task)

    def resume(self, task: str, context: str | None = None, *, branch_name: str = "") -> RenderedPrompt:
        values = self._values(task, context, branch_name=branch_name)
        return self._render(self._templates.resume_system, self._templates.resume_task, values)

    def planning(self, task: str, context: str | None = None) -> RenderedPrompt:
        values = self._values(task, context)
        return self._render(self._templates.planning_system, self._templates.planning_task, values)

    def execution(self, task: str, plan: str, *, branch_name: str = "") -> RenderedPrompt:
        values = self._values(task, None, plan=plan, branch_name=branch_name)
        return self._render(self._templates.execution_system, self._templates.execution_task, values)

    def review(self, task: str, plan: str, diff: str) -> RenderedPrompt:
        if len(diff) > REVIEW_DIFF_LIMIT:
            diff = diff[:REVIEW_DIFF_LIMIT] + "\n... (diff truncated)"
        values = self._values(task, None, plan=plan, diff=diff)
        return self._render(self._templates.review_system, self._templates.review_task, values)

    def fix(self, task: str, issues: str, *, branch_name: str = "") -> RenderedPrompt:
        values = self._values(task, None, issues=issues, branch_name=branch_name)
        return self._render(self._templates.fix_system, self._templates.fix_task, values)


__all__ = ["PromptBuilder", "REVIEW_DIFF_LIMIT", "RenderedPrompt", "new_session_id", "slugify_task"]
