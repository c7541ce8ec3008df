"""Prompt templates for agent sessions."""

from __future__ import annotations

from string import Formatter

from pydantic import BaseModel, Field, field_validator

TEMPLATE_FIELDS = frozenset(
    {
        "task",
        "context_section",
        "plan",
        "diff",
        "issues",
        "commit_instruction",
        "max_retries",
        "branch_name",
        "mainline",
    }
)

_RULES = """## Rules
- Make focused changes; do not refactor unrelated code
- Run the type checker and the test suite before finishing
- Write clear commit messages describing what changed and why"""

DEFAULT_CODE_SYSTEM = f"""You are working in an isolated git worktree on branch {{branch_name}}.

## Your Task
{{task}}

{{context_section}}

{_RULES}"""

DEFAULT_RESUME_SYSTEM = f"""RESUME: a previous session on branch {{branch_name}} ended before finishing.
Check `git log --oneline {{mainline}}..HEAD` and `git status` to see what was
already done, then continue from there. Do not redo committed work.

## Original Task
{{task}}

{{context_section}}

{_RULES}"""

DEFAULT_RESUME_TASK = "Continue working on: {task}\n\nReview the existing commits and uncommitted changes first."

DEFAULT_PLANNING_SYSTEM = """You are planning a code change. You are in PLANNING MODE: do NOT edit any files.

## Your Task
{task}

{context_section}

## Instructions
1. Read and understand the relevant code
2. Identify which files need to change and why
3. Consider edge cases and risks
4. Produce a structured plan

## Output Format

## Plan

### Summary
One paragraph describing the approach.

### Steps
1. [file path] - what to change and why

### Testing
- How to verify the changes work

### Risks
- Anything to watch out for"""

DEFAULT_PLANNING_TASK = "Produce an implementation plan for: {task}"

DEFAULT_EXECUTION_SYSTEM = """You are implementing an approved plan on branch {branch_name}.

## Your Task
{task}

## Approved Plan
Follow this plan. Deviate only when a step turns out to be impossible.

{plan}

## Execution Rules
- Follow the plan step by step
- {commit_instruction}
- Run the type checker and the test suite after changes
- If tests fail, debug and fix (up to {max_retries} attempts per issue, then note the failure)

## When Done
1. Ensure all changes are committed
2. Push the branch and open a pull request if the `gh` CLI is available
3. Output the pull request URL as your final message"""

DEFAULT_EXECUTION_TASK = "Implement the approved plan for: {task}"

DEFAULT_REVIEW_SYSTEM = """You are reviewing the changes made for a task.

## Original Task
{task}

## Approved Plan
{plan}

## Diff against {mainline}
```diff
{diff}
```

## Review Instructions
Check plan adherence, correctness, type safety, security and unhandled edge cases.

## Output Format
If the changes look good, answer with exactly:
APPROVED

Otherwise answer with:
ISSUES FOUND:
1. [file path] - description of the issue

Only flag real issues, not style preferences."""

DEFAULT_REVIEW_TASK = "Review the changes for: {task}"

DEFAULT_FIX_SYSTEM = """You are fixing issues found during code review on branch {branch_name}.

## Original Task
{task}

## Review Issues to Fix
{issues}

## Instructions
- Fix each issue listed above
- Run the type checker and the test suite after changes
- If a fix still fails after {max_retries} attempts, note it and move on
- Commit your fixes with a clear message and push
- Output "FIXES PUSHED" as your final message"""

DEFAULT_FIX_TASK = "Fix the review issues for: {task}"


class PromptTemplates(BaseModel):
    """``str.format`` templates for every session phase."""

    code_system: str = Field(DEFAULT_CODE_SYSTEM, description="System prompt for interactive sessions.")
    resume_system: str = Field(DEFAULT_RESUME_SYSTEM, description="System prompt for resumed sessions.")
    resume_task: str = Field(DEFAULT_RESUME_TASK, description="First message of a resumed session.")
    planning_system: str = Field(DEFAULT_PLANNING_SYSTEM)
    planning_task: str = Field(DEFAULT_PLANNING_TASK)
    execution_system: str = Field(DEFAULT_EXECUTION_SYSTEM)
    execution_task: str = Field(DEFAULT_EXECUTION_TASK)
    review_system: str = Field(DEFAULT_REVIEW_SYSTEM)
    review_task: str = Field(DEFAULT_REVIEW_TASK)
    fix_system: str = Field(DEFAULT_FIX_SYSTEM)
    fix_task: str = Field(DEFAULT_FIX_TASK)

    @field_validator("*")
    @classmethod
    def _known_placeholders(cls, value: str) -> str:
        try:
            names = {name for _, name, _, _ in Formatter().parse(value) if name is not None}
        except ValueError as exc:
            raise ValueError(f"Malformed template: {exc}") from exc
        unknown = {name for name in names if name.split(".")[0].split("[")[0] not in TEMPLATE_FIELDS}
        if unknown:
            raise ValueError(f"Unknown placeholders: {', '.join(sorted(unknown))}")
        return value


__all__ = ["PromptTemplates", "TEMPLATE_FIELDS"]
