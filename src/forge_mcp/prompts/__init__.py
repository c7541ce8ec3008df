"""Prompt templates, loading and rendering."""

from .builder import PromptBuilder, RenderedPrompt, new_session_id, slugify_task
from .loader import PromptLoadError, PromptLoader
from .models import PromptTemplates

__all__ = [
    "PromptBuilder",
    "PromptLoadError",
    "PromptLoader",
    "PromptTemplates",
    "RenderedPrompt",
    "new_session_id",
    "slugify_task",
]
