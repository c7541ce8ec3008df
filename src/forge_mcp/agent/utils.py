"""Utility helpers for the agent runner."""

from __future__ import annotations

import json
import os
from typing import Iterable, Mapping

from ..config import DEFAULT_BLOCKED_ENV_KEYS

AGENT_ENV_OVERRIDES = {
    "CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC": "1",
}


def sanitize_environment(
    blocked: Iterable[str] = DEFAULT_BLOCKED_ENV_KEYS,
    additional: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the orchestrator environment minus secret-bearing variables.

    Everything else is inherited so the agent binary keeps whatever keychain
    or credential-path access it needs to authenticate as the operator.
    """

    env = dict(os.environ)
    for key in blocked:
        env.pop(key, None)
    env.update(AGENT_ENV_OVERRIDES)
    if additional:
        env.update(additional)
    return env


def build_input_message(text: str) -> str:
    """Wrap a follow-up message in the stream-json stdin envelope."""

    message = {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "text", "text": text}],
        },
    }
    return json.dumps(message) + "\n"


__all__ = ["AGENT_ENV_OVERRIDES", "build_input_message", "sanitize_environment"]
