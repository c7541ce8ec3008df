from __future__ import annotations

import json

from forge_mcp.agent.protocol import (
    FailureEvent,
    FailureReason,
    StreamParser,
    ThinkingEvent,
    ToolCallEvent,
    ToolResultEvent,
    TurnResultEvent,
    UnrecognizedLine,
    decode_line,
    summarize_tool_input,
    truncate,
)


def _line(payload: dict) -> str:
    return json.dumps(payload) + "\n"


def _assistant(*blocks: dict) -> str:
    return _line({"type": "assistant", "message": {"content": list(blocks)}})


def test_one_shot_stream_decodes_in_order() -> None:
    parser = StreamParser()
    lines = [
        _assistant({"type": "text", "text": "Looking at the code"}),
        _assistant({"type": "tool_use", "name": "Read", "input": {"file_path": "/src/app.py"}}),
        _line(
            {
                "type": "user",
                "message": {
                    "content": [
                        {"type": "tool_result", "tool_use_id": "t1", "content": "def main(): ..."},
                    ]
                },
            }
        ),
        _assistant({"type": "text", "text": "Done. Added the flag."}),
        _line(
            {
                "type": "result",
                "subtype": "success",
                "session_id": "agent-1",
                "num_turns": 3,
                "duration_ms": 1200,
                "total_cost_usd": 0.42,
                "result": "Done. Added the flag.",
            }
        ),
    ]

    events = [event for line in lines for event in parser.feed(line)]

    assert [event.kind for event in events] == [
        "thinking",
        "tool_call",
        "tool_result",
        "thinking",
        "turn_result",
    ]
    assert events[1] == ToolCallEvent(tool="Read", summary="/src/app.py")
    assert isinstance(events[2], ToolResultEvent)
    assert events[2].tool_use_id == "t1"
    result = events[-1]
    assert isinstance(result, TurnResultEvent)
    assert result.result.turns == 3
    assert result.result.cost_usd == 0.42
    assert result.result.text == "Done. Added the flag."
    assert parser.last_text == ""


def test_non_json_lines_are_dropped() -> None:
    parser = StreamParser()

    assert parser.feed("Loading configuration...\n") == []
    assert parser.feed("\n") == []
    assert parser.feed("[1, 2, 3]\n") == []
    assert parser.feed(_line({"type": "system", "subtype": "init"})) == []
    assert isinstance(decode_line("not json"), UnrecognizedLine)


def test_negative_or_missing_cost_is_unknown() -> None:
    parser = StreamParser()

    negative = parser.feed(_line({"type": "result", "num_turns": -2, "total_cost_usd": -1.0}))
    missing = parser.feed(_line({"type": "result", "num_turns": 1}))

    assert negative[0].result.cost_usd is None
    assert negative[0].result.turns == 0
    assert missing[0].result.cost_usd is None


def test_error_result_becomes_protocol_failure() -> None:
    parser = StreamParser()

    with_text = parser.feed(_line({"type": "result", "is_error": True, "result": "Credit balance too low"}))
    bare = parser.feed(_line({"type": "result", "subtype": "error_max_turns"}))

    assert with_text == [FailureEvent(reason=FailureReason.PROTOCOL, message="Credit balance too low")]
    assert isinstance(bare[0], FailureEvent)
    assert "error_max_turns" in bare[0].message


def test_result_falls_back_to_result_text_without_assistant_text() -> None:
    parser = StreamParser()

    events = parser.feed(_line({"type": "result", "result": "summary only"}))

    assert events[0].result.text == "summary only"


def test_bytes_lines_are_decoded() -> None:
    parser = StreamParser()

    events = parser.feed(_assistant({"type": "text", "text": "héllo"}).encode("utf-8"))

    assert events == [ThinkingEvent(text="héllo")]


def test_tool_input_summaries() -> None:
    assert summarize_tool_input("Bash", {"command": "pytest -q"}) == "pytest -q"
    assert summarize_tool_input("Grep", {"pattern": "TODO"}) == "TODO"
    assert summarize_tool_input("WebFetch", {"url": "https://example.com"}) == ""
    assert summarize_tool_input("Read", "not a dict") == ""
    long_command = "x" * 300
    assert len(summarize_tool_input("Bash", {"command": long_command})) == 120
    assert truncate("abcdef", 5) == "ab..."
