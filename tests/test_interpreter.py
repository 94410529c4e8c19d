from taskpilot.agent.interpreter import (
    extract_tool_requests,
    loads_tolerant,
    parse_embedded_tool_uses,
    render_turn,
)
from taskpilot.models import AssistantTurn, TextBlock, ToolRequest, ToolUseBlock


def test_structured_blocks_are_taken_verbatim() -> None:
    turn = AssistantTurn(
        blocks=[
            TextBlock(text="Let me look."),
            ToolUseBlock(name="list_dir", input={"path": "."}),
            ToolUseBlock(name="read_file", input={"path": "README.md"}),
        ]
    )
    assert extract_tool_requests(turn) == [
        ToolRequest("list_dir", {"path": "."}),
        ToolRequest("read_file", {"path": "README.md"}),
    ]


def test_plain_text_requests_nothing() -> None:
    turn = AssistantTurn(blocks=[TextBlock(text="The answer is 42. {not json}")])
    assert extract_tool_requests(turn) == []


def test_single_embedded_payload_in_text() -> None:
    text = (
        "I should read the file first.\n"
        '{"type": "tool_use", "name": "read_file", "input": {"path": "src/main.py"}}\n'
        "Then I will summarize it."
    )
    turn = AssistantTurn(blocks=[TextBlock(text=text)])
    assert extract_tool_requests(turn) == [ToolRequest("read_file", {"path": "src/main.py"})]


def test_recovered_requests_follow_block_order() -> None:
    turn = AssistantTurn(
        blocks=[
            ToolUseBlock(name="first", input={}),
            TextBlock(text='{"name": "second", "arguments": {"n": 2}}'),
        ]
    )
    assert [r.name for r in extract_tool_requests(turn)] == ["first", "second"]


def test_fenced_payload_with_string_arguments() -> None:
    text = 'Calling:\n```json\n{"name": "add_note", "arguments": "{\\"title\\": \\"x\\"}"}\n```'
    assert parse_embedded_tool_uses(text) == [ToolRequest("add_note", {"title": "x"})]


def test_openai_style_tool_calls_list() -> None:
    text = (
        '{"tool_calls": [{"type": "function", "function": {"name": "a", "arguments": "{}"}},'
        ' {"type": "function", "function": {"name": "b", "arguments": {"k": "v"}}}]}'
    )
    assert parse_embedded_tool_uses(text) == [ToolRequest("a", {}), ToolRequest("b", {"k": "v"})]


def test_tolerates_trailing_commas_and_single_quotes() -> None:
    assert parse_embedded_tool_uses('{"name": "x", "input": {"a": 1,},}') == [
        ToolRequest("x", {"a": 1})
    ]
    assert parse_embedded_tool_uses("{'name': 'y', 'input': {'b': 'c'}}") == [
        ToolRequest("y", {"b": "c"})
    ]


def test_objects_without_arguments_are_not_tool_calls() -> None:
    assert parse_embedded_tool_uses('{"name": "Alice", "age": 30}') == []


def test_braces_inside_strings_do_not_break_matching() -> None:
    text = '{"name": "write", "input": {"content": "a } brace and { another"}}'
    assert parse_embedded_tool_uses(text) == [
        ToolRequest("write", {"content": "a } brace and { another"})
    ]


def test_loads_tolerant_returns_none_on_prose() -> None:
    assert loads_tolerant("just some prose, nothing to parse") is None


def test_loads_tolerant_closes_truncated_object() -> None:
    assert loads_tolerant('{"path": "a.txt"') == {"path": "a.txt"}


def test_mixed_quoting_is_repaired() -> None:
    text = "{'name': 'x', 'input': {'t': \"it's\"}}"
    assert parse_embedded_tool_uses(text) == [ToolRequest("x", {"t": "it's"})]


def test_rendered_turn_round_trips_through_recovery() -> None:
    turn = AssistantTurn(blocks=[TextBlock(text="ok"), ToolUseBlock(name="t", input={"q": 1})])
    replayed = AssistantTurn(blocks=[TextBlock(text=render_turn(turn))])
    assert extract_tool_requests(replayed) == [ToolRequest("t", {"q": 1})]
