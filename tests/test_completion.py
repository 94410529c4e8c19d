import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from taskpilot.agent.completion import CompletionClient
from taskpilot.agent.interpreter import extract_tool_requests
from taskpilot.errors import CompletionServiceError
from taskpilot.models import TextBlock, ToolRequest, ToolUseBlock
from taskpilot.settings import Settings


def _response(content=None, tool_calls=None, finish_reason="stop"):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish_reason)])


def _tool_call(name: str, arguments: str, call_id: str = "call_1"):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


@pytest.fixture
def openai_client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_complete_maps_text_and_tool_calls(settings, openai_client) -> None:
    openai_client.chat.completions.create.return_value = _response(
        content="Reading it.",
        tool_calls=[_tool_call("read_file", '{"path": "a.txt"}')],
        finish_reason="tool_calls",
    )
    client = CompletionClient(settings, client=openai_client)

    turn = await client.complete([{"role": "user", "content": "hi"}], "be brief", tools=[{"x": 1}])

    assert turn.blocks == [
        TextBlock(text="Reading it."),
        ToolUseBlock(name="read_file", input={"path": "a.txt"}, id="call_1"),
    ]
    assert turn.stop_reason == "tool_calls"
    kwargs = openai_client.chat.completions.create.await_args.kwargs
    assert kwargs["messages"][0] == {"role": "system", "content": "be brief"}
    assert kwargs["messages"][1] == {"role": "user", "content": "hi"}
    assert kwargs["tools"] == [{"x": 1}]
    assert kwargs["tool_choice"] == "auto"
    assert kwargs["model"] == settings.model


@pytest.mark.asyncio
async def test_complete_without_tools_omits_tool_choice(settings, openai_client) -> None:
    openai_client.chat.completions.create.return_value = _response(content="ok")
    client = CompletionClient(settings, client=openai_client)
    await client.complete([], "sys")
    kwargs = openai_client.chat.completions.create.await_args.kwargs
    assert "tools" not in kwargs
    assert "tool_choice" not in kwargs


@pytest.mark.asyncio
async def test_truncated_arguments_are_repaired(settings, openai_client) -> None:
    openai_client.chat.completions.create.return_value = _response(
        tool_calls=[_tool_call("read_file", '{"path": "a.txt"')], finish_reason="length"
    )
    client = CompletionClient(settings, client=openai_client)

    turn = await client.complete([], "sys")

    assert extract_tool_requests(turn) == [ToolRequest("read_file", {"path": "a.txt"})]


@pytest.mark.asyncio
async def test_unreadable_arguments_keep_the_call_with_an_error(settings, openai_client) -> None:
    openai_client.chat.completions.create.return_value = _response(
        tool_calls=[_tool_call("read_file", "[1, 2]")]
    )
    client = CompletionClient(settings, client=openai_client)

    turn = await client.complete([], "sys")

    requests = extract_tool_requests(turn)
    assert [r.name for r in requests] == ["read_file"]
    assert requests[0].arguments == {}
    assert "invalid arguments" in requests[0].error


@pytest.mark.asyncio
async def test_api_error_becomes_completion_service_error(settings, openai_client) -> None:
    openai_client.chat.completions.create.side_effect = openai.APIConnectionError(
        request=httpx.Request("POST", "https://api.example.com/v1/chat/completions")
    )
    client = CompletionClient(settings, client=openai_client)
    with pytest.raises(CompletionServiceError):
        await client.complete([], "sys")


@pytest.mark.asyncio
async def test_deadline_becomes_completion_service_error(openai_client) -> None:
    async def slow(**kwargs):
        await asyncio.sleep(1)

    openai_client.chat.completions.create.side_effect = slow
    settings = Settings(_env_file=None, completion_timeout_seconds=0.01)
    client = CompletionClient(settings, client=openai_client)
    with pytest.raises(CompletionServiceError, match="timed out"):
        await client.complete([], "sys")


@pytest.mark.asyncio
async def test_no_choices_is_an_error(settings, openai_client) -> None:
    openai_client.chat.completions.create.return_value = SimpleNamespace(choices=[])
    client = CompletionClient(settings, client=openai_client)
    with pytest.raises(CompletionServiceError):
        await client.complete([], "sys")


class _ChunkStream:
    """Async iterator over canned stream chunks; exceptions are raised in place."""

    def __init__(self, items, delay: float = 0.0):
        self._items = list(items)
        self._delay = delay

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        if not self._items:
            raise StopAsyncIteration
        item = self._items.pop(0)
        if isinstance(item, Exception):
            raise item
        return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=item))])


async def _collect(client: CompletionClient) -> list:
    return [delta async for delta in client.stream_text([{"role": "user", "content": "hi"}], "sys")]


@pytest.mark.asyncio
async def test_stream_text_yields_deltas_in_order(settings, openai_client) -> None:
    openai_client.chat.completions.create.return_value = _ChunkStream(["Hel", None, "lo", "!"])
    client = CompletionClient(settings, client=openai_client)

    assert await _collect(client) == ["Hel", "lo", "!"]
    kwargs = openai_client.chat.completions.create.await_args.kwargs
    assert kwargs["stream"] is True
    assert "tools" not in kwargs


@pytest.mark.asyncio
async def test_stream_text_error_mid_stream(settings, openai_client) -> None:
    failure = openai.APIConnectionError(
        request=httpx.Request("POST", "https://api.example.com/v1/chat/completions")
    )
    openai_client.chat.completions.create.return_value = _ChunkStream(["partial", failure])
    client = CompletionClient(settings, client=openai_client)

    received = []
    with pytest.raises(CompletionServiceError):
        async for delta in client.stream_text([], "sys"):
            received.append(delta)
    assert received == ["partial"]


@pytest.mark.asyncio
async def test_stream_text_deadline_covers_chunk_reads(openai_client) -> None:
    openai_client.chat.completions.create.return_value = _ChunkStream(["never"], delay=1.0)
    settings = Settings(_env_file=None, completion_timeout_seconds=0.05)
    client = CompletionClient(settings, client=openai_client)

    with pytest.raises(CompletionServiceError, match="timed out"):
        await _collect(client)
