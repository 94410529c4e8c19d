import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from mcp.types import CallToolResult, TextContent  # noqa: E402

from taskpilot.errors import ToolNotFoundError  # noqa: E402
from taskpilot.models import AssistantTurn, TextBlock, ToolUseBlock  # noqa: E402
from taskpilot.settings import Settings  # noqa: E402


class ScriptedOperator:
    """Operator that replays a fixed list of decisions and records what it was shown."""

    def __init__(self, decisions: List[Any]) -> None:
        self.decisions = list(decisions)
        self.requests: List[Any] = []
        self.events: List[tuple] = []

    def show(self, kind, text: str) -> None:
        self.events.append((kind, text))

    async def decide(self, request):
        self.requests.append(request)
        return self.decisions.pop(0)


class FakeCompletion:
    """Completion client returning queued turns (or raising queued exceptions)."""

    def __init__(self, turns: List[Any]) -> None:
        self.turns = list(turns)
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, system, tools=None) -> AssistantTurn:
        self.calls.append({"messages": list(messages), "system": system, "tools": tools})
        item = self.turns.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeRouter:
    """Router with canned results per tool name; exceptions are raised on call."""

    def __init__(self, results: Dict[str, Any]) -> None:
        self.results = results
        self.calls: List[tuple] = []

    def catalog(self) -> List[Dict[str, Any]]:
        return [
            {"type": "function", "function": {"name": name, "description": "", "parameters": {}}}
            for name in self.results
        ]

    async def call(self, tool_name: str, arguments: Dict[str, Any]) -> CallToolResult:
        self.calls.append((tool_name, arguments))
        if tool_name not in self.results:
            raise ToolNotFoundError(tool_name)
        result = self.results[tool_name]
        if isinstance(result, Exception):
            raise result
        return CallToolResult(content=[TextContent(type="text", text=result)])


def text_turn(text: str) -> AssistantTurn:
    return AssistantTurn(blocks=[TextBlock(text=text)])


def tool_turn(*calls: tuple, text: str = "") -> AssistantTurn:
    blocks: List[Any] = [TextBlock(text=text)] if text else []
    blocks.extend(ToolUseBlock(name=name, input=args) for name, args in calls)
    return AssistantTurn(blocks=blocks)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment's .env file."""
    return Settings(_env_file=None, redis_url=None, max_history_turns=None)


@pytest.fixture
def fakes():
    """Namespace with the fake collaborators and turn builders."""

    class _Fakes:
        Operator = ScriptedOperator
        Completion = FakeCompletion
        Router = FakeRouter

    _Fakes.text_turn = staticmethod(text_turn)
    _Fakes.tool_turn = staticmethod(tool_turn)
    return _Fakes
