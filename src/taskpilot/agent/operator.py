"""Operator decisions and the presentation seam of the task loop.

The task loop only talks to an :class:`Operator`: it asks for a decision and
hands over events to show. Console and WebSocket front ends implement it; the
loop itself never touches the terminal.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Protocol, Union

import click

from ..models import ToolRequest


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class Comment:
    text: str


@dataclass(frozen=True)
class Feedback:
    text: str


@dataclass(frozen=True)
class Retry:
    pass


Decision = Union[Continue, Stop, Comment, Feedback, Retry]

DECISION_NAMES = ("continue", "stop", "comment", "feedback", "retry")


def decision_from_payload(payload: Mapping[str, Any]) -> Decision:
    """Build a decision from ``{"decision": name, "text": ...}``.

    Raises:
        ValueError: unknown decision name.
    """
    name = str(payload.get("decision") or "").strip().lower()
    text = str(payload.get("text") or "")
    if name == "continue":
        return Continue()
    if name == "stop":
        return Stop()
    if name == "comment":
        return Comment(text=text)
    if name == "feedback":
        return Feedback(text=text)
    if name == "retry":
        return Retry()
    raise ValueError(f"Unknown decision: {name!r}")


class EventKind(str, Enum):
    SESSION = "session"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_ERROR = "tool_error"
    COMMENT = "comment"
    RETRY = "retry"
    FEEDBACK = "feedback"
    ERROR = "error"


@dataclass(frozen=True)
class DecisionRequest:
    """What the operator is asked to decide on. ``tool`` is None when the model asked for nothing."""

    step: int
    tool: ToolRequest | None = None


class Operator(Protocol):
    async def decide(self, request: DecisionRequest) -> Decision: ...

    def show(self, kind: EventKind, text: str) -> None: ...


def format_arguments(arguments: Dict[str, Any]) -> str:
    parts = [f"{k}={json.dumps(v, ensure_ascii=False)}" for k, v in arguments.items()]
    return f"({', '.join(parts)})"


_CHOICES = {"c": "continue", "s": "stop", "m": "comment", "f": "feedback", "r": "retry"}


class ConsoleOperator:
    """Operator on stdin/stdout. Prompts block until the operator answers."""

    def show(self, kind: EventKind, text: str) -> None:
        click.echo(f">>> [{kind.value}]")
        for line in text.splitlines() or [""]:
            click.echo(f"    {line}")

    async def decide(self, request: DecisionRequest) -> Decision:
        if request.tool is not None:
            click.echo(
                f"    Execute {request.tool.name} {format_arguments(request.tool.arguments)}?"
            )
        choice = click.prompt(
            "    [c]ontinue / [s]top / co[m]ment / [f]eedback / [r]etry",
            type=click.Choice(list(_CHOICES) + list(DECISION_NAMES), case_sensitive=False),
            default="c",
            show_choices=False,
        )
        name = _CHOICES.get(choice.lower(), choice.lower())
        text = ""
        if name in ("comment", "feedback"):
            text = click.prompt(f"    {name.capitalize()}", type=str)
        return decision_from_payload({"decision": name, "text": text})
