"""Agent package for the taskpilot runner.

This package exposes the operator-gated task loop while keeping the pieces it
is built from (response interpretation, completion client, operator seam,
session transcript) in separate modules.
"""

from .agent import SessionOutcome, SessionResult, TaskLoop
from .completion import CompletionClient
from .conversation import ConversationBody, HistoryPolicy
from .interpreter import extract_tool_requests, parse_embedded_tool_uses
from .operator import (
    Comment,
    ConsoleOperator,
    Continue,
    Decision,
    DecisionRequest,
    EventKind,
    Feedback,
    Operator,
    Retry,
    Stop,
)

__all__ = [
    "Comment",
    "CompletionClient",
    "ConsoleOperator",
    "Continue",
    "ConversationBody",
    "Decision",
    "DecisionRequest",
    "EventKind",
    "Feedback",
    "HistoryPolicy",
    "Operator",
    "Retry",
    "SessionOutcome",
    "SessionResult",
    "Stop",
    "TaskLoop",
    "extract_tool_requests",
    "parse_embedded_tool_uses",
]
