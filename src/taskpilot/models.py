from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TaskState:
    """Progress of one session: assistant turn counter plus a description."""

    step: int = 0
    description: str = "Task started"


class FeedbackKind(str, Enum):
    ERROR = "error"
    COMMENT = "comment"
    RETRY = "retry"
    USER = "user"


@dataclass(frozen=True)
class FeedbackInfo:
    kind: FeedbackKind
    content: str


@dataclass(frozen=True)
class ToolInfo:
    name: str
    arguments: Dict[str, Any]
    result: str | None = None
    success: bool = False


@dataclass(frozen=True)
class MessageDocument:
    """One entry of the session transcript."""

    role: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    tool_info: ToolInfo | None = None
    task_state: TaskState | None = None
    feedback: FeedbackInfo | None = None


@dataclass
class SessionMetadata:
    total_steps: int = 0
    used_tools: List[str] = field(default_factory=list)
    completion_status: bool = False
    execution_time: int = 0
    error_count: int = 0
    comment_count: int = 0


@dataclass
class LearningMetrics:
    success: bool
    tool_success_rate: float
    feedback: str = ""


@dataclass
class SessionDocument:
    """Auditable record of a whole session, persisted to the learning store."""

    session_id: str
    task_description: str
    messages: List[MessageDocument] = field(default_factory=list)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    learning_metrics: LearningMetrics | None = None
    updated_at: datetime = field(default_factory=utcnow)

    def append(self, message: MessageDocument) -> None:
        self.messages.append(message)
        self.updated_at = message.timestamp


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    name: str
    input: Dict[str, Any]
    id: str = ""
    error: str | None = None


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class AssistantTurn:
    """One model response as ordered content blocks."""

    blocks: List[ContentBlock]
    stop_reason: str | None = None


@dataclass(frozen=True)
class ToolRequest:
    """A tool the model asked for. ``error`` is set when its arguments could not be read."""

    name: str
    arguments: Dict[str, Any]
    error: str | None = None
