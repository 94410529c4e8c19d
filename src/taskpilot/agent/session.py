import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict

from ..models import (
    AssistantTurn,
    FeedbackInfo,
    FeedbackKind,
    MessageDocument,
    SessionDocument,
    TaskState,
    ToolInfo,
    ToolRequest,
    utcnow,
)
from .conversation import ConversationBody, HistoryPolicy
from .interpreter import render_turn

logger = logging.getLogger(__name__)


class SessionLog:
    """Transcript of one session, kept in step with the conversation body.

    Every recorded event goes to both the conversation sent to the model and
    the session document, and the metadata counters move with it.
    """

    def __init__(
        self,
        task_description: str,
        initial_prompt: str,
        history_policy: HistoryPolicy | None = None,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.started_at: datetime = utcnow()
        self.state = TaskState()
        self.stop_requested = False
        self.body = ConversationBody(history_policy)
        self.document = SessionDocument(
            session_id=self.session_id,
            task_description=task_description,
            updated_at=self.started_at,
        )
        self.body.append("user", initial_prompt)
        self._record("user", initial_prompt)

    @property
    def error_count(self) -> int:
        return self.document.metadata.error_count

    @property
    def comment_count(self) -> int:
        return self.document.metadata.comment_count

    def _snapshot(self) -> TaskState:
        return replace(self.state)

    def _record(
        self,
        role: str,
        content: str,
        tool_info: ToolInfo | None = None,
        feedback: FeedbackInfo | None = None,
        with_state: bool = True,
    ) -> None:
        self.document.append(
            MessageDocument(
                role=role,
                content=content,
                tool_info=tool_info,
                task_state=self._snapshot() if with_state else None,
                feedback=feedback,
            )
        )

    def add_assistant_turn(self, turn: AssistantTurn) -> str:
        """Record a model turn and advance the step counter. Returns the rendered text."""
        content = render_turn(turn)
        self.body.append("assistant", content)
        self._record("assistant", content, with_state=False)
        self.state.step += 1
        self.document.metadata.total_steps = self.state.step
        return content

    def add_comment(self, comment: str) -> None:
        content = f"Operator comment: {comment}"
        self.body.append("user", content)
        self._record("user", content, feedback=FeedbackInfo(FeedbackKind.COMMENT, comment))
        self.document.metadata.comment_count += 1

    def add_tool_success(self, request: ToolRequest, result: str) -> None:
        self.body.append(
            "user",
            f"Called tool '{request.name}' successfully. {result}. "
            f"state:{self._snapshot()} Next action.",
        )
        self._record(
            "system",
            f"Tool result: {result}",
            tool_info=ToolInfo(
                name=request.name,
                arguments=dict(request.arguments),
                result=result,
                success=True,
            ),
        )
        self.document.metadata.used_tools.append(request.name)

    def add_tool_failure(self, request: ToolRequest, error: str) -> None:
        content = (
            f"Called tool '{request.name}' failed: {error}. "
            "Please retry or consider an alternative."
        )
        self.body.append("user", content)
        self._record(
            "system",
            content,
            tool_info=ToolInfo(
                name=request.name,
                arguments=dict(request.arguments),
                result=f"Called tool '{request.name}' failed: {error}",
                success=False,
            ),
            feedback=FeedbackInfo(FeedbackKind.ERROR, error),
        )
        self.document.metadata.error_count += 1

    def add_retry(self, request: ToolRequest) -> None:
        content = f"Retry to call tool '{request.name}'."
        self.body.append("user", content)
        self._record("user", content, feedback=FeedbackInfo(FeedbackKind.RETRY, request.name))

    def add_feedback(self, feedback: str) -> None:
        """Record the operator's closing feedback. The session ends after it."""
        self._record(
            "user",
            f"Operator feedback: {feedback}",
            feedback=FeedbackInfo(FeedbackKind.USER, feedback),
        )

    def elapsed_seconds(self) -> int:
        return int((utcnow() - self.started_at).total_seconds())

    def finalize(self, completed: bool) -> SessionDocument:
        meta = self.document.metadata
        meta.completion_status = completed
        meta.total_steps = self.state.step
        meta.execution_time = self.elapsed_seconds()
        self.document.updated_at = utcnow()
        logger.info(
            "Session %s finalized: completed=%s steps=%d errors=%d comments=%d",
            self.session_id,
            completed,
            meta.total_steps,
            meta.error_count,
            meta.comment_count,
        )
        return self.document

    def summary(self) -> Dict[str, Any]:
        meta = self.document.metadata
        return {
            "session_id": self.session_id,
            "steps": self.state.step,
            "execution_time": meta.execution_time,
            "errors": meta.error_count,
            "comments": meta.comment_count,
            "used_tools": list(meta.used_tools),
            "completed": meta.completion_status,
        }
