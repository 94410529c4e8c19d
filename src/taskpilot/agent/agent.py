import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Protocol, Sequence

from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult

from ..errors import BackendError, CompletionServiceError, ToolNotFoundError
from ..models import AssistantTurn, SessionDocument, ToolRequest
from ..services.learning_store import LearningStore
from ..services.router import result_text
from ..settings import Settings, get_settings
from .conversation import HistoryPolicy
from .feedback import FeedbackRecorder
from .history import build_system_prompt
from .interpreter import extract_tool_requests
from .operator import (
    Comment,
    Continue,
    DecisionRequest,
    EventKind,
    Feedback,
    Operator,
    Retry,
    Stop,
    format_arguments,
)
from .session import SessionLog

logger = logging.getLogger(__name__)


class ToolRouter(Protocol):
    def catalog(self) -> List[Dict[str, Any]]: ...

    async def call(self, tool_name: str, arguments: Dict[str, Any]) -> CallToolResult: ...


class Completion(Protocol):
    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        system: str,
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> AssistantTurn: ...


class SessionOutcome(str, Enum):
    COMPLETE = "complete"
    USER_STOPPED = "user_stopped"
    FEEDBACK = "feedback"
    RETRY_ENDED = "retry_ended"


@dataclass
class SessionResult:
    outcome: SessionOutcome
    document: SessionDocument
    steps: int


class TaskLoop:
    """Operator-gated agent loop over one completion client and one tool router.

    Each iteration asks the model for a turn, extracts tool requests and lets
    the operator decide on each of them before anything is executed. One loop
    instance runs one session at a time.
    """

    def __init__(
        self,
        router: ToolRouter,
        completion: Completion,
        operator: Operator,
        *,
        store: LearningStore | None = None,
        settings: Settings | None = None,
        history_policy: HistoryPolicy | None = None,
    ) -> None:
        self._router = router
        self._completion = completion
        self._operator = operator
        self._store = store
        self._settings = settings or get_settings()
        self._history_policy = history_policy or HistoryPolicy(
            max_turns=self._settings.max_history_turns
        )

    async def run(self, task_description: str) -> SessionResult:
        """Run one session for ``task_description`` until it terminates.

        Raises:
            CompletionServiceError: the completion service failed; the session
                is abandoned.
        """
        system = await build_system_prompt(task_description, self._store, self._settings)
        tools = self._router.catalog()
        log = SessionLog(
            task_description=task_description,
            initial_prompt=f'"{task_description}" Please consider and execute the next action.',
            history_policy=self._history_policy,
        )
        feedback = FeedbackRecorder(self._store)
        logger.info("Session %s started: %s", log.session_id, task_description[:200])
        self._operator.show(
            EventKind.SESSION, f"Session ID: {log.session_id}\nTask: {task_description}"
        )

        while True:
            if log.stop_requested:
                return await self._finish(log, SessionOutcome.USER_STOPPED)

            turn = await self._next_turn(log, system, tools)
            requests = extract_tool_requests(turn)

            if not requests:
                result = await self._on_no_tool(log, feedback)
            else:
                result = await self._on_tools(log, feedback, requests)
            if result is not None:
                return result

    async def _next_turn(
        self, log: SessionLog, system: str, tools: List[Dict[str, Any]]
    ) -> AssistantTurn:
        try:
            turn = await self._completion.complete(log.body.request_messages(), system, tools)
        except CompletionServiceError as e:
            logger.error("Session %s aborted: %s", log.session_id, e)
            self._operator.show(EventKind.ERROR, str(e))
            log.finalize(completed=False)
            raise
        content = log.add_assistant_turn(turn)
        self._operator.show(EventKind.ASSISTANT, f"{content}\n[Step] {log.state.step}")
        return turn

    async def _on_no_tool(self, log: SessionLog, feedback: FeedbackRecorder) -> SessionResult | None:
        self._operator.show(EventKind.SYSTEM, "No next action was specified.")
        decision = await self._operator.decide(DecisionRequest(step=log.state.step))
        logger.info("Decision with no tool pending: %s", decision)

        if isinstance(decision, Continue):
            self._operator.show(EventKind.SYSTEM, "No tool was requested; ending the session.")
            return await self._finish(log, SessionOutcome.COMPLETE)
        if isinstance(decision, Stop):
            self._operator.show(EventKind.SYSTEM, "Stopping now as requested.")
            return await self._finish(log, SessionOutcome.USER_STOPPED)
        if isinstance(decision, Comment):
            self._operator.show(EventKind.COMMENT, decision.text)
            log.add_comment(decision.text)
            return None
        if isinstance(decision, Feedback):
            return await self._record_feedback(log, feedback, True, decision.text)
        # TODO: confirm with product whether Retry without a pending tool should
        # re-ask the model instead of ending the session.
        self._operator.show(
            EventKind.RETRY, "Retry was selected but no tool is pending; ending the session."
        )
        return await self._finish(log, SessionOutcome.RETRY_ENDED)

    async def _on_tools(
        self,
        log: SessionLog,
        feedback: FeedbackRecorder,
        requests: List[ToolRequest],
    ) -> SessionResult | None:
        for request in requests:
            while True:
                self._operator.show(
                    EventKind.SYSTEM,
                    f"Confirm tool execution: {request.name} {format_arguments(request.arguments)}",
                )
                decision = await self._operator.decide(
                    DecisionRequest(step=log.state.step, tool=request)
                )
                logger.info("Decision for tool %s: %s", request.name, decision)
                if not isinstance(decision, Comment):
                    break
                self._operator.show(EventKind.COMMENT, decision.text)
                log.add_comment(decision.text)

            if isinstance(decision, Continue):
                await self._execute(log, request)
            elif isinstance(decision, Stop):
                log.stop_requested = True
                self._operator.show(EventKind.SYSTEM, "Stopping now as requested.")
                break
            elif isinstance(decision, Feedback):
                return await self._record_feedback(log, feedback, False, decision.text)
            elif isinstance(decision, Retry):
                self._operator.show(
                    EventKind.RETRY, f"Retry of tool '{request.name}' deferred to the model."
                )
                log.add_retry(request)
        return None

    async def _execute(self, log: SessionLog, request: ToolRequest) -> None:
        if request.error is not None:
            logger.error("Tool %s not called: %s", request.name, request.error)
            self._operator.show(
                EventKind.TOOL_ERROR, f"Tool '{request.name}' not called: {request.error}"
            )
            log.add_tool_failure(request, request.error)
            return

        self._operator.show(EventKind.TOOL_CALL, f"Running {request.name}...")
        try:
            result = await self._router.call(request.name, dict(request.arguments))
        except (ToolNotFoundError, BackendError, McpError) as e:
            logger.error(
                "Tool %s failed with arguments %s: %s",
                request.name,
                json.dumps(request.arguments, default=str),
                e,
            )
            self._operator.show(
                EventKind.TOOL_ERROR,
                f"Tool '{request.name}' {format_arguments(request.arguments)} failed: {e}",
            )
            log.add_tool_failure(request, str(e))
            return

        text = result_text(result)
        self._operator.show(EventKind.TOOL_RESULT, text)
        log.add_tool_success(request, text)

    async def _record_feedback(
        self,
        log: SessionLog,
        feedback: FeedbackRecorder,
        success: bool,
        text: str,
    ) -> SessionResult:
        self._operator.show(EventKind.FEEDBACK, f"{text}\nRecording feedback and ending the task.")
        log.add_feedback(text)
        document = await feedback.record(
            log.document,
            success,
            log.state,
            log.error_count,
            log.comment_count,
            log.started_at,
            text,
        )
        return SessionResult(SessionOutcome.FEEDBACK, document, log.state.step)

    async def _finish(self, log: SessionLog, outcome: SessionOutcome) -> SessionResult:
        document = log.finalize(completed=outcome is SessionOutcome.COMPLETE)
        if self._store is not None and not await self._store.save_session(document):
            logger.error("Failed to persist session %s", log.session_id)
        summary = log.summary()
        self._operator.show(
            EventKind.SESSION,
            f"Session {outcome.value}\n"
            f"Execution time: {summary['execution_time']} s\n"
            f"Steps: {summary['steps']}\n"
            f"Errors: {summary['errors']}\n"
            f"Comments: {summary['comments']}",
        )
        return SessionResult(outcome, document, log.state.step)
