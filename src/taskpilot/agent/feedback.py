import logging
from datetime import datetime

from ..models import LearningMetrics, SessionDocument, TaskState, utcnow
from ..services.learning_store import LearningStore

logger = logging.getLogger(__name__)


class FeedbackRecorder:
    """Finalizes a session with operator feedback and hands it to the learning store.

    One recorder per session; recording twice raises RuntimeError.
    """

    def __init__(self, store: LearningStore | None) -> None:
        self._store = store
        self._recorded = False

    @property
    def recorded(self) -> bool:
        return self._recorded

    async def record(
        self,
        document: SessionDocument,
        success: bool,
        state: TaskState,
        error_count: int,
        comment_count: int,
        started_at: datetime,
        feedback: str,
    ) -> SessionDocument:
        if self._recorded:
            raise RuntimeError(f"Feedback already recorded for session {document.session_id}")
        self._recorded = True

        meta = document.metadata
        meta.completion_status = success
        meta.total_steps = state.step
        meta.error_count = error_count
        meta.comment_count = comment_count
        meta.execution_time = int((utcnow() - started_at).total_seconds())

        attempts = len(meta.used_tools) + error_count
        document.learning_metrics = LearningMetrics(
            success=success,
            tool_success_rate=len(meta.used_tools) / attempts if attempts else 0.0,
            feedback=feedback,
        )
        document.updated_at = utcnow()

        if self._store is None:
            logger.warning(
                "No learning store configured; feedback for %s not persisted", document.session_id
            )
            return document
        if not await self._store.record_feedback(document, feedback):
            logger.error("Failed to persist feedback for session %s", document.session_id)
        else:
            logger.info("Feedback recorded for session %s", document.session_id)
        return document
