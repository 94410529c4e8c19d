import logging
from typing import Sequence

from ..services.learning_store import LearningStore, SimilarSession
from ..settings import Settings

logger = logging.getLogger(__name__)


def summarize_sessions(sessions: Sequence[SimilarSession]) -> str:
    """Render past sessions as a compact, prompt-friendly list."""
    if not sessions:
        return "(no similar tasks found)"
    lines = []
    for idx, found in enumerate(sessions, 1):
        doc = found.session
        meta = doc.metadata
        lines.append(f"{idx}. Task: {doc.task_description} (similarity {found.score:.2f})")
        lines.append(
            f"   Outcome: {'completed' if meta.completion_status else 'not completed'}; "
            f"steps {meta.total_steps}; errors {meta.error_count}"
        )
        if meta.used_tools:
            lines.append(f"   Tools used: {' -> '.join(meta.used_tools)}")
        if found.feedback:
            lines.append(f"   Feedback: {found.feedback}")
    return "\n".join(lines)


def wants_history(task_description: str, settings: Settings) -> bool:
    return bool(settings.history_marker) and settings.history_marker in task_description


async def build_system_prompt(
    task_description: str,
    store: LearningStore | None,
    settings: Settings,
) -> str:
    """System prompt for a session, with similar past sessions when the task asks for them."""
    parts = []
    if store is not None and wants_history(task_description, settings):
        query = task_description.replace(settings.history_marker, " ").strip()
        similar = await store.search_similar(query, settings.history_top_k)
        logger.info("History lookup returned %d similar session(s)", len(similar))
        parts.append(f"Here are potentially similar tasks from the past:\n{summarize_sessions(similar)}")
    elif wants_history(task_description, settings):
        logger.warning("History lookup requested but no learning store is configured")
    parts.append(settings.agent_system_prompt)
    parts.append(settings.tool_usage_notes)
    return "\n\n".join(parts)
