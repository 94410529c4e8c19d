import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import (
    FeedbackInfo,
    FeedbackKind,
    LearningMetrics,
    MessageDocument,
    SessionDocument,
    SessionMetadata,
    TaskState,
    ToolInfo,
)
from ..settings import get_settings
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
FEEDBACK_KEY_PREFIX = "feedback:"
SESSION_INDEX_KEY = "sessions"

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _tokens(text: str) -> set[str]:
    return {t.lower() for t in _TOKEN_RE.findall(text) if len(t) > 1}


def _message_to_dict(msg: MessageDocument) -> Dict[str, Any]:
    return {
        "role": msg.role,
        "content": msg.content,
        "timestamp": msg.timestamp.isoformat(),
        "tool_info": None
        if msg.tool_info is None
        else {
            "name": msg.tool_info.name,
            "arguments": msg.tool_info.arguments,
            "result": msg.tool_info.result,
            "success": msg.tool_info.success,
        },
        "task_state": None
        if msg.task_state is None
        else {"step": msg.task_state.step, "description": msg.task_state.description},
        "feedback": None
        if msg.feedback is None
        else {"kind": msg.feedback.kind.value, "content": msg.feedback.content},
    }


def _dict_to_message(data: Dict[str, Any]) -> MessageDocument:
    tool = data.get("tool_info")
    state = data.get("task_state")
    feedback = data.get("feedback")
    return MessageDocument(
        role=data["role"],
        content=data.get("content", ""),
        timestamp=datetime.fromisoformat(data["timestamp"]),
        tool_info=None
        if tool is None
        else ToolInfo(
            name=tool["name"],
            arguments=tool.get("arguments") or {},
            result=tool.get("result"),
            success=bool(tool.get("success")),
        ),
        task_state=None
        if state is None
        else TaskState(step=int(state["step"]), description=state.get("description", "")),
        feedback=None
        if feedback is None
        else FeedbackInfo(kind=FeedbackKind(feedback["kind"]), content=feedback.get("content", "")),
    )


def session_to_dict(doc: SessionDocument) -> Dict[str, Any]:
    """Serialize a SessionDocument to a JSON-serializable dict."""
    meta = doc.metadata
    metrics = doc.learning_metrics
    return {
        "session_id": doc.session_id,
        "task_description": doc.task_description,
        "messages": [_message_to_dict(m) for m in doc.messages],
        "metadata": {
            "total_steps": meta.total_steps,
            "used_tools": list(meta.used_tools),
            "completion_status": meta.completion_status,
            "execution_time": meta.execution_time,
            "error_count": meta.error_count,
            "comment_count": meta.comment_count,
        },
        "learning_metrics": None
        if metrics is None
        else {
            "success": metrics.success,
            "tool_success_rate": metrics.tool_success_rate,
            "feedback": metrics.feedback,
        },
        "updated_at": doc.updated_at.isoformat(),
    }


def dict_to_session(data: Dict[str, Any]) -> SessionDocument:
    """Build a SessionDocument from a dict (e.g. from Redis)."""
    meta = data.get("metadata") or {}
    metrics = data.get("learning_metrics")
    return SessionDocument(
        session_id=data["session_id"],
        task_description=data.get("task_description", ""),
        messages=[_dict_to_message(m) for m in data.get("messages", [])],
        metadata=SessionMetadata(
            total_steps=int(meta.get("total_steps", 0)),
            used_tools=list(meta.get("used_tools", [])),
            completion_status=bool(meta.get("completion_status", False)),
            execution_time=int(meta.get("execution_time", 0)),
            error_count=int(meta.get("error_count", 0)),
            comment_count=int(meta.get("comment_count", 0)),
        ),
        learning_metrics=None
        if metrics is None
        else LearningMetrics(
            success=bool(metrics.get("success")),
            tool_success_rate=float(metrics.get("tool_success_rate", 0.0)),
            feedback=metrics.get("feedback", ""),
        ),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


@dataclass(frozen=True)
class SimilarSession:
    session: SessionDocument
    score: float
    feedback: str = ""


class LearningStore:
    """Persists finished sessions and operator feedback; ranks past sessions by text."""

    def __init__(self, redis_crud: RedisCrudService, ttl_seconds: int | None = None) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    def _feedback_key(self, session_id: str) -> str:
        return f"{FEEDBACK_KEY_PREFIX}{session_id}"

    async def save_session(self, doc: SessionDocument) -> bool:
        """Store the session and add it to the search index. Returns True on success."""
        try:
            payload = json.dumps(session_to_dict(doc))
        except (TypeError, ValueError) as e:
            logger.warning("Session serialization failed for %s: %s", doc.session_id, e)
            return False
        if not await self._redis.set(self._key(doc.session_id), payload, ttl_seconds=self._ttl):
            return False
        return await self._redis.add_member(SESSION_INDEX_KEY, doc.session_id)

    async def record_feedback(self, doc: SessionDocument, feedback: str) -> bool:
        """Store the finalized session together with the operator's feedback text."""
        if not await self.save_session(doc):
            return False
        return await self._redis.set(
            self._feedback_key(doc.session_id), feedback, ttl_seconds=self._ttl
        )

    async def get_session(self, session_id: str) -> SessionDocument | None:
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return None
        try:
            return dict_to_session(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid session data for %s: %s", session_id, e)
            return None

    async def search_similar(self, text: str, top_k: int = 3) -> List[SimilarSession]:
        """Rank stored sessions by token overlap with ``text``.

        Score is the Jaccard similarity between the query tokens and the
        session's task description plus feedback. Sessions with no overlap are
        left out. Expired sessions are pruned from the index.
        """
        query = _tokens(text)
        if not query or top_k <= 0:
            return []

        ids = await self._redis.members(SESSION_INDEX_KEY)
        if not ids:
            return []
        raws = await self._redis.mget([self._key(i) for i in ids])
        feedbacks = await self._redis.mget([self._feedback_key(i) for i in ids])

        ranked: List[SimilarSession] = []
        for session_id, raw, feedback in zip(ids, raws, feedbacks):
            if raw is None:
                await self._redis.remove_member(SESSION_INDEX_KEY, session_id)
                continue
            try:
                doc = dict_to_session(json.loads(raw))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable session %s: %s", session_id, e)
                continue
            candidate = _tokens(doc.task_description) | _tokens(feedback or "")
            if not candidate:
                continue
            score = len(query & candidate) / len(query | candidate)
            if score > 0:
                ranked.append(SimilarSession(session=doc, score=score, feedback=feedback or ""))

        ranked.sort(key=lambda s: (-s.score, s.session.session_id))
        return ranked[:top_k]


_learning_store_instance: LearningStore | None = None


async def get_learning_store_async() -> LearningStore | None:
    """Return the learning store after ensuring Redis is connected. Cached.

    Returns None when Redis is not configured or unreachable.
    """
    global _learning_store_instance
    if _learning_store_instance is not None:
        return _learning_store_instance
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        return None
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Learning store unavailable (Redis): %s", e)
        return None
    _learning_store_instance = LearningStore(
        redis_crud=redis_crud, ttl_seconds=get_settings().session_ttl_seconds
    )
    return _learning_store_instance


async def close_learning_store() -> None:
    """Close the Redis connection used by the learning store. Idempotent."""
    global _learning_store_instance
    if _learning_store_instance is not None:
        await _learning_store_instance._redis.close()
        _learning_store_instance = None
        logger.debug("Learning store (Redis) closed")
