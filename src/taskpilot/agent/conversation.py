from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence

Message = Dict[str, Any]


@dataclass
class HistoryPolicy:
    """Bounds what is sent to the completion service each turn.

    ``max_turns`` counts messages kept after the first one (the task prompt,
    which is always sent). ``summarize`` replaces the dropped middle with a
    single summary message. ``max_turns=None`` sends everything.
    """

    max_turns: int | None = None
    summarize: Callable[[Sequence[Message]], str] | None = None


class ConversationBody:
    """Append-only message list for the completion service."""

    def __init__(self, policy: HistoryPolicy | None = None) -> None:
        self._messages: List[Message] = []
        self._policy = policy or HistoryPolicy()

    def append(self, role: str, content: str) -> None:
        self._messages.append({"role": role, "content": content})

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> List[Message]:
        return [dict(m) for m in self._messages]

    def request_messages(self) -> List[Message]:
        """Messages for the next request, with the history policy applied."""
        limit = self._policy.max_turns
        if limit is None or len(self._messages) <= limit + 1:
            return self.messages

        head = self._messages[0]
        tail = self._messages[len(self._messages) - limit :] if limit > 0 else []
        dropped = self._messages[1 : len(self._messages) - limit]
        out: List[Message] = [dict(head)]
        if self._policy.summarize is not None and dropped:
            summary = self._policy.summarize([dict(m) for m in dropped])
            out.append({"role": "user", "content": f"Summary of earlier conversation:\n{summary}"})
        out.extend(dict(m) for m in tail)
        return out
