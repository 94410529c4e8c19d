import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Sequence

import openai
from openai import AsyncOpenAI

from ..errors import CompletionServiceError
from ..models import AssistantTurn, ContentBlock, TextBlock, ToolUseBlock
from ..settings import Settings, get_settings
from .interpreter import loads_tolerant

logger = logging.getLogger(__name__)


def _to_blocks(message: Any) -> List[ContentBlock]:
    """Map an OpenAI chat message onto ordered content blocks."""
    blocks: List[ContentBlock] = []
    if message.content:
        blocks.append(TextBlock(text=message.content))
    for tc in message.tool_calls or []:
        raw = tc.function.arguments or ""
        arguments = loads_tolerant(raw) if raw.strip() else {}
        if not isinstance(arguments, dict):
            logger.warning("Unparseable arguments for tool call %s: %s", tc.function.name, raw)
            blocks.append(
                ToolUseBlock(
                    name=tc.function.name,
                    input={},
                    id=tc.id or "",
                    error=f"invalid arguments (expected a JSON object): {raw}",
                )
            )
            continue
        blocks.append(ToolUseBlock(name=tc.function.name, input=arguments, id=tc.id or ""))
    return blocks


class CompletionClient:
    """Stateless client for the chat completion service."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._timeout = self._settings.completion_timeout_seconds
        self._client = client or AsyncOpenAI(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url,
            timeout=self._timeout,
        )

    def _request(
        self,
        messages: Sequence[Dict[str, Any]],
        system: str,
        tools: Sequence[Dict[str, Any]] | None,
        stream: bool,
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [{"role": "system", "content": system}, *messages],
            "max_tokens": self._settings.max_tokens,
            "temperature": self._settings.temperature,
            "stream": stream,
        }
        if tools:
            request["tools"] = list(tools)
            request["tool_choice"] = "auto"
        return request

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        system: str,
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> AssistantTurn:
        """Send the conversation and return the whole assistant turn.

        Raises:
            CompletionServiceError: on any API, transport or deadline failure.
        """
        request = self._request(messages, system, tools, stream=False)
        logger.debug("Completion request: %d messages, %d tools", len(messages), len(tools or []))
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**request), self._timeout
            )
        except asyncio.TimeoutError as e:
            raise CompletionServiceError(
                f"Completion service timed out after {self._timeout}s"
            ) from e
        except openai.APIError as e:
            raise CompletionServiceError(f"Completion service error: {e}") from e

        if not response.choices:
            raise CompletionServiceError("Completion service returned no choices")
        choice = response.choices[0]
        return AssistantTurn(blocks=_to_blocks(choice.message), stop_reason=choice.finish_reason)

    async def stream_text(
        self,
        messages: Sequence[Dict[str, Any]],
        system: str,
    ) -> AsyncIterator[str]:
        """Yield text deltas of a completion as they arrive.

        The deadline covers the whole response: opening the stream and every
        chunk read after it.

        Raises:
            CompletionServiceError: on any API, transport or deadline failure.
        """
        request = self._request(messages, system, None, stream=True)
        loop = asyncio.get_running_loop()
        deadline = None if self._timeout is None else loop.time() + self._timeout

        def remaining() -> float | None:
            return None if deadline is None else max(0.0, deadline - loop.time())

        try:
            stream = await asyncio.wait_for(
                self._client.chat.completions.create(**request), remaining()
            )
            chunks = stream.__aiter__()
            while True:
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), remaining())
                except StopAsyncIteration:
                    break
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except asyncio.TimeoutError as e:
            raise CompletionServiceError(
                f"Completion service timed out after {self._timeout}s"
            ) from e
        except openai.APIError as e:
            raise CompletionServiceError(f"Completion service error: {e}") from e
