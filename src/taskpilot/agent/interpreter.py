"""Turn one model response into an ordered list of tool requests.

Structured tool-use blocks are taken as they are. Models sometimes write the
invocation into the prose instead (usually because earlier assistant turns
are replayed to them as text), so text blocks are scanned for embedded JSON
payloads as well.
"""

import json
import logging
from typing import Any, Dict, Iterator, List

import json_repair

from ..models import AssistantTurn, TextBlock, ToolRequest, ToolUseBlock

logger = logging.getLogger(__name__)

_ARGUMENT_KEYS = ("input", "arguments", "args", "parameters")


def _match_brace(text: str, start: int) -> int | None:
    """Return the index just past the object opening at ``start``, or None."""
    depth = 0
    quote: str | None = None
    escape = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if quote is not None:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx + 1
    return None


def loads_tolerant(blob: str) -> Any | None:
    """Parse a JSON object or array, repairing model slips.

    Trailing commas, single or mixed quoting and objects cut off before their
    closing brace are repaired by ``json_repair``. Returns None when nothing
    object- or array-shaped can be recovered.
    """
    try:
        return json.loads(blob, strict=False)
    except json.JSONDecodeError:
        pass
    repaired = json_repair.loads(blob)
    if isinstance(repaired, (dict, list)) and repaired:
        return repaired
    return None


def _iter_json_objects(text: str) -> Iterator[Dict[str, Any]]:
    pos = text.find("{")
    while pos >= 0:
        end = _match_brace(text, pos)
        if end is None:
            pos = text.find("{", pos + 1)
            continue
        obj = loads_tolerant(text[pos:end])
        if isinstance(obj, dict):
            yield obj
            pos = text.find("{", end)
        else:
            pos = text.find("{", pos + 1)


def _as_arguments(value: Any) -> Dict[str, Any] | None:
    if value is None:
        return {}
    if isinstance(value, str):
        value = loads_tolerant(value) if value.strip() else {}
    return value if isinstance(value, dict) else None


def _as_request(obj: Dict[str, Any]) -> ToolRequest | None:
    function = obj.get("function")
    if isinstance(function, dict) and isinstance(function.get("name"), str):
        obj = function

    name = obj.get("name") or obj.get("tool")
    if not isinstance(name, str) or not name.strip():
        return None
    if obj.get("type") not in (None, "tool_use", "function", "tool_call"):
        return None

    present = [k for k in _ARGUMENT_KEYS if k in obj]
    if not present and obj.get("type") != "tool_use":
        return None
    arguments = _as_arguments(obj.get(present[0]) if present else None)
    if arguments is None:
        return None
    return ToolRequest(name=name.strip(), arguments=arguments)


def _collect(value: Any, out: List[ToolRequest]) -> None:
    if isinstance(value, dict):
        request = _as_request(value)
        if request is not None:
            out.append(request)
            return
        for item in value.values():
            _collect(item, out)
    elif isinstance(value, list):
        for item in value:
            _collect(item, out)


def parse_embedded_tool_uses(text: str) -> List[ToolRequest]:
    """Recover tool invocations written as JSON inside free text.

    Recognized payloads, bare or inside code fences:
    ``{"type": "tool_use", "name": ..., "input": {...}}``,
    ``{"name": ..., "arguments": {...}}`` (arguments may be a JSON string),
    OpenAI-style ``{"function": {"name": ..., "arguments": ...}}`` and lists
    of any of these (e.g. under ``tool_calls``).
    """
    if not text or "{" not in text:
        return []
    found: List[ToolRequest] = []
    for obj in _iter_json_objects(text):
        _collect(obj, found)
    return found


def extract_tool_requests(turn: AssistantTurn) -> List[ToolRequest]:
    """Return the tool requests of one turn, in block order.

    An empty list means the model did not ask for a tool.
    """
    requests: List[ToolRequest] = []
    for block in turn.blocks:
        if isinstance(block, ToolUseBlock):
            requests.append(
                ToolRequest(name=block.name, arguments=dict(block.input), error=block.error)
            )
        elif isinstance(block, TextBlock):
            found = parse_embedded_tool_uses(block.text)
            if found:
                logger.debug("Recovered %d tool use(s) from text: %s", len(found), found)
            requests.extend(found)
    return requests


def render_turn(turn: AssistantTurn) -> str:
    """Flatten a turn into text for replay in the conversation."""
    parts: List[str] = []
    for block in turn.blocks:
        if isinstance(block, TextBlock):
            if block.text:
                parts.append(block.text)
        else:
            parts.append(
                json.dumps(
                    {"type": "tool_use", "name": block.name, "input": block.input},
                    ensure_ascii=False,
                )
            )
    return "\n".join(parts)
