import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .agent import CompletionClient, TaskLoop
from .agent.operator import DECISION_NAMES, Decision, DecisionRequest, EventKind, decision_from_payload
from .errors import BackendConnectionError, CompletionServiceError
from .logs import setup_logging
from .services.learning_store import close_learning_store, get_learning_store_async
from .services.router import MultiBackendRouter
from .settings import get_settings, load_server_configs

settings = get_settings()
LOGGER = setup_logging("server.log", level=settings.log_level, logs_dir=settings.log_dir)


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


class WebSocketOperator:
    """Operator on the other end of a WebSocket.

    Events are buffered and flushed before each decision request and at the end
    of the session, so the loop's ``show`` stays synchronous.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._pending: List[Dict[str, Any]] = []

    def show(self, kind: EventKind, text: str) -> None:
        self._pending.append({"type": "event", "kind": kind.value, "text": text})

    async def flush(self) -> None:
        pending, self._pending = self._pending, []
        for frame in pending:
            await self._ws.send_json(frame)

    async def decide(self, request: DecisionRequest) -> Decision:
        await self.flush()
        tool = None
        if request.tool is not None:
            tool = {"name": request.tool.name, "arguments": request.tool.arguments}
        await self._ws.send_json(
            {
                "type": "decision_request",
                "step": request.step,
                "tool": tool,
                "choices": list(DECISION_NAMES),
            }
        )
        while True:
            raw = await self._ws.receive_text()
            try:
                payload = json.loads(raw)
                if not isinstance(payload, dict):
                    raise ValueError("Decision must be a JSON object")
                return decision_from_payload(payload)
            except ValueError as e:
                await self._ws.send_json({"type": "error", "data": str(e)})


def _build_router() -> MultiBackendRouter:
    try:
        servers = load_server_configs(settings.mcp_servers_config)
    except FileNotFoundError:
        LOGGER.warning("No MCP servers config at %s; running without tools", settings.mcp_servers_config)
        servers = {}
    return MultiBackendRouter(
        servers,
        call_timeout=settings.tool_call_timeout_seconds,
        connect_timeout=settings.backend_connect_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start tool backends and the optional learning store; shut them down on exit."""
    router = _build_router()
    LOGGER.info("Starting tool backends...")
    try:
        await router.initialize()
    except BackendConnectionError as e:
        LOGGER.error("Tool backends unavailable: %s", e)
    app.state.router = router
    app.state.store = await get_learning_store_async()
    app.state.session_lock = asyncio.Lock()

    yield

    LOGGER.info("Shutting down...")
    await router.close()
    await close_learning_store()


app = FastAPI(
    title="taskpilot",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "ok"}


@app.get("/tools")
async def list_tools() -> dict[str, Any]:
    """Merged tool catalog with the backend owning each tool."""
    router: MultiBackendRouter = app.state.router
    return {
        "tools": [
            {
                "name": tool.name,
                "backend": router.backend_for(tool.name),
                "description": tool.description or "",
            }
            for tool in router.tools
        ]
    }


@app.websocket("/ws/task")
async def task_ws(websocket: WebSocket) -> None:
    """Run one operator-gated session over a WebSocket.

    Expected Input (JSON):
        {"task": str} to start, then {"decision": str, "text": str} for every
        ``decision_request`` frame.

    Response Format:
        - {"type": "event", "kind": str, "text": str} - transcript events
        - {"type": "decision_request", "step": int, "tool": {...} | null, "choices": [...]}
        - {"type": "done", "session_id": str, "outcome": str, "steps": int}
        - {"type": "error", "data": str}
    """
    await websocket.accept()
    lock: asyncio.Lock = app.state.session_lock
    if lock.locked():
        await websocket.send_json({"type": "error", "data": "A session is already running"})
        await websocket.close()
        return

    async with lock:
        operator = WebSocketOperator(websocket)
        try:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError as e:
                LOGGER.error("Invalid WS payload (not JSON): %s", e)
                await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
                await websocket.close()
                return
            task = str(payload.get("task") or "").strip() if isinstance(payload, dict) else ""
            if not task:
                await websocket.send_json({"type": "error", "data": "Empty task"})
                await websocket.close()
                return

            LOGGER.info("WS task start: %s", task[:200])
            loop = TaskLoop(
                app.state.router,
                CompletionClient(settings),
                operator,
                store=app.state.store,
                settings=settings,
            )
            try:
                result = await loop.run(task)
            except CompletionServiceError as e:
                await operator.flush()
                await websocket.send_json({"type": "error", "data": str(e)})
                await websocket.close()
                return

            await operator.flush()
            await websocket.send_json(
                {
                    "type": "done",
                    "session_id": result.document.session_id,
                    "outcome": result.outcome.value,
                    "steps": result.steps,
                }
            )
            await websocket.close()
        except WebSocketDisconnect:
            LOGGER.info("WS disconnect")
