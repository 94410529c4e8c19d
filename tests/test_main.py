import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from taskpilot import main


@pytest.fixture
def client():
    """TestClient with no tool backends and no learning store."""
    with patch.object(main, "load_server_configs", return_value={}), patch.object(
        main, "get_learning_store_async", AsyncMock(return_value=None)
    ), patch.object(main, "close_learning_store", AsyncMock()):
        with TestClient(main.app) as test_client:
            yield test_client


def _receive_until(ws, frame_type: str) -> list:
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["type"] == frame_type:
            return frames


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_tools_lists_backend_per_tool(client: TestClient) -> None:
    router = MagicMock()
    router.tools = [SimpleNamespace(name="add_note", description="Add a note")]
    router.backend_for.return_value = "notes"
    main.app.state.router = router

    body = client.get("/tools").json()

    assert body == {"tools": [{"name": "add_note", "backend": "notes", "description": "Add a note"}]}


def test_ws_rejects_invalid_json(client: TestClient) -> None:
    with client.websocket_connect("/ws/task") as ws:
        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "data": "Invalid JSON payload"}


def test_ws_rejects_empty_task(client: TestClient) -> None:
    with client.websocket_connect("/ws/task") as ws:
        ws.send_text(json.dumps({"task": "  "}))
        assert ws.receive_json() == {"type": "error", "data": "Empty task"}


def test_ws_runs_operator_gated_session(client: TestClient, fakes) -> None:
    completion = fakes.Completion([fakes.text_turn("All done.")])
    with patch.object(main, "CompletionClient", return_value=completion):
        with client.websocket_connect("/ws/task") as ws:
            ws.send_text(json.dumps({"task": "say hi"}))
            frames = _receive_until(ws, "decision_request")
            request = frames[-1]
            assert request["tool"] is None
            assert request["step"] == 1
            assert any(f.get("kind") == "assistant" for f in frames)

            ws.send_text(json.dumps({"decision": "maybe"}))
            assert ws.receive_json()["type"] == "error"
            ws.send_text(json.dumps({"decision": "continue"}))
            done = _receive_until(ws, "done")[-1]

    assert done["outcome"] == "complete"
    assert done["steps"] == 1
    assert done["session_id"]


def test_ws_reports_completion_failure(client: TestClient, fakes) -> None:
    from taskpilot.errors import CompletionServiceError

    completion = fakes.Completion([CompletionServiceError("service down")])
    with patch.object(main, "CompletionClient", return_value=completion):
        with client.websocket_connect("/ws/task") as ws:
            ws.send_text(json.dumps({"task": "say hi"}))
            frames = _receive_until(ws, "error")

    assert frames[-1] == {"type": "error", "data": "service down"}
