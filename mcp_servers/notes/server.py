"""Notes MCP server: a small persistent notebook the agent can read and write."""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from mcp.server.fastmcp import FastMCP

_DATA_DIR = Path(os.environ.get("NOTES_DATA_DIR", Path(__file__).resolve().parent / "data"))
_DATA_DIR.mkdir(parents=True, exist_ok=True)
_NOTES_PATH = _DATA_DIR / "notes.json"


def _load_notes() -> List[Dict[str, Any]]:
    if not _NOTES_PATH.exists():
        _NOTES_PATH.write_text("[]", encoding="utf-8")
    with open(_NOTES_PATH, encoding="utf-8") as f:
        return json.load(f)


def _save_notes(notes: List[Dict[str, Any]]) -> None:
    with open(_NOTES_PATH, "w", encoding="utf-8") as f:
        json.dump(notes, f, indent=2)


mcp = FastMCP("Notes", json_response=True)


@mcp.tool()
def add_note(title: str, body: str, tags: str = "") -> str:
    """Add a note. `tags` is a comma-separated list. Side effect: persists to the local JSON file."""
    notes = _load_notes()
    note = {
        "id": f"NOTE-{len(notes) + 1}",
        "title": title,
        "body": body,
        "tags": [t.strip() for t in tags.split(",") if t.strip()],
        "created_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }
    notes.append(note)
    _save_notes(notes)
    return json.dumps({"ok": True, "note": note}, indent=2)


@mcp.tool()
def get_note(note_id: str) -> str:
    """Get a single note by ID (e.g. NOTE-1)."""
    for note in _load_notes():
        if note["id"] == note_id:
            return json.dumps(note, indent=2)
    raise ValueError(f"Note not found: {note_id}")


@mcp.tool()
def list_notes(tag: str = "", limit: int = 20) -> str:
    """List notes, optionally filtered by tag. Pass an empty string for all notes."""
    notes = _load_notes()
    if tag:
        notes = [n for n in notes if tag in n.get("tags", [])]
    return json.dumps(notes[:limit], indent=2)


@mcp.tool()
def search_notes(query: str, limit: int = 10) -> str:
    """Case-insensitive substring search over note titles and bodies."""
    q = query.lower()
    hits = [n for n in _load_notes() if q in n["title"].lower() or q in n["body"].lower()]
    return json.dumps(hits[:limit], indent=2)


if __name__ == "__main__":
    mcp.run(transport="stdio")
