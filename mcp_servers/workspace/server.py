"""Workspace MCP server: read-only access to files under WORKSPACE_ROOT."""

import json
import os
from pathlib import Path

from mcp.server.fastmcp import FastMCP

_ROOT = Path(os.environ.get("WORKSPACE_ROOT", ".")).resolve()
_MAX_BYTES = 200_000


def _resolve(path: str) -> Path:
    target = (_ROOT / path).resolve()
    if target != _ROOT and _ROOT not in target.parents:
        raise ValueError(f"Path escapes the workspace: {path}")
    return target


mcp = FastMCP("Workspace", json_response=True)


@mcp.tool()
def list_dir(path: str = ".") -> str:
    """List entries of a directory relative to the workspace root."""
    target = _resolve(path)
    if not target.is_dir():
        raise ValueError(f"Not a directory: {path}")
    entries = [
        {"name": p.name, "type": "dir" if p.is_dir() else "file"}
        for p in sorted(target.iterdir())
    ]
    return json.dumps(entries, indent=2)


@mcp.tool()
def read_file(path: str) -> str:
    """Read a UTF-8 text file relative to the workspace root (truncated at 200 KB)."""
    target = _resolve(path)
    if not target.is_file():
        raise ValueError(f"Not a file: {path}")
    data = target.read_bytes()[:_MAX_BYTES]
    return data.decode("utf-8", errors="replace")


if __name__ == "__main__":
    mcp.run(transport="stdio")
