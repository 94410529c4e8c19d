import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")
    cors_origins: str = "*"

    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_tokens: int = 1024
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    completion_timeout_seconds: float | None = 120.0

    mcp_servers_config: Path = Path("mcp_servers.json")
    tool_call_timeout_seconds: float | None = 60.0
    backend_connect_timeout_seconds: float | None = 30.0

    history_marker: str = "!!"
    history_top_k: int = 3
    max_history_turns: int | None = None

    redis_url: str | None = None
    session_ttl_seconds: int = 30 * 86400  # 30 days

    agent_system_prompt: str = (
        "You are an excellent software engineer.\n"
        "There are four available reasoning methods:\n"
        "1. Chain-of-Thought (CoT): Generate answers by thinking step by step.\n"
        "2. Automatic Chain-of-Thought (Auto-CoT): The model explores effective "
        "reasoning paths on its own.\n"
        "3. Self-Consistency: Generate multiple reasoning paths and choose the most "
        "consistent answer by majority vote.\n"
        "4. Tree-of-Thought (ToT): Consider multiple approaches in parallel and "
        "derive the optimal solution.\n\n"
        "First, determine which reasoning method is most appropriate and briefly "
        "explain why.\n"
        "If there are past task execution procedures that are similar to the current "
        "problem, please analyze them before starting the task.\n"
        "Then, considering both your chosen reasoning method and past task execution "
        "procedures, address the problem comprehensively."
    )

    tool_usage_notes: str = (
        "Important notes regarding tool usage:\n"
        "1. Avoid using the same tool consecutively.\n"
        "2. Prioritize tools suggested by the user.\n"
        "3. Before using each tool, evaluate whether it is truly necessary."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


@dataclass
class ServerLaunchSpec:
    """How to start one tool backend subprocess."""

    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] | None = None


def load_server_configs(path: Path) -> Dict[str, ServerLaunchSpec]:
    """Parse an ``{"mcpServers": {...}}`` JSON file into launch specs.

    Backend order follows the file, which matters for tool-name collisions:
    the later backend wins.

    Raises:
        FileNotFoundError: if ``path`` does not exist.
        ValueError: if the file is not valid JSON or an entry lacks a command.
    """
    raw = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid MCP servers config {path}: {e}") from e

    servers = data.get("mcpServers") if isinstance(data, dict) else None
    if not isinstance(servers, dict):
        raise ValueError(f"MCP servers config {path} has no 'mcpServers' object")

    specs: Dict[str, ServerLaunchSpec] = {}
    for name, entry in servers.items():
        if not isinstance(entry, dict) or not entry.get("command"):
            raise ValueError(f"MCP server '{name}' has no command")
        specs[name] = ServerLaunchSpec(
            command=str(entry["command"]),
            args=[str(a) for a in entry.get("args") or []],
            env={str(k): str(v) for k, v in (entry.get("env") or {}).items()} or None,
        )
    return specs


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
