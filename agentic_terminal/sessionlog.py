"""Persist finished sessions as JSON under the user cache directory."""

import json
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

from .conversation import Conversation

APP_NAME = "agentic-terminal"


def default_log_dir() -> Path:
    """Return the session log directory, respecting XDG_CACHE_HOME."""
    xdg = os.environ.get("XDG_CACHE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return base / APP_NAME / "logs"


def save_session_log(
    conversation: Conversation,
    *,
    outcome: str,
    model: str | None = None,
    provider: str | None = None,
    system_prompt: str | None = None,
    error_message: str | None = None,
    log_dir: str | Path | None = None,
) -> Path:
    """Write one session to <log_dir>/<uuid>.json and return the path.

    Raises OSError when the directory or file cannot be written; callers
    decide whether that is fatal.
    """
    directory = Path(log_dir).expanduser() if log_dir else default_log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{uuid.uuid4().hex}.json"

    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "outcome": outcome,
        "provider": provider,
        "model": model,
        "system_prompt": system_prompt,
        **conversation.to_dict(),
    }
    if error_message is not None:
        payload["error_message"] = error_message

    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
        f.write("\n")
    return path
