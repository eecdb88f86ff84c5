from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

DEFAULT_API_URL = "http://127.0.0.1:8080/api"
DEFAULT_SESSION_PATH = Path.home() / ".baylink" / "session.json"
PUSH_PATH = "/ws"


def _default_push_url(api_url: str) -> str:
    return f"{api_url.rstrip('/')}{PUSH_PATH}"


@dataclass
class SyncConfig:
    api_url: str = DEFAULT_API_URL
    push_url: str | None = None
    conversation_list_interval_s: float = 5.0
    message_interval_s: float = 3.0
    reconnect_initial_backoff_s: float = 0.5
    reconnect_max_backoff_s: float = 5.0
    heartbeat_s: float | None = 20.0
    session_path: Path = field(default_factory=lambda: DEFAULT_SESSION_PATH)

    def __post_init__(self) -> None:
        if self.push_url is None:
            self.push_url = _default_push_url(self.api_url)
        self.session_path = Path(self.session_path).expanduser()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "SyncConfig":
        """Build a config from ``BAYLINK_*`` variables; keyword overrides win."""

        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        if env.get("BAYLINK_API_URL"):
            values["api_url"] = env["BAYLINK_API_URL"]
        if env.get("BAYLINK_PUSH_URL"):
            values["push_url"] = env["BAYLINK_PUSH_URL"]
        if env.get("BAYLINK_SESSION_FILE"):
            values["session_path"] = Path(env["BAYLINK_SESSION_FILE"])
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
