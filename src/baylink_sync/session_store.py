"""Persist the logged-in Session between runs."""

from __future__ import annotations

import json
import os
from dataclasses import asdict
from pathlib import Path

from .config import DEFAULT_SESSION_PATH
from .models import Session


def _atomic_write_json(path: Path, session: Session) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    payload = json.dumps(asdict(session), indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def save_session(session: Session, path: Path | str = DEFAULT_SESSION_PATH) -> None:
    _atomic_write_json(Path(path), session)


def load_session(path: Path | str = DEFAULT_SESSION_PATH) -> Session | None:
    """Return the stored Session, or None when absent or unreadable."""

    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    user_id = data.get("user_id")
    token = data.get("token")
    if not isinstance(user_id, str) or not user_id or not isinstance(token, str) or not token:
        return None
    nickname = data.get("nickname")
    return Session(user_id=user_id, token=token, nickname=nickname if isinstance(nickname, str) else None)


def clear_session(path: Path | str = DEFAULT_SESSION_PATH) -> None:
    try:
        Path(path).expanduser().unlink()
    except FileNotFoundError:
        return
