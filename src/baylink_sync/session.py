"""Credential attachment and stale-session detection for every request."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp

from .errors import ApiError, AuthenticationFailed, NetworkError, ProtocolError, SessionExpiredError
from .models import Session, session_from_payload

logger = logging.getLogger(__name__)

EXPIRED_STATUSES = (401, 403)
LOGIN_PATH = "/auth/login"


@dataclass(frozen=True)
class SessionExpired:
    user_id: str
    status: int
    path: str


ExpiryHandler = Callable[[SessionExpired], None]


class SessionExpiredSignal:
    """One-shot expiry channel with exactly one subscriber."""

    def __init__(self) -> None:
        self._handler: ExpiryHandler | None = None

    def subscribe(self, handler: ExpiryHandler) -> None:
        if self._handler is not None:
            raise RuntimeError("session expiry already has a subscriber")
        self._handler = handler

    def unsubscribe(self, handler: ExpiryHandler) -> None:
        if self._handler == handler:
            self._handler = None

    def publish(self, event: SessionExpired) -> None:
        if self._handler is None:
            logger.warning("session expired for %s with no subscriber", event.user_id)
            return
        self._handler(event)


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        for key in ("error", "message"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(body, str) and body:
        return body
    return fallback


class SessionGuard:
    """Attaches the bearer credential and turns 401/403 into the expiry signal.

    A rejected authentication attempt raises ``AuthenticationFailed`` and
    leaves the signal alone. Any other 401/403 publishes the signal once for
    the attached Session and raises ``SessionExpiredError``.
    """

    def __init__(
        self,
        api_url: str,
        *,
        signal: SessionExpiredSignal | None = None,
        http: aiohttp.ClientSession | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.signal = signal or SessionExpiredSignal()
        self._http = http
        self._owns_http = http is None
        self._session: Session | None = None
        self._expired = False

    @property
    def session(self) -> Session | None:
        return self._session

    def attach(self, session: Session) -> None:
        self._session = session
        self._expired = False

    def clear(self) -> None:
        self._session = None
        self._expired = False

    def _http_session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    def _headers(self) -> Dict[str, str]:
        if self._session is None:
            return {}
        return {"Authorization": f"Bearer {self._session.token}"}

    def _expire(self, session: Session | None, status: int, path: str) -> None:
        # A rejection that raced a logout or re-login concerns a credential that is already gone.
        if session is None or session is not self._session or self._expired:
            return
        self._expired = True
        logger.info("credential rejected with %s on %s; signalling session expiry", status, path)
        self.signal.publish(SessionExpired(user_id=session.user_id, status=status, path=path))

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, object]] = None,
        auth_attempt: bool = False,
    ) -> Any:
        url = f"{self.api_url}{path}"
        session = self._session
        headers = {} if auth_attempt else self._headers()
        try:
            async with self._http_session().request(method, url, json=json_body, headers=headers) as response:
                status = response.status
                raw = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        try:
            body = json.loads(raw) if raw else None
        except json.JSONDecodeError as exc:
            if status < 400:
                raise ProtocolError(f"{method} {path} returned malformed json") from exc
            body = raw

        if status in EXPIRED_STATUSES:
            message = _error_message(body, "unauthorized")
            if auth_attempt:
                raise AuthenticationFailed(status, message, path=path)
            self._expire(session, status, path)
            raise SessionExpiredError(status, message, path=path)
        if status >= 400:
            raise ApiError(status, _error_message(body, "request failed"), path=path)
        return body

    async def login(self, email: str, password: str) -> Session:
        """Authenticate and attach the resulting Session."""

        payload = await self.request(
            "POST",
            LOGIN_PATH,
            json_body={"email": email, "password": password},
            auth_attempt=True,
        )
        session = session_from_payload(payload)
        self.attach(session)
        return session

    async def ws_connect(self, url: str, *, heartbeat: float | None = None) -> aiohttp.ClientWebSocketResponse:
        session = self._session
        try:
            return await self._http_session().ws_connect(url, headers=self._headers(), heartbeat=heartbeat)
        except aiohttp.WSServerHandshakeError as exc:
            if exc.status in EXPIRED_STATUSES:
                self._expire(session, exc.status, url)
                raise SessionExpiredError(exc.status, "push channel rejected credential", path=url) from exc
            raise NetworkError(f"push handshake failed: {exc.status}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"push connect failed: {exc}") from exc

    async def close(self) -> None:
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
