"""Push channel lifecycle and unread-state propagation."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Set

import aiohttp

from .errors import SessionExpiredError, SyncError
from .models import Session
from .session import SessionGuard

logger = logging.getLogger(__name__)

JOIN_FRAME = "room.join"
NEW_MESSAGE_FRAME = "message.new"

FrameHandler = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class Notice:
    """A transient, one-shot message for the user."""

    level: str
    text: str
    conversation_id: str | None = None


NoticeListener = Callable[[Notice], None]
UnreadListener = Callable[[FrozenSet[str]], None]


class PushChannel:
    """One WebSocket to the push server, joined to the user's room.

    Reconnects with bounded exponential backoff after transient loss and
    re-sends the join frame on every new connection. A rejected credential
    ends the channel for good.
    """

    def __init__(
        self,
        guard: SessionGuard,
        url: str,
        on_frame: FrameHandler,
        *,
        initial_backoff_s: float = 0.5,
        max_backoff_s: float = 5.0,
        heartbeat_s: float | None = 20.0,
    ) -> None:
        self._guard = guard
        self._url = url
        self._on_frame = on_frame
        self._initial_backoff_s = initial_backoff_s
        self._max_backoff_s = max_backoff_s
        self._heartbeat_s = heartbeat_s
        self._task: asyncio.Task | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self.connections = 0
        self.connected = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, user_id: str) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(user_id), name=f"push:{user_id}")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.connected.clear()

    async def _run(self, user_id: str) -> None:
        backoff_s = self._initial_backoff_s
        try:
            while True:
                try:
                    ws = await self._guard.ws_connect(self._url, heartbeat=self._heartbeat_s)
                except SessionExpiredError:
                    logger.info("push channel closed: credential rejected")
                    return
                except SyncError as exc:
                    logger.info("push connect failed, retrying in %.1fs: %s", backoff_s, exc)
                else:
                    backoff_s = self._initial_backoff_s
                    await self._serve(ws, user_id)
                    logger.info("push channel dropped, reconnecting in %.1fs", backoff_s)
                await asyncio.sleep(backoff_s)
                backoff_s = min(backoff_s * 2, self._max_backoff_s)
        except asyncio.CancelledError:
            return

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse, user_id: str) -> None:
        self._ws = ws
        try:
            await ws.send_json({"v": 1, "t": JOIN_FRAME, "body": {"user_id": user_id}})
            self.connections += 1
            self.connected.set()
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(frame, dict):
                        continue
                    if frame.get("t") == "ping":
                        await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                        continue
                    self._on_frame(frame)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except (aiohttp.ClientError, ConnectionError) as exc:
            logger.info("push channel error: %s", exc)
        finally:
            self.connected.clear()
            self._ws = None
            if not ws.closed:
                await ws.close()


class NotificationBus:
    """Turns push events into unread flags and notices.

    The channel lives from ``connect()`` at login to ``disconnect()`` at
    logout; changing the open conversation never touches the connection.
    """

    def __init__(
        self,
        guard: SessionGuard,
        push_url: str,
        *,
        initial_backoff_s: float = 0.5,
        max_backoff_s: float = 5.0,
        heartbeat_s: float | None = 20.0,
    ) -> None:
        self._guard = guard
        self._push_url = push_url
        self._channel_options = {
            "initial_backoff_s": initial_backoff_s,
            "max_backoff_s": max_backoff_s,
            "heartbeat_s": heartbeat_s,
        }
        self.channel: PushChannel | None = None
        self._session: Session | None = None
        self._open_conversation: str | None = None
        self._unread: Set[str] = set()
        self._notice_listeners: List[NoticeListener] = []
        self._unread_listeners: List[UnreadListener] = []

    @property
    def unread(self) -> FrozenSet[str]:
        return frozenset(self._unread)

    @property
    def open_conversation(self) -> str | None:
        return self._open_conversation

    def has_unread(self, conversation_id: str) -> bool:
        return conversation_id in self._unread

    def add_notice_listener(self, listener: NoticeListener) -> None:
        self._notice_listeners.append(listener)

    def add_unread_listener(self, listener: UnreadListener) -> None:
        self._unread_listeners.append(listener)

    def connect(self, session: Session) -> None:
        """Open the push channel for ``session``; a no-op if already open for it."""

        if self.channel is not None and self._session is session:
            return
        if self.channel is not None:
            raise RuntimeError("push channel already open for another session")
        self._session = session
        self.channel = PushChannel(self._guard, self._push_url, self.handle_frame, **self._channel_options)
        self.channel.start(session.user_id)

    async def disconnect(self) -> None:
        channel, self.channel = self.channel, None
        self._session = None
        self._open_conversation = None
        self._set_unread(set())
        if channel is not None:
            await channel.stop()

    def set_open_conversation(self, conversation_id: str | None) -> None:
        self._open_conversation = conversation_id
        if conversation_id is not None and conversation_id in self._unread:
            self._set_unread(self._unread - {conversation_id})

    def open_messages_tab(self) -> None:
        self._open_conversation = None
        self._set_unread(set())

    def _set_unread(self, unread: Set[str]) -> None:
        if unread == self._unread:
            return
        self._unread = unread
        snapshot = frozenset(unread)
        for listener in list(self._unread_listeners):
            listener(snapshot)

    def publish_notice(self, notice: Notice) -> None:
        for listener in list(self._notice_listeners):
            listener(notice)

    def handle_frame(self, frame: Dict[str, Any]) -> None:
        if frame.get("t") != NEW_MESSAGE_FRAME:
            logger.debug("ignoring push frame %r", frame.get("t"))
            return
        body = frame.get("body")
        conversation_id = body.get("conversation_id") if isinstance(body, dict) else None
        if not isinstance(conversation_id, str) or not conversation_id:
            logger.debug("new message frame without conversation id")
            return
        if conversation_id == self._open_conversation:
            # The open view's poll converges on its own.
            logger.debug("new message in open conversation %s", conversation_id)
            return
        self._set_unread(self._unread | {conversation_id})
        self.publish_notice(Notice(level="info", text="New message", conversation_id=conversation_id))
