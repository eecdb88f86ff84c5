"""In-memory aiohttp backend honouring the REST and push contract."""

from __future__ import annotations

import asyncio
import secrets
import time
import unittest
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from baylink_sync.config import SyncConfig
from baylink_sync.models import Session
from baylink_sync.session import SessionGuard

MESSAGE_TYPES = ("text", "contact-request", "contact-share")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class User:
    id: str
    email: str
    password: str
    nickname: str
    contact_value: str


@dataclass
class StoredConversation:
    id: str
    members: Tuple[str, str]
    updated_at: int
    last_message: str = ""


@dataclass
class RecordedRequest:
    method: str
    path: str
    body: str
    authorization: str | None


@dataclass
class FakeBackend:
    now_func: Callable[[], int] = _now_ms
    users: Dict[str, User] = field(default_factory=dict)
    tokens: Dict[str, str] = field(default_factory=dict)
    conversations: Dict[str, StoredConversation] = field(default_factory=dict)
    pairs: Dict[frozenset, str] = field(default_factory=dict)
    messages: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    rooms: Dict[str, List[web.WebSocketResponse]] = field(default_factory=dict)
    requests: List[RecordedRequest] = field(default_factory=list)
    joins: List[str] = field(default_factory=list)
    failures: Dict[Tuple[str, str], List[int]] = field(default_factory=dict)
    _message_counter: int = 0
    _last_created_at: int = 0

    def add_user(self, user_id: str, *, contact_value: str = "", nickname: str | None = None, password: str = "pw") -> User:
        user = User(
            id=user_id,
            email=f"{user_id}@example.test",
            password=password,
            nickname=nickname or user_id,
            contact_value=contact_value,
        )
        self.users[user_id] = user
        return user

    def issue_token(self, user_id: str) -> str:
        token = f"tok_{secrets.token_urlsafe(12)}"
        self.tokens[token] = user_id
        return token

    def revoke_tokens(self, user_id: str) -> None:
        for token, owner in list(self.tokens.items()):
            if owner == user_id:
                del self.tokens[token]

    def set_contact_value(self, user_id: str, value: str) -> None:
        self.users[user_id].contact_value = value

    def fail(self, method: str, path: str, status: int, times: int = 1) -> None:
        self.failures.setdefault((method, path), []).extend([status] * times)

    def take_failure(self, method: str, path: str) -> int | None:
        pending = self.failures.get((method, path))
        if not pending:
            return None
        return pending.pop(0)

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.path == path)

    def open_or_create(self, user_id: str, target_id: str) -> StoredConversation:
        key = frozenset((user_id, target_id))
        conv_id = self.pairs.get(key)
        if conv_id is not None:
            return self.conversations[conv_id]
        conv_id = f"c{len(self.conversations) + 1}"
        conversation = StoredConversation(id=conv_id, members=(user_id, target_id), updated_at=self.now_func())
        self.conversations[conv_id] = conversation
        self.pairs[key] = conv_id
        self.messages[conv_id] = []
        return conversation

    def append(self, conv_id: str, sender_id: str, message_type: str, content: str) -> Dict[str, Any]:
        conversation = self.conversations[conv_id]
        if message_type == "contact-share":
            content = self.users[sender_id].contact_value
        self._message_counter += 1
        created_at = max(self.now_func(), self._last_created_at)
        self._last_created_at = created_at
        message = {
            "id": f"m{self._message_counter:06d}",
            "senderId": sender_id,
            "type": message_type,
            "content": content,
            "createdAt": created_at,
        }
        self.messages[conv_id].append(message)
        self.messages[conv_id].sort(key=lambda m: (m["createdAt"], m["id"]))
        conversation.updated_at = created_at
        conversation.last_message = content
        return message

    def summary(self, conversation: StoredConversation, viewer_id: str) -> Dict[str, Any]:
        other_id = next((m for m in conversation.members if m != viewer_id), viewer_id)
        other = self.users.get(other_id)
        return {
            "id": conversation.id,
            "otherUser": {"id": other_id, "nickname": other.nickname if other else other_id},
            "lastMessage": conversation.last_message,
            "updatedAt": conversation.updated_at,
        }

    async def notify(self, user_id: str, frame: Dict[str, Any]) -> None:
        for ws in list(self.rooms.get(user_id, [])):
            if not ws.closed:
                await ws.send_json(frame)

    async def drop_push_connections(self) -> None:
        for sockets in list(self.rooms.values()):
            for ws in list(sockets):
                await ws.close()

    def connected(self, user_id: str) -> int:
        return sum(1 for ws in self.rooms.get(user_id, []) if not ws.closed)


def _unauthorized() -> web.Response:
    return web.json_response({"error": "unauthorized"}, status=401)


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"error": message}, status=400)


def _not_found(message: str) -> web.Response:
    return web.json_response({"error": message}, status=404)


def _authenticate_request(request: web.Request) -> User | None:
    backend: FakeBackend = request.app["backend"]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    user_id = backend.tokens.get(auth_header[len("Bearer ") :].strip())
    if user_id is None:
        return None
    return backend.users.get(user_id)


@web.middleware
async def record_and_inject(request: web.Request, handler):
    backend: FakeBackend = request.app["backend"]
    body = await request.text() if request.method != "GET" else ""
    backend.requests.append(
        RecordedRequest(
            method=request.method,
            path=request.path,
            body=body,
            authorization=request.headers.get("Authorization"),
        )
    )
    status = backend.take_failure(request.method, request.path)
    if status is not None:
        return web.json_response({"error": "injected failure"}, status=status)
    return await handler(request)


async def handle_login(request: web.Request) -> web.Response:
    backend: FakeBackend = request.app["backend"]
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    user = next((u for u in backend.users.values() if u.email == body.get("email")), None)
    if user is None or user.password != body.get("password"):
        return web.json_response({"error": "invalid credentials"}, status=401)
    return web.json_response(
        {
            "id": user.id,
            "email": user.email,
            "nickname": user.nickname,
            "role": "user",
            "contactType": "wechat",
            "contactValue": user.contact_value,
            "isBanned": False,
            "token": backend.issue_token(user.id),
        }
    )


async def handle_list_conversations(request: web.Request) -> web.Response:
    backend: FakeBackend = request.app["backend"]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    mine = [c for c in backend.conversations.values() if user.id in c.members]
    mine.sort(key=lambda c: c.updated_at, reverse=True)
    return web.json_response([backend.summary(c, user.id) for c in mine])


async def handle_open_or_create(request: web.Request) -> web.Response:
    backend: FakeBackend = request.app["backend"]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    target_id = body.get("targetUserId")
    if not isinstance(target_id, str) or target_id not in backend.users:
        return _not_found("unknown user")
    conversation = backend.open_or_create(user.id, target_id)
    return web.json_response(backend.summary(conversation, user.id))


def _member_conversation(request: web.Request, user: User) -> StoredConversation | None:
    backend: FakeBackend = request.app["backend"]
    conversation = backend.conversations.get(request.match_info["conv_id"])
    if conversation is None or user.id not in conversation.members:
        return None
    return conversation


async def handle_list_messages(request: web.Request) -> web.Response:
    backend: FakeBackend = request.app["backend"]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    conversation = _member_conversation(request, user)
    if conversation is None:
        return _not_found("unknown conversation")
    return web.json_response(list(backend.messages[conversation.id]))


async def handle_send_message(request: web.Request) -> web.Response:
    backend: FakeBackend = request.app["backend"]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    conversation = _member_conversation(request, user)
    if conversation is None:
        return _not_found("unknown conversation")
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    message_type = body.get("type")
    content = body.get("content") or ""
    if message_type not in MESSAGE_TYPES or not isinstance(content, str):
        return _invalid_request("type and content required")
    if message_type == "text" and not content.strip():
        return _invalid_request("empty message")
    message = backend.append(conversation.id, user.id, message_type, content)
    for member in conversation.members:
        if member != user.id:
            await backend.notify(
                member,
                {
                    "v": 1,
                    "t": "message.new",
                    "body": {"conversation_id": conversation.id, "message_id": message["id"], "sender_id": user.id},
                },
            )
    return web.json_response(message)


async def handle_push(request: web.Request) -> web.StreamResponse:
    backend: FakeBackend = request.app["backend"]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    joined: str | None = None
    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                break
            frame = msg.json()
            if frame.get("t") == "room.join" and joined is None:
                joined = (frame.get("body") or {}).get("user_id")
                if joined != user.id:
                    await ws.close(code=1008, message=b"wrong room")
                    break
                backend.joins.append(joined)
                backend.rooms.setdefault(joined, []).append(ws)
    finally:
        if joined is not None and ws in backend.rooms.get(joined, []):
            backend.rooms[joined].remove(ws)
    return ws


def create_app(backend: FakeBackend) -> web.Application:
    app = web.Application(middlewares=[record_and_inject])
    app["backend"] = backend
    app.router.add_post("/api/auth/login", handle_login)
    app.router.add_get("/api/conversations", handle_list_conversations)
    app.router.add_post("/api/conversations/open-or-create", handle_open_or_create)
    app.router.add_get("/api/conversations/{conv_id}/messages", handle_list_messages)
    app.router.add_post("/api/conversations/{conv_id}/messages", handle_send_message)
    app.router.add_get("/api/ws", handle_push)
    return app


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class BackendTestCase(unittest.IsolatedAsyncioTestCase):
    """Starts a fresh in-memory backend per test."""

    async def asyncSetUp(self):
        self.backend = FakeBackend()
        self.app = create_app(self.backend)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.api_url = str(self.server.make_url("/api"))
        self.push_url = str(self.server.make_url("/api/ws"))
        self._closers: List[Callable[[], Awaitable[Any]]] = []

    async def asyncTearDown(self):
        for closer in reversed(self._closers):
            await closer()
        await self.server.close()

    def on_teardown(self, closer: Callable[[], Awaitable[Any]]) -> None:
        self._closers.append(closer)

    def guard_for(self, user_id: str) -> SessionGuard:
        guard = SessionGuard(self.api_url)
        guard.attach(Session(user_id=user_id, token=self.backend.issue_token(user_id)))
        self.on_teardown(guard.close)
        return guard

    def config(self, **overrides) -> SyncConfig:
        values = {
            "api_url": self.api_url,
            "push_url": self.push_url,
            "conversation_list_interval_s": 0.05,
            "message_interval_s": 0.05,
            "reconnect_initial_backoff_s": 0.01,
            "reconnect_max_backoff_s": 0.05,
            "heartbeat_s": None,
        }
        values.update(overrides)
        return SyncConfig(**values)
