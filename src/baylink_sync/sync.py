"""Per-conversation message retrieval and polling reconciliation."""

from __future__ import annotations

import logging
from typing import Callable, List, Tuple

from .errors import EmptyMessageError, NotLoggedInError, SessionExpiredError, SyncError, ValidationError
from .models import (
    CONTACT_REQUEST,
    CONTACT_SHARE,
    MESSAGE_TYPES,
    TEXT,
    Message,
    message_from_payload,
    message_sort_key,
    messages_from_payload,
)
from .polling import IntervalPoller
from .session import SessionGuard

logger = logging.getLogger(__name__)

IDLE = "idle"
POLLING = "polling"
UNMOUNTED = "unmounted"

MessagesListener = Callable[[Tuple[Message, ...]], None]


def _messages_path(conversation_id: str) -> str:
    if not conversation_id:
        raise ValidationError("conversation id required")
    return f"/conversations/{conversation_id}/messages"


class MessageStore:
    """Full-snapshot message retrieval and append for conversations."""

    def __init__(self, guard: SessionGuard) -> None:
        self._guard = guard

    async def fetch_messages(self, conversation_id: str) -> Tuple[Message, ...]:
        """Return every message of the conversation in server order."""

        path = _messages_path(conversation_id)
        if self._guard.session is None:
            raise NotLoggedInError("login required")
        return messages_from_payload(await self._guard.request("GET", path))

    async def send_message(self, conversation_id: str, message_type: str, content: str = "") -> Message:
        """Append a message and return it as created by the server.

        Text content is trimmed and must not be empty. Contact-share content
        is never taken from the caller: the server records the sender's
        current contact value as the message body.
        """

        path = _messages_path(conversation_id)
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"unsupported message type: {message_type!r}")
        if message_type == TEXT:
            content = (content or "").strip()
            if not content:
                raise EmptyMessageError("message is empty")
        elif message_type == CONTACT_SHARE:
            content = ""
        elif message_type == CONTACT_REQUEST:
            content = (content or "").strip()
        if self._guard.session is None:
            raise NotLoggedInError("login required")
        payload = await self._guard.request(
            "POST",
            path,
            json_body={"type": message_type, "content": content},
        )
        return message_from_payload(payload)


class ConversationSync:
    """Keeps one open conversation view converged with the server.

    ``IDLE`` -> ``mount()`` fetches once and starts polling -> ``POLLING`` ->
    ``unmount()`` cancels the timer -> ``UNMOUNTED``. Each fetched snapshot
    replaces local state only when it differs structurally from it, and the
    held order is always exactly the server's order.
    """

    def __init__(self, store: MessageStore, conversation_id: str, *, interval_s: float = 3.0) -> None:
        self.conversation_id = conversation_id
        self._store = store
        self._poller = IntervalPoller(interval_s, self.refresh, name=f"messages:{conversation_id}")
        self._listeners: List[MessagesListener] = []
        self.state = IDLE
        self.messages: Tuple[Message, ...] = ()
        self.replacements = 0

    @property
    def polling(self) -> bool:
        return self._poller.running

    def add_listener(self, listener: MessagesListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessagesListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def _replace(self, messages: Tuple[Message, ...]) -> None:
        self.messages = messages
        self.replacements += 1
        logger.debug("conversation %s replaced (%d messages)", self.conversation_id, len(messages))
        for listener in list(self._listeners):
            listener(messages)

    def reconcile(self, snapshot: Tuple[Message, ...]) -> bool:
        """Adopt ``snapshot`` if it differs from the held messages."""

        snapshot = tuple(snapshot)
        if snapshot == self.messages:
            return False
        self._replace(snapshot)
        return True

    async def refresh(self) -> bool:
        if self.state == UNMOUNTED:
            return False
        return self.reconcile(await self._store.fetch_messages(self.conversation_id))

    async def mount(self) -> None:
        if self.state != IDLE:
            raise RuntimeError(f"cannot mount from state {self.state}")
        try:
            await self.refresh()
        except SessionExpiredError:
            self.state = UNMOUNTED
            return
        except SyncError as exc:
            logger.warning("initial load of %s failed: %s", self.conversation_id, exc)
        self.state = POLLING
        self._poller.start()

    async def unmount(self) -> None:
        self.state = UNMOUNTED
        await self._poller.stop()

    async def __aenter__(self) -> "ConversationSync":
        await self.mount()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.unmount()

    def adopt_sent(self, message: Message) -> None:
        if any(existing.id == message.id for existing in self.messages):
            return
        self._replace(tuple(sorted(self.messages + (message,), key=message_sort_key)))

    async def send(self, message_type: str, content: str = "") -> Message:
        """Send a message, show it at once, then force one reconciliation pass."""

        if self.state == UNMOUNTED:
            raise RuntimeError("conversation view is closed")
        message = await self._store.send_message(self.conversation_id, message_type, content)
        self.adopt_sent(message)
        try:
            await self.refresh()
        except SessionExpiredError:
            raise
        except SyncError as exc:
            logger.warning("post-send refresh of %s failed: %s", self.conversation_id, exc)
        return message
