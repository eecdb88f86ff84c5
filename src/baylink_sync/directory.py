from __future__ import annotations

import logging
from typing import Callable, List, Tuple

from .errors import NotLoggedInError, SessionExpiredError, SyncError, ValidationError
from .models import Conversation, Session, conversation_from_payload, conversations_from_payload
from .polling import IntervalPoller
from .session import SessionGuard

logger = logging.getLogger(__name__)

ConversationsListener = Callable[[Tuple[Conversation, ...]], None]


class ConversationDirectory:
    """Lists the caller's conversations and opens one per peer."""

    def __init__(self, guard: SessionGuard) -> None:
        self._guard = guard

    def _require_session(self) -> Session:
        session = self._guard.session
        if session is None:
            raise NotLoggedInError("login required")
        return session

    async def list_conversations(self) -> Tuple[Conversation, ...]:
        """Return conversations, most recently updated first."""

        self._require_session()
        payload = await self._guard.request("GET", "/conversations")
        conversations = conversations_from_payload(payload)
        # Stable sort keeps the server's tie order.
        return tuple(sorted(conversations, key=lambda conversation: conversation.updated_at, reverse=True))

    async def open_or_create(self, target_user_id: str) -> Conversation:
        """Return the one conversation between the caller and ``target_user_id``.

        Uniqueness per pair is enforced server-side; the returned id is
        trusted as-is, so repeated calls converge on the same conversation.
        """

        session = self._require_session()
        target = target_user_id.strip()
        if not target:
            raise ValidationError("target user id required")
        if target == session.user_id:
            raise ValidationError("cannot open a conversation with yourself")
        payload = await self._guard.request(
            "POST",
            "/conversations/open-or-create",
            json_body={"targetUserId": target},
        )
        return conversation_from_payload(payload)


class ConversationListView:
    """The conversation list while it is the active view.

    Refreshes every ``interval_s`` seconds between ``start()`` and ``stop()``
    and publishes a new snapshot only when it differs from the held one.
    """

    def __init__(self, directory: ConversationDirectory, *, interval_s: float = 5.0) -> None:
        self._directory = directory
        self._poller = IntervalPoller(interval_s, self.refresh, name="conversations")
        self._listeners: List[ConversationsListener] = []
        self.conversations: Tuple[Conversation, ...] = ()
        self.replacements = 0

    @property
    def active(self) -> bool:
        return self._poller.running

    def add_listener(self, listener: ConversationsListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ConversationsListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def apply(self, conversations: Tuple[Conversation, ...]) -> bool:
        if conversations == self.conversations:
            return False
        self.conversations = conversations
        self.replacements += 1
        logger.debug("conversation list replaced (%d items)", len(conversations))
        for listener in list(self._listeners):
            listener(conversations)
        return True

    async def refresh(self) -> bool:
        return self.apply(await self._directory.list_conversations())

    async def start(self) -> None:
        try:
            await self.refresh()
        except SessionExpiredError:
            return
        except SyncError as exc:
            logger.warning("initial conversation list load failed: %s", exc)
        self._poller.start()

    async def stop(self) -> None:
        await self._poller.stop()

    async def __aenter__(self) -> "ConversationListView":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
