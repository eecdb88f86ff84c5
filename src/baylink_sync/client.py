"""Top-level coordinator tying the session, views and push channel together."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, TypeVar, Union

import aiohttp

from .config import SyncConfig
from .contact_share import Confirm, ContactSharePolicy
from .directory import ConversationDirectory, ConversationListView
from .errors import ContactShareDeclined, NotLoggedInError, SessionExpiredError, SyncError, ValidationError
from .models import ContactShareMessage, Conversation, Message, Session
from .notifications import Notice, NoticeListener, NotificationBus
from .session import SessionExpired, SessionGuard
from .session_store import clear_session, load_session, save_session
from .sync import ConversationSync, MessageStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
View = Union[ConversationListView, ConversationSync]
ForcedLogoutHandler = Callable[[SessionExpired], None]


class MessagingClient:
    """The single subscriber of the session-expired signal.

    At most one view is active at a time and switching views releases the
    previous view's timer. The push channel follows the Session: opened at
    login or restore, closed at logout or forced logout.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        http: aiohttp.ClientSession | None = None,
        on_notice: NoticeListener | None = None,
        on_forced_logout: ForcedLogoutHandler | None = None,
        persist_session: bool = True,
    ) -> None:
        self.config = config or SyncConfig()
        self.guard = SessionGuard(self.config.api_url, http=http)
        self.guard.signal.subscribe(self._on_session_expired)
        self.directory = ConversationDirectory(self.guard)
        self.store = MessageStore(self.guard)
        self.contact_policy = ContactSharePolicy(self.store)
        self.bus = NotificationBus(
            self.guard,
            self.config.push_url,
            initial_backoff_s=self.config.reconnect_initial_backoff_s,
            max_backoff_s=self.config.reconnect_max_backoff_s,
            heartbeat_s=self.config.heartbeat_s,
        )
        if on_notice is not None:
            self.bus.add_notice_listener(on_notice)
        self._on_forced_logout = on_forced_logout
        self._persist_session = persist_session
        self._forced_logout_task: asyncio.Task | None = None
        self.forced_out = asyncio.Event()
        self.view: View | None = None

    @property
    def session(self) -> Session | None:
        return self.guard.session

    def _require_session(self) -> Session:
        session = self.guard.session
        if session is None:
            raise NotLoggedInError("login required")
        return session

    def _require_conversation_view(self) -> ConversationSync:
        if not isinstance(self.view, ConversationSync):
            raise RuntimeError("no conversation is open")
        return self.view

    def _start_session(self, session: Session) -> None:
        self.forced_out.clear()
        if self._persist_session:
            save_session(session, self.config.session_path)
        self.bus.connect(session)

    async def login(self, email: str, password: str) -> Session:
        """Authenticate; a rejected login raises and leaves any stored session alone."""

        if self.guard.session is not None:
            await self.logout()
        session = await self.guard.login(email, password)
        self._start_session(session)
        logger.info("logged in as %s", session.user_id)
        return session

    async def restore(self) -> Session | None:
        """Resume the stored Session, if any.

        A stale stored credential is detected by the first request that uses
        it, which triggers the forced logout path.
        """

        if not self._persist_session:
            return None
        session = load_session(self.config.session_path)
        if session is None:
            return None
        self.guard.attach(session)
        self._start_session(session)
        return session

    async def logout(self) -> None:
        await self.close_view()
        await self.bus.disconnect()
        self.guard.clear()
        if self._persist_session:
            clear_session(self.config.session_path)

    def _on_session_expired(self, event: SessionExpired) -> None:
        if self._forced_logout_task is not None and not self._forced_logout_task.done():
            return
        self._forced_logout_task = asyncio.get_running_loop().create_task(self._forced_logout(event))

    async def _forced_logout(self, event: SessionExpired) -> None:
        logger.info("session for %s expired (%s on %s); logging out", event.user_id, event.status, event.path)
        await self.logout()
        if self._on_forced_logout is not None:
            self._on_forced_logout(event)
        self.forced_out.set()

    async def close_view(self) -> None:
        view, self.view = self.view, None
        if isinstance(view, ConversationSync):
            await view.unmount()
            self.bus.set_open_conversation(None)
        elif isinstance(view, ConversationListView):
            await view.stop()

    async def show_conversation_list(self) -> ConversationListView:
        self._require_session()
        await self.close_view()
        self.bus.open_messages_tab()
        view = ConversationListView(self.directory, interval_s=self.config.conversation_list_interval_s)
        self.view = view
        await view.start()
        return view

    async def open_conversation(self, conversation_id: str) -> ConversationSync:
        self._require_session()
        await self.close_view()
        self.bus.set_open_conversation(conversation_id)
        view = ConversationSync(self.store, conversation_id, interval_s=self.config.message_interval_s)
        self.view = view
        await view.mount()
        return view

    async def _user_action(self, failure_text: str, action: Awaitable[T]) -> T:
        """Await a user-initiated action; transient failures become one notice."""

        try:
            return await action
        except (ValidationError, SessionExpiredError, ContactShareDeclined, NotLoggedInError):
            raise
        except SyncError as exc:
            logger.warning("%s: %s", failure_text, exc)
            self.bus.publish_notice(Notice(level="error", text=failure_text))
            raise

    async def start_conversation_with(self, target_user_id: str) -> Tuple[Conversation, ConversationSync]:
        conversation = await self._user_action(
            "Could not open conversation",
            self.directory.open_or_create(target_user_id),
        )
        return conversation, await self.open_conversation(conversation.id)

    async def send_text(self, text: str) -> Message:
        view = self._require_conversation_view()
        return await self._user_action("Message not sent", view.send("text", text))

    async def request_contact(self, note: str = "") -> Message:
        view = self._require_conversation_view()
        return await self._user_action(
            "Contact request not sent",
            self.contact_policy.request_contact(view.conversation_id, note, view=view),
        )

    async def share_contact(self, confirm: Confirm) -> ContactShareMessage:
        view = self._require_conversation_view()
        return await self._user_action(
            "Contact details not shared",
            self.contact_policy.share_contact(view.conversation_id, confirm, view=view),
        )

    async def close(self) -> None:
        if self._forced_logout_task is not None:
            await asyncio.gather(self._forced_logout_task, return_exceptions=True)
        await self.close_view()
        await self.bus.disconnect()
        self.guard.signal.unsubscribe(self._on_session_expired)
        await self.guard.close()

    async def __aenter__(self) -> "MessagingClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
