from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Callable, Iterable, Tuple, Union

from .errors import ContactShareDeclined, ProtocolError
from .models import CONTACT_REQUEST, CONTACT_SHARE, ContactShareMessage, Message
from .sync import ConversationSync, MessageStore

logger = logging.getLogger(__name__)

Confirm = Callable[[], Union[bool, Awaitable[bool]]]

SHARE_PROMPT = "Share your contact details in this conversation? This cannot be undone."


async def _ask(confirm: Confirm) -> bool:
    answer = confirm()
    if inspect.isawaitable(answer):
        answer = await answer
    return answer is True


class ContactSharePolicy:
    """Gates disclosure of the sender's contact value behind explicit consent.

    The client never sends the contact value itself. A share is a
    ``contact-share`` message with empty content; the server fills in the
    sender's current value, and that snapshot is history from then on. There
    is no way to withdraw a share once it exists.
    """

    def __init__(self, store: MessageStore) -> None:
        self._store = store

    async def share_contact(
        self,
        conversation_id: str,
        confirm: Confirm,
        *,
        view: ConversationSync | None = None,
    ) -> ContactShareMessage:
        """Ask ``confirm`` and, only on an explicit yes, post the share.

        When ``view`` is the open conversation the share is sent through it
        so the new message shows up without waiting for the next poll.
        """

        if not await _ask(confirm):
            logger.info("contact share declined in %s", conversation_id)
            raise ContactShareDeclined("contact share not confirmed")
        if view is not None and view.conversation_id == conversation_id:
            message = await view.send(CONTACT_SHARE)
        else:
            message = await self._store.send_message(conversation_id, CONTACT_SHARE)
        if not isinstance(message, ContactShareMessage):
            raise ProtocolError(f"server answered a contact share with a {message.type} message")
        logger.info("contact shared in %s as message %s", conversation_id, message.id)
        return message

    async def request_contact(self, conversation_id: str, note: str = "", *, view: ConversationSync | None = None) -> Message:
        """Ask the peer to share their contact details; discloses nothing."""

        if view is not None and view.conversation_id == conversation_id:
            return await view.send(CONTACT_REQUEST, note)
        return await self._store.send_message(conversation_id, CONTACT_REQUEST, note)


def shared_contacts(messages: Iterable[Message], sender_id: str | None = None) -> Tuple[ContactShareMessage, ...]:
    """Return the contact shares in ``messages``, optionally from one sender."""

    return tuple(
        message
        for message in messages
        if isinstance(message, ContactShareMessage) and (sender_id is None or message.sender_id == sender_id)
    )
