"""Conversation and notification sync client."""

from .client import MessagingClient
from .config import SyncConfig
from .contact_share import ContactSharePolicy, shared_contacts
from .directory import ConversationDirectory, ConversationListView
from .models import (
    ContactRequestMessage,
    ContactShareMessage,
    Conversation,
    Message,
    Participant,
    Session,
    TextMessage,
)
from .notifications import Notice, NotificationBus, PushChannel
from .session import SessionExpired, SessionExpiredSignal, SessionGuard
from .sync import ConversationSync, MessageStore

__all__ = [
    "MessagingClient",
    "SyncConfig",
    "ContactSharePolicy",
    "shared_contacts",
    "ConversationDirectory",
    "ConversationListView",
    "ContactRequestMessage",
    "ContactShareMessage",
    "Conversation",
    "Message",
    "Participant",
    "Session",
    "TextMessage",
    "Notice",
    "NotificationBus",
    "PushChannel",
    "SessionExpired",
    "SessionExpiredSignal",
    "SessionGuard",
    "ConversationSync",
    "MessageStore",
]
