from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Sequence, Tuple, Type, Union

from .errors import ProtocolError

TEXT = "text"
CONTACT_REQUEST = "contact-request"
CONTACT_SHARE = "contact-share"
MESSAGE_TYPES = (TEXT, CONTACT_REQUEST, CONTACT_SHARE)


@dataclass(frozen=True)
class Session:
    user_id: str
    token: str
    nickname: str | None = None


@dataclass(frozen=True)
class Participant:
    id: str
    nickname: str | None = None
    avatar: str | None = None


@dataclass(frozen=True)
class Conversation:
    id: str
    other_user: Participant | None
    last_message: str | None
    updated_at: int


@dataclass(frozen=True)
class TextMessage:
    type: ClassVar[str] = TEXT

    id: str
    sender_id: str
    content: str
    created_at: int


@dataclass(frozen=True)
class ContactRequestMessage:
    type: ClassVar[str] = CONTACT_REQUEST

    id: str
    sender_id: str
    content: str
    created_at: int


@dataclass(frozen=True)
class ContactShareMessage:
    """A frozen snapshot of the sender's contact value at the time of sharing."""

    type: ClassVar[str] = CONTACT_SHARE

    id: str
    sender_id: str
    content: str
    created_at: int


Message = Union[TextMessage, ContactRequestMessage, ContactShareMessage]

_MESSAGE_CLASSES: Dict[str, Type[Message]] = {
    TEXT: TextMessage,
    CONTACT_REQUEST: ContactRequestMessage,
    CONTACT_SHARE: ContactShareMessage,
}


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"{key} must be a non-empty string")
    return value


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"{key} must be an integer")
    return value


def _optional_str(payload: Dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def message_from_payload(payload: object) -> Message:
    """Decode one message; an unknown ``type`` tag is a protocol error."""

    if not isinstance(payload, dict):
        raise ProtocolError("message must be an object")
    message_type = payload.get("type")
    cls = _MESSAGE_CLASSES.get(message_type) if isinstance(message_type, str) else None
    if cls is None:
        raise ProtocolError(f"unsupported message type: {message_type!r}")
    content = payload.get("content")
    if content is None:
        content = ""
    if not isinstance(content, str):
        raise ProtocolError("content must be a string")
    return cls(
        id=_require_str(payload, "id"),
        sender_id=_require_str(payload, "senderId"),
        content=content,
        created_at=_require_int(payload, "createdAt"),
    )


def messages_from_payload(payload: object) -> Tuple[Message, ...]:
    if not isinstance(payload, list):
        raise ProtocolError("message list must be an array")
    return tuple(message_from_payload(item) for item in payload)


def message_sort_key(message: Message) -> Tuple[int, str]:
    return message.created_at, message.id


def is_canonically_ordered(messages: Sequence[Message]) -> bool:
    """Return True when ``messages`` are ordered by creation time then id."""

    keys = [message_sort_key(message) for message in messages]
    return all(earlier <= later for earlier, later in zip(keys, keys[1:]))


def conversation_from_payload(payload: object) -> Conversation:
    if not isinstance(payload, dict):
        raise ProtocolError("conversation must be an object")
    other = payload.get("otherUser")
    other_user = None
    if isinstance(other, dict) and isinstance(other.get("id"), str):
        other_user = Participant(
            id=other["id"],
            nickname=_optional_str(other, "nickname"),
            avatar=_optional_str(other, "avatar") or _optional_str(other, "avatarUrl"),
        )
    updated_at = payload.get("updatedAt", 0)
    if isinstance(updated_at, bool) or not isinstance(updated_at, int):
        raise ProtocolError("updatedAt must be an integer")
    return Conversation(
        id=_require_str(payload, "id"),
        other_user=other_user,
        last_message=_optional_str(payload, "lastMessage"),
        updated_at=updated_at,
    )


def conversations_from_payload(payload: object) -> Tuple[Conversation, ...]:
    if not isinstance(payload, list):
        raise ProtocolError("conversation list must be an array")
    return tuple(conversation_from_payload(item) for item in payload)


def session_from_payload(payload: object) -> Session:
    """Build a Session from a login response.

    Only the id, token and nickname are kept; the user's contact value is
    part of the login response but is not retained client-side.
    """

    if not isinstance(payload, dict):
        raise ProtocolError("login response must be an object")
    return Session(
        user_id=_require_str(payload, "id"),
        token=_require_str(payload, "token"),
        nickname=_optional_str(payload, "nickname"),
    )
