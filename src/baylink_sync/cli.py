"""Command-line front end for the conversation sync client."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import sys
from typing import Callable, Iterable, TextIO

from .client import MessagingClient
from .config import SyncConfig
from .contact_share import SHARE_PROMPT
from .errors import ContactShareDeclined, SyncError
from .models import Conversation, ContactRequestMessage, ContactShareMessage, Message, TextMessage
from .notifications import Notice
from .sync import UNMOUNTED, ConversationSync

InputFunc = Callable[[str], str]


def format_message(message: Message, viewer_id: str | None = None) -> str:
    who = "me" if viewer_id is not None and message.sender_id == viewer_id else message.sender_id
    if isinstance(message, TextMessage):
        return f"[{who}] {message.content}"
    if isinstance(message, ContactRequestMessage):
        note = f": {message.content}" if message.content else ""
        return f"[{who}] asked for contact details{note}"
    if isinstance(message, ContactShareMessage):
        return f"[{who}] shared contact details: {message.content}"
    raise TypeError(f"unhandled message variant: {type(message).__name__}")


def format_conversation(conversation: Conversation, unread: bool = False) -> str:
    peer = conversation.other_user
    label = (peer.nickname or peer.id) if peer is not None else "?"
    marker = "*" if unread else " "
    last = conversation.last_message or ""
    return f"{marker} {conversation.id}\t{label}\t{last}"


def format_notice(notice: Notice) -> str:
    suffix = f" ({notice.conversation_id})" if notice.conversation_id else ""
    return f"! {notice.level}: {notice.text}{suffix}"


def _write_lines(output: TextIO, lines: Iterable[str]) -> None:
    for line in lines:
        output.write(line + "\n")
    output.flush()


def _build_config(args: argparse.Namespace) -> SyncConfig:
    return SyncConfig.from_env(
        api_url=args.api_url,
        push_url=args.push_url,
        session_path=args.session_file,
    )


async def _run_login(client: MessagingClient, args: argparse.Namespace, output: TextIO) -> int:
    password = args.password or os.environ.get("BAYLINK_PASSWORD") or getpass.getpass("Password: ")
    session = await client.login(args.email, password)
    _write_lines(output, [f"logged in as {session.nickname or session.user_id}"])
    return 0


async def _run_conversations(client: MessagingClient, args: argparse.Namespace, output: TextIO) -> int:
    if not args.watch:
        conversations = await client.directory.list_conversations()
        _write_lines(output, [format_conversation(c, client.bus.has_unread(c.id)) for c in conversations])
        return 0

    def _print(conversations) -> None:
        _write_lines(output, ["--"] + [format_conversation(c, client.bus.has_unread(c.id)) for c in conversations])

    view = await client.show_conversation_list()
    if not view.active:
        return 1
    _print(view.conversations)
    view.add_listener(_print)
    return await _wait(client, args.duration)


async def _run_open(client: MessagingClient, args: argparse.Namespace, output: TextIO) -> int:
    conversation = await client.directory.open_or_create(args.user_id)
    _write_lines(output, [conversation.id])
    return 0


async def _run_send(client: MessagingClient, args: argparse.Namespace, output: TextIO) -> int:
    viewer_id = client.session.user_id
    if await _open_live(client, args.conversation_id) is None:
        return 1
    message = await client.send_text(args.text)
    _write_lines(output, [format_message(message, viewer_id)])
    return 0


async def _run_request_contact(client: MessagingClient, args: argparse.Namespace, output: TextIO) -> int:
    viewer_id = client.session.user_id
    if await _open_live(client, args.conversation_id) is None:
        return 1
    message = await client.request_contact(args.note)
    _write_lines(output, [format_message(message, viewer_id)])
    return 0


async def _run_share_contact(
    client: MessagingClient,
    args: argparse.Namespace,
    output: TextIO,
    input_func: InputFunc,
) -> int:
    viewer_id = client.session.user_id

    async def _confirm() -> bool:
        if args.yes:
            return True
        answer = await asyncio.to_thread(input_func, f"{SHARE_PROMPT} [y/N] ")
        return answer.strip().lower() in {"y", "yes"}

    if await _open_live(client, args.conversation_id) is None:
        return 1
    try:
        message = await client.share_contact(_confirm)
    except ContactShareDeclined:
        _write_lines(output, ["contact details not shared"])
        return 1
    _write_lines(output, [format_message(message, viewer_id)])
    return 0


async def _run_tail(client: MessagingClient, args: argparse.Namespace, output: TextIO) -> int:
    viewer_id = client.session.user_id
    printed: set[str] = set()

    def _print_new(messages) -> None:
        fresh = [message for message in messages if message.id not in printed]
        printed.update(message.id for message in fresh)
        _write_lines(output, [format_message(message, viewer_id) for message in fresh])

    view = await _open_live(client, args.conversation_id)
    if view is None:
        return 1
    _print_new(view.messages)
    view.add_listener(_print_new)
    return await _wait(client, args.duration)


async def _open_live(client: MessagingClient, conversation_id: str) -> ConversationSync | None:
    """Open a conversation view; None when the stored credential was rejected."""

    view = await client.open_conversation(conversation_id)
    if view.state == UNMOUNTED or client.session is None:
        return None
    return view


async def _wait(client: MessagingClient, duration: float | None) -> int:
    """Wait for ``duration`` seconds, or forever; 1 if the session is lost first."""

    try:
        await asyncio.wait_for(client.forced_out.wait(), duration)
    except asyncio.TimeoutError:
        return 0
    return 1


async def _run(args: argparse.Namespace, output: TextIO, input_func: InputFunc) -> int:
    config = _build_config(args)

    def _on_notice(notice: Notice) -> None:
        _write_lines(output, [format_notice(notice)])

    def _on_forced_logout(_event) -> None:
        _write_lines(output, ["session expired; please log in again"])

    async with MessagingClient(config, on_notice=_on_notice, on_forced_logout=_on_forced_logout) as client:
        if args.command == "login":
            return await _run_login(client, args, output)
        if args.command == "logout":
            await client.logout()
            _write_lines(output, ["logged out"])
            return 0
        session = await client.restore()
        if session is None:
            _write_lines(output, ["not logged in; run the login command first"])
            return 1
        try:
            if args.command == "conversations":
                return await _run_conversations(client, args, output)
            if args.command == "open":
                return await _run_open(client, args, output)
            if args.command == "send":
                return await _run_send(client, args, output)
            if args.command == "request-contact":
                return await _run_request_contact(client, args, output)
            if args.command == "share-contact":
                return await _run_share_contact(client, args, output, input_func)
            return await _run_tail(client, args, output)
        finally:
            await client.close_view()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="baylink-sync", description="Conversation sync client")
    parser.add_argument("--api-url", default=None, help="REST API base URL")
    parser.add_argument("--push-url", default=None, help="Push channel WebSocket URL")
    parser.add_argument("--session-file", default=None, help="Where the login session is stored")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login_parser = subparsers.add_parser("login", help="Log in and store the session")
    login_parser.add_argument("--email", required=True)
    login_parser.add_argument("--password", default=None, help="Defaults to $BAYLINK_PASSWORD or a prompt")

    subparsers.add_parser("logout", help="Forget the stored session")

    conversations_parser = subparsers.add_parser("conversations", help="List conversations")
    conversations_parser.add_argument("--watch", action="store_true", help="Keep polling for changes")
    conversations_parser.add_argument("--duration", type=float, default=None, help="Seconds to watch")

    open_parser = subparsers.add_parser("open", help="Open or create a conversation with a user")
    open_parser.add_argument("user_id")

    send_parser = subparsers.add_parser("send", help="Send a text message")
    send_parser.add_argument("conversation_id")
    send_parser.add_argument("text")

    request_parser = subparsers.add_parser("request-contact", help="Ask the peer for contact details")
    request_parser.add_argument("conversation_id")
    request_parser.add_argument("--note", default="")

    share_parser = subparsers.add_parser("share-contact", help="Share your contact details")
    share_parser.add_argument("conversation_id")
    share_parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    tail_parser = subparsers.add_parser("tail", help="Follow a conversation")
    tail_parser.add_argument("conversation_id")
    tail_parser.add_argument("--duration", type=float, default=None, help="Seconds to follow")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None, input_func: InputFunc = input) -> int:
    """Entry point for CLI commands."""

    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    stream = output or sys.stdout
    try:
        return asyncio.run(_run(args, stream, input_func))
    except KeyboardInterrupt:
        return 130
    except SyncError as exc:
        _write_lines(stream, [f"error: {exc}"])
        return 1


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
