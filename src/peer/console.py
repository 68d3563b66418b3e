"""Interactive copy/paste console for one peer session.

The operator copies the printed description to the other side by any means
(chat, mail, clipboard) and pastes the reply. Once connected, lines starting
with ``/`` are commands and everything else is sent as chat.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from config.settings import Settings, get_settings
from peer.session import PeerSession
from transport.errors import PeerLinkError, SessionStoreError
from transport.events import LifecycleEvent

LOGGER = logging.getLogger(__name__)

HELP = """Commands:
  /call              ring the peer
  /accept, /decline  answer an incoming call
  /hangup            end the current call
  /mute audio|video  toggle local mute
  /preview           start the camera and microphone before calling
  /status            show connection and call state
  /log               show the last lifecycle events
  /chat              show the chat history
  /quit              close the session
Anything else is sent as a chat message."""


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Peer-to-peer calls and chat without a signaling server")
    parser.add_argument("role", choices=["offer", "answer"], help="offer: create the session; answer: join one")
    parser.add_argument("--name", default=None, help="Name announced to the peer when calling")
    parser.add_argument("--synthetic-media", action="store_true", help="Send a test pattern instead of opening devices")
    parser.add_argument("--no-stun", action="store_true", help="Only gather host candidates")
    return parser.parse_args(argv)


def _settings_for(args: argparse.Namespace) -> Settings:
    update: dict = {}
    if args.name:
        update["display_name"] = args.name
    if args.synthetic_media:
        update["capture_backend"] = "synthetic"
    if args.no_stun:
        update["ice_servers"] = []
    return get_settings().model_copy(update=update)


async def _prompt(text: str) -> str | None:
    if text:
        print(text, end="", flush=True)
    line = await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)
    if line == "":
        return None
    return line.strip()


def _print_block(title: str, body: str) -> None:
    print(f"\n=== {title} ===\n{body}\n=== end ===\n", flush=True)


def _announce(event: LifecycleEvent) -> None:
    if event.source == "call" and event.event == "state":
        state = event.detail.get("state")
        if state == "ringing":
            print(f"\n* Incoming call from {event.detail.get('sender') or 'peer'} (/accept or /decline)")
        else:
            print(f"\n* Call {state}")
    elif event.source == "transport" and event.event == "connectivity":
        print(f"\n* Connection {event.detail.get('state')}")
    elif event.source == "media" and event.event == "capture-failed":
        print(f"\n! Capture failed: {event.detail.get('reason')}")


async def _open_repository(settings: Settings):
    if not settings.persist_session_metadata:
        return None

    from db.base import init_db
    from db.repository import SessionMetadataRepository

    try:
        await init_db()
        repository = SessionMetadataRepository()
        recent = await repository.list_recent(limit=1)
    except (SQLAlchemyError, SessionStoreError) as exc:
        LOGGER.warning("Session metadata cache unavailable: %s", exc)
        return None

    if recent:
        last = recent[0]
        print(f"Last session: {last.role} as {last.display_name}, connected {last.connected_at:%Y-%m-%d %H:%M}")
    return repository


async def _negotiate(session: PeerSession, role: str) -> bool:
    if role == "offer":
        offer = await session.create_offer()
        _print_block("Copy this offer to the other peer", offer.to_wire())
        while True:
            text = await _prompt("Paste the answer: ")
            if text is None:
                return False
            try:
                await session.apply_remote(text)
                return True
            except PeerLinkError as exc:
                print(f"! {exc.detail}")

    while True:
        text = await _prompt("Paste the offer: ")
        if text is None:
            return False
        try:
            answer = await session.apply_remote(text)
        except PeerLinkError as exc:
            print(f"! {exc.detail}")
            continue
        if answer is None:
            print("! That was an answer; paste the offer created by the other peer.")
            continue
        _print_block("Copy this answer back to the other peer", answer.to_wire())
        return True


async def _run_command(session: PeerSession, command: str, arg: str) -> bool:
    if command == "quit":
        return False
    if command == "call":
        if not session.start_call():
            print("! Cannot start a call now (not connected or call in progress)")
    elif command == "accept":
        await session.accept_call()
    elif command == "decline":
        session.decline_call()
    elif command == "hangup":
        session.end_call()
    elif command == "mute":
        toggles = {"audio": session.toggle_audio_mute, "video": session.toggle_video_mute}
        toggle = toggles.get(arg)
        if toggle is None:
            print("! Usage: /mute audio|video")
        elif toggle() is None:
            print("! No active capture to mute")
    elif command == "preview":
        await session.preview_media()
    elif command == "status":
        print(json.dumps(session.status(), indent=2))
    elif command == "log":
        for event in session.log.entries(limit=20):
            print(f"{event.at:%H:%M:%S} {event.source:<11} {event.event} {event.detail or ''}")
    elif command == "chat":
        for message in session.chat:
            print(f"{'me' if message.own else 'peer'}: {message.text}")
    else:
        print(HELP)
    return True


async def _interact(session: PeerSession) -> None:
    print(HELP)
    while True:
        line = await _prompt("")
        if line is None:
            return
        if not line:
            continue
        try:
            if line.startswith("/"):
                command, _, arg = line[1:].partition(" ")
                if not await _run_command(session, command.lower(), arg.strip().lower()):
                    return
            else:
                session.send_chat(line)
        except PeerLinkError as exc:
            print(f"! {exc.detail}")


async def _amain(args: argparse.Namespace) -> None:
    settings = _settings_for(args)
    repository = await _open_repository(settings)
    session = PeerSession(settings=settings, repository=repository)
    session.log.subscribe(_announce)

    def show_chat(event: LifecycleEvent) -> None:
        if event.source == "chat" and session.chat:
            print(f"\n> peer: {session.chat[-1].text}")

    session.log.subscribe(show_chat)
    try:
        if await _negotiate(session, args.role):
            await _interact(session)
    finally:
        await session.close()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        asyncio.run(_amain(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
