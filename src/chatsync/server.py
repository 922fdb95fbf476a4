"""Store server and a scripted multi-user simulation CLI."""

from __future__ import annotations

import argparse
import asyncio
import itertools
import json
import logging
import sys
from dataclasses import replace
from typing import Dict, Iterable, TextIO

from aiohttp import web

from .client import ChatClient
from .config import ClientConfig, load_client_config_from_env
from .models import direct_conversation_id
from .store import InMemoryStore
from .ws_transport import create_app

logger = logging.getLogger(__name__)

SIM_EPOCH_MS = 1_700_000_000_000
SIM_STEP_MS = 1000


class _SimClock:
    def __init__(self, start_ms: int = SIM_EPOCH_MS) -> None:
        self.now_ms = start_ms

    def now(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def _conversation_row(client: ChatClient, conversation) -> dict:
    last = conversation.visible_last_message(client.user_id)
    return {
        "conv_id": conversation.conv_id,
        "kind": conversation.kind,
        "name": conversation.name,
        "unread": conversation.unread_for(client.user_id),
        "pinned": conversation.is_pinned_for(client.user_id),
        "last_message": last.text if last is not None else None,
    }


def _snapshot_line(index: int, client: ChatClient) -> dict:
    line = {
        "t": "state",
        "frame": index,
        "user_id": client.user_id,
        "conversations": [_conversation_row(client, conv) for conv in client.conversation_list],
    }
    view = client.conversations.active
    if view is not None:
        line["open"] = {
            "conv_id": view.conv_id,
            "messages": [
                {
                    "msg_id": message.msg_id,
                    "sender_id": message.sender_id,
                    "text": message.summary_text(),
                    "status": message.status,
                    "reactions": {emoji: sorted(users) for emoji, users in message.reactions.items()},
                }
                for message in view.messages
            ],
        }
    return line


async def simulate_async(frames: Iterable[dict], output: TextIO, config: ClientConfig | None = None) -> None:
    """Run user-action frames against one in-memory store and emit each user's view."""

    clock = _SimClock()
    store = InMemoryStore(now_func=clock.now)
    base = config or ClientConfig(heartbeat_enabled=False)
    config = replace(base, heartbeat_enabled=False, sync=replace(base.sync, receipt_debounce_s=0))
    clients: Dict[str, ChatClient] = {}

    async def client_for(user_id: str, display_name: str | None = None) -> ChatClient:
        client = clients.get(user_id)
        if client is None:
            counter = itertools.count(1)
            client = ChatClient(
                store,
                user_id,
                display_name,
                config=config,
                now_func=clock.now,
                id_factory=lambda: f"{user_id}-{next(counter)}",
            )
            clients[user_id] = client
            await client.start()
        return client

    def conv_id_for(frame: dict, user_id: str) -> str:
        if frame.get("conv_id"):
            return frame["conv_id"]
        if frame.get("peer"):
            return direct_conversation_id(user_id, frame["peer"])
        raise ValueError("frame needs conv_id or peer")

    for index, frame in enumerate(frames):
        clock.advance(int(frame.get("advance_ms", SIM_STEP_MS)))
        frame_type = frame.get("t")
        user_id = frame.get("user")
        if not user_id:
            raise ValueError("frame needs a user")
        client = await client_for(user_id, frame.get("name"))
        sync = client.conversations
        if frame_type == "join":
            pass
        elif frame_type == "direct":
            await client_for(frame["peer"])
            await sync.ensure_direct_conversation(frame["peer"])
        elif frame_type == "group":
            for member in frame.get("members", []):
                await client_for(member)
            await sync.create_group(frame["name"], frame.get("members", []))
        elif frame_type == "open":
            await client.open(conv_id_for(frame, user_id))
        elif frame_type == "close":
            sync.close_conversation()
        elif frame_type == "type":
            sync.on_input(conv_id_for(frame, user_id))
        elif frame_type == "send":
            conv_id = conv_id_for(frame, user_id)
            if frame.get("peer"):
                await sync.ensure_direct_conversation(frame["peer"])
            await client.send(conv_id, frame.get("text", ""), media_url=frame.get("media_url"))
        elif frame_type == "react":
            await sync.toggle_reaction(conv_id_for(frame, user_id), frame["msg_id"], frame["emoji"])
        elif frame_type == "edit":
            await sync.edit_message(conv_id_for(frame, user_id), frame["msg_id"], frame["text"])
        elif frame_type == "delete":
            await sync.delete_messages(conv_id_for(frame, user_id), frame["msg_ids"])
        elif frame_type == "clear":
            await sync.clear_history(conv_id_for(frame, user_id))
        elif frame_type == "pin":
            await sync.pin_conversation(conv_id_for(frame, user_id), bool(frame.get("pinned", True)))
        elif frame_type == "leave":
            await sync.leave_conversation(conv_id_for(frame, user_id))
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")
        for each in clients.values():
            await each.settle()
            await each.receipts.flush()
        for each in clients.values():
            output.write(json.dumps(_snapshot_line(index, each), sort_keys=True) + "\n")

    for each in clients.values():
        await each.stop()


def simulate(frames: Iterable[dict], output: TextIO, config: ClientConfig | None = None) -> None:
    asyncio.run(simulate_async(frames, output, config))


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is not None:
        with args.file as handle:
            frames = _load_frames(handle)
    else:
        frames = _load_frames(sys.stdin)
    simulate(frames, output, load_client_config_from_env())
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(db_path=args.db, ping_interval_s=args.ping_interval)
    logger.info("serving store on %s:%s (db=%s)", args.host, args.port, args.db or "memory")
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="chatsync CLI")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Run scripted user actions against an in-memory store")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp store server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
