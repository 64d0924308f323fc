from __future__ import annotations

import argparse
import asyncio
import logging
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from chatsync.core.client import ChatClient
from chatsync.core.config import ClientConfig, load_client_config
from chatsync.core.errors import ChatSyncError
from chatsync.core.media import MediaFile
from chatsync.core.messages import VisibleItem
from chatsync.core.proto import Identity
from chatsync.core.relationships import Partition

log = logging.getLogger("chatsync.cmd.client")

HELP = (
    "Commands: /login <username> <phone>, /logout, /users, /request <username>, "
    "/accept <username>, /decline <username>, /open <username>, /file <path>, "
    "/react <n> <symbol#>, /quit. Plain text is sent to the open chat."
)


class ClientApp:
    def __init__(self, config: ClientConfig) -> None:
        self.config = config
        self.client: Optional[ChatClient] = None
        self.stop_event = asyncio.Event()
        self._last: List[VisibleItem] = []

    async def run(self) -> None:
        self.client = await ChatClient.connect(
            self.config, on_contacts=self._on_contacts, on_messages=self._on_messages
        )
        try:
            restored = await self.client.start()
            if restored is not None:
                print(f"Welcome back, {restored.display_name}.")
            print(HELP)
            await self._command_loop()
        finally:
            await self.client.shutdown()

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                if line.startswith("/"):
                    await self._handle_command(line)
                else:
                    await self.client.send_text(line)  # type: ignore[union-attr]
            except ChatSyncError as exc:
                print(f"ERROR ({exc.code}): {exc}")
            except ValueError as exc:
                print(f"ERROR: {exc}")

    async def _handle_command(self, line: str) -> None:
        assert self.client is not None
        parts = line.split()
        cmd = parts[0]
        if cmd == "/login" and len(parts) == 3:
            print(await self.client.login(parts[1], parts[2]))
        elif cmd == "/logout":
            self.client.logout()
            await self.client.sessions.drain()
            print("Logged out")
        elif cmd == "/users":
            self._print_partition(self.client.partition())
        elif cmd == "/request" and len(parts) == 2:
            rel = await self.client.send_request(self._lookup(parts[1]).id)
            print(f"Chat request to {parts[1]} is {rel.status}")
        elif cmd in {"/accept", "/decline"} and len(parts) == 2:
            rel = self.client.relationships.relationship_with(self._lookup(parts[1]).id)
            if rel is None:
                print(f"No chat request from {parts[1]}")
                return
            if cmd == "/accept":
                await self.client.accept(rel.id)
            else:
                await self.client.decline(rel.id)
        elif cmd == "/open" and len(parts) == 2:
            await self.client.open_chat(self._lookup(parts[1]).id)
            print(f"Chatting with {parts[1]}")
        elif cmd == "/file" and len(parts) >= 2:
            await self._cmd_file(Path(line.split(" ", 1)[1]).expanduser())
        elif cmd == "/react" and len(parts) == 3:
            await self._cmd_react(int(parts[1]), int(parts[2]))
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print(HELP)

    async def _cmd_file(self, path: Path) -> None:
        assert self.client is not None
        if not path.exists():
            print(f"File not found: {path}")
            return
        mime, _ = mimetypes.guess_type(path.name)
        media = MediaFile(name=path.name, mime_type=mime or "application/octet-stream", data=path.read_bytes())
        await self.client.send_media(media, on_progress=lambda pct: print(f"\r[upload] {pct}%", end="", flush=True))
        print()

    async def _cmd_react(self, index: int, symbol_no: int) -> None:
        assert self.client is not None
        symbols = self.client.reaction_symbols
        if not 1 <= index <= len(self._last) or not 1 <= symbol_no <= len(symbols):
            print("No such message or reaction")
            return
        item = self._last[index - 1]
        if item.pending:
            print("Message is still sending")
            return
        await self.client.react(item.id, symbols[symbol_no - 1])

    def _lookup(self, username: str) -> Identity:
        assert self.client is not None
        for identity in self.client.relationships.identities:
            if identity.handle == username:
                return identity
        raise ValueError(f"unknown user {username}")

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _on_contacts(self, partition: Partition) -> None:
        if partition.incoming:
            names = ", ".join(req.identity.handle for req in partition.incoming)
            print(f"[requests] {names}")

    def _on_messages(self, conversation_id: str, items: List[VisibleItem]) -> None:
        self._last = list(items)
        assert self.client is not None
        me = self.client.identity.id if self.client.identity else ""
        print(f"--- {conversation_id} ---")
        for n, item in enumerate(items, 1):
            who = "me" if item.sender_id == me else item.sender_id[:8]
            flag = " (sending)" if item.pending else ""
            tags = ""
            if not item.pending and item.reactions:  # type: ignore[union-attr]
                tags = "  " + " ".join(f"{s}{len(ids)}" for s, ids in item.reactions.items())  # type: ignore[union-attr]
            print(f"{n:>3} [{who}] {item.content}{flag}{tags}")

    @staticmethod
    def _print_partition(partition: Partition) -> None:
        print("Contacts: " + (", ".join(i.handle for i in partition.contacts) or "-"))
        print("Requests: " + (", ".join(r.identity.handle for r in partition.incoming) or "-"))
        print("Others:   " + (", ".join(i.handle for i in partition.other) or "-"))


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="chatsync client")
    parser.add_argument("--config", default="configs/client.yaml", help="Path to client YAML config")
    parser.add_argument("--relay", help="ws://host:port of the relay (overrides the config)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_client_config(args.config)
    if args.relay:
        config = config.model_copy(update={"relay_url": args.relay})

    app = ClientApp(config)
    await app.run()


if __name__ == "__main__":
    asyncio.run(main())
