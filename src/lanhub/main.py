"""
LAN Hub - Main entry point for the application.

Subcommands start the relay, run an interactive peer console, toggle the
admin flag of a local account, or write an example configuration file.
"""

import argparse
import asyncio
import shlex
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import Config
from .constants import APP_NAME, CONFIG_FILENAME, DEFAULT_DATA_DIR
from .errors import LanHubError
from .models import Message, MessageKind, Transfer, TransferStatus
from .peer import Peer
from .relay import async_main as relay_main
from .sync import SyncEvent
from .utils import format_size, format_timestamp, setup_logging

HELP_TEXT = """Commands:
  /help                      Show this help
  /who                       List online peers
  /rooms                     List rooms
  /room <id|global>          Switch the active channel
  /create <name> [public]    Create a room
  /add <peer-id>             Add a peer to the active room
  /kick <peer-id>            Remove a peer from the active room
  /invite                    Print an invitation code for the active room
  /join <code>               Redeem an invitation code
  /send-file <path>          Send a file to the active channel
  /transfers                 List file transfers
  /dismiss <transfer-id>     Forget a transfer
  /rotate                    Rotate the room key (admins)
  /fingerprint               Show the identity key fingerprint
  /quit                      Leave
Anything else is sent as a message to the active channel."""


def resolve_data_dir(value: Optional[str]) -> Path:
    data_dir = Path(value or DEFAULT_DATA_DIR).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def format_message(message: Message) -> Text:
    """Render one message line."""
    line = Text()
    line.append(f"[{format_timestamp(message.timestamp)}] ", style="dim")
    if message.kind == MessageKind.SYSTEM:
        line.append(message.display_text, style="italic yellow")
        return line
    line.append(f"{message.sender_name}: ", style="bold cyan")
    style = "magenta" if message.kind == MessageKind.FILE else None
    if message.needs_decryption:
        style = "dim red"
    line.append(message.display_text, style=style)
    return line


def transfers_table(transfers: List[Transfer]) -> Table:
    table = Table(title="File transfers")
    table.add_column("ID", style="dim")
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("From")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    for transfer in transfers:
        table.add_row(
            transfer.id,
            transfer.file_name,
            format_size(transfer.file_size),
            transfer.sender_name,
            transfer.status.value,
            f"{transfer.progress}%",
        )
    return table


class PeerConsole:
    """Line-oriented console client around a running Peer."""

    def __init__(self, peer: Peer, console: Console):
        self.peer = peer
        self.console = console
        self.room_id: Optional[str] = None
        self.running = False

    @property
    def channel_name(self) -> str:
        if self.room_id is None:
            return "global"
        room = self.peer.sync.rooms.get(self.room_id)
        return room.name if room else self.room_id

    def on_event(self, event: SyncEvent, data) -> None:
        if event == SyncEvent.MESSAGES and data:
            for message in data:
                if message.room_id == self.room_id and message.sender_id != self.peer.user.id:
                    self.console.print(format_message(message))
        elif event == SyncEvent.KEY:
            self.console.print(f"[green]Room key generation {data} is active[/green]")
        elif event == SyncEvent.TRANSFERS and isinstance(data, Transfer) and data.is_inbound:
            if data.status == TransferStatus.COMPLETED:
                self.console.print(f"[green]Received {data.file_name} -> {data.download_path}[/green]")

    def show_history(self) -> None:
        for message in self.peer.sync.messages_for(self.room_id)[-20:]:
            self.console.print(format_message(message))

    def show_peers(self) -> None:
        table = Table(title="Online peers")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Admin")
        table.add_column("Last seen")
        for user in self.peer.sync.presence:
            table.add_row(user.id, user.display_name, "yes" if user.is_admin else "", format_timestamp(user.last_seen))
        self.console.print(table)

    def show_rooms(self) -> None:
        table = Table(title="Rooms")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Public")
        table.add_column("Members", justify="right")
        for room in self.peer.sync.rooms.values():
            table.add_row(room.id, room.name, "yes" if room.is_public else "", str(len(room.participants)))
        self.console.print(table)

    async def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        if not line.startswith("/"):
            if not await self.peer.sync.send_message(line, self.room_id):
                self.console.print("[red]Message not sent[/red]")
            return

        try:
            parts = shlex.split(line)
        except ValueError as e:
            self.console.print(f"[red]{e}[/red]")
            return
        command, args = parts[0], parts[1:]

        if command == "/quit":
            self.running = False
        elif command == "/help":
            self.console.print(HELP_TEXT)
        elif command == "/who":
            self.show_peers()
        elif command == "/rooms":
            self.show_rooms()
        elif command == "/room" and args:
            if args[0] == "global":
                self.room_id = None
            elif args[0] in self.peer.sync.rooms:
                self.room_id = args[0]
            else:
                self.console.print(f"[red]Unknown room {args[0]}[/red]")
                return
            self.console.rule(self.channel_name)
            self.show_history()
        elif command == "/create" and args:
            room = await self.peer.rooms.create_room(args[0], is_public="public" in args[1:])
            if room:
                self.console.print(f"Created room {room.name} ({room.id})")
                await self.peer.log_activity("room", f"Created room {room.name}")
        elif command in ("/add", "/kick") and args and self.room_id:
            if command == "/add":
                ok = await self.peer.rooms.add_participant(self.room_id, args[0])
            else:
                ok = await self.peer.rooms.kick(self.room_id, args[0])
            self.console.print("Done" if ok else "[red]Room update refused[/red]")
        elif command == "/invite" and self.room_id:
            code = self.peer.rooms.generate_invite_code(self.room_id)
            self.console.print(code or "[red]No invitation code for this room[/red]")
        elif command == "/join" and args:
            ok = await self.peer.rooms.join_room_with_code(args[0])
            self.console.print("Joined" if ok else "[red]Invalid invitation code[/red]")
        elif command == "/send-file" and args:
            transfer = await self.peer.transfers.send_file(Path(args[0]).expanduser(), self.room_id)
            self.console.print(f"Transfer {transfer.id}: {transfer.status.value}")
            await self.peer.log_activity("file", f"Sent {transfer.file_name}")
        elif command == "/transfers":
            self.console.print(transfers_table(list(self.peer.transfers.transfers.values())))
        elif command == "/dismiss" and args:
            if not await self.peer.transfers.dismiss(args[0]):
                self.console.print(f"[red]Unknown transfer {args[0]}[/red]")
        elif command == "/rotate":
            key = await self.peer.keys.rotate_room_key()
            self.console.print(f"Rotated to generation {key.generation}" if key else "[red]Admins only[/red]")
        elif command == "/fingerprint":
            self.console.print(self.peer.keys.fingerprint)
        else:
            self.console.print("[red]Unknown command, try /help[/red]")

    async def run(self) -> None:
        self.peer.sync.add_listener(self.on_event)
        self.running = True
        self.console.rule(f"{APP_NAME} - {self.peer.user.display_name}")
        self.console.print("Type /help for commands")
        self.show_history()

        while self.running:
            try:
                line = await asyncio.to_thread(input)
            except EOFError:
                break
            try:
                await self.handle_line(line)
            except LanHubError as e:
                self.console.print(f"[red]{e}[/red]")

        self.peer.sync.remove_listener(self.on_event)


async def run_peer(args: argparse.Namespace) -> int:
    data_dir = resolve_data_dir(args.data_dir)
    config = Config(data_dir / CONFIG_FILENAME)
    if args.host:
        config.set("relay", "host", args.host)
    if args.port:
        config.set("relay", "port", args.port)
    if args.passphrase:
        config.set("crypto", "passphrase", args.passphrase)
    config.set("logging", "console_logging", args.debug)
    if args.debug:
        config.set("logging", "level", "DEBUG")
    setup_logging(config, data_dir)

    console = Console()
    peer = Peer(data_dir, config)

    if args.username:
        if not await peer.login(args.username):
            await peer.register_account(args.username, args.display_name or "")
    if peer.user is None:
        console.print("[red]No account: pass --username to register or log in[/red]")
        return 1

    await peer.start()
    try:
        await PeerConsole(peer, console).run()
    finally:
        await peer.stop()
    return 0


async def grant_admin(args: argparse.Namespace) -> int:
    data_dir = resolve_data_dir(args.data_dir)
    peer = Peer(data_dir, Config(data_dir / CONFIG_FILENAME))
    if not await peer.set_admin(args.username, not args.revoke):
        print(f"No local account named {args.username}")
        return 1
    print(f"{args.username}: admin {'revoked' if args.revoke else 'granted'}")
    return 0


def relay_argv(args: argparse.Namespace) -> List[str]:
    argv = []
    if args.host:
        argv += ["--host", args.host]
    if args.port:
        argv += ["--port", str(args.port)]
    if args.data_dir:
        argv += ["--data-dir", args.data_dir]
    return argv


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lanhub",
        description=f"{APP_NAME} - LAN chat, rooms and file sharing through a shared relay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  lanhub relay --port 8765               # Start the relay
  lanhub peer --username alice           # Log in (or register) and chat
  lanhub grant-admin alice               # Make a local account an admin
  lanhub init-config                     # Write an example config.toml
        """,
    )
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="Run the relay server")
    relay.add_argument("--host", type=str, default=None, help="Interface to bind")
    relay.add_argument("--port", type=int, default=None, help="Port to listen on")
    relay.add_argument("--data-dir", type=str, default=None, help="Directory holding config.toml and logs")

    peer = sub.add_parser("peer", help="Run an interactive peer")
    peer.add_argument("--data-dir", type=str, default=None, help="Data directory for this peer")
    peer.add_argument("--username", type=str, default=None, help="Account to log in as (registered if new)")
    peer.add_argument("--display-name", type=str, default=None, help="Display name for a new account")
    peer.add_argument("--host", type=str, default=None, help="Relay host")
    peer.add_argument("--port", type=int, default=None, help="Relay port")
    peer.add_argument("--passphrase", type=str, default=None, help="Shared passphrase for the room key")
    peer.add_argument("--debug", action="store_true", help="Log to the console at debug level")

    admin = sub.add_parser("grant-admin", help="Set the admin flag of a local account")
    admin.add_argument("username")
    admin.add_argument("--revoke", action="store_true", help="Clear the flag instead")
    admin.add_argument("--data-dir", type=str, default=None, help="Data directory holding the account")

    init = sub.add_parser("init-config", help="Write an example configuration file")
    init.add_argument("--data-dir", type=str, default=None, help="Directory to write config.toml into")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for LAN Hub."""
    args = build_parser().parse_args(argv)

    try:
        if args.command == "relay":
            asyncio.run(relay_main(relay_argv(args)))
            code = 0
        elif args.command == "peer":
            code = asyncio.run(run_peer(args))
        elif args.command == "grant-admin":
            code = asyncio.run(grant_admin(args))
        else:
            path = resolve_data_dir(args.data_dir) / CONFIG_FILENAME
            Config.create_example(path)
            print(f"Wrote {path}")
            code = 0
    except KeyboardInterrupt:
        code = 0
    except LanHubError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
