"""
LAN Hub - Command line tests.
"""

import io

import pytest
from rich.console import Console

from lanhub.main import PeerConsole, build_parser, main, relay_argv
from lanhub.models import MessageKind


def test_parser_subcommands():
    parser = build_parser()

    args = parser.parse_args(["peer", "--username", "alice", "--port", "9000"])
    assert args.command == "peer"
    assert args.username == "alice"
    assert args.port == 9000

    args = parser.parse_args(["grant-admin", "alice", "--revoke"])
    assert args.revoke is True

    args = parser.parse_args(["relay", "--host", "0.0.0.0", "--port", "9000"])
    assert relay_argv(args) == ["--host", "0.0.0.0", "--port", "9000"]


def test_version(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--version"])
    assert exc.value.code == 0
    assert "LAN Hub" in capsys.readouterr().out


def test_init_config(temp_dir):
    with pytest.raises(SystemExit) as exc:
        main(["init-config", "--data-dir", str(temp_dir)])
    assert exc.value.code == 0
    assert (temp_dir / "config.toml").exists()


def test_grant_admin_unknown_account(temp_dir):
    with pytest.raises(SystemExit) as exc:
        main(["grant-admin", "nobody", "--data-dir", str(temp_dir)])
    assert exc.value.code == 1


def make_console(peer):
    output = io.StringIO()
    return PeerConsole(peer, Console(file=output, width=120)), output


@pytest.mark.asyncio
async def test_console_sends_and_switches_rooms(make_peer):
    alice = await make_peer("alice", is_admin=True)
    console, output = make_console(alice)

    await console.handle_line("hello everyone")
    await console.handle_line("/create Project")
    room_id = next(iter(alice.sync.rooms))
    await console.handle_line(f"/room {room_id}")
    await console.handle_line("room talk")
    await console.handle_line("/invite")

    assert [m.display_text for m in alice.sync.messages_for(None)] == ["hello everyone"]
    assert [m.display_text for m in alice.sync.messages_for(room_id)] == ["room talk"]
    assert "Created room Project" in output.getvalue()


@pytest.mark.asyncio
async def test_console_reports_refused_send(make_peer):
    await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")
    console, output = make_console(bob)

    await console.handle_line("can I post here?")
    await console.handle_line("/bogus")
    await console.handle_line("/quit")

    assert "Message not sent" in output.getvalue()
    assert "Unknown command" in output.getvalue()
    assert console.running is False


@pytest.mark.asyncio
async def test_console_sends_files(make_peer, temp_dir):
    alice = await make_peer("alice", is_admin=True)
    console, output = make_console(alice)
    source = temp_dir / "notes.txt"
    source.write_text("some notes")

    await console.handle_line(f'/send-file "{source}"')
    await console.handle_line("/transfers")

    assert any(m.kind == MessageKind.FILE for m in alice.sync.messages)
    assert "notes.txt" in output.getvalue()
