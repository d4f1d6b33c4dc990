"""Tests for handler discovery, loading, and reloading."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from wawire.commands.loader import HandlerLoader
from wawire.commands.registry import CommandRegistry
from wawire.dispatcher import Dispatcher
from wawire.exceptions import CommandLoadError
from wawire.models import InboundMessage


def _reply_handler(name, text):
    return (
        f"name = {name!r}\n"
        "\n"
        "async def execute(message):\n"
        f"    await message.reply({text!r})\n"
    )


def _write(root: Path, rel: str, content: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def _make_loader(root: Path):
    registry = CommandRegistry()
    return HandlerLoader(registry, root), registry


async def _dispatch(registry, body):
    reply = AsyncMock()
    message = InboundMessage(sender="628123456789@c.us", body=body, reply_fn=reply)
    await Dispatcher(registry, [".", "!", "#"]).dispatch(message)
    return reply


def test_load_all_registers_nested_handlers(tmp_path):
    """Handlers at every depth of the tree are registered."""
    _write(tmp_path, "ping.py", _reply_handler("ping", "pong"))
    _write(tmp_path, "fun/echo.py", _reply_handler("echo", "echo"))
    _write(tmp_path, "fun/deep/er/roll.py", _reply_handler("roll", "4"))

    loader, registry = _make_loader(tmp_path)
    loaded = loader.load_all()

    assert loaded == 3
    assert registry.command_names == frozenset({"ping", "echo", "roll"})
    assert registry.lookup("roll").source == Path("fun/deep/er/roll.py")


def test_load_all_skips_private_and_foreign_files(tmp_path):
    _write(tmp_path, "ping.py", _reply_handler("ping", "pong"))
    _write(tmp_path, "__init__.py", "")
    _write(tmp_path, "_helpers.py", _reply_handler("helpers", "no"))
    _write(tmp_path, "README.md", "# commands")
    _write(tmp_path, "_private/hidden.py", _reply_handler("hidden", "no"))

    loader, registry = _make_loader(tmp_path)
    loader.load_all()

    assert registry.command_names == frozenset({"ping"})


def test_load_all_continues_past_broken_files(tmp_path):
    """A broken handler is logged and skipped; the others still load."""
    _write(tmp_path, "a_broken.py", "name = 'broken'\ndef execute(message:\n")
    _write(tmp_path, "b_raises.py", "raise RuntimeError('import-time failure')\n")
    _write(tmp_path, "c_ping.py", _reply_handler("ping", "pong"))

    loader, registry = _make_loader(tmp_path)
    loaded = loader.load_all()

    assert loaded == 1
    assert registry.command_names == frozenset({"ping"})


def test_load_all_missing_dir_loads_nothing(tmp_path):
    loader, registry = _make_loader(tmp_path / "nope")
    assert loader.load_all() == 0
    assert len(registry) == 0


def test_load_all_skips_unreadable_directory(tmp_path):
    _write(tmp_path, "ping.py", _reply_handler("ping", "pong"))
    _write(tmp_path, "locked/secret.py", _reply_handler("secret", "hidden"))
    real_iterdir = Path.iterdir

    def iterdir(self):
        if self.name == "locked":
            raise PermissionError(13, "Permission denied", str(self))
        return real_iterdir(self)

    loader, registry = _make_loader(tmp_path)
    with patch.object(Path, "iterdir", iterdir):
        assert loader.load_all() == 1

    assert registry.command_names == frozenset({"ping"})


def test_load_one_rejects_module_without_name(tmp_path):
    _write(tmp_path, "anon.py", "async def execute(message):\n    pass\n")
    loader, registry = _make_loader(tmp_path)

    with pytest.raises(CommandLoadError, match="name"):
        loader.load_one("anon.py")
    assert len(registry) == 0
    assert not loader.is_loaded("anon.py")


def test_load_one_rejects_module_without_execute(tmp_path):
    _write(tmp_path, "lazy.py", "name = 'lazy'\nexecute = 'not callable'\n")
    loader, registry = _make_loader(tmp_path)

    with pytest.raises(CommandLoadError, match="execute"):
        loader.load_one("lazy.py")
    assert registry.lookup("lazy") is None


def test_load_one_missing_file_raises(tmp_path):
    loader, _ = _make_loader(tmp_path)
    with pytest.raises(CommandLoadError, match="not found"):
        loader.load_one("ghost.py")


def test_load_one_rejects_path_outside_root(tmp_path):
    root = tmp_path / "commands"
    root.mkdir()
    _write(tmp_path, "outside.py", _reply_handler("outside", "no"))
    loader, _ = _make_loader(root)

    with pytest.raises(CommandLoadError, match="outside"):
        loader.load_one("../outside.py")


def test_handler_can_import_sibling_helper(tmp_path):
    _write(tmp_path, "_greetings.py", "GREETING = 'hello'\n")
    _write(
        tmp_path,
        "greet.py",
        "from _greetings import GREETING\n"
        "name = 'greet'\n"
        "def execute(message):\n"
        "    return None\n"
        "TEXT = GREETING\n",
    )
    loader, registry = _make_loader(tmp_path)
    loader.load_all()

    assert registry.lookup("greet") is not None


def test_reload_picks_up_edited_helper(tmp_path):
    _write(tmp_path, "_salutes.py", "GREETING = 'hello'\n")
    _write(
        tmp_path,
        "salute.py",
        "from _salutes import GREETING\n"
        "name = 'salute'\n"
        "def execute(message):\n"
        "    return None\n"
        "TEXT = GREETING\n",
    )
    loader, registry = _make_loader(tmp_path)
    loader.load_all()

    _write(tmp_path, "_salutes.py", "GREETING = 'good morning'\n")
    loader.reload("salute.py")

    assert registry.lookup("salute").execute.__globals__["TEXT"] == "good morning"


@pytest.mark.asyncio
async def test_scenario_ping_handler(tmp_path):
    """.ping replies pong, bare ping does nothing, !ping with args replies once."""
    _write(tmp_path, "ping.py", _reply_handler("ping", "pong"))
    loader, registry = _make_loader(tmp_path)
    loader.load_all()

    reply = await _dispatch(registry, ".ping")
    reply.assert_awaited_once_with("628123456789@c.us", "pong")

    reply = await _dispatch(registry, "ping")
    reply.assert_not_awaited()

    reply = await _dispatch(registry, "!ping extra args")
    reply.assert_awaited_once_with("628123456789@c.us", "pong")


@pytest.mark.asyncio
async def test_reload_uses_new_implementation(tmp_path):
    _write(tmp_path, "ping.py", _reply_handler("ping", "pong"))
    loader, registry = _make_loader(tmp_path)
    loader.load_all()
    before = registry.lookup("ping")

    _write(tmp_path, "ping.py", _reply_handler("ping", "pang"))
    after = loader.reload("ping.py")

    assert registry.lookup("ping") is after
    assert after is not before
    reply = await _dispatch(registry, ".ping")
    reply.assert_awaited_once_with("628123456789@c.us", "pang")


@pytest.mark.asyncio
async def test_failed_reload_keeps_previous_handler(tmp_path):
    _write(tmp_path, "ping.py", _reply_handler("ping", "pong"))
    loader, registry = _make_loader(tmp_path)
    loader.load_all()
    before = registry.lookup("ping")

    _write(tmp_path, "ping.py", "name = 'ping'\ndef execute(message:\n")
    with pytest.raises(CommandLoadError):
        loader.reload("ping.py")

    assert registry.lookup("ping") is before
    reply = await _dispatch(registry, ".ping")
    reply.assert_awaited_once_with("628123456789@c.us", "pong")


def test_reload_accepts_absolute_path(tmp_path):
    path = _write(tmp_path, "fun/echo.py", _reply_handler("echo", "one"))
    loader, registry = _make_loader(tmp_path)
    loader.load_all()

    command = loader.reload(path)
    assert command.source == Path("fun/echo.py")


def test_rename_keeps_old_name_registered(tmp_path):
    _write(tmp_path, "ping.py", _reply_handler("ping", "pong"))
    loader, registry = _make_loader(tmp_path)
    loader.load_all()

    _write(tmp_path, "ping.py", _reply_handler("pingu", "noot"))
    loader.reload("ping.py")

    assert registry.command_names == frozenset({"ping", "pingu"})


def test_remove_unregisters_owned_command(tmp_path):
    _write(tmp_path, "ping.py", _reply_handler("ping", "pong"))
    loader, registry = _make_loader(tmp_path)
    loader.load_all()

    assert loader.remove("ping.py") == "ping"
    assert registry.lookup("ping") is None
    assert not loader.is_loaded("ping.py")


def test_remove_leaves_command_taken_over_by_other_file(tmp_path):
    _write(tmp_path, "a/ping.py", _reply_handler("ping", "a"))
    _write(tmp_path, "b/ping.py", _reply_handler("ping", "b"))
    loader, registry = _make_loader(tmp_path)
    loader.load_all()

    assert registry.lookup("ping").source == Path("b/ping.py")
    assert loader.remove("a/ping.py") is None
    assert registry.lookup("ping").source == Path("b/ping.py")


def test_bundled_commands_load(tmp_path):
    """The handlers shipped in commands/ honour the handler contract."""
    bundled = Path(__file__).parent.parent / "commands"
    loader, registry = _make_loader(bundled)
    loader.load_all()

    assert {"ping", "echo"} <= registry.command_names
