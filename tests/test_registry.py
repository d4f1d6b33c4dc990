"""Tests for the command registry."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from wawire.commands.registry import Command, CommandRegistry
from wawire.exceptions import HandlerExecutionError


def test_lookup_missing_returns_none():
    registry = CommandRegistry()
    assert registry.lookup("ping") is None
    assert "ping" not in registry


def test_register_overwrites_existing_entry():
    registry = CommandRegistry()
    first = registry.register_handler("ping", AsyncMock(), source=Path("ping.py"))
    second = registry.register_handler("ping", AsyncMock(), source=Path("ping.py"))

    assert registry.lookup("ping") is second
    assert registry.lookup("ping") is not first
    assert len(registry) == 1


def test_register_from_other_file_still_wins():
    registry = CommandRegistry()
    registry.register_handler("ping", AsyncMock(), source=Path("a/ping.py"))
    latest = registry.register_handler("ping", AsyncMock(), source=Path("b/ping.py"))

    assert registry.lookup("ping") is latest


def test_names_are_case_sensitive():
    registry = CommandRegistry()
    registry.register_handler("Ping", AsyncMock())
    assert registry.lookup("ping") is None
    assert registry.lookup("Ping") is not None


def test_unregister_removes_entry():
    registry = CommandRegistry()
    command = registry.register_handler("ping", AsyncMock())

    assert registry.unregister("ping") is command
    assert registry.unregister("ping") is None
    assert registry.command_names == frozenset()


def test_command_is_immutable():
    command = Command(name="ping", execute=AsyncMock())
    with pytest.raises(AttributeError):
        command.name = "pong"


@pytest.mark.asyncio
async def test_run_wraps_handler_errors():
    command = Command(
        name="ping",
        execute=AsyncMock(side_effect=ValueError("bad input")),
        source=Path("ping.py"),
    )
    with pytest.raises(HandlerExecutionError) as exc_info:
        await command.run(object())

    assert exc_info.value.command == "ping"
    assert exc_info.value.context["error_type"] == "ValueError"
    assert isinstance(exc_info.value.__cause__, ValueError)
