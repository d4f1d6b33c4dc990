"""Command registry for the dispatch shell.

Maps command names to Command descriptors. A single CommandRegistry
instance is owned by the bot and handed to the loader, dispatcher and
watcher at construction time.

Key classes:
    Command: Immutable descriptor (name, execute, source).
    CommandRegistry: Name -> Command mapping with atomic replacement.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog

from ..exceptions import HandlerExecutionError

logger = structlog.get_logger("wawire.commands")

# Handler signature: (message) -> None, sync or async
ExecuteFn = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Command:
    """A named handler loaded from a handler file.

    Instances are never mutated. A reload builds a new Command and
    swaps it into the registry.

    Attributes:
        name: Registry key, case-sensitive as registered.
        execute: Callable taking an inbound message.
        source: File the command was loaded from, if any.
    """

    name: str
    execute: ExecuteFn
    source: Optional[Path] = None

    async def run(self, message) -> None:
        """Invoke the handler, awaiting it when it is a coroutine.

        Raises:
            HandlerExecutionError: Wrapping whatever the handler raised.
        """
        try:
            result = self.execute(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            raise HandlerExecutionError(
                str(e) or type(e).__name__,
                command=self.name,
                source=str(self.source) if self.source else None,
                error_type=type(e).__name__,
            ) from e


class CommandRegistry:
    """Maps command names to Command descriptors.

    Writes replace whole entries with a single dict assignment, so a
    lookup racing a reload sees either the old Command or the new one.
    """

    def __init__(self):
        self._commands: Dict[str, Command] = {}

    def register(self, command: Command) -> None:
        """Insert or replace the entry for ``command.name``.

        The most recent registration wins. Replacing a command that
        came from a different file is logged as a conflict.
        """
        existing = self._commands.get(command.name)
        if existing is not None and existing.source != command.source:
            logger.warning(
                "command_name_conflict",
                command=command.name,
                previous=str(existing.source),
                replacement=str(command.source),
            )
        self._commands[command.name] = command

    def register_handler(
        self, name: str, execute: ExecuteFn, source: Optional[Path] = None
    ) -> Command:
        """Build a Command from a bare callable and register it."""
        command = Command(name=name, execute=execute, source=source)
        self.register(command)
        return command

    def lookup(self, name: str) -> Optional[Command]:
        """Return the Command registered under ``name``, or None."""
        return self._commands.get(name)

    def unregister(self, name: str) -> Optional[Command]:
        """Remove and return the entry for ``name`` (None if absent)."""
        return self._commands.pop(name, None)

    @property
    def command_names(self) -> frozenset:
        """All registered command names."""
        return frozenset(self._commands.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._commands

    def __len__(self) -> int:
        return len(self._commands)
