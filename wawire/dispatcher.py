"""Prefix matching and command dispatch.

Turns an inbound message into a command invocation: the first
whitespace-separated token is lowercased, matched against the
configured prefixes (first match in configured order wins), stripped,
and looked up in the registry. Messages that match nothing are
ignored without error.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from .commands.registry import CommandRegistry
from .exceptions import HandlerExecutionError
from .logging_config import mask_id

logger = structlog.get_logger("wawire.bot")


@dataclass(frozen=True)
class ParsedCommand:
    """Result of matching a message body against the prefix set."""
    prefix: str
    name: str


def parse_command(body: str, prefixes: Sequence[str]) -> Optional[ParsedCommand]:
    """Extract the command token from a message body.

    Returns:
        ParsedCommand, or None if the first token carries no known prefix.
    """
    parts = (body or "").split(maxsplit=1)
    if not parts:
        return None
    candidate = parts[0].lower()
    prefix = next((p for p in prefixes if candidate.startswith(p)), None)
    if prefix is None:
        return None
    return ParsedCommand(prefix=prefix, name=candidate[len(prefix):])


class Dispatcher:
    """Routes inbound messages to registered command handlers.

    Args:
        registry: Registry to look commands up in.
        prefixes: Ordered prefix set, read-only at runtime.
    """

    def __init__(self, registry: CommandRegistry, prefixes: Sequence[str]):
        self.registry = registry
        self.prefixes = tuple(prefixes)

    async def dispatch(self, message) -> None:
        """Run the handler matching ``message``, if any.

        Handler failures are logged and contained here so one broken
        command never stops later messages from being processed.
        """
        parsed = parse_command(message.body, self.prefixes)
        if parsed is None:
            return

        command = self.registry.lookup(parsed.name)
        if command is None:
            logger.debug("command_not_found", command=parsed.name, prefix=parsed.prefix)
            return

        sender = mask_id(message.sender)
        try:
            await command.run(message)
        except HandlerExecutionError as e:
            logger.error(
                "command_failed",
                command=e.command,
                sender=sender,
                path=e.context.get("source"),
                error=e.message,
                error_type=e.context.get("error_type"),
            )
            return

        logger.info("command_executed", command=command.name, sender=sender)
