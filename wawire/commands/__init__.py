"""Command registry and handler loading for the wawire bot.

Provides the Command descriptor, the CommandRegistry that maps
command names to handlers, and the HandlerLoader that fills it from
a directory of handler files.
"""

from .loader import HandlerLoader
from .registry import Command, CommandRegistry

__all__ = [
    "Command",
    "CommandRegistry",
    "HandlerLoader",
]
