"""wawire: prefix-command shell for a WhatsApp bridge with hot-reloaded handlers."""

__version__ = "0.3.0"
