"""Configuration management for wawire.

Loads YAML settings (settings.yaml) and environment variables (.env)
into a typed Config object. Property getters provide safe access with
sensible defaults for every subsystem: command prefixes, the handler
directory, session persistence, the WhatsApp bridge, file watching,
and logging.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
"""

import os
from pathlib import Path
from typing import List, Optional

import structlog
import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError

logger = structlog.get_logger("wawire.bot")

DEFAULT_PREFIXES = [".", "!", "#"]


class Config:
    """Central configuration manager for wawire.

    Loads settings.yaml and .env from the config directory. Provides
    typed property accessors for every configurable subsystem. Settings
    are read-only after __init__.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<repo_root>/config/``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = config_dir

        env_file = config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    @property
    def base_dir(self) -> Path:
        """Directory that relative paths in settings.yaml resolve against."""
        return self.config_dir.parent

    def _resolve_path(self, configured: Optional[str], default: str) -> Path:
        path = Path(configured or default).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    def validate(self):
        """Validate critical settings at startup.

        Logs errors for invalid entries and keeps going in degraded
        mode. Raises ConfigurationError only when no usable command
        prefix remains, since the bot could never dispatch anything.
        """
        raw = self.settings.get("prefixes", DEFAULT_PREFIXES)
        if not isinstance(raw, list):
            logger.error("prefixes_invalid_type", type=type(raw).__name__)
        else:
            for p in raw:
                if not isinstance(p, str) or not p or p.strip() != p:
                    logger.error("prefix_invalid", prefix=repr(p))
        if not self.prefixes:
            raise ConfigurationError(
                "No usable command prefixes configured", setting_name="prefixes"
            )

        watch_config = self.settings.get("watch") or {}
        if isinstance(watch_config, dict):
            qs = watch_config.get("queue_size")
            if qs is not None and (not isinstance(qs, int) or qs < 1):
                logger.error(
                    "config_invalid_value",
                    key="watch.queue_size",
                    value=qs,
                    valid=">= 1",
                )

        if not self.commands_dir.is_dir():
            logger.warning("commands_dir_missing", path=str(self.commands_dir))

    # --- Dispatch ---

    @property
    def prefixes(self) -> List[str]:
        """Ordered command prefixes (default ``. ! #``).

        Order matters: the first prefix the command token starts with
        wins. Invalid entries (non-strings, empty or padded strings)
        are dropped.
        """
        raw = self.settings.get("prefixes", DEFAULT_PREFIXES)
        if not isinstance(raw, list):
            return list(DEFAULT_PREFIXES)
        return [p for p in raw if isinstance(p, str) and p and p.strip() == p]

    @property
    def allowed_senders(self) -> List[str]:
        """Sender ids allowed to trigger commands. Empty means everyone."""
        senders = self.settings.get("allowed_senders", [])
        if not isinstance(senders, list):
            logger.error("allowed_senders_invalid_type", type=type(senders).__name__)
            return []
        return [str(s) for s in senders]

    @property
    def dispatch_own_messages(self) -> bool:
        """Whether messages sent from the bot's own account can run commands."""
        return bool(self.settings.get("dispatch_own_messages", False))

    # --- Commands ---

    @property
    def commands_dir(self) -> Path:
        """Root directory of handler files (default ``<repo>/commands``)."""
        return self._resolve_path(self.settings.get("commands_dir"), "commands")

    @property
    def handler_extension(self) -> str:
        """File suffix that marks a handler module (default ``.py``)."""
        return self.settings.get("handler_extension", ".py")

    # --- Session ---

    @property
    def session_dir(self) -> Path:
        """Folder holding persisted session state (default ``<repo>/session``)."""
        return self._resolve_path(self.settings.get("session_dir"), "session")

    @property
    def session_file(self) -> str:
        """File name of the session blob inside session_dir."""
        return self.settings.get("session_file", "session.json")

    @property
    def bridge_url(self) -> str:
        """WebSocket URL of the WhatsApp bridge. Env var WAWIRE_BRIDGE_URL takes precedence."""
        return (
            os.environ.get("WAWIRE_BRIDGE_URL")
            or self.settings.get("bridge_url", "ws://127.0.0.1:3000/ws")
        )

    @property
    def bridge_token(self) -> str:
        """Optional bearer token for the bridge (env WAWIRE_BRIDGE_TOKEN)."""
        return os.environ.get("WAWIRE_BRIDGE_TOKEN", "")

    # --- Hot reload ---

    @property
    def watch_enabled(self) -> bool:
        """Whether handler files are hot-reloaded on change (default True)."""
        return (self.settings.get("watch") or {}).get("enabled", True)

    @property
    def watch_queue_size(self) -> int:
        """Max pending reload tasks before new events are dropped (default 64)."""
        val = (self.settings.get("watch") or {}).get("queue_size", 64)
        if not isinstance(val, int) or val < 1:
            return 64
        return val

    @property
    def watch_debounce_ms(self) -> int:
        """Window in which filesystem events are grouped (default 300ms)."""
        return (self.settings.get("watch") or {}).get("debounce_ms", 300)

    @property
    def watch_load_new_files(self) -> bool:
        """Load handler files created while running (default True)."""
        return (self.settings.get("watch") or {}).get("load_new_files", True)

    @property
    def watch_unregister_on_delete(self) -> bool:
        """Drop a command when its handler file is deleted (default False)."""
        return (self.settings.get("watch") or {}).get("unregister_on_delete", False)

    # --- Logging ---

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        return self._resolve_path(self.settings.get("log_dir"), "logs")

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        log_config = self.settings.get("logging") or {}
        return log_config.get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"watcher": "DEBUG"}."""
        log_config = self.settings.get("logging") or {}
        return log_config.get("subsystem_levels") or {}

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        log_config = self.settings.get("logging") or {}
        return log_config.get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        log_config = self.settings.get("logging") or {}
        return log_config.get("backup_count", 5)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
