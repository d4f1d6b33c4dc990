"""Handler discovery, loading, and reloading.

Handler files live anywhere under the commands directory. Each one is
a plain Python module exposing::

    # commands/fun/ping.py
    name = "ping"

    async def execute(message):
        await message.reply("pong")

``execute`` may also be a regular function. Files and directories
whose names start with ``_`` or ``.`` are skipped, which keeps
``__init__.py`` and ``__pycache__`` out of the walk and lets handlers
share private helper modules (``from _utils import ...``). Helpers are
not watched themselves; they are evicted from ``sys.modules`` whenever
a handler reloads, so an edited helper takes effect with the next
handler reload.
"""

from __future__ import annotations

import importlib.machinery
import importlib.util
import sys
from pathlib import Path
from typing import Dict, List, Optional, Union

import structlog

from ..exceptions import CommandLoadError
from .registry import Command, CommandRegistry

logger = structlog.get_logger("wawire.commands")

# sys.modules namespace for loaded handler files
MODULE_PREFIX = "wawire_commands"

PathLike = Union[str, Path]


class _FreshSourceLoader(importlib.machinery.SourceFileLoader):
    """Source loader that ignores cached bytecode.

    Handler files are edited in place while the bot runs; a pyc with a
    matching mtime and size could otherwise hide an edit.
    """

    def get_code(self, fullname):
        source = self.get_data(self.path)
        return self.source_to_code(source, self.path)


class HandlerLoader:
    """Loads handler files from a directory tree into a CommandRegistry.

    Args:
        registry: Registry that successfully loaded commands go into.
        commands_dir: Root of the handler tree.
        extension: File suffix that marks a handler module.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        commands_dir: Path,
        extension: str = ".py",
    ):
        self.registry = registry
        self.commands_dir = Path(commands_dir)
        self.extension = extension
        self._modules: Dict[Path, str] = {}  # relative path -> sys.modules key
        self._names: Dict[Path, str] = {}  # relative path -> command name

    def is_handler_file(self, path: PathLike) -> bool:
        """Whether ``path`` names a handler file inside the tree (by name alone)."""
        try:
            rel = self.relative_path(path)
        except CommandLoadError:
            return False
        if any(part.startswith(("_", ".")) for part in rel.parts):
            return False
        return rel.name.endswith(self.extension)

    def relative_path(self, path: PathLike) -> Path:
        """Return ``path`` relative to the commands directory.

        Raises:
            CommandLoadError: If the path points outside the directory.
        """
        path = Path(path)
        if not path.is_absolute():
            path = self.commands_dir / path
        try:
            return path.resolve().relative_to(self.commands_dir.resolve())
        except ValueError as e:
            raise CommandLoadError(
                "Path is outside the commands directory", path=str(path)
            ) from e

    def discover(self, folder: Optional[Path] = None) -> List[Path]:
        """Walk the tree depth-first and return handler paths relative to the root."""
        folder = folder or self.commands_dir
        found: List[Path] = []
        try:
            entries = sorted(folder.iterdir(), key=lambda p: p.name)
        except OSError as e:
            logger.error("commands_dir_unreadable", path=str(folder), error=str(e))
            return found
        for entry in entries:
            if entry.name.startswith(("_", ".")):
                continue
            if entry.is_dir():
                found.extend(self.discover(entry))
            elif entry.is_file() and entry.name.endswith(self.extension):
                found.append(entry.relative_to(self.commands_dir))
        return found

    def load_all(self) -> int:
        """Load every handler file under the commands directory.

        Each file is loaded inside its own error boundary: a broken
        handler is logged and skipped, the rest still load.

        Returns:
            Number of handler files loaded successfully.
        """
        if not self.commands_dir.is_dir():
            logger.warning("commands_dir_missing", path=str(self.commands_dir))
            return 0

        commands_str = str(self.commands_dir.resolve())
        if commands_str not in sys.path:
            sys.path.append(commands_str)

        loaded = 0
        for rel in self.discover():
            try:
                self.load_one(rel)
                loaded += 1
            except CommandLoadError as e:
                logger.error(
                    "command_load_failed",
                    path=str(rel),
                    error=str(e),
                )

        logger.info(
            "commands_loaded",
            loaded=loaded,
            commands=len(self.registry),
            path=str(self.commands_dir),
        )
        return loaded

    def load_one(self, relative_path: PathLike) -> Command:
        """Load a single handler file and register its command.

        The command is registered only after the module executed
        completely and passed validation, so a failure never touches
        the registry.

        Raises:
            CommandLoadError: On a missing file, import failure, or a
                module that lacks ``name`` or a callable ``execute``.
        """
        rel = self.relative_path(relative_path)
        full = self.commands_dir / rel
        if not full.is_file():
            raise CommandLoadError("Handler file not found", path=str(rel))

        module_name = f"{MODULE_PREFIX}." + ".".join(rel.with_suffix("").parts)
        spec = importlib.util.spec_from_file_location(
            module_name, full, loader=_FreshSourceLoader(module_name, str(full))
        )
        if spec is None or spec.loader is None:
            raise CommandLoadError("Could not create module spec", path=str(rel))

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise CommandLoadError(
                f"{type(e).__name__}: {e}", path=str(rel), error_type=type(e).__name__
            ) from e

        name = getattr(module, "name", None)
        execute = getattr(module, "execute", None)
        if not isinstance(name, str) or not name.strip():
            sys.modules.pop(module_name, None)
            raise CommandLoadError("Handler module has no 'name' string", path=str(rel))
        if not callable(execute):
            sys.modules.pop(module_name, None)
            raise CommandLoadError(
                "Handler module has no callable 'execute'", path=str(rel), command=name
            )

        previous = self._names.get(rel)
        if previous is not None and previous != name:
            logger.warning(
                "command_renamed", path=str(rel), previous=previous, command=name
            )
        if name != name.lower() or any(ch.isspace() for ch in name):
            logger.warning("command_name_unreachable", command=name, path=str(rel))

        command = Command(name=name, execute=execute, source=rel)
        self.registry.register(command)
        self._modules[rel] = module_name
        self._names[rel] = name
        logger.info("command_loaded", command=name, path=str(rel))
        return command

    def reload(self, relative_path: PathLike) -> Command:
        """Unload then load a handler file.

        On failure the command previously registered for the file
        stays in the registry untouched.
        """
        rel = self.relative_path(relative_path)
        self.unload(rel)
        self._evict_helpers()
        return self.load_one(rel)

    def unload(self, relative_path: PathLike) -> None:
        """Forget the module object loaded from a file. The registry is untouched."""
        rel = self.relative_path(relative_path)
        module_name = self._modules.pop(rel, None)
        if module_name:
            sys.modules.pop(module_name, None)

    def _evict_helpers(self) -> None:
        """Drop private helper modules imported from the tree so they re-import."""
        root = self.commands_dir.resolve()
        for key, module in list(sys.modules.items()):
            if key.startswith(f"{MODULE_PREFIX}."):
                continue
            filename = getattr(module, "__file__", None)
            if not filename:
                continue
            try:
                Path(filename).resolve().relative_to(root)
            except ValueError:
                continue
            sys.modules.pop(key, None)
            logger.debug("helper_module_evicted", module=key)

    def remove(self, relative_path: PathLike) -> Optional[str]:
        """Unload a file and unregister the command it still owns.

        Returns:
            The unregistered command name, or None if the file owned nothing.
        """
        rel = self.relative_path(relative_path)
        self.unload(rel)
        name = self._names.pop(rel, None)
        if name is None:
            return None
        current = self.registry.lookup(name)
        if current is None or current.source != rel:
            return None
        self.registry.unregister(name)
        logger.info("command_unregistered", command=name, path=str(rel))
        return name

    def is_loaded(self, relative_path: PathLike) -> bool:
        """Whether a module from this file is currently loaded."""
        return self.relative_path(relative_path) in self._modules
