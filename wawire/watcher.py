"""Hot reload of handler files.

A watchfiles producer turns filesystem events under the commands
directory into reload tasks on a bounded queue. A single worker
drains the queue, so reloads never overlap even when an editor fires
a burst of events. Repeated events for a path that is still pending
collapse into one task carrying the latest change.

Key classes:
    HandlerFileFilter: watchfiles filter that only passes handler files.
    CommandWatcher: Producer/worker pair driving HandlerLoader.
"""

import asyncio
from pathlib import Path
from typing import Dict, Optional, Union

import structlog
from watchfiles import Change, DefaultFilter, awatch

from .commands.loader import HandlerLoader
from .exceptions import CommandLoadError

logger = structlog.get_logger("wawire.watcher")


class HandlerFileFilter(DefaultFilter):
    """Pass only handler files, on top of watchfiles' default ignores."""

    def __init__(self, loader: HandlerLoader):
        super().__init__()
        self._loader = loader

    def __call__(self, change: Change, path: str) -> bool:
        return super().__call__(change, path) and self._loader.is_handler_file(path)


class CommandWatcher:
    """Watches the commands directory and reloads changed handler files.

    Args:
        loader: Loader bound to the watched directory.
        queue_size: Max pending reload tasks; extra events are dropped.
        debounce_ms: watchfiles grouping window.
        load_new_files: Load handler files created while running.
        unregister_on_delete: Drop the command of a deleted file.
    """

    def __init__(
        self,
        loader: HandlerLoader,
        queue_size: int = 64,
        debounce_ms: int = 300,
        load_new_files: bool = True,
        unregister_on_delete: bool = False,
    ):
        self.loader = loader
        self.debounce_ms = debounce_ms
        self.load_new_files = load_new_files
        self.unregister_on_delete = unregister_on_delete
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._pending: Dict[Path, Change] = {}
        self._stop_event: Optional[asyncio.Event] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def start(self) -> None:
        """Start the watch producer and the reload worker."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._worker_task = asyncio.create_task(self._worker())
        self._watch_task = asyncio.create_task(self._watch())
        logger.info("watcher_started", path=str(self.loader.commands_dir))

    async def stop(self) -> None:
        """Stop watching and cancel the worker. Pending tasks are discarded."""
        if self._stop_event is not None:
            self._stop_event.set()
        tasks = [t for t in (self._watch_task, self._worker_task) if t is not None]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._watch_task = None
        self._worker_task = None
        self._pending.clear()
        logger.info("watcher_stopped")

    async def join(self) -> None:
        """Wait until every queued reload task has been processed."""
        await self.queue.join()

    def enqueue(self, change: Change, path: Union[str, Path]) -> bool:
        """Queue a reload task for ``path``.

        Returns:
            True if a new task was queued, False if it was merged into
            a pending one or dropped because the queue is full.
        """
        try:
            rel = self.loader.relative_path(path)
        except CommandLoadError:
            logger.debug("watch_event_outside_root", path=str(path))
            return False

        if rel in self._pending:
            self._pending[rel] = change
            logger.debug("reload_coalesced", path=str(rel), change=change.name)
            return False

        try:
            self.queue.put_nowait(rel)
        except asyncio.QueueFull:
            logger.warning("reload_queue_full", path=str(rel), change=change.name)
            return False
        self._pending[rel] = change
        return True

    async def _watch(self) -> None:
        try:
            async for changes in awatch(
                self.loader.commands_dir,
                watch_filter=HandlerFileFilter(self.loader),
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
                recursive=True,
            ):
                for change, path in sorted(changes, key=lambda c: c[1]):
                    logger.info("file_changed", path=path, change=change.name)
                    self.enqueue(change, path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "watcher_failed",
                path=str(self.loader.commands_dir),
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _worker(self) -> None:
        while True:
            rel = await self.queue.get()
            change = self._pending.pop(rel, Change.modified)
            try:
                self.process(rel, change)
            except Exception as e:
                logger.error(
                    "reload_task_failed",
                    path=str(rel),
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self.queue.task_done()

    def process(self, rel: Path, change: Change) -> None:
        """Apply one reload task.

        The action follows what is on disk now rather than the event
        type, since editors that save by rename emit delete/add pairs.
        """
        full = self.loader.commands_dir / rel
        if not full.is_file():
            if not self.unregister_on_delete:
                logger.info("handler_file_deleted", path=str(rel), action="kept")
                return
            name = self.loader.remove(rel)
            logger.info("handler_file_deleted", path=str(rel), action="unregistered", command=name)
            return

        if (
            change == Change.added
            and not self.load_new_files
            and not self.loader.is_loaded(rel)
        ):
            logger.info("handler_file_added_ignored", path=str(rel))
            return

        try:
            command = self.loader.reload(rel)
        except CommandLoadError as e:
            logger.error("command_reload_failed", path=str(rel), error=str(e))
            return
        logger.info("command_reloaded", command=command.name, path=str(rel))
