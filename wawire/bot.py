"""WhatsApp bot wiring for wawire.

Connects the messaging session's lifecycle events to the command
subsystems: the registry and loader are filled when the session
reports ready, the file watcher starts right after, and every inbound
message is dispatched in its own task so slow handlers never hold up
the event stream.

Key classes:
    WhatsAppBot: Owns every subsystem instance and the event wiring.

Key functions:
    print_qr: Render a pairing QR code in the terminal.
    log_task_exception: Done-callback for fire-and-forget tasks.
"""

import asyncio
import sys
from typing import Any, Optional, Set, TextIO

import qrcode
import structlog

from .commands import CommandRegistry, HandlerLoader
from .config import Config, get_config
from .dispatcher import Dispatcher
from .logging_config import mask_id
from .models import InboundMessage
from .session import BridgeSession, MessagingSession, SessionStore
from .watcher import CommandWatcher

logger = structlog.get_logger("wawire.bot")


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget tasks instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("background_task_failed", error=str(exc), exc_type=type(exc).__name__)


def print_qr(data: str, out: Optional[TextIO] = None) -> None:
    """Print ``data`` as a compact ASCII QR code."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(data)
    qr.make(fit=True)
    qr.print_ascii(out=out or sys.stdout, invert=True)


class WhatsAppBot:
    """WhatsApp command bot.

    Subsystems are built in __init__; the session is created in
    start() once the persisted session blob has been read, unless one
    was injected.

    Args:
        config: Config instance (defaults to the global one).
        session: Messaging session to use instead of a BridgeSession.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        session: Optional[MessagingSession] = None,
    ):
        self.config = config or get_config()

        self.registry = CommandRegistry()
        self.loader = HandlerLoader(
            self.registry,
            self.config.commands_dir,
            extension=self.config.handler_extension,
        )
        self.dispatcher = Dispatcher(self.registry, self.config.prefixes)
        self.watcher = CommandWatcher(
            self.loader,
            queue_size=self.config.watch_queue_size,
            debounce_ms=self.config.watch_debounce_ms,
            load_new_files=self.config.watch_load_new_files,
            unregister_on_delete=self.config.watch_unregister_on_delete,
        )
        self.store = SessionStore(self.config.session_dir, self.config.session_file)
        self.session = session
        self._allowed = set(self.config.allowed_senders)
        self._commands_loaded = False
        self._dispatch_tasks: Set[asyncio.Task] = set()

    def start(self) -> None:
        """Create the session (restoring stored state) and wire its events.

        Raises:
            SessionPersistenceError: If the stored session is malformed.
        """
        stored = self.store.load()
        if self.session is None:
            self.session = BridgeSession(
                self.config.bridge_url,
                stored_session=stored,
                token=self.config.bridge_token,
            )
        logger.info("session_restored" if stored else "session_new", path=str(self.store.path))

        self.session.on("qr", self._on_qr)
        self.session.on("authenticated", self._on_authenticated)
        self.session.on("ready", self._on_ready)
        self.session.on("message", self._on_message)
        self.session.on("disconnected", self._on_disconnected)

    async def stop(self) -> None:
        """Stop the watcher, pending dispatches, and the session."""
        await self.watcher.stop()
        for t in list(self._dispatch_tasks):
            t.cancel()
        if self._dispatch_tasks:
            await asyncio.gather(*self._dispatch_tasks, return_exceptions=True)
        if self.session is not None:
            await self.session.close()
        logger.info("bot_stopped")

    async def run(self) -> None:
        """Main run loop: start, pump session events, stop on exit."""
        self.start()
        try:
            await self.session.run()
        finally:
            await self.stop()

    # --- Session events ---

    def _on_qr(self, payload: Any) -> None:
        logger.info("qr_received", msg="Scan this QR code with your WhatsApp app")
        print_qr(str(payload))

    def _on_authenticated(self, payload: Any) -> None:
        logger.info("authenticated")
        if self.store.save(payload) and isinstance(self.session, BridgeSession):
            self.session.stored_session = payload

    def _on_ready(self, payload: Any) -> None:
        logger.info("bot_ready")
        try:
            if not self._commands_loaded:
                self.loader.load_all()
                self._commands_loaded = True
        finally:
            if self.config.watch_enabled and not self.watcher.running:
                self.watcher.start()

    def _on_disconnected(self, reason: Any) -> None:
        logger.warning("disconnected", reason=str(reason))

    def _on_message(self, message: InboundMessage) -> None:
        sender = mask_id(message.sender)
        logger.info("message_received", sender=sender, length=len(message.body))

        if message.from_me and not self.config.dispatch_own_messages:
            return
        if self._allowed and message.sender not in self._allowed:
            logger.debug("sender_not_allowed", sender=sender)
            return

        # Not awaited: the session keeps delivering while the handler runs
        task = asyncio.create_task(self.dispatcher.dispatch(message))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)
        task.add_done_callback(log_task_exception)
