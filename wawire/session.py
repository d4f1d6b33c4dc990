"""WhatsApp session: lifecycle events, bridge connection, persistence.

The WhatsApp protocol itself is handled by an external bridge process
(a whatsapp-web client) that exposes a local WebSocket. Frames are
JSON objects:

    bridge -> wawire   {"event": "qr" | "authenticated" | "ready"
                                 | "message" | "disconnected",
                        "data": ...}
    wawire -> bridge   {"action": "init", "session": {...} | null}
                       {"action": "send", "to": "<jid>", "body": "..."}

Key classes:
    MessagingSession: Event registration and emission.
    BridgeSession: aiohttp WebSocket client for the bridge.
    SessionStore: JSON persistence of the authenticated session blob.
"""

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import structlog
from pydantic import ValidationError

from .exceptions import BridgeConnectionError, SessionPersistenceError
from .models import InboundMessage

logger = structlog.get_logger("wawire.session")

EVENTS = ("qr", "authenticated", "ready", "message", "disconnected")

EventCallback = Callable[[Any], Any]


class SessionStore:
    """Reads and writes the persisted session blob.

    The folder is created if absent. No schema validation is done on
    the blob; it is handed back to the bridge as-is.
    """

    def __init__(self, session_dir: Path, filename: str = "session.json"):
        self.session_dir = Path(session_dir)
        self.path = self.session_dir / filename
        self.session_dir.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[Any]:
        """Return the stored session, or None if nothing was saved yet.

        Raises:
            SessionPersistenceError: If the file is unreadable or not JSON.
        """
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SessionPersistenceError(
                f"Cannot load stored session: {e}", path=str(self.path)
            ) from e

    def save(self, payload: Any) -> bool:
        """Persist ``payload`` if it is truthy. Returns True when written."""
        if not payload:
            return False
        self.path.write_text(json.dumps(payload), encoding="utf-8")
        logger.info("session_saved", path=str(self.path))
        return True


class MessagingSession(ABC):
    """Event source for session lifecycle and inbound messages.

    Subclasses own the transport: they implement run(), close() and
    send_message(), and call emit() for every event they receive.

    Callbacks may be plain functions or coroutine functions. They run
    in registration order; a failing callback is logged and does not
    stop the others.
    """

    def __init__(self):
        self._callbacks: Dict[str, List[EventCallback]] = defaultdict(list)

    def on(self, event: str, callback: EventCallback) -> None:
        """Register ``callback`` for ``event``."""
        if event not in EVENTS:
            raise ValueError(f"Unknown session event: {event}")
        self._callbacks[event].append(callback)

    async def emit(self, event: str, payload: Any = None) -> None:
        """Run every callback registered for ``event``."""
        callbacks = self._callbacks.get(event)
        if not callbacks:
            logger.debug("session_event_unhandled", event_name=event)
            return
        for callback in list(callbacks):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "session_callback_failed",
                    event_name=event,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    @abstractmethod
    async def send_message(self, chat_id: str, text: str) -> None:
        """Send ``text`` to ``chat_id``."""

    @abstractmethod
    async def run(self) -> None:
        """Pump session events until closed."""

    @abstractmethod
    async def close(self) -> None:
        """Release the transport."""


class BridgeSession(MessagingSession):
    """Messaging session backed by the WhatsApp bridge WebSocket.

    Args:
        url: WebSocket URL of the bridge.
        stored_session: Blob restored from SessionStore, sent on connect.
        token: Optional bearer token for the bridge.
    """

    INITIAL_RECONNECT_DELAY = 5
    MAX_RECONNECT_DELAY = 300

    def __init__(
        self,
        url: str,
        stored_session: Optional[Any] = None,
        token: str = "",
    ):
        super().__init__()
        self.url = url
        self.stored_session = stored_session
        self._token = token
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.running = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def send_message(self, chat_id: str, text: str) -> None:
        """Send a text message through the bridge."""
        if not self.connected:
            logger.warning("send_skipped_not_connected", to=chat_id)
            return
        try:
            await self._ws.send_json({"action": "send", "to": chat_id, "body": text})
        except (aiohttp.ClientError, ConnectionResetError) as e:
            logger.error("send_error", to=chat_id, error=str(e))

    async def handle_frame(self, raw: str) -> None:
        """Decode one bridge frame and emit the matching event."""
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("invalid_json", data=raw[:100])
            return
        if not isinstance(frame, dict):
            logger.warning("invalid_frame", data=raw[:100])
            return

        event = frame.get("event")
        data = frame.get("data")
        if event not in EVENTS:
            logger.debug("unknown_bridge_event", event_name=str(event))
            return

        if event == "message":
            if not isinstance(data, dict):
                logger.warning("invalid_message_payload", data=str(data)[:100])
                return
            try:
                data = InboundMessage.model_validate(
                    {**data, "reply_fn": self.send_message}
                )
            except ValidationError as e:
                logger.warning("invalid_message_payload", error=str(e)[:200])
                return

        await self.emit(event, data)

    async def _connect_once(self) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        try:
            async with self._http.ws_connect(self.url, heartbeat=30, headers=headers) as ws:
                self._ws = ws
                logger.info("bridge_connected", url=self.url)
                await ws.send_json({"action": "init", "session": self.stored_session})
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await self.handle_frame(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        raise BridgeConnectionError(
                            "WebSocket error", url=self.url, error=str(ws.exception())
                        )
                    elif msg.type == aiohttp.WSMsgType.CLOSED:
                        break
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BridgeConnectionError(str(e) or type(e).__name__, url=self.url) from e
        finally:
            self._ws = None
        logger.info("bridge_closed", url=self.url)

    async def run(self) -> None:
        """Connect and pump frames until stopped, reconnecting with backoff."""
        self.running = True
        if self._http is None:
            self._http = aiohttp.ClientSession()
        reconnect_delay = self.INITIAL_RECONNECT_DELAY

        while self.running:
            try:
                logger.info("bridge_connecting", url=self.url)
                await self._connect_once()
                reconnect_delay = self.INITIAL_RECONNECT_DELAY
                if self.running:
                    await asyncio.sleep(reconnect_delay)
            except asyncio.CancelledError:
                break
            except BridgeConnectionError as e:
                if not e.is_retryable:
                    raise
                logger.error("bridge_connection_error", error=str(e), retry_delay=reconnect_delay)
                await asyncio.sleep(reconnect_delay)
                reconnect_delay = min(reconnect_delay * 2, self.MAX_RECONNECT_DELAY)
            except Exception as e:
                logger.error(
                    "bridge_exception", error=str(e), error_type=type(e).__name__,
                    retry_delay=reconnect_delay,
                )
                await asyncio.sleep(reconnect_delay)
                reconnect_delay = min(reconnect_delay * 2, self.MAX_RECONNECT_DELAY)

    async def close(self) -> None:
        self.running = False
        if self._ws is not None:
            await self._ws.close()
        if self._http is not None:
            await self._http.close()
            self._http = None
