"""Pydantic models for messages exchanged with the WhatsApp bridge."""

from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

ReplyFn = Callable[[str, str], Awaitable[None]]


class InboundMessage(BaseModel):
    """A message delivered by the messaging session.

    Immutable once parsed. ``reply_fn`` is bound by the session so
    handlers can answer in the same chat without importing the bot.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sender: str = Field(..., alias="from", description="Sender JID, e.g. 628123456789@c.us")
    body: str = ""
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    message_id: Optional[str] = Field(default=None, alias="id")
    timestamp: datetime = Field(default_factory=datetime.now)
    from_me: bool = Field(default=False, alias="fromMe")
    reply_fn: Optional[ReplyFn] = Field(default=None, exclude=True, repr=False)

    @property
    def reply_to(self) -> str:
        """Chat that replies should go to (group chat or the sender)."""
        return self.chat_id or self.sender

    async def reply(self, text: str) -> None:
        """Send ``text`` back to the chat this message came from."""
        if self.reply_fn is None:
            raise RuntimeError("Message is not bound to a session; cannot reply")
        await self.reply_fn(self.reply_to, text)
