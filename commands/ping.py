"""Replies "pong" so you can check the bot is alive."""

name = "ping"


async def execute(message):
    await message.reply("pong")
