"""Repeats whatever follows the command: ``.echo hello there``."""

name = "echo"


async def execute(message):
    parts = message.body.split(maxsplit=1)
    if len(parts) < 2:
        await message.reply("Usage: .echo <text>")
        return
    await message.reply(parts[1])
