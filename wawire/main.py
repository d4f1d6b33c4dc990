"""Main entry point for wawire.

Initializes logging in two phases (defaults then config-driven),
creates the WhatsAppBot, and runs the async event loop with graceful
shutdown on SIGTERM/SIGINT. Supports both Unix signal handlers and
Windows SIGINT fallback.

Key functions:
    main: Async entry point -- sets up logging, config, bot, and
        signal handlers, then runs the session loop.
    run: Synchronous wrapper that calls asyncio.run(main()).
"""

import asyncio
import signal
import sys

import structlog

from . import __version__
from .logging_config import setup_logging


async def main():
    """Main async entry point."""
    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("wawire")

    logger.info("wawire_starting", version=__version__)

    # Import here to ensure logging is configured first
    from .bot import WhatsAppBot
    from .config import get_config

    config = get_config()
    config.validate()

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    bot = WhatsAppBot(config)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: handle_shutdown(signal.SIGINT),
                )

    try:
        bot_task = asyncio.create_task(bot.run())
        shutdown_wait = asyncio.create_task(shutdown_event.wait())

        done, _ = await asyncio.wait(
            {bot_task, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED
        )
        shutdown_wait.cancel()

        if bot_task in done:
            # Startup failures (e.g. a corrupt session file) end up here
            bot_task.result()
        else:
            bot_task.cancel()
            try:
                await bot_task
            except asyncio.CancelledError:
                pass

    except Exception as e:
        logger.error("bot_error", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        logger.info("wawire_stopped")


def run():
    """Synchronous entry point for the ``wawire`` console script."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except Exception:
        sys.exit(1)


if __name__ == "__main__":
    run()
