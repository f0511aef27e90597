"""
nightwatch.bot.__main__ — Entry point for ``python -m nightwatch.bot``
======================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Build the GuildCache and warm it from the store.
5. Start the PG LISTEN/NOTIFY background listener.
6. Create the NightwatchBot and hand it config + engine + cache.
7. Start the bot (blocking — runs the asyncio event loop).
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from nightwatch.bot.core import NightwatchBot
from nightwatch.config import load_config
from nightwatch.database.engine import create_db_engine, init_db
from nightwatch.engine.cache import GuildCache

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("nightwatch")


def main() -> None:
    """Bootstrap and run the Nightwatch bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — prefix %r, premium %s", cfg.bot_prefix,
                "on" if cfg.premium.enabled else "off")

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Warm the cache so commands work before the listener connects.
    cache = GuildCache(engine, channel=cfg.notify_channel)
    cache.load_all()

    # 5. Start PG LISTEN/NOTIFY background thread.
    cache.start_listener()

    # 6. Bot.
    bot = NightwatchBot(cfg=cfg, engine=engine, cache=cache)

    # 7. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Nightwatch bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
