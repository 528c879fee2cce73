"""
tether.bot.__main__ — Entry point for ``python -m tether.bot``
==============================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings + reward rules).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Attach the Discord log-channel mirror (held until startup completes).
5. Create the TetherBot and hand it config + persistence gateway.
6. Start the bot (blocking — runs the asyncio event loop).

Run with::

    python -m tether.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from tether.bot.core import TetherBot
from tether.config import load_config
from tether.database.engine import create_db_engine, init_db
from tether.services.log_mirror import LogMirror, install_handler
from tether.services.persistence import PersistenceGateway

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("tether")


def main() -> None:
    """Bootstrap and run the Tether bot."""

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
    cfg = load_config(os.getenv("TETHER_CONFIG", "config.yaml"))
    logger.info("Config loaded: %d reward rules", len(cfg.rules))

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)
    gateway = PersistenceGateway(engine, summary_path=cfg.summary_path)

    # 4. Log mirror.
    mirror: LogMirror | None = None
    if cfg.log_channel_id is not None:
        mirror = LogMirror()
        install_handler(mirror)

    # 5. Bot.
    bot = TetherBot(cfg=cfg, gateway=gateway, mirror=mirror)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Tether bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
