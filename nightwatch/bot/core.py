"""
nightwatch.bot.core — Bot Instance
===================================

:class:`NightwatchBot` is the live runtime that the API keeps in sync.  It
carries the shared state every feature reads from:

* ``bot.cfg``     — the parsed :class:`~nightwatch.config.NightwatchConfig`
* ``bot.engine``  — SQLAlchemy engine (used only for cache resyncs)
* ``bot.cache``   — the :class:`~nightwatch.engine.cache.GuildCache`
* ``bot.premium`` — the :class:`~nightwatch.bot.premium.PremiumService`

The bot never reads guild configuration from the store on the hot path;
the command prefix, for instance, comes from the cached settings row.
"""

from __future__ import annotations

import asyncio
import logging

import discord
from discord.ext import commands
from sqlalchemy import Engine

from nightwatch.bot.premium import DiscordGuildDirectory, PremiumService
from nightwatch.config import NightwatchConfig
from nightwatch.engine.cache import GuildCache
from nightwatch.engine.events import ChangeEvent, EventType

logger = logging.getLogger(__name__)


class NightwatchBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`NightwatchConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    cache:
        The guild cache, already listening for change events.
    """

    def __init__(self, cfg: NightwatchConfig, engine: Engine, cache: GuildCache) -> None:
        intents = discord.Intents.default()
        intents.members = True    # Privileged: premium role lookups
        intents.presences = False

        super().__init__(
            command_prefix=self._resolve_prefix,
            intents=intents,
            owner_ids={int(o) for o in cfg.owner_ids},
        )

        self.cfg = cfg
        self.engine = engine
        self.cache = cache
        self.premium = PremiumService(
            cfg.premium, DiscordGuildDirectory(self), owner_ids=cfg.owner_ids,
        )

    def _resolve_prefix(self, bot: commands.Bot, message: discord.Message) -> list[str]:
        """Per-guild prefix from the cached settings, falling back to config."""
        if message.guild is None:
            return commands.when_mentioned_or(self.cfg.bot_prefix)(bot, message)
        prefix = self.cache.get_prefix(str(message.guild.id), default=self.cfg.bot_prefix)
        return commands.when_mentioned_or(prefix)(bot, message)

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def on_ready(self) -> None:
        """Fired when the bot has connected and the client cache is populated."""
        assert self.user is not None  # guaranteed after on_ready
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        await self._register_event_callbacks()

        known = set(self.cache.guild_ids())
        missing = [g for g in self.guilds if str(g.id) not in known]
        if missing:
            logger.warning(
                "%d joined guild(s) have no stored configuration: %s",
                len(missing), ", ".join(str(g.id) for g in missing),
            )

    async def close(self) -> None:
        """Graceful shutdown — stop the listener thread."""
        logger.info("Bot shutting down…")
        self.cache.stop_listener()
        await super().close()

    # -----------------------------------------------------------------------
    # Change events (PG NOTIFY → bot actions)
    # -----------------------------------------------------------------------
    async def _register_event_callbacks(self) -> None:
        loop = asyncio.get_running_loop()
        self.cache.register_event_callback(
            EventType.GUILD_DELETE, self._on_guild_deleted, loop=loop,
        )
        self.cache.register_event_callback(
            EventType.SETTINGS_UPDATE, self._on_settings_updated, loop=loop,
        )
        logger.info("Event callbacks registered on asyncio loop")

    async def _on_guild_deleted(self, event: ChangeEvent) -> None:
        logger.info("Configuration for guild %s was deleted", event.guild_id)

    async def _on_settings_updated(self, event: ChangeEvent) -> None:
        logger.info(
            "Settings for guild %s updated (prefix %r)",
            event.guild_id, event.payload.get("prefix"),
        )
