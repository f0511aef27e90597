"""
nightwatch.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` for the non-secret settings of both processes (bot
prefix, owners, notify channel, premium tier).  Secrets such as
``DATABASE_URL`` and ``DISCORD_TOKEN`` stay in ``.env``.

Nothing in here is a module-level singleton: callers load the config once
and hand the relevant part to the component that needs it, e.g.
:class:`~nightwatch.bot.premium.PremiumService` receives a
:class:`PremiumConfig` at construction time.

Usage::

    from nightwatch.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.bot_prefix)        # "!"
    print(cfg.premium.enabled)   # False
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_NOTIFY_CHANNEL = "nightwatch_events"


@dataclass(frozen=True, slots=True)
class PremiumConfig:
    """Premium-tier lookup settings.

    Premium is granted to members of ``primary_guild_id`` holding
    ``premium_role_id``.  Both must be set for the feature to be active.
    """

    primary_guild_id: str | None = None
    premium_role_id: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.primary_guild_id and self.premium_role_id)


@dataclass(frozen=True, slots=True)
class NightwatchConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Bot
    bot_prefix: str
    owner_ids: tuple[str, ...] = ()

    # API
    api_port: int = 8000

    # Real-time channel (PostgreSQL NOTIFY channel name)
    notify_channel: str = DEFAULT_NOTIFY_CHANNEL

    # Optional features
    premium: PremiumConfig = field(default_factory=PremiumConfig)


def _optional_str(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def load_config(path: str | Path = "config.yaml") -> NightwatchConfig:
    """Read *path* and return a :class:`NightwatchConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    premium_raw = (raw.get("optional") or {}).get("premium") or {}

    return NightwatchConfig(
        bot_prefix=raw["bot_prefix"],
        owner_ids=tuple(str(o) for o in raw.get("owner_ids") or ()),
        api_port=int(raw.get("api_port", 8000)),
        notify_channel=raw.get("notify_channel") or DEFAULT_NOTIFY_CHANNEL,
        premium=PremiumConfig(
            primary_guild_id=_optional_str(premium_raw.get("primary_guild_id")),
            premium_role_id=_optional_str(premium_raw.get("premium_role_id")),
        ),
    )
