"""
nightwatch.bot.premium — Premium-tier lookups
==============================================

A user has premium when they are a member of the configured primary guild
and hold the premium role there.  Bot owners always have premium as long as
they are members of that guild.

The configuration is handed in at construction; guild and member facts come
from a read-only :class:`GuildDirectory`, which the bot backs with the
discord.py client cache and tests back with a fake.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol

from nightwatch.config import PremiumConfig

if TYPE_CHECKING:
    import discord

logger = logging.getLogger(__name__)


class GuildDirectory(Protocol):
    """Read-only guild/member/role facts from the chat platform."""

    def has_guild(self, guild_id: str) -> bool: ...

    def member_role_ids(self, guild_id: str, user_id: str) -> frozenset[str] | None:
        """Role ids of *user_id* in *guild_id*, or ``None`` if not a member."""
        ...

    def members_with_role(self, guild_id: str, role_id: str) -> list[str]: ...


class DiscordGuildDirectory:
    """:class:`GuildDirectory` backed by a connected discord.py client."""

    def __init__(self, client: discord.Client) -> None:
        self._client = client

    def _guild(self, guild_id: str) -> discord.Guild | None:
        return self._client.get_guild(int(guild_id))

    def has_guild(self, guild_id: str) -> bool:
        return self._guild(guild_id) is not None

    def member_role_ids(self, guild_id: str, user_id: str) -> frozenset[str] | None:
        guild = self._guild(guild_id)
        if guild is None:
            return None
        member = guild.get_member(int(user_id))
        if member is None:
            return None
        return frozenset(str(role.id) for role in member.roles)

    def members_with_role(self, guild_id: str, role_id: str) -> list[str]:
        guild = self._guild(guild_id)
        if guild is None:
            return []
        role = guild.get_role(int(role_id))
        if role is None:
            return []
        return [str(member.id) for member in role.members]


class PremiumService:
    """Answers premium questions for one bot instance.

    Usage::

        premium = PremiumService(cfg.premium, DiscordGuildDirectory(bot), cfg.owner_ids)
        if premium.user_has_premium(str(ctx.author.id)):
            ...
    """

    def __init__(
        self,
        config: PremiumConfig,
        directory: GuildDirectory,
        owner_ids: Iterable[str] = (),
    ) -> None:
        self.config = config
        self._directory = directory
        self._owner_ids = frozenset(str(o) for o in owner_ids)

    def _primary_guild(self) -> str | None:
        if not self.config.enabled:
            return None
        guild_id = self.config.primary_guild_id
        if not self._directory.has_guild(guild_id):
            logger.warning("Premium primary guild %s is not visible to the bot", guild_id)
            return None
        return guild_id

    def user_has_premium(self, user_id: str) -> bool:
        guild_id = self._primary_guild()
        if guild_id is None:
            return False

        roles = self._directory.member_role_ids(guild_id, user_id)
        if roles is None:
            return False
        if user_id in self._owner_ids:
            return True
        return self.config.premium_role_id in roles

    def get_premium_users(self) -> list[str]:
        """Ids of every primary-guild member holding the premium role."""
        guild_id = self._primary_guild()
        if guild_id is None:
            return []
        return self._directory.members_with_role(guild_id, self.config.premium_role_id)
