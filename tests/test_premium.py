"""
tests/test_premium.py — PremiumService Unit Tests
==================================================
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from nightwatch.bot.premium import DiscordGuildDirectory, PremiumService
from nightwatch.config import PremiumConfig

PRIMARY = "500"
PREMIUM_ROLE = "900"


class FakeDirectory:
    """In-memory GuildDirectory: guild_id → {user_id: {role_ids}}."""

    def __init__(self, guilds: dict[str, dict[str, set[str]]]) -> None:
        self.guilds = guilds

    def has_guild(self, guild_id):
        return guild_id in self.guilds

    def member_role_ids(self, guild_id, user_id):
        roles = self.guilds.get(guild_id, {}).get(user_id)
        return frozenset(roles) if roles is not None else None

    def members_with_role(self, guild_id, role_id):
        members = self.guilds.get(guild_id, {})
        return sorted(uid for uid, roles in members.items() if role_id in roles)


@pytest.fixture
def directory():
    return FakeDirectory({
        PRIMARY: {
            "paying": {PREMIUM_ROLE, "1"},
            "regular": {"1"},
            "owner": set(),
        },
    })


@pytest.fixture
def premium(directory):
    config = PremiumConfig(primary_guild_id=PRIMARY, premium_role_id=PREMIUM_ROLE)
    return PremiumService(config, directory, owner_ids=["owner"])


class TestUserHasPremium:
    def test_role_holder(self, premium):
        assert premium.user_has_premium("paying") is True

    def test_member_without_role(self, premium):
        assert premium.user_has_premium("regular") is False

    def test_owner_in_primary_guild(self, premium):
        assert premium.user_has_premium("owner") is True

    def test_owner_outside_primary_guild(self, directory):
        service = PremiumService(
            PremiumConfig(PRIMARY, PREMIUM_ROLE), directory, owner_ids=["elsewhere"],
        )
        assert service.user_has_premium("elsewhere") is False

    def test_not_a_member(self, premium):
        assert premium.user_has_premium("stranger") is False

    def test_primary_guild_not_visible(self):
        service = PremiumService(PremiumConfig(PRIMARY, PREMIUM_ROLE), FakeDirectory({}))
        assert service.user_has_premium("paying") is False

    def test_unconfigured(self, directory):
        service = PremiumService(PremiumConfig(), directory, owner_ids=["owner"])
        assert service.config.enabled is False
        assert service.user_has_premium("paying") is False
        assert service.user_has_premium("owner") is False


class TestGetPremiumUsers:
    def test_lists_role_holders(self, premium):
        assert premium.get_premium_users() == ["paying"]

    def test_unconfigured_returns_empty(self, directory):
        assert PremiumService(PremiumConfig(PRIMARY, None), directory).get_premium_users() == []


class TestDiscordGuildDirectory:
    def _client(self, guild):
        client = MagicMock()
        client.get_guild.return_value = guild
        return client

    def test_member_roles_as_strings(self):
        role = MagicMock(id=900)
        guild = MagicMock()
        guild.get_member.return_value = MagicMock(roles=[role])
        directory = DiscordGuildDirectory(self._client(guild))

        assert directory.has_guild("500")
        assert directory.member_role_ids("500", "42") == frozenset({"900"})
        guild.get_member.assert_called_once_with(42)

    def test_missing_guild_and_member(self):
        directory = DiscordGuildDirectory(self._client(None))
        assert directory.has_guild("500") is False
        assert directory.member_role_ids("500", "42") is None
        assert directory.members_with_role("500", "900") == []

        guild = MagicMock()
        guild.get_member.return_value = None
        guild.get_role.return_value = None
        directory = DiscordGuildDirectory(self._client(guild))
        assert directory.member_role_ids("500", "42") is None
        assert directory.members_with_role("500", "900") == []

    def test_members_with_role(self):
        guild = MagicMock()
        guild.get_role.return_value = MagicMock(members=[MagicMock(id=1), MagicMock(id=2)])
        directory = DiscordGuildDirectory(self._client(guild))
        assert directory.members_with_role("500", "900") == ["1", "2"]
