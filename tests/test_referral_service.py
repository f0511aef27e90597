"""
tests/test_referral_service.py — Referral Service Integration Tests
====================================================================
"""

from __future__ import annotations

import pytest

from nightwatch.errors import ConflictError, NotFoundError, ValidationError
from nightwatch.services import guild_service, referral_service

_INVITE = "https://discord.gg/nightwatch"


def _create(engine, referral_id=1234, guild_id="g1", **extra):
    data = {"id": referral_id, "user_id": "u1", "invite_url": _INVITE, **extra}
    return referral_service.create_referral(engine, guild_id, data)


class TestReferralCrud:
    def test_create_stamps_date_and_defaults(self, db_engine, guild):
        referral = _create(db_engine)
        assert referral.id == 1234
        assert referral.join_count == 0
        assert referral.date_created is not None
        assert referral.role is None
        assert referral.unlocked_rewards == []

    def test_create_with_role(self, db_engine, guild):
        referral = _create(db_engine, role_id="r1")
        assert referral.role.role_id == "r1"

    def test_caller_chosen_id_unique_per_guild(self, db_engine, guild):
        _create(db_engine)
        with pytest.raises(ConflictError):
            _create(db_engine)

    def test_same_id_in_other_guild_allowed(self, db_engine, guild):
        guild_service.create(db_engine, {"id": "g2"})
        _create(db_engine)
        other = _create(db_engine, guild_id="g2")
        assert other.guild_id == "g2"

    def test_create_requires_id(self, db_engine, guild):
        with pytest.raises(ValidationError):
            referral_service.create_referral(
                db_engine, "g1", {"user_id": "u1", "invite_url": _INVITE},
            )

    def test_create_under_absent_guild(self, db_engine):
        with pytest.raises(NotFoundError):
            _create(db_engine, guild_id="nope")

    def test_find(self, db_engine, guild):
        _create(db_engine, referral_id=2000)
        _create(db_engine, referral_id=1000)
        assert [r.id for r in referral_service.find_referrals(db_engine, "g1")] == [1000, 2000]
        assert referral_service.find_referral_by_id(db_engine, "g1", 2000) is not None
        assert referral_service.find_referral_by_id(db_engine, "g1", 3000) is None

    def test_update_replaces_role_and_count(self, db_engine, guild):
        _create(db_engine, role_id="r1")
        updated = referral_service.update_referral(db_engine, "g1", 1234, {
            "invite_url": "https://discord.gg/other", "join_count": 7, "role_id": "r2",
        })
        assert updated.invite_url == "https://discord.gg/other"
        assert updated.join_count == 7
        assert updated.role.role_id == "r2"

        cleared = referral_service.update_referral(
            db_engine, "g1", 1234, {"invite_url": _INVITE},
        )
        assert cleared.role is None
        assert cleared.join_count == 0

    def test_update_cannot_change_id(self, db_engine, guild):
        _create(db_engine)
        with pytest.raises(ValidationError):
            referral_service.update_referral(
                db_engine, "g1", 1234, {"id": 4321, "invite_url": _INVITE},
            )

    def test_delete(self, db_engine, guild):
        _create(db_engine, role_id="r1")
        referral_service.delete_referral(db_engine, "g1", 1234)
        assert referral_service.find_referrals(db_engine, "g1") == []
        with pytest.raises(NotFoundError):
            referral_service.delete_referral(db_engine, "g1", 1234)


class TestJoinsAndRewards:
    def test_record_join_increments(self, db_engine, guild):
        _create(db_engine)
        referral_service.record_referral_join(db_engine, "g1", 1234)
        referral = referral_service.record_referral_join(db_engine, "g1", 1234)
        assert referral.join_count == 2

    def test_record_join_absent(self, db_engine, guild):
        with pytest.raises(NotFoundError):
            referral_service.record_referral_join(db_engine, "g1", 9999)

    def test_unlock_reward(self, db_engine, guild):
        _create(db_engine)
        referral_service.unlock_referral_reward(db_engine, "g1", 1234, "tier-1")
        referral = referral_service.unlock_referral_reward(db_engine, "g1", 1234, "tier-2")
        assert [r.reward_id for r in referral.unlocked_rewards] == ["tier-1", "tier-2"]
