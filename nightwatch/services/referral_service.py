"""
nightwatch.services.referral_service — Referral CRUD
=====================================================

Referrals are invite links owned by a member.  Unlike every other child
row, the referral id is chosen by the caller (a 4-6 digit code) and must be
unique within its guild; the composite primary key ``(guild_id, id)``
enforces that.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session, selectinload

from nightwatch.database.models import Referral, ReferralRole, ReferralUnlockedReward
from nightwatch.errors import ConflictError, NotFoundError, ValidationError
from nightwatch.services.guild_service import require_guild, service_transaction

logger = logging.getLogger(__name__)

_REFERRAL_OPTIONS = (
    selectinload(Referral.role),
    selectinload(Referral.unlocked_rewards),
)


def _load_referral(session: Session, guild_id: str, referral_id: int) -> Referral | None:
    return session.scalar(
        select(Referral)
        .where(Referral.guild_id == guild_id, Referral.id == referral_id)
        .options(*_REFERRAL_OPTIONS)
        .execution_options(populate_existing=True)
    )


def _require_referral(session: Session, guild_id: str, referral_id: int) -> Referral:
    referral = _load_referral(session, guild_id, referral_id)
    if referral is None:
        raise NotFoundError(f"Referral {referral_id} not found in guild {guild_id}")
    return referral


def _apply_role(referral: Referral, role_id: str | None) -> None:
    if role_id is None:
        referral.role = None
    elif referral.role is None:
        referral.role = ReferralRole(role_id=role_id)
    else:
        referral.role.role_id = role_id


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def find_referrals(engine: Engine, guild_id: str) -> list[Referral]:
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        return list(session.scalars(
            select(Referral)
            .where(Referral.guild_id == guild_id)
            .options(*_REFERRAL_OPTIONS)
            .order_by(Referral.id)
        ).all())


def find_referral_by_id(engine: Engine, guild_id: str, referral_id: int) -> Referral | None:
    with service_transaction(engine) as session:
        return _load_referral(session, guild_id, referral_id)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def create_referral(engine: Engine, guild_id: str, data: Mapping[str, Any]) -> Referral:
    """Create a referral under the caller-chosen id.

    ``data`` carries ``id``, ``user_id``, ``invite_url`` and optionally
    ``join_count``, ``date_created`` and ``role_id``.
    """
    referral_id = data.get("id")
    if referral_id is None:
        raise ValidationError("Referral id is required")

    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        if session.get(Referral, (guild_id, referral_id)) is not None:
            raise ConflictError(f"Referral {referral_id} already exists in guild {guild_id}")

        snapshot = {
            key: data[key]
            for key in ("id", "user_id", "invite_url", "join_count", "date_created")
            if key in data and data[key] is not None
        }
        referral = Referral(snapshot, guild_id=guild_id)
        if referral.join_count is None:
            referral.join_count = 0
        # Explicit empty collections keep the detached result serializable.
        referral.unlocked_rewards = []
        _apply_role(referral, data.get("role_id"))
        session.add(referral)
        session.flush()
        logger.info("Referral %s created in guild %s", referral_id, guild_id)
        return _load_referral(session, guild_id, referral_id)


def update_referral(
    engine: Engine, guild_id: str, referral_id: int, data: Mapping[str, Any],
) -> Referral:
    """Replace the invite URL, join count and role of a referral."""
    if data.get("id") not in (None, referral_id):
        raise ValidationError("Referral id is immutable")

    with service_transaction(engine) as session:
        referral = _require_referral(session, guild_id, referral_id)
        referral.invite_url = data.get("invite_url")
        referral.join_count = data.get("join_count", 0)
        _apply_role(referral, data.get("role_id"))
        session.flush()
        return _load_referral(session, guild_id, referral_id)


def delete_referral(engine: Engine, guild_id: str, referral_id: int) -> None:
    with service_transaction(engine) as session:
        session.delete(_require_referral(session, guild_id, referral_id))


def record_referral_join(engine: Engine, guild_id: str, referral_id: int) -> Referral:
    """Atomically increment the referral's join counter."""
    with service_transaction(engine) as session:
        result = session.execute(
            update(Referral)
            .where(Referral.guild_id == guild_id, Referral.id == referral_id)
            .values(join_count=Referral.join_count + 1)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise NotFoundError(f"Referral {referral_id} not found in guild {guild_id}")
        return _load_referral(session, guild_id, referral_id)


def unlock_referral_reward(
    engine: Engine, guild_id: str, referral_id: int, reward_id: str,
) -> Referral:
    """Record that *referral_id* unlocked *reward_id*; returns the referral."""
    with service_transaction(engine) as session:
        referral = _require_referral(session, guild_id, referral_id)
        referral.unlocked_rewards.append(ReferralUnlockedReward(reward_id=reward_id))
        session.flush()
        logger.info(
            "Referral %s in guild %s unlocked reward %s", referral_id, guild_id, reward_id,
        )
        return _load_referral(session, guild_id, referral_id)
