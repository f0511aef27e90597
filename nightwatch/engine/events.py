"""
nightwatch.engine.events — ChangeEvent and EventType
=====================================================

The envelope broadcast after every committed mutation.  The API process
stamps each event with its ``origin`` (one UUID per process) and a
``sequence`` that increases by one per published event, which lets a
listener drop duplicates and detect lost events.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

__all__ = ["ChangeEvent", "EventType", "RESYNC_KEY"]

# Payload key telling a listener to re-read the guild from the store.
RESYNC_KEY = "resync"


class EventType(enum.StrEnum):
    """``{aggregate}-{operation}`` names for every published change."""

    GUILD_CREATE = "guild-create"
    GUILD_UPDATE = "guild-update"
    GUILD_DELETE = "guild-delete"
    SETTINGS_UPDATE = "settings-update"

    SUGGESTION_CREATE = "suggestion-create"
    SUGGESTION_UPDATE = "suggestion-update"
    SUGGESTION_DELETE = "suggestion-delete"

    SUPPORT_TICKET_CREATE = "support-ticket-create"
    SUPPORT_TICKET_UPDATE = "support-ticket-update"
    SUPPORT_TICKET_DELETE = "support-ticket-delete"

    USER_CREATE = "user-create"
    USER_UPDATE = "user-update"
    USER_DELETE = "user-delete"

    WARNING_CREATE = "warning-create"
    WARNING_DELETE = "warning-delete"
    KICK_CREATE = "kick-create"
    KICK_DELETE = "kick-delete"

    SELF_ASSIGNABLE_ROLE_CREATE = "self-assignable-role-create"
    SELF_ASSIGNABLE_ROLE_DELETE = "self-assignable-role-delete"

    SONG_CREATE = "song-create"
    SONG_DELETE = "song-delete"
    PLAYLIST_USER_DELETE = "playlist-user-delete"
    PLAYLIST_CLEAR = "playlist-clear"

    REFERRAL_CREATE = "referral-create"
    REFERRAL_UPDATE = "referral-update"
    REFERRAL_DELETE = "referral-delete"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """One committed change.

    ``payload`` is the entity dict for creates and updates, and a composite
    key (``{"guild_id": ..., "suggestion_id": ...}``) for deletes.
    """

    type: EventType
    guild_id: str
    payload: dict[str, Any]
    origin: str
    sequence: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_resync(self) -> bool:
        return bool(self.payload.get(RESYNC_KEY))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "guild_id": self.guild_id,
            "payload": self.payload,
            "origin": self.origin,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def with_payload(self, payload: dict[str, Any]) -> ChangeEvent:
        """Copy of this event carrying *payload* (same sequence)."""
        return ChangeEvent(
            type=self.type,
            guild_id=self.guild_id,
            payload=payload,
            origin=self.origin,
            sequence=self.sequence,
            timestamp=self.timestamp,
        )

    @classmethod
    def from_json(cls, raw: str) -> ChangeEvent:
        """Parse a NOTIFY payload.

        Raises
        ------
        ValueError
            If *raw* is not JSON, names an unknown event type, or misses a
            required key.
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ValueError(f"Event payload is not JSON: {raw!r}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Event payload is not an object: {raw!r}")

        try:
            return cls(
                type=EventType(data["type"]),
                guild_id=str(data["guild_id"]),
                payload=data.get("payload") or {},
                origin=str(data["origin"]),
                sequence=int(data["sequence"]),
                timestamp=datetime.fromisoformat(data["timestamp"])
                if data.get("timestamp") else datetime.now(UTC),
            )
        except KeyError as exc:
            raise ValueError(f"Event payload missing key {exc.args[0]!r}") from exc
