"""
Nightwatch — Guild Configuration & Moderation State for a Discord Bot
=====================================================================
Stores per-guild settings, suggestions, support tickets, self-assignable
roles, moderation records, a playlist queue and invite referrals; serves
them over a REST API; and pushes every committed change to the live bot so
its in-memory view stays current.

Package layout::

    nightwatch/
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # Typed service errors + HTTP status codes
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models (12 tables)
    │   └── serialize.py   # Entity → JSON-ready dict
    ├── services/
    │   ├── guild_service.py     # Guild aggregate CRUD (sole writer)
    │   └── referral_service.py  # Referral CRUD, joins, rewards
    ├── engine/
    │   ├── events.py      # ChangeEvent envelope + EventType
    │   ├── notifier.py    # Fan-out after commit + PG NOTIFY publisher
    │   └── cache.py       # Bot-side guild cache + PG LISTEN thread
    ├── bot/
    │   ├── core.py        # Bot subclass
    │   └── premium.py     # Premium-tier lookups
    └── api/
        ├── main.py        # FastAPI app + error translation
        ├── auth.py        # Discord OAuth2 code exchange
        └── routes/        # Guild REST endpoints
"""

__version__ = "0.1.0"
