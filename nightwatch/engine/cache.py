"""
nightwatch.engine.cache — Bot-side Guild Cache with PG LISTEN/NOTIFY
=====================================================================

The bot keeps every guild graph in memory and never queries the store on
the hot path.  The API publishes a :class:`~nightwatch.engine.events.ChangeEvent`
after each commit; a background LISTEN thread receives it and
:meth:`GuildCache.apply` folds it into the in-memory view.

Delivery is best-effort, so the cache heals itself:

* every (re)connect of the LISTEN thread reloads everything from the store,
  because events sent while disconnected are never replayed;
* an event whose ``sequence`` skips ahead of the last one seen from the
  same ``origin`` means something was lost, which also triggers a reload;
* an event whose ``sequence`` is not newer than the last one seen is a
  duplicate or arrived late, and is dropped;
* a ``{"resync": true}`` payload reloads just that guild.

Every handler is idempotent (upsert by id, delete tolerates absence), so an
event that is already reflected in a freshly loaded snapshot is harmless.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
import select as _select
import threading
from collections import OrderedDict
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from nightwatch.config import DEFAULT_NOTIFY_CHANNEL
from nightwatch.database.serialize import guild_graph
from nightwatch.engine.events import ChangeEvent, EventType
from nightwatch.services import guild_service

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Child collections keyed by their own "id".  For each event type:
# (collection name, payload key naming the deleted row's id).
_COLLECTION_EVENTS: dict[EventType, tuple[str, str | None]] = {
    EventType.SUGGESTION_CREATE: ("suggestions", None),
    EventType.SUGGESTION_UPDATE: ("suggestions", None),
    EventType.SUGGESTION_DELETE: ("suggestions", "suggestion_id"),
    EventType.SUPPORT_TICKET_CREATE: ("support_tickets", None),
    EventType.SUPPORT_TICKET_UPDATE: ("support_tickets", None),
    EventType.SUPPORT_TICKET_DELETE: ("support_tickets", "ticket_id"),
    EventType.USER_CREATE: ("users", None),
    EventType.SELF_ASSIGNABLE_ROLE_CREATE: ("self_assignable_roles", None),
    EventType.SONG_CREATE: ("playlist", None),
    EventType.SONG_DELETE: ("playlist", "song_id"),
    EventType.REFERRAL_CREATE: ("referrals", None),
    EventType.REFERRAL_UPDATE: ("referrals", None),
    EventType.REFERRAL_DELETE: ("referrals", "referral_id"),
}

# Moderation records live under their target user.
_MODERATION_EVENTS: dict[EventType, tuple[str, str | None]] = {
    EventType.WARNING_CREATE: ("warnings", None),
    EventType.WARNING_DELETE: ("warnings", "warning_id"),
    EventType.KICK_CREATE: ("kicks", None),
    EventType.KICK_DELETE: ("kicks", "kick_id"),
}

# Updates touch only the row's own columns; cached children stay.
_GUILD_FIELDS = ("id", "name", "date_created")
_USER_CHILDREN = frozenset({"warnings", "kicks"})

# Origins tracked for duplicate/gap detection (least recently seen dropped).
MAX_TRACKED_ORIGINS = 64

# apply() result meaning "the whole cache must be re-read".
_RELOAD_ALL = object()


def _upsert(items: list[dict], item: dict) -> None:
    for index, existing in enumerate(items):
        if existing.get("id") == item.get("id"):
            items[index] = item
            return
    items.append(item)


def _remove(items: list[dict], key: str, value: Any) -> None:
    items[:] = [i for i in items if i.get(key) != value]


class GuildCache:
    """Thread-safe in-memory view of every guild graph.

    Usage::

        cache = GuildCache(engine)
        cache.start_listener()       # loads everything on connect

        settings = cache.get_settings(guild_id)
        prefix = cache.get_prefix(guild_id, default="!")
    """

    def __init__(self, engine: Engine, channel: str = DEFAULT_NOTIFY_CHANNEL) -> None:
        if not channel.isidentifier():
            raise ValueError(f"Invalid LISTEN channel name: {channel!r}")
        self._engine = engine
        self._channel = channel
        self._lock = threading.RLock()

        # guild_id → guild graph dict (same shape as GET /guilds/{id})
        self._guilds: dict[str, dict] = {}
        # origin → last applied sequence, least recently seen first
        self._last_sequence: OrderedDict[str, int] = OrderedDict()

        self._listener_healthy: bool = False
        self._listener_failed: bool = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

        # Event notification callbacks: event_type → async callable
        self._event_callbacks: dict[str, Callable[[ChangeEvent], Any]] = {}
        self._event_loop: asyncio.AbstractEventLoop | None = None

    # -------------------------------------------------------------------
    # Loading (synchronous — called via run_db or from the listener thread)
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Replace the whole cache with a fresh read of the store."""
        graphs = {g.id: guild_graph(g) for g in guild_service.find_graphs(self._engine)}
        with self._lock:
            self._guilds = graphs
        logger.info("GuildCache loaded: %d guilds", len(graphs))

    def reload_guild(self, guild_id: str) -> None:
        guild = guild_service.find_by_id(self._engine, guild_id)
        with self._lock:
            if guild is None:
                self._guilds.pop(guild_id, None)
            else:
                self._guilds[guild_id] = guild_graph(guild)
        logger.info("GuildCache reloaded guild %s", guild_id)

    # -------------------------------------------------------------------
    # Reads (thread-safe, return copies)
    # -------------------------------------------------------------------
    def guild_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._guilds)

    def get_guild(self, guild_id: str) -> dict | None:
        with self._lock:
            guild = self._guilds.get(guild_id)
            return copy.deepcopy(guild) if guild is not None else None

    def get_settings(self, guild_id: str) -> dict | None:
        with self._lock:
            guild = self._guilds.get(guild_id)
            if guild is None or guild.get("settings") is None:
                return None
            return dict(guild["settings"])

    def get_prefix(self, guild_id: str, default: str) -> str:
        settings = self.get_settings(guild_id)
        if settings is None or not settings.get("prefix"):
            return default
        return settings["prefix"]

    def is_self_assignable(self, guild_id: str, role_id: str) -> bool:
        with self._lock:
            guild = self._guilds.get(guild_id)
            if guild is None:
                return False
            return any(r["role_id"] == role_id for r in guild["self_assignable_roles"])

    # -------------------------------------------------------------------
    # Event application
    # -------------------------------------------------------------------
    def apply(self, event: ChangeEvent) -> bool:
        """Fold *event* into the cache.

        Returns ``True`` if the event was applied, ``False`` if it was
        dropped as a duplicate or absorbed by a full reload.
        """
        with self._lock:
            last = self._last_sequence.get(event.origin)
            if last is not None and event.sequence <= last:
                logger.debug(
                    "Dropping stale %s #%d from %s (last %d)",
                    event.type, event.sequence, event.origin, last,
                )
                return False
            self._track_sequence(event.origin, event.sequence)

            if last is not None and event.sequence > last + 1:
                logger.warning(
                    "Missed %d event(s) from %s; reloading all guilds",
                    event.sequence - last - 1, event.origin,
                )
                reload = _RELOAD_ALL
            elif event.is_resync:
                reload = event.guild_id
            else:
                reload = self._apply_locked(event)

        # Store reads run without the lock so readers are never blocked.
        if reload is _RELOAD_ALL:
            # The store already reflects this event's commit.
            self.load_all()
            return False
        if reload is not None:
            self.reload_guild(reload)
        return True

    def _track_sequence(self, origin: str, sequence: int) -> None:
        self._last_sequence[origin] = sequence
        self._last_sequence.move_to_end(origin)
        while len(self._last_sequence) > MAX_TRACKED_ORIGINS:
            dropped, _ = self._last_sequence.popitem(last=False)
            logger.debug("No longer tracking event origin %s", dropped)

    def _apply_locked(self, event: ChangeEvent) -> str | None:
        """Fold *event* into memory; returns a guild id that must be re-read."""
        guild_id = event.guild_id
        payload = event.payload

        if event.type == EventType.GUILD_CREATE:
            self._guilds[guild_id] = copy.deepcopy(payload)
            return None
        if event.type == EventType.GUILD_DELETE:
            self._guilds.pop(guild_id, None)
            return None

        guild = self._guilds.get(guild_id)
        if guild is None:
            logger.info("Event %s for unknown guild %s; reloading it", event.type, guild_id)
            return guild_id

        if event.type == EventType.GUILD_UPDATE:
            guild.update({k: payload[k] for k in _GUILD_FIELDS if k in payload})
        elif event.type == EventType.SETTINGS_UPDATE:
            guild["settings"] = dict(payload)
        elif event.type == EventType.USER_UPDATE:
            user = next((u for u in guild["users"] if u["id"] == payload["id"]), None)
            if user is None:
                return guild_id
            user.update({k: v for k, v in payload.items() if k not in _USER_CHILDREN})
        elif event.type in _COLLECTION_EVENTS:
            collection, delete_key = _COLLECTION_EVENTS[event.type]
            if delete_key is None:
                _upsert(guild[collection], copy.deepcopy(payload))
            else:
                _remove(guild[collection], "id", payload[delete_key])
            if collection == "playlist":
                guild["playlist"].sort(key=lambda s: (s["position"], s["id"]))
        elif event.type in _MODERATION_EVENTS:
            return self._apply_moderation(guild, event)
        elif event.type == EventType.USER_DELETE:
            user_id = payload["user_id"]
            _remove(guild["users"], "id", user_id)
            # Records the user issued go with them.
            for user in guild["users"]:
                _remove(user["warnings"], "issuer_id", user_id)
                _remove(user["kicks"], "issuer_id", user_id)
        elif event.type == EventType.SELF_ASSIGNABLE_ROLE_DELETE:
            _remove(guild["self_assignable_roles"], "role_id", payload["role_id"])
        elif event.type == EventType.PLAYLIST_USER_DELETE:
            _remove(guild["playlist"], "requested_by", payload["user_id"])
        elif event.type == EventType.PLAYLIST_CLEAR:
            guild["playlist"] = []
        else:
            logger.warning("Unhandled event type %s; reloading guild %s", event.type, guild_id)
            return guild_id
        return None

    def _apply_moderation(self, guild: dict, event: ChangeEvent) -> str | None:
        collection, delete_key = _MODERATION_EVENTS[event.type]
        user_id = event.payload["user_id"]
        user = next((u for u in guild["users"] if u["id"] == user_id), None)
        if user is None:
            return event.guild_id
        if delete_key is None:
            _upsert(user[collection], dict(event.payload))
        else:
            _remove(user[collection], "id", event.payload[delete_key])
        return None

    # -------------------------------------------------------------------
    # NOTIFY handling
    # -------------------------------------------------------------------
    def handle_notify(self, raw_payload: str) -> None:
        """Parse a NOTIFY payload, apply it, then run any registered callback."""
        try:
            event = ChangeEvent.from_json(raw_payload)
        except ValueError:
            logger.warning("Invalid event payload: %s", raw_payload)
            return
        if self.apply(event):
            self._dispatch_event(event)

    @property
    def listener_healthy(self) -> bool:
        """Return True if the LISTEN thread is alive and connected."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """Return True if the listener exhausted reconnect attempts."""
        return self._listener_failed

    def stop_listener(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("PG NOTIFY listener thread stopped")

    def start_listener(self) -> None:
        """Start a background thread that LISTENs on the event channel.

        The thread uses a raw psycopg2 connection + select() to avoid
        blocking the asyncio event loop.  It reconnects with exponential
        backoff + jitter and gives up after ``max_reconnect_attempts``
        consecutive failures.  Each successful connect reloads the cache.
        """
        import psycopg2

        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = 10

        def _listen_thread() -> None:
            # str(engine.url) hides the password; psycopg2 needs it.
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {self._channel};")
                    logger.info("PG LISTEN started on channel '%s'", self._channel)

                    # Anything published while we were away is lost.
                    self.load_all()

                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            payload = notify.payload or ""
                            logger.debug("NOTIFY received: %s", payload)
                            try:
                                self.handle_notify(payload)
                            except Exception:
                                logger.exception("Error handling NOTIFY: %s", payload)

                except Exception:
                    self._listener_healthy = False
                    attempt += 1

                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. "
                            "Guild cache updates disabled.",
                            max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except psycopg2.Error:
                            logger.debug("Error closing LISTEN connection", exc_info=True)

        thread = threading.Thread(target=_listen_thread, daemon=True, name="pg-notify-listener")
        self._listener_thread = thread
        thread.start()
        logger.info("PG NOTIFY listener thread started")

    def register_event_callback(
        self,
        event_type: EventType | str,
        callback: Callable[[ChangeEvent], Any],
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Register an async callback run after an event of *event_type*
        has been applied.

        Parameters
        ----------
        event_type : EventType
            Event type key (e.g. ``EventType.GUILD_CREATE``).
        callback : coroutine function
            Async callable invoked with the :class:`ChangeEvent`.
        loop : asyncio.AbstractEventLoop, optional
            Event loop on which to schedule the callback.  Stored once.
        """
        self._event_callbacks[str(event_type)] = callback
        if loop is not None:
            self._event_loop = loop
        logger.info("Registered event callback for '%s'", event_type)

    def _dispatch_event(self, event: ChangeEvent) -> None:
        callback = self._event_callbacks.get(event.type.value)
        if callback is None:
            return

        loop = self._event_loop
        if loop is None or loop.is_closed():
            logger.warning(
                "Cannot dispatch event '%s' — no event loop available", event.type,
            )
            return

        asyncio.run_coroutine_threadsafe(callback(event), loop)
