"""
nightwatch.engine.notifier — Change Notifier (fan-out after commit)
====================================================================

Routes call :meth:`ChangeNotifier.publish` once a Service call has returned,
i.e. after the transaction committed.  The notifier stamps the event and
hands it to every subscriber:

* :class:`PgNotifyPublisher` — ``NOTIFY nightwatch_events`` (sent from a
  worker thread, off the event loop) so the bot's
  :class:`~nightwatch.engine.cache.GuildCache` picks it up.
* any in-process callable (tests, metrics, audit hooks).

Delivery is at-most-once.  There is no outbox and no retry: a subscriber
that fails is logged and skipped, and the already-committed change stands.
Listeners that miss events resynchronize from the store on reconnect.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from nightwatch.config import DEFAULT_NOTIFY_CHANNEL
from nightwatch.engine.events import RESYNC_KEY, ChangeEvent, EventType

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

Subscriber = Callable[[ChangeEvent], Any]

# PostgreSQL rejects NOTIFY payloads of 8000 bytes or more.
MAX_NOTIFY_BYTES = 7999


class ChangeNotifier:
    """Sequence and fan out :class:`ChangeEvent` objects.

    Usage::

        notifier = ChangeNotifier()
        notifier.subscribe(PgNotifyPublisher(engine))

        guild = await run_db(guild_service.create, engine, data)
        notifier.publish(EventType.GUILD_CREATE, guild.id, guild_graph(guild))
    """

    def __init__(self, origin: str | None = None) -> None:
        self.origin = origin or uuid.uuid4().hex
        self._lock = threading.Lock()
        self._sequence = 0
        self._subscribers: list[Subscriber] = []

    @property
    def sequence(self) -> int:
        """The sequence number of the last published event (0 if none)."""
        return self._sequence

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            logger.debug("Unsubscribe of unknown subscriber %r ignored", callback)

    def publish(
        self, event_type: EventType, guild_id: str, payload: dict[str, Any],
    ) -> ChangeEvent:
        """Stamp an event and deliver it to every subscriber.

        Never raises on subscriber failure; returns the published event.
        """
        with self._lock:
            self._sequence += 1
            event = ChangeEvent(
                type=EventType(event_type),
                guild_id=str(guild_id),
                payload=payload,
                origin=self.origin,
                sequence=self._sequence,
            )
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Subscriber %r failed on %s #%d (guild %s)",
                    callback, event.type, event.sequence, event.guild_id,
                )
        logger.debug("Published %s #%d for guild %s", event.type, event.sequence, guild_id)
        return event


class PgNotifyPublisher:
    """Subscriber that forwards events over PostgreSQL ``NOTIFY``.

    Runs on its own connection after the mutation's transaction has
    committed, so listeners never observe uncommitted state.

    Calling the publisher only queues the event: the ``NOTIFY`` itself is
    sent by a single background worker, so a route publishing on the event
    loop never waits on the connection pool.  One worker means events
    leave in the order they were published.  Failures are logged by the
    worker and do not reach the publishing route.
    """

    def __init__(self, engine: Engine, channel: str = DEFAULT_NOTIFY_CHANNEL) -> None:
        if not channel.isidentifier():
            raise ValueError(f"Invalid NOTIFY channel name: {channel!r}")
        self._engine = engine
        self.channel = channel
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pg-notify")

    def encode(self, event: ChangeEvent) -> str:
        """Serialize *event*, shrinking oversized payloads to a resync hint."""
        raw = event.to_json()
        if len(raw.encode("utf-8")) > MAX_NOTIFY_BYTES:
            logger.info(
                "Event %s #%d exceeds NOTIFY limit; sending resync hint",
                event.type, event.sequence,
            )
            raw = event.with_payload({RESYNC_KEY: True}).to_json()
        return raw

    def send(self, raw: str) -> None:
        """Synchronously ``NOTIFY`` *raw* on the channel."""
        # pg_notify() takes the payload as a bind parameter, so no quoting
        with self._engine.connect() as conn:
            conn.execute(
                text("SELECT pg_notify(:channel, :payload)"),
                {"channel": self.channel, "payload": raw},
            )
            conn.commit()

    def _send_logged(self, raw: str, event: ChangeEvent) -> None:
        try:
            self.send(raw)
        except Exception:
            logger.exception(
                "NOTIFY failed for %s #%d (guild %s)",
                event.type, event.sequence, event.guild_id,
            )

    def __call__(self, event: ChangeEvent) -> Future:
        return self._executor.submit(self._send_logged, self.encode(event), event)

    def close(self, wait: bool = True) -> None:
        """Stop the worker, by default after sending everything queued."""
        self._executor.shutdown(wait=wait)

    def __repr__(self) -> str:
        return f"<PgNotifyPublisher channel={self.channel}>"
