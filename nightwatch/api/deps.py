"""
nightwatch.api.deps — FastAPI dependency injection
===================================================
"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy import Engine

from nightwatch.config import NightwatchConfig, load_config
from nightwatch.database.engine import create_db_engine
from nightwatch.engine.notifier import ChangeNotifier, PgNotifyPublisher

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> NightwatchConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_publisher() -> PgNotifyPublisher | None:
    """The PG NOTIFY publisher, or ``None`` when the store has no NOTIFY."""
    engine = get_engine()
    if engine.dialect.name != "postgresql":
        logger.warning(
            "Database dialect %s has no NOTIFY; change events stay in-process",
            engine.dialect.name,
        )
        return None
    return PgNotifyPublisher(engine, channel=get_config().notify_channel)


@lru_cache(maxsize=1)
def get_notifier() -> ChangeNotifier:
    """The process-wide notifier, publishing over PG NOTIFY when available."""
    notifier = ChangeNotifier()
    publisher = get_publisher()
    if publisher is not None:
        notifier.subscribe(publisher)
    return notifier
