"""
nightwatch.api.routes.community — Suggestions & support tickets
================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from nightwatch.api.deps import get_engine, get_notifier
from nightwatch.database.engine import run_db
from nightwatch.database.models import ItemStatus
from nightwatch.database.serialize import row_to_dict
from nightwatch.engine.events import EventType
from nightwatch.engine.notifier import ChangeNotifier
from nightwatch.services import guild_service

router = APIRouter(tags=["community"])


class ItemBody(BaseModel):
    """Shared body of suggestions and support tickets (full replace)."""

    content: str
    status: ItemStatus = ItemStatus.OPEN
    author: str | None = None


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------
@router.get("/guilds/{guild_id}/suggestions")
async def list_suggestions(guild_id: str, engine=Depends(get_engine)):
    items = await run_db(guild_service.find_suggestions, engine, guild_id)
    return [row_to_dict(i) for i in items]


@router.get("/guilds/{guild_id}/suggestions/{suggestion_id}")
async def get_suggestion(guild_id: str, suggestion_id: int, engine=Depends(get_engine)):
    item = await run_db(guild_service.find_suggestion_by_id, engine, guild_id, suggestion_id)
    if item is None:
        raise HTTPException(404, "Suggestion not found")
    return row_to_dict(item)


@router.post("/guilds/{guild_id}/suggestions", status_code=201)
async def create_suggestion(
    guild_id: str,
    body: ItemBody,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    item = await run_db(
        guild_service.create_suggestion, engine, guild_id, body.model_dump(mode="json"),
    )
    data = row_to_dict(item)
    notifier.publish(EventType.SUGGESTION_CREATE, guild_id, data)
    return data


@router.put("/guilds/{guild_id}/suggestions/{suggestion_id}")
async def update_suggestion(
    guild_id: str,
    suggestion_id: int,
    body: ItemBody,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    item = await run_db(
        guild_service.update_suggestion, engine, guild_id, suggestion_id,
        body.model_dump(mode="json"),
    )
    data = row_to_dict(item)
    notifier.publish(EventType.SUGGESTION_UPDATE, guild_id, data)
    return data


@router.delete("/guilds/{guild_id}/suggestions/{suggestion_id}")
async def delete_suggestion(
    guild_id: str,
    suggestion_id: int,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await run_db(guild_service.delete_suggestion, engine, guild_id, suggestion_id)
    key = {"guild_id": guild_id, "suggestion_id": suggestion_id}
    notifier.publish(EventType.SUGGESTION_DELETE, guild_id, key)
    return key


# ---------------------------------------------------------------------------
# Support tickets
# ---------------------------------------------------------------------------
@router.get("/guilds/{guild_id}/support-tickets")
async def list_support_tickets(guild_id: str, engine=Depends(get_engine)):
    items = await run_db(guild_service.find_support_tickets, engine, guild_id)
    return [row_to_dict(i) for i in items]


@router.get("/guilds/{guild_id}/support-tickets/{ticket_id}")
async def get_support_ticket(guild_id: str, ticket_id: int, engine=Depends(get_engine)):
    item = await run_db(guild_service.find_support_ticket_by_id, engine, guild_id, ticket_id)
    if item is None:
        raise HTTPException(404, "Support ticket not found")
    return row_to_dict(item)


@router.post("/guilds/{guild_id}/support-tickets", status_code=201)
async def create_support_ticket(
    guild_id: str,
    body: ItemBody,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    item = await run_db(
        guild_service.create_support_ticket, engine, guild_id, body.model_dump(mode="json"),
    )
    data = row_to_dict(item)
    notifier.publish(EventType.SUPPORT_TICKET_CREATE, guild_id, data)
    return data


@router.put("/guilds/{guild_id}/support-tickets/{ticket_id}")
async def update_support_ticket(
    guild_id: str,
    ticket_id: int,
    body: ItemBody,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    item = await run_db(
        guild_service.update_support_ticket, engine, guild_id, ticket_id,
        body.model_dump(mode="json"),
    )
    data = row_to_dict(item)
    notifier.publish(EventType.SUPPORT_TICKET_UPDATE, guild_id, data)
    return data


@router.delete("/guilds/{guild_id}/support-tickets/{ticket_id}")
async def delete_support_ticket(
    guild_id: str,
    ticket_id: int,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await run_db(guild_service.delete_support_ticket, engine, guild_id, ticket_id)
    key = {"guild_id": guild_id, "ticket_id": ticket_id}
    notifier.publish(EventType.SUPPORT_TICKET_DELETE, guild_id, key)
    return key
