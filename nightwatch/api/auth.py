"""
nightwatch.api.auth — Discord OAuth2 code exchange
===================================================

The dashboard sends the authorization ``code`` it received from Discord;
the API trades it for an access token using the application credentials,
which never leave the server.
"""

from __future__ import annotations

import logging
import os

import httpx
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

DISCORD_API = "https://discord.com/api/v10"


class TokenRequest(BaseModel):
    code: str
    redirect_uri: str


def _oauth_env() -> tuple[str, str]:
    """Return required OAuth env vars or raise a clear 500."""
    client_id = os.getenv("DISCORD_CLIENT_ID", "").strip()
    client_secret = os.getenv("DISCORD_CLIENT_SECRET", "").strip()

    missing = []
    if not client_id:
        missing.append("DISCORD_CLIENT_ID")
    if not client_secret:
        missing.append("DISCORD_CLIENT_SECRET")

    if missing:
        raise HTTPException(
            status_code=500,
            detail=(
                "Discord OAuth is not configured: missing "
                + ", ".join(missing)
            ),
        )

    return client_id, client_secret


@router.post("/token")
async def exchange_token(body: TokenRequest):
    """Exchange an OAuth authorization code for a Discord access token."""
    client_id, client_secret = _oauth_env()

    transport = httpx.AsyncHTTPTransport(retries=1)
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        try:
            resp = await client.post(
                f"{DISCORD_API}/oauth2/token",
                data={
                    "grant_type": "authorization_code",
                    "code": body.code,
                    "redirect_uri": body.redirect_uri,
                },
                auth=(client_id, client_secret),
            )
        except httpx.HTTPError as exc:
            logger.warning("OAuth token exchange request failed: %s", exc)
            raise HTTPException(502, "Discord is unreachable") from exc

    if resp.status_code != 200:
        logger.info("OAuth token exchange rejected with HTTP %d", resp.status_code)
        raise HTTPException(400, "OAuth token exchange failed")

    data = resp.json()
    if not data.get("access_token"):
        raise HTTPException(400, "No access token returned")

    return {
        "access_token": data["access_token"],
        "token_type": data.get("token_type", "Bearer"),
        "expires_in": data.get("expires_in"),
        "refresh_token": data.get("refresh_token"),
        "scope": data.get("scope"),
    }
