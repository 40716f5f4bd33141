"""
api/routers/auth.py — /auth/login, /auth/status, /auth/logout
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies.teams import get_auth
from teams_relay.auth import AuthOrchestrator
from teams_relay.models import Audience

router = APIRouter()


@router.post("/login")
async def login(
    force: bool = Query(False, description="Discard the stored session and sign in from scratch"),
    refresh: bool = Query(False, description="Re-capture tokens even if the stored ones look usable"),
    audience: Optional[Audience] = Query(None, description="Only require the credential of this audience"),
    auth: AuthOrchestrator = Depends(get_auth),
) -> dict:
    """
    Make sure a usable Teams session is stored.

    Opens a visible browser when a sign-in is needed and waits (up to the
    login timeout) for the user to finish it. Returns the resulting status.
    """
    if force:
        await auth.force_new_login()
    else:
        await auth.ensure_authenticated(refresh=refresh, audience=audience)
    return auth.status()


@router.get("/status")
async def status(auth: AuthOrchestrator = Depends(get_auth)) -> dict:
    """Session age, per-audience credential availability and token expiry."""
    return auth.status()


@router.post("/logout")
async def logout(auth: AuthOrchestrator = Depends(get_auth)) -> dict:
    auth.logout()
    return {"logged_out": True}
