"""
api/dependencies/teams.py

FastAPI lifespan: builds the session store, orchestrator and Teams service on
startup, closes the HTTP client on shutdown. All routers receive them via
Depends(...).

Usage in a router:
    from api.dependencies.teams import get_service

    @router.get("/")
    async def list_teams(service=Depends(get_service)):
        return await service.get_my_teams()
"""
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from teams_relay.auth import AuthOrchestrator
from teams_relay.dispatch import TeamsService
from teams_relay.storage import SessionStore
from teams_relay.teams_client import TeamsClient

load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the auth core on startup. Everything is stored on app.state."""
    store  = SessionStore()
    auth   = AuthOrchestrator(store)
    client = TeamsClient()
    async with client:
        app.state.auth    = auth
        app.state.service = TeamsService(auth, client)
        yield


async def get_auth(request: Request) -> AuthOrchestrator:
    """FastAPI dependency — the shared AuthOrchestrator."""
    return request.app.state.auth


async def get_service(request: Request) -> TeamsService:
    """FastAPI dependency — the shared TeamsService."""
    return request.app.state.service
