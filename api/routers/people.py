"""
api/routers/people.py — GET /people/me, /people/presence, /people/frequent, /people/{user_id}/chat
"""
from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies.teams import get_service
from teams_relay import config
from teams_relay.dispatch import TeamsService
from teams_relay.parsers import Person, Presence

router = APIRouter()


@router.get("/me")
async def get_me(service: TeamsService = Depends(get_service)) -> dict:
    """The signed-in user, read from the stored session (no network call)."""
    return asdict(service.get_me())


@router.get("/presence")
async def get_presence(
    mri: List[str] = Query(..., description="User MRIs, object ids or base64 GUIDs"),
    service: TeamsService = Depends(get_service),
) -> List[Presence]:
    return await service.get_presence(mri)


@router.get("/frequent")
async def frequent_contacts(
    limit: int = Query(config.MAX_PEOPLE_LIMIT, ge=1, le=config.MAX_PEOPLE_LIMIT),
    service: TeamsService = Depends(get_service),
) -> List[Person]:
    return await service.get_frequent_contacts(limit=limit)


@router.get("/{user_id}/chat")
async def get_chat(user_id: str, service: TeamsService = Depends(get_service)) -> dict:
    """The 1:1 conversation id with `user_id` (MRI, <guid>@<tenant> or object id)."""
    try:
        return service.get_chat(user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
