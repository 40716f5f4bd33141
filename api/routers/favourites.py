"""
api/routers/favourites.py — GET|POST|DELETE /favourites
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.dependencies.teams import get_service
from teams_relay.dispatch import TeamsService
from teams_relay.parsers import FavouritesFolder

router = APIRouter()


class FavouriteRequest(BaseModel):
    conversation_id: str


@router.get("/")
async def list_favourites(service: TeamsService = Depends(get_service)) -> FavouritesFolder:
    return await service.get_favourites()


@router.post("/")
async def add_favourite(request: FavouriteRequest, service: TeamsService = Depends(get_service)) -> dict:
    try:
        await service.add_favourite(request.conversation_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"conversation_id": request.conversation_id, "favourite": True}


@router.delete("/{conversation_id}")
async def remove_favourite(conversation_id: str, service: TeamsService = Depends(get_service)) -> dict:
    try:
        await service.remove_favourite(conversation_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"conversation_id": conversation_id, "favourite": False}
