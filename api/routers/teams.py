"""
api/routers/teams.py — GET /teams, GET /teams/channels
Teams the signed-in user belongs to, with their channels.
"""
from typing import List

from fastapi import APIRouter, Depends, Query

from api.dependencies.teams import get_service
from teams_relay import config
from teams_relay.dispatch import TeamsService
from teams_relay.parsers import ChannelMatch, Team

router = APIRouter()


@router.get("/")
async def list_teams(service: TeamsService = Depends(get_service)) -> List[Team]:
    return await service.get_my_teams()


@router.get("/channels")
async def find_channel(
    q: str = Query(..., min_length=1, description="Part of a channel or team name"),
    limit: int = Query(config.DEFAULT_CHANNEL_LIMIT, ge=1, le=config.MAX_CHANNEL_LIMIT),
    service: TeamsService = Depends(get_service),
) -> List[ChannelMatch]:
    """Channels of your teams matching `q`, exact name matches first."""
    return await service.find_channel(q, limit=limit)
