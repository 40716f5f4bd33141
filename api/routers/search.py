"""
api/routers/search.py — GET /search?q=...

Message search through Substrate, falling back to the Teams web UI when no
search token is available.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies.teams import get_service
from teams_relay import config
from teams_relay.dispatch import TeamsService
from teams_relay.parsers import Person, SearchPage

router = APIRouter()


@router.get("/")
async def search_messages(
    q: str = Query(..., min_length=1, description="Search terms (Teams query syntax)"),
    from_: int = Query(0, alias="from", ge=0, description="Offset of the first result"),
    size: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    max_results: Optional[int] = Query(None, ge=1, le=config.MAX_PAGE_SIZE),
    service: TeamsService = Depends(get_service),
) -> SearchPage:
    """
    Search messages across chats and channels.

    Each result carries a `message_link` deep link when the conversation and
    message id could be resolved. `pagination.has_more` tells whether another
    page exists at `from + size`.
    """
    return await service.search(q, from_=from_, size=size, max_results=max_results)


@router.get("/people")
async def search_people(
    q: str = Query(..., min_length=1, description="Name or e-mail"),
    limit: int = Query(config.DEFAULT_PEOPLE_LIMIT, ge=1, le=config.MAX_PEOPLE_LIMIT),
    service: TeamsService = Depends(get_service),
) -> List[Person]:
    return await service.search_people(q, limit=limit)
