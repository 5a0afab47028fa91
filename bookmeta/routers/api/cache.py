from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from bookmeta.internal.refresher import BackgroundRefresher, RefresherStats

router = APIRouter(prefix="/cache", tags=["Cache"])


class CacheStatsResponse(BaseModel):
    refresher: RefresherStats


def get_refresher(request: Request) -> BackgroundRefresher:
    return request.app.state.refresher


@router.get("/stats", response_model=CacheStatsResponse)
async def cache_stats(refresher: Annotated[BackgroundRefresher, Depends(get_refresher)]):
    """Background refresh and access-count queue counters."""
    return CacheStatsResponse(refresher=refresher.stats())
