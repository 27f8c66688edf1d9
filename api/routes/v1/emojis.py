"""
api/routes/v1/emojis.py -- Public avatar suggestions.

Routes:
  GET /api/v1/emojis/trending  -- most used viewer avatars, padded with a curated list
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.deps import get_viewer_service
from api.models import TrendingEmojisResponse
from rooms.viewers import ViewerService

router = APIRouter()


@router.get("/emojis/trending", response_model=TrendingEmojisResponse)
def trending_emojis(viewers: ViewerService = Depends(get_viewer_service)) -> TrendingEmojisResponse:
    trending, total = viewers.trending_avatars()
    return TrendingEmojisResponse(trending=trending, total=total, updated_at=viewers.clock())
