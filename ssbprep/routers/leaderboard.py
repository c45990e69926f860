"""Leaderboard and streak endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ssbprep.constants import LEADERBOARD_CATEGORIES, LEADERBOARD_DEFAULT_LIMIT
from ssbprep.db.database import get_db
from ssbprep.routers.user import get_identity
from ssbprep.services.identity import Identity
from ssbprep.services.leaderboard import get_leaderboard, get_user_rank
from ssbprep.services.streaks import get_streak

router = APIRouter(prefix="/api", tags=["leaderboard"])


def _validate_category(category: str) -> str:
    if category not in LEADERBOARD_CATEGORIES:
        raise HTTPException(
            status_code=400,
            detail=f"category must be one of: {', '.join(LEADERBOARD_CATEGORIES)}"
        )
    return category


@router.get("/leaderboard")
async def leaderboard(
    category: str = "overall",
    limit: int = Query(LEADERBOARD_DEFAULT_LIMIT, ge=1, le=200),
    db: Session = Depends(get_db)
):
    """Top registered users for a category."""
    category = _validate_category(category)
    return {"category": category, "entries": get_leaderboard(db, category, limit)}


@router.get("/leaderboard/me")
async def my_rank(
    category: str = "overall",
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db)
):
    """The caller's position on a board. Guests are never ranked."""
    category = _validate_category(category)
    if identity.is_guest:
        return {"category": category, "rank": None, "score": 0, "total": None}
    return get_user_rank(db, identity, category)


@router.get("/streak")
async def streak(
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db)
):
    """Streak, points, badges and rank for the caller."""
    return get_streak(db, identity)
