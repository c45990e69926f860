"""Daily test and login streaks, points, badges and ranks."""
import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ssbprep.constants import (
    LOGIN_BADGES,
    LOGIN_STREAK_POINTS,
    RANK_LADDER,
    STREAK_BADGES,
    TEST_STREAK_POINTS,
)
from ssbprep.db.database import read_with_retry, write_transaction
from ssbprep.db.models import UserStreak
from ssbprep.services.identity import Identity

logger = logging.getLogger(__name__)


def _next_streak(current: int, last: Optional[date], today: date) -> Optional[int]:
    """
    Streak value after activity on ``today``.

    Returns None when activity was already counted today.
    """
    if last == today:
        return None
    if last == today - timedelta(days=1):
        return current + 1
    return 1


def _award_badges(streak: UserStreak, milestones: Dict[str, int], value: int) -> List[str]:
    earned = []
    badges = list(streak.badges or [])
    for badge, threshold in milestones.items():
        if value >= threshold and badge not in badges:
            badges.append(badge)
            earned.append(badge)
    if earned:
        # Reassign so the JSON column is flagged dirty
        streak.badges = badges
    return earned


def _get_or_create(db: Session, identity: Identity) -> UserStreak:
    streak = db.query(UserStreak).filter(UserStreak.identity == identity.id).first()
    if streak is None:
        streak = UserStreak(
            identity=identity.id,
            current_test_streak=0,
            best_test_streak=0,
            current_login_streak=0,
            best_login_streak=0,
            total_points=0,
            badges=[],
        )
        db.add(streak)
    return streak


def record_test_completion(db: Session, identity: Identity, today: date = None) -> Dict:
    """
    Update the test streak after a completed session.

    A test yesterday extends the streak, a second test today leaves it
    unchanged, and any gap resets it to 1. Each new streak day earns
    ``streak * TEST_STREAK_POINTS``.

    Args:
        db: Database session
        identity: Registered identity
        today: Override for the current date

    Returns:
        Dictionary with the streak, points earned and new badges
    """
    if identity.is_guest:
        raise ValueError("Streaks are only kept for registered identities")
    today = today or date.today()

    with write_transaction(db, "test streak update"):
        streak = _get_or_create(db, identity)
        new_value = _next_streak(streak.current_test_streak or 0, streak.last_test_date, today)
        points = 0
        new_badges: List[str] = []
        if new_value is not None:
            streak.current_test_streak = new_value
            streak.best_test_streak = max(streak.best_test_streak or 0, new_value)
            streak.last_test_date = today
            points = new_value * TEST_STREAK_POINTS
            streak.total_points = (streak.total_points or 0) + points
            new_badges = _award_badges(streak, STREAK_BADGES, new_value)

    if new_badges:
        logger.info(f"Badges earned: {', '.join(new_badges)}", extra={"identity": identity.id})

    return {
        "current_streak": streak.current_test_streak,
        "best_streak": streak.best_test_streak,
        "points_earned": points,
        "new_badges": new_badges,
    }


def record_login(db: Session, identity: Identity, today: date = None) -> Dict:
    """Update the daily login streak; same rules as the test streak."""
    if identity.is_guest:
        raise ValueError("Streaks are only kept for registered identities")
    today = today or date.today()

    with write_transaction(db, "login streak update"):
        streak = _get_or_create(db, identity)
        new_value = _next_streak(streak.current_login_streak or 0, streak.last_login_date, today)
        points = 0
        new_badges: List[str] = []
        if new_value is not None:
            streak.current_login_streak = new_value
            streak.best_login_streak = max(streak.best_login_streak or 0, new_value)
            streak.last_login_date = today
            points = new_value * LOGIN_STREAK_POINTS
            streak.total_points = (streak.total_points or 0) + points
            new_badges = _award_badges(streak, LOGIN_BADGES, new_value)

    return {
        "current_streak": streak.current_login_streak,
        "best_streak": streak.best_login_streak,
        "points_earned": points,
        "new_badges": new_badges,
    }


def get_rank_info(points: int) -> Dict:
    """
    Rank for a points total and progress towards the next one.

    Returns:
        Dictionary with rank, next_rank (None at the top), points_to_next
        and progress (0-100)
    """
    points = max(points or 0, 0)
    index = 0
    for i, (_, threshold) in enumerate(RANK_LADDER):
        if points >= threshold:
            index = i

    rank, floor = RANK_LADDER[index]
    if index + 1 >= len(RANK_LADDER):
        return {"rank": rank, "next_rank": None, "points_to_next": 0, "progress": 100}

    next_rank, ceiling = RANK_LADDER[index + 1]
    return {
        "rank": rank,
        "next_rank": next_rank,
        "points_to_next": ceiling - points,
        "progress": round((points - floor) / (ceiling - floor) * 100),
    }


def get_streak(db: Session, identity: Identity) -> Dict:
    """Streak summary for display. Guests get an empty summary."""
    streak = None
    if not identity.is_guest:
        streak = read_with_retry(
            db,
            lambda: db.query(UserStreak).filter(UserStreak.identity == identity.id).first(),
            "streak lookup"
        )

    total_points = streak.total_points if streak else 0
    return {
        "current_test_streak": streak.current_test_streak if streak else 0,
        "best_test_streak": streak.best_test_streak if streak else 0,
        "current_login_streak": streak.current_login_streak if streak else 0,
        "best_login_streak": streak.best_login_streak if streak else 0,
        "total_points": total_points,
        "badges": list(streak.badges or []) if streak else [],
        **get_rank_info(total_points),
    }
