"""Leaderboards derived from streaks and completed sessions."""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ssbprep.constants import (
    COMPLETION_POINTS,
    GUEST_ID_PREFIX,
    LEADERBOARD_CATEGORIES,
    LEADERBOARD_DEFAULT_LIMIT,
    LIMIT_BUCKETS,
    MONTHLY_WINDOW_DAYS,
    TEST_LIMIT_BUCKET,
    WEEKLY_WINDOW_DAYS,
)
from ssbprep.db.database import read_with_retry
from ssbprep.db.models import TestSession, UserAccount, UserStreak
from ssbprep.services.identity import Identity
from ssbprep.services.streaks import get_rank_info


def _streak_values(db: Session, column) -> List[Tuple[str, int]]:
    rows = db.query(UserStreak.identity, column).filter(
        ~UserStreak.identity.startswith(GUEST_ID_PREFIX, autoescape=True)
    ).all()
    return [(identity, value or 0) for identity, value in rows]


def _completion_counts(
    db: Session,
    since: Optional[datetime] = None,
    test_types: Optional[List[str]] = None,
) -> List[Tuple[str, int]]:
    query = db.query(TestSession.owner, func.count(TestSession.id)).filter(
        TestSession.status == "completed",
        ~TestSession.owner.startswith(GUEST_ID_PREFIX, autoescape=True)
    )
    if since is not None:
        query = query.filter(TestSession.completed_at >= since)
    if test_types is not None:
        query = query.filter(TestSession.test_type.in_(test_types))
    return query.group_by(TestSession.owner).all()


def _category_values(db: Session, category: str, now: datetime) -> List[Tuple[str, int]]:
    if category == "overall":
        return _streak_values(db, UserStreak.total_points)
    if category == "streaks":
        return _streak_values(db, UserStreak.current_test_streak)
    if category == "weekly":
        since = now - timedelta(days=WEEKLY_WINDOW_DAYS)
        return [(owner, count * COMPLETION_POINTS) for owner, count in _completion_counts(db, since=since)]
    if category == "monthly":
        since = now - timedelta(days=MONTHLY_WINDOW_DAYS)
        return [(owner, count * COMPLETION_POINTS) for owner, count in _completion_counts(db, since=since)]
    if category in LIMIT_BUCKETS:
        test_types = [t for t, bucket in TEST_LIMIT_BUCKET.items() if bucket == category]
        return _completion_counts(db, test_types=test_types)
    raise ValueError(f"Unknown leaderboard category: {category}")


def _ranked(db: Session, category: str, now: datetime = None) -> List[Tuple[str, int]]:
    """Identities with a positive score, best first; ties broken by identity."""
    now = now or datetime.utcnow()
    values = read_with_retry(db, lambda: _category_values(db, category, now), f"{category} leaderboard")
    return sorted(
        ((identity, value) for identity, value in values if value > 0),
        key=lambda item: (-item[1], item[0])
    )


def get_leaderboard(
    db: Session,
    category: str = "overall",
    limit: int = LEADERBOARD_DEFAULT_LIMIT,
    now: datetime = None,
) -> List[Dict]:
    """
    Top entries for a category.

    Args:
        db: Database session
        category: One of LEADERBOARD_CATEGORIES
        limit: Maximum number of rows
        now: Reference time for the weekly and monthly windows

    Returns:
        List of entries with rank, identity, display_name, city and score
    """
    if category not in LEADERBOARD_CATEGORIES:
        raise ValueError(f"Unknown leaderboard category: {category}")

    ranked = _ranked(db, category, now)[:max(limit, 0)]
    identities = [identity for identity, _ in ranked]
    accounts = {}
    if identities:
        accounts = {
            account.id: account
            for account in db.query(UserAccount).filter(UserAccount.id.in_(identities))
        }

    entries = []
    for position, (identity, value) in enumerate(ranked, start=1):
        account = accounts.get(identity)
        entry = {
            "rank": position,
            "identity": identity,
            "display_name": account.display_name if account else "Anonymous User",
            "city": account.city if account else None,
            "score": value,
        }
        if category == "overall":
            entry["rank_title"] = get_rank_info(value)["rank"]
        entries.append(entry)
    return entries


def get_user_rank(db: Session, identity: Identity, category: str = "overall", now: datetime = None) -> Dict:
    """Position of one identity on a board. ``rank`` is None when unranked."""
    if category not in LEADERBOARD_CATEGORIES:
        raise ValueError(f"Unknown leaderboard category: {category}")

    ranked = _ranked(db, category, now)
    for position, (candidate, value) in enumerate(ranked, start=1):
        if candidate == identity.id:
            return {"category": category, "rank": position, "score": value, "total": len(ranked)}
    return {"category": category, "rank": None, "score": 0, "total": len(ranked)}
