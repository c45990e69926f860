"""Tests for streaks, ranks and leaderboards."""
from datetime import date, datetime, timedelta

import pytest
from ssbprep.db.models import TestSession, UserAccount, UserStreak
from ssbprep.services.identity import Identity
from ssbprep.services.leaderboard import get_leaderboard, get_user_rank
from ssbprep.services.streaks import get_rank_info, get_streak, record_login, record_test_completion

TODAY = date(2026, 3, 10)


class TestTestStreak:
    """Tests for the daily test streak."""

    def test_first_test_starts_streak(self, test_db, registered_user):
        result = record_test_completion(test_db, registered_user, today=TODAY)
        assert result["current_streak"] == 1
        assert result["points_earned"] == 20

    def test_consecutive_days_extend_streak(self, test_db, registered_user):
        record_test_completion(test_db, registered_user, today=TODAY - timedelta(days=1))
        result = record_test_completion(test_db, registered_user, today=TODAY)
        assert result["current_streak"] == 2
        assert result["points_earned"] == 40

    def test_same_day_keeps_streak(self, test_db, registered_user):
        record_test_completion(test_db, registered_user, today=TODAY)
        result = record_test_completion(test_db, registered_user, today=TODAY)
        assert result["current_streak"] == 1
        assert result["points_earned"] == 0

    def test_gap_resets_streak(self, test_db, registered_user):
        record_test_completion(test_db, registered_user, today=TODAY - timedelta(days=3))
        record_test_completion(test_db, registered_user, today=TODAY - timedelta(days=2))
        result = record_test_completion(test_db, registered_user, today=TODAY)
        assert result["current_streak"] == 1
        assert result["best_streak"] == 2

    def test_ten_day_streak_awards_champion_once(self, test_db, registered_user):
        start = TODAY - timedelta(days=10)
        earned = []
        for offset in range(11):
            earned += record_test_completion(test_db, registered_user, today=start + timedelta(days=offset))["new_badges"]
        assert earned == ["test_champion"]

        streak = test_db.query(UserStreak).filter(UserStreak.identity == registered_user.id).one()
        assert streak.badges == ["test_champion"]
        assert streak.total_points == sum(day * 20 for day in range(1, 12))

    def test_guests_have_no_streak(self, test_db, guest):
        with pytest.raises(ValueError):
            record_test_completion(test_db, guest, today=TODAY)
        assert get_streak(test_db, guest)["total_points"] == 0


class TestLoginStreak:
    """Tests for the daily login streak."""

    def test_login_streak_points(self, test_db, registered_user):
        record_login(test_db, registered_user, today=TODAY - timedelta(days=1))
        result = record_login(test_db, registered_user, today=TODAY)
        assert result["current_streak"] == 2
        assert result["points_earned"] == 20

    def test_week_warrior_is_a_login_badge(self, test_db, registered_user):
        start = TODAY - timedelta(days=6)
        earned = []
        for offset in range(7):
            earned += record_test_completion(test_db, registered_user, today=start + timedelta(days=offset))["new_badges"]
        assert earned == []

        for offset in range(7):
            earned += record_login(test_db, registered_user, today=start + timedelta(days=offset))["new_badges"]
        assert earned == ["week_warrior"]

    def test_month_master_badge(self, test_db, registered_user):
        start = TODAY - timedelta(days=29)
        for offset in range(30):
            result = record_login(test_db, registered_user, today=start + timedelta(days=offset))
        assert result["new_badges"] == ["month_master"]


class TestRanks:
    """Tests for the rank ladder."""

    def test_cadet_at_zero(self):
        info = get_rank_info(0)
        assert info["rank"] == "Cadet"
        assert info["next_rank"] == "Private"
        assert info["points_to_next"] == 500

    def test_progress_within_rank(self):
        info = get_rank_info(2500)
        assert info["rank"] == "Lieutenant"
        assert info["progress"] == 50

    def test_general_is_top(self):
        info = get_rank_info(20000)
        assert info["rank"] == "General"
        assert info["next_rank"] is None
        assert info["progress"] == 100


def add_account(db, user_id, name, points=0, test_streak=0):
    db.add(UserAccount(id=user_id, display_name=name, city="Delhi"))
    db.add(UserStreak(
        identity=user_id,
        total_points=points,
        current_test_streak=test_streak,
        best_test_streak=test_streak,
        badges=[],
    ))
    db.commit()


def add_completed(db, owner, test_type, completed_at):
    db.add(TestSession(
        owner=owner,
        test_type=test_type,
        prompt_ids=["1"],
        current_index=1,
        status="completed",
        completed_at=completed_at,
    ))
    db.commit()


class TestLeaderboard:
    """Tests for leaderboard ordering."""

    def test_overall_orders_by_points(self, test_db):
        add_account(test_db, "usr_a", "Arjun", points=900)
        add_account(test_db, "usr_b", "Bhavna", points=2100)
        add_account(test_db, "usr_c", "Chetan", points=0)

        entries = get_leaderboard(test_db, "overall")

        assert [entry["identity"] for entry in entries] == ["usr_b", "usr_a"]
        assert entries[0]["rank"] == 1
        assert entries[0]["display_name"] == "Bhavna"
        assert entries[0]["rank_title"] == "Lieutenant"

    def test_streak_board(self, test_db):
        add_account(test_db, "usr_a", "Arjun", points=10, test_streak=3)
        add_account(test_db, "usr_b", "Bhavna", points=20, test_streak=9)
        entries = get_leaderboard(test_db, "streaks")
        assert [entry["score"] for entry in entries] == [9, 3]

    def test_weekly_board_counts_recent_completions(self, test_db):
        now = datetime(2026, 3, 10, 12, 0)
        add_account(test_db, "usr_a", "Arjun")
        add_account(test_db, "usr_b", "Bhavna")
        add_completed(test_db, "usr_a", "wat", now - timedelta(days=1))
        add_completed(test_db, "usr_a", "srt", now - timedelta(days=2))
        add_completed(test_db, "usr_b", "wat", now - timedelta(days=20))

        weekly = get_leaderboard(test_db, "weekly", now=now)
        monthly = get_leaderboard(test_db, "monthly", now=now)

        assert [(entry["identity"], entry["score"]) for entry in weekly] == [("usr_a", 200)]
        assert {entry["identity"] for entry in monthly} == {"usr_a", "usr_b"}

    def test_test_type_board_includes_photo_story_under_tat(self, test_db):
        now = datetime.utcnow()
        add_account(test_db, "usr_a", "Arjun")
        add_completed(test_db, "usr_a", "tat", now)
        add_completed(test_db, "usr_a", "photo_story", now)

        entries = get_leaderboard(test_db, "tat")
        assert entries[0]["score"] == 2

    def test_guests_never_appear(self, test_db):
        guest = Identity.guest({})
        add_completed(test_db, guest.id, "wat", datetime.utcnow())
        assert get_leaderboard(test_db, "weekly") == []
        assert get_user_rank(test_db, guest, "weekly")["rank"] is None

    def test_user_rank(self, test_db):
        add_account(test_db, "usr_a", "Arjun", points=900)
        add_account(test_db, "usr_b", "Bhavna", points=2100)

        rank = get_user_rank(test_db, Identity.registered("usr_a"), "overall")
        assert rank == {"category": "overall", "rank": 2, "score": 900, "total": 2}

    def test_unknown_category(self, test_db):
        with pytest.raises(ValueError):
            get_leaderboard(test_db, "olympics")
