"""Application-wide constants and configuration values.

This module centralizes all magic numbers and hardcoded values used throughout
the application, making them easier to maintain and adjust.
"""

# Test types
TEST_TYPES = ("wat", "srt", "tat", "ppdt", "photo_story")
"""Every test type a session can be created for."""

LIMIT_BUCKETS = ("wat", "srt", "tat", "ppdt")
"""Usage ledger keys. Each test type is charged to exactly one bucket."""

TEST_LIMIT_BUCKET = {
    "wat": "wat",
    "srt": "srt",
    "tat": "tat",
    "ppdt": "ppdt",
    "photo_story": "tat",
}
"""Ledger bucket charged when a session of a test type completes."""

# Usage limits
GUEST_TEST_LIMIT = 1
"""Free attempts per bucket for a guest browsing session."""

FREE_TEST_LIMIT = 2
"""Free attempts per bucket for a registered identity without a subscription."""

PAID_TEST_LIMIT = 30
"""Attempts per bucket once a paid subscription is active."""

FREE_ANALYSES_LIMIT = 2
"""Number of basic (non-premium) analyses an identity gets for free."""

# Identity and device heuristics
GUEST_ID_PREFIX = "guest_"
"""Reserved prefix that distinguishes guest identities from registered ones."""

MAX_ACCOUNTS_PER_DEVICE = 2
"""Distinct registered identities allowed per device fingerprint (advisory)."""

MAX_GUESTS_PER_DEVICE = 3
"""Distinct guest identities per device fingerprint before new guests start with no attempts (advisory)."""

# Prompt counts per session
PROMPTS_PER_TEST = {
    "wat": 60,
    "srt": 60,
    "tat": 12,
    "ppdt": 1,
    "photo_story": 1,
}
"""Number of prompts drawn for each test type, capped by catalogue size."""

# Per-prompt timer durations (seconds)
PROMPT_DURATION_SECONDS = {
    "wat": 15,
    "srt": 30,
    "tat": 270,
    "ppdt": 270,
    "photo_story": 300,
}
"""Countdown length for each prompt. TAT/PPDT include 30s viewing + 4 min writing."""

TIMER_WARNING_SECONDS = 30
"""Remaining time at or below which the timer reports the warning phase."""

TIMER_CRITICAL_SECONDS = 10
"""Remaining time at or below which the timer reports the critical phase."""

# Time-up behaviour for an empty draft
TIME_UP_POLICY = {
    "wat": "advance",
    "srt": "advance",
    "tat": "wait",
    "ppdt": "wait",
    "photo_story": "wait",
}
"""'advance' moves on without a response, 'wait' keeps the prompt open."""

TIME_UP_NOTICE = "Time is up! Please complete your response."
"""Notice surfaced when a prompt expires with nothing to auto-submit."""

TIME_UP_GRACE_SECONDS = 2
"""Client clock skew tolerated when a browser reports a prompt expiry."""

# Streaks and points
TEST_STREAK_POINTS = 20
"""Points per streak day awarded when a test is completed."""

LOGIN_STREAK_POINTS = 10
"""Points per streak day awarded on daily login."""

COMPLETION_POINTS = 100
"""Points credited per completed session for weekly/monthly boards."""

STREAK_BADGES = {
    "test_champion": 10,
}
"""Test streak milestones and the badge each one unlocks."""

LOGIN_BADGES = {
    "week_warrior": 7,
    "month_master": 30,
}
"""Login streak milestones and the badge each one unlocks."""

RANK_LADDER = (
    ("Cadet", 0),
    ("Private", 500),
    ("Corporal", 1000),
    ("Sergeant", 1500),
    ("Lieutenant", 2000),
    ("Captain", 3000),
    ("Major", 5000),
    ("Colonel", 8000),
    ("General", 12000),
)
"""Rank names and the minimum total points needed for each."""

LEADERBOARD_CATEGORIES = ("overall", "weekly", "monthly", "streaks") + LIMIT_BUCKETS
"""Leaderboard categories; bucket categories rank by completed sessions."""

LEADERBOARD_DEFAULT_LIMIT = 50
"""Default number of rows returned from the leaderboard."""

WEEKLY_WINDOW_DAYS = 7
MONTHLY_WINDOW_DAYS = 30

# Cookie Configuration
IDENTITY_COOKIE_NAME = "ssb_uid"
"""Name of the cookie carrying a registered identity."""

GUEST_SESSION_KEY = "guest_user_id"
"""Browser-session key holding the guest identity."""

GUEST_LIMITS_SESSION_KEY = "guest_test_limits"
"""Browser-session key holding the guest usage ledger."""

# Rate Limiting
TEST_START_RATE_LIMIT = "10/minute"
"""Maximum number of test starts allowed per minute per client."""

RESPONSE_SUBMISSION_RATE_LIMIT = "120/minute"
"""Maximum number of response submissions allowed per minute per client."""

REGISTRATION_RATE_LIMIT = "5/minute"
"""Maximum number of account registrations per minute per client."""
