"""SQLAlchemy models for the SSB prep service."""
from datetime import datetime
from sqlalchemy import (
    Boolean, Column, Integer, String, Text, DateTime, Date, Float, ForeignKey,
    CheckConstraint, UniqueConstraint, Index, JSON,
)
from sqlalchemy.orm import relationship
from ssbprep.db.database import Base


class UserAccount(Base):
    """Registered identity. Guests never get a row here."""
    __tablename__ = "user_accounts"

    id = Column(Text, primary_key=True)  # usr_<uuid>, value of the ssb_uid cookie
    display_name = Column(Text, nullable=False, default="Anonymous User")
    city = Column(Text, nullable=True)
    subscription_type = Column(
        Text,
        CheckConstraint("subscription_type IN ('unpaid', 'paid')"),
        nullable=False,
        default="unpaid",
    )
    subscription_activated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_active_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class UsageLedgerEntry(Base):
    """Remaining attempts for one (identity, bucket) pair."""
    __tablename__ = "usage_ledger"

    identity = Column(Text, primary_key=True)
    test_type = Column(String(16), primary_key=True)  # limit bucket: wat, srt, tat, ppdt
    remaining = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("remaining >= 0", name="ck_ledger_non_negative"),
    )


class Prompt(Base):
    """One unit of test content: a word, a situation or an image."""
    __tablename__ = "prompts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_type = Column(String(16), nullable=False)
    position = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    image_url = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("test_type", "position", name="uq_prompt_position"),
        Index("idx_prompt_type", "test_type"),
    )


class TestSession(Base):
    """A run through an ordered sequence of prompts."""
    __tablename__ = "test_sessions"
    __test__ = False  # not a pytest class

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(Text, nullable=False)  # registered id or guest_ token
    test_type = Column(String(16), nullable=False)
    prompt_ids = Column(JSON, nullable=False)  # ordered list of prompt identifiers
    current_index = Column(Integer, nullable=False, default=0)
    status = Column(
        Text,
        CheckConstraint("status IN ('in_progress', 'completed')"),
        nullable=False,
        default="in_progress",
    )
    prompt_started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    draft_text = Column(Text, nullable=True)
    limit_charged = Column(Boolean, nullable=False, default=False)
    analysis_status = Column(Text, nullable=False, default="not_requested")
    is_premium_analysis = Column(Boolean, nullable=True)
    overall_score = Column(Float, nullable=True)
    summary_feedback = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("current_index >= 0", name="ck_session_index_non_negative"),
        Index("idx_session_owner_completed", "owner", "completed_at"),
    )

    responses = relationship(
        "TestResponse",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="TestResponse.id",
    )

    @property
    def prompt_count(self) -> int:
        return len(self.prompt_ids or [])

    @property
    def current_prompt_id(self):
        if self.current_index >= self.prompt_count:
            return None
        return self.prompt_ids[self.current_index]


class TestResponse(Base):
    """Answer to one prompt within a session; feedback attached after analysis."""
    __tablename__ = "test_responses"
    __test__ = False

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("test_sessions.id"), nullable=False)
    prompt_id = Column(Text, nullable=False)
    answer_text = Column(Text, nullable=False)
    elapsed_ms = Column(Integer, nullable=False, default=0)
    feedback = Column(JSON, nullable=True)
    overall_score = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "prompt_id", name="uq_session_prompt"),
    )

    session = relationship("TestSession", back_populates="responses")


class DeviceFingerprint(Base):
    """Sighting of an identity on a device signature."""
    __tablename__ = "device_fingerprints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint_hash = Column(String(64), nullable=False)
    identity = Column(Text, nullable=False)
    user_agent = Column(Text, nullable=True)
    screen_resolution = Column(Text, nullable=True)
    timezone = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("fingerprint_hash", "identity", name="uq_fingerprint_identity"),
        Index("idx_fingerprint_hash", "fingerprint_hash"),
    )


class AnalysisUsage(Base):
    """Free and total analysis counts per identity."""
    __tablename__ = "analysis_usage"

    identity = Column(Text, primary_key=True)
    free_analyses_used = Column(Integer, nullable=False, default=0)
    total_analyses = Column(Integer, nullable=False, default=0)
    last_free_analysis_date = Column(Date, nullable=True)


class UserStreak(Base):
    """Daily test and login streaks, points and badges for a registered identity."""
    __tablename__ = "user_streaks"

    identity = Column(Text, primary_key=True)
    current_test_streak = Column(Integer, nullable=False, default=0)
    best_test_streak = Column(Integer, nullable=False, default=0)
    last_test_date = Column(Date, nullable=True)
    current_login_streak = Column(Integer, nullable=False, default=0)
    best_login_streak = Column(Integer, nullable=False, default=0)
    last_login_date = Column(Date, nullable=True)
    total_points = Column(Integer, nullable=False, default=0)
    badges = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_streak_points", "total_points"),
    )
