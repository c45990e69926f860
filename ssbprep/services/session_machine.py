"""Test session lifecycle: in_progress -> completed, one prompt at a time.

In-flight state is carried in an explicit ``SessionContext`` that the caller
owns and threads through every operation. Limits are not enforced here; the
caller checks the ledger before ``create_session`` so limit policy can change
independently of the lifecycle.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ssbprep.constants import PROMPT_DURATION_SECONDS, TEST_TYPES, TIME_UP_NOTICE, TIME_UP_POLICY
from ssbprep.db.database import read_with_retry, write_transaction
from ssbprep.db.models import TestResponse, TestSession
from ssbprep.errors import InvalidStateError, PersistenceError
from ssbprep.services.identity import Identity
from ssbprep.services.timer import PromptTimer

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TimeUpPolicy(str, Enum):
    """What to do when a prompt expires with no draft to auto-submit."""
    ADVANCE = "advance"  # move on without writing a response
    WAIT = "wait"        # stay on the prompt until the user acts


def policy_for(test_type: str) -> TimeUpPolicy:
    return TimeUpPolicy(TIME_UP_POLICY[test_type])


TimerFactory = Callable[[int, Callable[[], None]], PromptTimer]


def manual_timer(total_seconds: int, on_expire: Callable[[], None]) -> PromptTimer:
    """Active timer driven by explicit ``tick()`` calls."""
    timer = PromptTimer(total_seconds, on_expire=on_expire)
    timer.start()
    return timer


@dataclass
class TimeUpOutcome:
    prompt_index: int
    submitted: bool
    advanced: bool
    notice: Optional[str] = None
    ignored: bool = False

    def to_dict(self) -> dict:
        return {
            "prompt_index": self.prompt_index,
            "submitted": self.submitted,
            "advanced": self.advanced,
            "notice": self.notice,
            "ignored": self.ignored,
        }


@dataclass
class SessionContext:
    """Single-owner handle on one session while it is being driven."""
    db: Session
    session: TestSession
    identity: Identity
    on_complete: Optional[Callable[["SessionContext"], None]] = None
    policy: Optional[TimeUpPolicy] = None
    timer_factory: Optional[TimerFactory] = None
    timer: Optional[PromptTimer] = field(default=None, repr=False)
    last_time_up: Optional[TimeUpOutcome] = None

    def __post_init__(self):
        if self.policy is None:
            self.policy = policy_for(self.session.test_type)

    @property
    def status(self) -> SessionStatus:
        return SessionStatus(self.session.status)

    @property
    def is_completed(self) -> bool:
        return self.status == SessionStatus.COMPLETED

    @property
    def prompt_duration(self) -> int:
        return PROMPT_DURATION_SECONDS[self.session.test_type]


def create_session(db: Session, identity: Identity, test_type: str, prompt_ids: List[str]) -> TestSession:
    """
    Allocate a new in-progress session at prompt index 0.

    Availability must already have been checked against the ledger.

    Raises:
        ValueError: Unknown test type, no prompts, or duplicate prompt ids
        PersistenceError: The insert failed
    """
    if test_type not in TEST_TYPES:
        raise ValueError(f"Unknown test type: {test_type}")
    prompt_ids = [str(pid) for pid in prompt_ids]
    if not prompt_ids:
        raise ValueError("A session needs at least one prompt")
    if len(set(prompt_ids)) != len(prompt_ids):
        raise ValueError("Prompt identifiers must be unique within a session")

    session = TestSession(
        owner=identity.id,
        test_type=test_type,
        prompt_ids=prompt_ids,
        current_index=0,
        status=SessionStatus.IN_PROGRESS.value,
        prompt_started_at=datetime.utcnow(),
    )
    with write_transaction(db, "session creation"):
        db.add(session)
    db.refresh(session)

    logger.info(
        f"Session created with {len(prompt_ids)} prompts",
        extra={"identity": identity.id, "session_id": session.id, "test_type": test_type}
    )
    return session


def open_session(
    db: Session,
    session_id: int,
    identity: Identity,
    on_complete: Optional[Callable[[SessionContext], None]] = None,
    timer_factory: Optional[TimerFactory] = None,
) -> SessionContext:
    """
    Load a session for its owner and wrap it in a context.

    Raises:
        InvalidStateError: Session missing or owned by another identity
    """
    session = read_with_retry(
        db,
        lambda: db.query(TestSession).filter(TestSession.id == session_id).first(),
        "session lookup"
    )
    if session is None or session.owner != identity.id:
        raise InvalidStateError("Session not found", not_found=True)

    ctx = SessionContext(
        db=db,
        session=session,
        identity=identity,
        on_complete=on_complete,
        timer_factory=timer_factory,
    )
    if not ctx.is_completed:
        start_prompt_timer(ctx)
    return ctx


def _ensure_in_progress(ctx: SessionContext) -> None:
    if ctx.is_completed:
        raise InvalidStateError("Session already completed")


def _log_extra(ctx: SessionContext) -> dict:
    return {
        "identity": ctx.identity.id,
        "session_id": ctx.session.id,
        "test_type": ctx.session.test_type,
    }


def start_prompt_timer(ctx: SessionContext) -> Optional[PromptTimer]:
    """Stop any running timer and arm a new one for the current prompt."""
    stop_prompt_timer(ctx)
    if ctx.timer_factory is None or ctx.is_completed:
        return None

    armed_index = ctx.session.current_index
    ctx.timer = ctx.timer_factory(
        ctx.prompt_duration,
        lambda: handle_time_up(ctx, prompt_index=armed_index)
    )
    return ctx.timer


def stop_prompt_timer(ctx: SessionContext) -> None:
    timer, ctx.timer = ctx.timer, None
    if timer is not None:
        timer.stop()


def _upsert_response(ctx: SessionContext, prompt_id: str, text: str, elapsed_ms: int) -> None:
    db = ctx.db
    existing = db.query(TestResponse).filter(
        TestResponse.session_id == ctx.session.id,
        TestResponse.prompt_id == prompt_id
    ).first()

    if existing:
        existing.answer_text = text
        existing.elapsed_ms = elapsed_ms
        existing.updated_at = datetime.utcnow()
    else:
        db.add(TestResponse(
            session_id=ctx.session.id,
            prompt_id=prompt_id,
            answer_text=text,
            elapsed_ms=elapsed_ms
        ))

    if prompt_id == ctx.session.current_prompt_id:
        ctx.session.draft_text = None
    ctx.session.updated_at = datetime.utcnow()


def submit_response(ctx: SessionContext, prompt_id: str, text: str, elapsed_ms: int = 0) -> TestResponse:
    """
    Persist the answer for one prompt, overwriting any earlier answer.

    This is the only writer of response rows. Concurrent writers for the
    same prompt resolve as last write wins.

    Raises:
        InvalidStateError: Session already completed
        ValueError: Blank text, negative elapsed time or a prompt outside the session
    """
    _ensure_in_progress(ctx)
    if text is None or not text.strip():
        raise ValueError("Response text cannot be empty")
    if elapsed_ms is None or elapsed_ms < 0:
        raise ValueError("Elapsed time cannot be negative")

    prompt_id = str(prompt_id)
    if prompt_id not in ctx.session.prompt_ids:
        raise ValueError(f"Prompt {prompt_id} is not part of this session")

    text = text.strip()
    try:
        with write_transaction(ctx.db, "response submission"):
            _upsert_response(ctx, prompt_id, text, elapsed_ms)
    except PersistenceError as e:
        if not isinstance(e.__cause__, IntegrityError):
            raise
        # Another writer inserted the row between our read and insert
        with write_transaction(ctx.db, "response submission"):
            _upsert_response(ctx, prompt_id, text, elapsed_ms)

    response = ctx.db.query(TestResponse).filter(
        TestResponse.session_id == ctx.session.id,
        TestResponse.prompt_id == prompt_id
    ).one()
    logger.debug(f"Stored response for prompt {prompt_id}", extra=_log_extra(ctx))
    return response


def save_draft(ctx: SessionContext, text: Optional[str]) -> None:
    """Remember the unsaved answer so an expiry can auto-submit it."""
    _ensure_in_progress(ctx)
    with write_transaction(ctx.db, "draft save"):
        ctx.session.draft_text = text or None


def advance(ctx: SessionContext, started_at: Optional[datetime] = None) -> SessionStatus:
    """
    Move to the next prompt, or complete the session after the last one.

    The index update is conditional on the index this context last saw, so
    two racing advances cannot both succeed. Completion stops the timer and
    invokes ``ctx.on_complete`` exactly once.

    Args:
        ctx: Session context
        started_at: Start time for the next prompt; defaults to now

    Raises:
        InvalidStateError: Session completed, or changed by another writer
    """
    _ensure_in_progress(ctx)
    session = ctx.session
    expected_index = session.current_index
    next_index = expected_index + 1
    completing = next_index >= session.prompt_count
    now = datetime.utcnow()

    if completing:
        values = {
            TestSession.current_index: session.prompt_count,
            TestSession.status: SessionStatus.COMPLETED.value,
            TestSession.completed_at: now,
            TestSession.draft_text: None,
            TestSession.updated_at: now,
        }
    else:
        values = {
            TestSession.current_index: next_index,
            TestSession.prompt_started_at: started_at or now,
            TestSession.draft_text: None,
            TestSession.updated_at: now,
        }

    with write_transaction(ctx.db, "session advance"):
        updated = ctx.db.query(TestSession).filter(
            TestSession.id == session.id,
            TestSession.current_index == expected_index,
            TestSession.status == SessionStatus.IN_PROGRESS.value
        ).update(values, synchronize_session=False)
    ctx.db.refresh(session)

    if updated != 1:
        logger.warning("Advance lost a race with another writer", extra=_log_extra(ctx))
        raise InvalidStateError("Session was modified by another request")

    if not completing:
        start_prompt_timer(ctx)
        logger.debug(f"Advanced to prompt {next_index}", extra=_log_extra(ctx))
        return SessionStatus.IN_PROGRESS

    stop_prompt_timer(ctx)
    logger.info("Session completed", extra=_log_extra(ctx))
    if ctx.on_complete is not None:
        ctx.on_complete(ctx)
    return SessionStatus.COMPLETED


def handle_time_up(
    ctx: SessionContext,
    prompt_index: Optional[int] = None,
    expired_at: Optional[datetime] = None,
) -> TimeUpOutcome:
    """
    Apply the expiry rules for the prompt a timer was armed for.

    A non-empty draft is auto-submitted and the session advances. With an
    empty draft the session's ``TimeUpPolicy`` decides whether to advance or
    wait; either way a notice is returned and no empty response is written.
    Expiries for a prompt the session has already left are ignored.
    """
    session = ctx.session
    if prompt_index is None:
        prompt_index = session.current_index

    if ctx.is_completed or session.current_index != prompt_index:
        return TimeUpOutcome(prompt_index, submitted=False, advanced=False, ignored=True)

    draft = (session.draft_text or "").strip()
    try:
        if draft:
            submit_response(ctx, session.current_prompt_id, draft, elapsed_ms=ctx.prompt_duration * 1000)
            advance(ctx, started_at=expired_at)
            outcome = TimeUpOutcome(prompt_index, submitted=True, advanced=True)
        elif ctx.policy == TimeUpPolicy.ADVANCE:
            advance(ctx, started_at=expired_at)
            outcome = TimeUpOutcome(prompt_index, submitted=False, advanced=True, notice=TIME_UP_NOTICE)
        else:
            outcome = TimeUpOutcome(prompt_index, submitted=False, advanced=False, notice=TIME_UP_NOTICE)
    except InvalidStateError:
        logger.info("Time-up raced a manual submission, ignoring", extra=_log_extra(ctx))
        outcome = TimeUpOutcome(prompt_index, submitted=False, advanced=False, ignored=True)

    ctx.last_time_up = outcome
    logger.info(
        f"Time up on prompt {prompt_index}: submitted={outcome.submitted} advanced={outcome.advanced}",
        extra=_log_extra(ctx)
    )
    return outcome


def _elapsed_seconds(session: TestSession, now: datetime) -> int:
    return max(0, int((now - session.prompt_started_at).total_seconds()))


def sync_timer(ctx: SessionContext, now: Optional[datetime] = None) -> List[TimeUpOutcome]:
    """
    Replay wall-clock time since the current prompt started.

    Each elapsed deadline fires once through a catch-up timer. Under the
    ``ADVANCE`` policy consecutive prompts can expire in one call; the next
    prompt is considered to start when the previous one expired.

    Returns:
        Outcomes of the expiries applied, oldest first
    """
    now = now or datetime.utcnow()
    outcomes: List[TimeUpOutcome] = []

    while not ctx.is_completed:
        session = ctx.session
        index = session.current_index
        deadline = session.prompt_started_at + timedelta(seconds=ctx.prompt_duration)

        catch_up = PromptTimer(
            ctx.prompt_duration,
            on_expire=lambda: outcomes.append(
                handle_time_up(ctx, prompt_index=index, expired_at=deadline)
            )
        )
        catch_up.start()
        if not catch_up.tick_many(_elapsed_seconds(session, now)):
            break
        if not outcomes[-1].advanced:
            break

    return outcomes


def timer_snapshot(ctx: SessionContext, now: Optional[datetime] = None) -> Optional[dict]:
    """Countdown state for the current prompt, or None once completed."""
    if ctx.is_completed:
        return None
    now = now or datetime.utcnow()
    view = PromptTimer(ctx.prompt_duration)
    view.start()
    view.tick_many(_elapsed_seconds(ctx.session, now))
    return view.snapshot()
