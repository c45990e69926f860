"""Test session endpoints: start, answer, advance, time-up and results."""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ssbprep.constants import (
    RESPONSE_SUBMISSION_RATE_LIMIT,
    TEST_START_RATE_LIMIT,
    TEST_TYPES,
    TIME_UP_GRACE_SECONDS,
)
from ssbprep.db.database import get_db, get_session_factory, write_transaction
from ssbprep.errors import InvalidStateError, LimitExceededError, PersistenceError
from ssbprep.limiter import limiter
from ssbprep.routers.user import get_identity
from ssbprep.services import ledger
from ssbprep.services.analysis import (
    Analyzer,
    dispatch_analysis,
    get_analyzer,
    run_analysis_task,
    stored_feedback,
)
from ssbprep.services.content import describe_prompt, load_prompts, select_prompts
from ssbprep.services.identity import Identity
from ssbprep.services.session_machine import (
    SessionContext,
    TimeUpOutcome,
    advance,
    create_session,
    handle_time_up,
    open_session,
    save_draft,
    submit_response,
    sync_timer,
    timer_snapshot,
)
from ssbprep.services.streaks import record_test_completion

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tests", tags=["tests"])


class StartTestRequest(BaseModel):
    """Request body for starting a test session."""
    test_type: str = Field(..., description="One of wat, srt, tat, ppdt, photo_story")

    @field_validator("test_type")
    @classmethod
    def validate_test_type(cls, v):
        """Validate that test_type is a known test."""
        v = v.strip().lower()
        if v not in TEST_TYPES:
            raise ValueError(f"test_type must be one of: {', '.join(TEST_TYPES)}")
        return v


class DraftUpdate(BaseModel):
    """Request body for saving the in-progress answer."""
    text: Optional[str] = Field(None, max_length=5000)


class ResponseSubmission(BaseModel):
    """Request body for response submission."""
    prompt_id: str = Field(..., min_length=1, max_length=64)
    text: str = Field(..., min_length=1, max_length=5000)
    elapsed_ms: int = Field(0, ge=0, description="Time spent on the prompt in milliseconds")
    advance: bool = Field(False, description="Move to the next prompt after saving")

    @field_validator("text")
    @classmethod
    def validate_text(cls, v):
        """Validate that text is not empty or whitespace."""
        if not v.strip():
            raise ValueError("text cannot be empty")
        return v


class TimeUpReport(BaseModel):
    """Browser report that the countdown for a prompt reached zero."""
    prompt_index: int = Field(..., ge=0)


def completion_hook(
    background_tasks: BackgroundTasks,
    session_factory: Callable[[], Session],
    analyzer: Optional[Analyzer],
) -> Callable[[SessionContext], None]:
    """
    Build the callback run once when a session completes.

    Order: charge the ledger, record the streak, then schedule analysis. A
    rejected charge marks the session ``limit_exceeded`` and skips analysis.
    A storage failure marks it ``charge_failed``; requesting analysis later
    retries the charge.
    """

    def on_complete(ctx: SessionContext) -> None:
        session = ctx.session
        log_extra = {"identity": ctx.identity.id, "session_id": session.id, "test_type": session.test_type}

        try:
            charged = ledger.charge_session(ctx.db, ctx.identity, session)
            charge_failed = False
        except PersistenceError:
            charged, charge_failed = False, True
            _flag_charge_failed(ctx, log_extra)

        if not ctx.identity.is_guest:
            try:
                record_test_completion(ctx.db, ctx.identity)
            except PersistenceError:
                logger.error("Test streak update failed", extra=log_extra)

        if charge_failed:
            logger.warning("Session completed but the charge failed, analysis waits for a retry", extra=log_extra)
        elif not charged:
            logger.warning("Session completed without a charge, analysis skipped", extra=log_extra)
        elif analyzer is None:
            logger.info("No analysis backend configured, skipping analysis", extra=log_extra)
        else:
            background_tasks.add_task(run_analysis_task, session_factory, session.id, analyzer)

    return on_complete


def _flag_charge_failed(ctx: SessionContext, log_extra: dict) -> None:
    """Mark the session so the results view offers a retry of the charge."""
    try:
        with write_transaction(ctx.db, "charge failure status"):
            ctx.session.analysis_status = "charge_failed"
    except PersistenceError:
        # Left uncharged and not_requested, which the analysis retry also accepts
        logger.error("Could not record the failed charge", extra=log_extra)


def session_view(ctx: SessionContext, time_up: List[TimeUpOutcome] = None) -> dict:
    """Serialize a session for the client."""
    session = ctx.session
    current_prompt = None
    if not ctx.is_completed:
        prompt = load_prompts(ctx.db, [session.current_prompt_id]).get(session.current_prompt_id)
        current_prompt = describe_prompt(prompt) if prompt else {"prompt_id": session.current_prompt_id}

    return {
        "session_id": session.id,
        "test_type": session.test_type,
        "status": session.status,
        "current_index": session.current_index,
        "prompt_count": session.prompt_count,
        "current_prompt": current_prompt,
        "draft_text": session.draft_text,
        "answered_prompt_ids": [response.prompt_id for response in session.responses],
        "timer": timer_snapshot(ctx),
        "time_up": [outcome.to_dict() for outcome in (time_up or [])],
        "analysis_status": session.analysis_status,
    }


def _open(
    db: Session,
    session_id: int,
    identity: Identity,
    background_tasks: BackgroundTasks,
    session_factory: Callable[[], Session],
    analyzer: Optional[Analyzer],
) -> tuple:
    """Open a session for its owner and apply any deadlines that have passed."""
    ctx = open_session(
        db,
        session_id,
        identity,
        on_complete=completion_hook(background_tasks, session_factory, analyzer)
    )
    return ctx, sync_timer(ctx)


@router.get("/limits")
async def get_test_limits(
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db)
):
    """Remaining attempts per bucket for the caller."""
    return {
        "identity": identity.id,
        "is_guest": identity.is_guest,
        "subscription": "paid" if ledger.has_active_subscription(db, identity) else "unpaid",
        "limits": ledger.get_limits(db, identity),
    }


@router.post("/start", status_code=201)
@limiter.limit(TEST_START_RATE_LIMIT)
async def start_test(
    start_request: StartTestRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    analyzer: Optional[Analyzer] = Depends(get_analyzer)
):
    """
    Start a new test session.

    Availability is checked here; the attempt is only consumed when the
    session completes.

    Returns:
    - Session state with the first prompt and its timer
    """
    test_type = start_request.test_type
    if not ledger.check_availability(db, identity, test_type):
        raise LimitExceededError(identity.id, test_type)

    try:
        prompt_ids = select_prompts(db, test_type)
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))

    session = create_session(db, identity, test_type, prompt_ids)
    ctx = SessionContext(
        db=db,
        session=session,
        identity=identity,
        on_complete=completion_hook(background_tasks, session_factory, analyzer)
    )
    return session_view(ctx)


@router.get("/sessions/{session_id}/state")
async def get_session_state(
    session_id: int,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    analyzer: Optional[Analyzer] = Depends(get_analyzer)
):
    """
    Restore an in-progress session.

    Deadlines that passed while the client was away are applied first, so
    the returned prompt and timer reflect wall-clock time.
    """
    ctx, outcomes = _open(db, session_id, identity, background_tasks, session_factory, analyzer)
    return session_view(ctx, outcomes)


@router.put("/sessions/{session_id}/draft")
async def update_draft(
    session_id: int,
    draft: DraftUpdate,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    analyzer: Optional[Analyzer] = Depends(get_analyzer)
):
    """Save the unsubmitted answer for the current prompt."""
    ctx, outcomes = _open(db, session_id, identity, background_tasks, session_factory, analyzer)
    if any(outcome.advanced for outcome in outcomes):
        # The draft belonged to a prompt that has already expired
        return session_view(ctx, outcomes)
    save_draft(ctx, draft.text)
    return session_view(ctx, outcomes)


@router.post("/sessions/{session_id}/responses")
@limiter.limit(RESPONSE_SUBMISSION_RATE_LIMIT)
async def post_response(
    session_id: int,
    submission: ResponseSubmission,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    analyzer: Optional[Analyzer] = Depends(get_analyzer)
):
    """
    Submit or overwrite the answer for a prompt in this session.

    With ``advance`` set, an answer for the current prompt also moves the
    session on, unless an expiry already did.
    """
    ctx, outcomes = _open(db, session_id, identity, background_tasks, session_factory, analyzer)
    try:
        response = submit_response(ctx, submission.prompt_id, submission.text, submission.elapsed_ms)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    already_moved = any(outcome.advanced for outcome in outcomes)
    if submission.advance and not already_moved and response.prompt_id == ctx.session.current_prompt_id:
        advance(ctx)

    return {
        "prompt_id": response.prompt_id,
        "elapsed_ms": response.elapsed_ms,
        "saved": True,
        "session": session_view(ctx, outcomes),
    }


@router.post("/sessions/{session_id}/advance")
async def post_advance(
    session_id: int,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    analyzer: Optional[Analyzer] = Depends(get_analyzer)
):
    """
    Move to the next prompt, completing the session after the last one.

    If the current prompt already expired and the session moved on, that
    expiry counts as the advance.
    """
    ctx, outcomes = _open(db, session_id, identity, background_tasks, session_factory, analyzer)
    if not any(outcome.advanced for outcome in outcomes):
        advance(ctx)
    return session_view(ctx, outcomes)


@router.post("/sessions/{session_id}/time-up")
async def post_time_up(
    session_id: int,
    report: TimeUpReport,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    analyzer: Optional[Analyzer] = Depends(get_analyzer)
):
    """
    Apply a client-observed expiry.

    The report is only honoured once the server-side deadline, less a small
    clock-skew allowance, has passed for the reported prompt.
    """
    ctx, outcomes = _open(db, session_id, identity, background_tasks, session_factory, analyzer)
    if outcomes:
        return session_view(ctx, outcomes)

    if ctx.is_completed or report.prompt_index != ctx.session.current_index:
        stale = TimeUpOutcome(report.prompt_index, submitted=False, advanced=False, ignored=True)
        return session_view(ctx, [stale])

    elapsed = (datetime.utcnow() - ctx.session.prompt_started_at).total_seconds()
    if elapsed < ctx.prompt_duration - TIME_UP_GRACE_SECONDS:
        raise InvalidStateError("Prompt time has not elapsed yet")

    outcome = handle_time_up(ctx, prompt_index=report.prompt_index)
    return session_view(ctx, [outcome])


@router.get("/sessions/{session_id}/results")
async def get_results(
    session_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db)
):
    """Responses and any feedback for a completed session."""
    ctx = open_session(db, session_id, identity)
    if not ctx.is_completed:
        raise InvalidStateError("Session is still in progress")

    return {
        "session_id": ctx.session.id,
        "test_type": ctx.session.test_type,
        "completed_at": ctx.session.completed_at.isoformat(),
        "limit_charged": ctx.session.limit_charged,
        **stored_feedback(ctx.session),
    }


@router.post("/sessions/{session_id}/analysis")
async def request_analysis(
    session_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    analyzer: Optional[Analyzer] = Depends(get_analyzer)
):
    """
    Run (or re-run after a failure) analysis for a completed session.

    A session whose charge failed is charged first; 402 if no attempts remain.

    Returns stored feedback immediately if analysis already completed.
    """
    open_session(db, session_id, identity)
    return dispatch_analysis(db, session_id, analyzer, owner=identity)
