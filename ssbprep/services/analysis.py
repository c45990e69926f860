"""Analysis dispatch: hand completed sessions to the AI feedback backend.

The core only relies on the collaborator contract: an ``Analyzer`` is any
callable taking an ``AnalysisRequest`` and returning ``SessionFeedback``.
Failures leave the session completed with feedback absent; the owner retries
explicitly from the results view.
"""
import json
import logging
from datetime import date
from enum import Enum
from typing import Callable, Dict, List, Optional

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from ssbprep.config import settings
from ssbprep.constants import FREE_ANALYSES_LIMIT
from ssbprep.db.database import read_with_retry, write_transaction
from ssbprep.db.models import AnalysisUsage, TestResponse, TestSession
from ssbprep.errors import AnalysisDispatchError, InvalidStateError, LimitExceededError, PersistenceError
from ssbprep.services.content import load_prompts
from ssbprep.services.identity import Identity
from ssbprep.services.ledger import charge_session, has_active_subscription

logger = logging.getLogger(__name__)


class Trait(str, Enum):
    """The officer-like qualities rated by the analysis backend."""
    EFFECTIVE_INTELLIGENCE = "Effective Intelligence"
    REASONING_ABILITY = "Reasoning Ability"
    EMOTIONAL_STABILITY = "Emotional Stability"
    SOCIAL_ADAPTABILITY = "Social Adaptability"
    MORAL_STAMINA = "Moral and Character Stamina"
    LEADERSHIP = "Leadership"
    INITIATIVE = "Initiative"
    DECISIVENESS = "Decisiveness"
    COURAGE = "Courage"
    DETERMINATION = "Determination"
    SENSE_OF_RESPONSIBILITY = "Sense of Responsibility"
    SELF_CONFIDENCE = "Self-Confidence"
    COOPERATION = "Cooperation"
    ORGANIZING_ABILITY = "Organizing Ability"
    COMMUNICATION_SKILLS = "Communication Skills"


class TraitCategory(str, Enum):
    """OLQ factor groups used to render trait scores."""
    PLANNING_AND_ORGANISING = "planning_and_organising"
    SOCIAL_ADJUSTMENT = "social_adjustment"
    SOCIAL_EFFECTIVENESS = "social_effectiveness"
    DYNAMIC = "dynamic"


TRAIT_CATEGORIES: Dict[Trait, TraitCategory] = {
    Trait.EFFECTIVE_INTELLIGENCE: TraitCategory.PLANNING_AND_ORGANISING,
    Trait.REASONING_ABILITY: TraitCategory.PLANNING_AND_ORGANISING,
    Trait.ORGANIZING_ABILITY: TraitCategory.PLANNING_AND_ORGANISING,
    Trait.COMMUNICATION_SKILLS: TraitCategory.PLANNING_AND_ORGANISING,
    Trait.SOCIAL_ADAPTABILITY: TraitCategory.SOCIAL_ADJUSTMENT,
    Trait.COOPERATION: TraitCategory.SOCIAL_ADJUSTMENT,
    Trait.SENSE_OF_RESPONSIBILITY: TraitCategory.SOCIAL_ADJUSTMENT,
    Trait.MORAL_STAMINA: TraitCategory.SOCIAL_ADJUSTMENT,
    Trait.INITIATIVE: TraitCategory.SOCIAL_EFFECTIVENESS,
    Trait.SELF_CONFIDENCE: TraitCategory.SOCIAL_EFFECTIVENESS,
    Trait.DECISIVENESS: TraitCategory.SOCIAL_EFFECTIVENESS,
    Trait.LEADERSHIP: TraitCategory.SOCIAL_EFFECTIVENESS,
    Trait.EMOTIONAL_STABILITY: TraitCategory.DYNAMIC,
    Trait.DETERMINATION: TraitCategory.DYNAMIC,
    Trait.COURAGE: TraitCategory.DYNAMIC,
}

CATEGORY_LABELS: Dict[TraitCategory, str] = {
    TraitCategory.PLANNING_AND_ORGANISING: "Planning & Organising",
    TraitCategory.SOCIAL_ADJUSTMENT: "Social Adjustment",
    TraitCategory.SOCIAL_EFFECTIVENESS: "Social Effectiveness",
    TraitCategory.DYNAMIC: "Dynamic",
}

_unmapped = set(Trait) - set(TRAIT_CATEGORIES)
if _unmapped or set(TraitCategory) - set(CATEGORY_LABELS):
    raise RuntimeError(f"Trait tables are incomplete: {sorted(t.value for t in _unmapped)}")


def trait_display(trait: Trait) -> Dict[str, str]:
    category = TRAIT_CATEGORIES[trait]
    return {
        "trait": trait.value,
        "category": category.value,
        "category_label": CATEGORY_LABELS[category],
    }


def render_trait_scores(feedback: Optional[Dict]) -> List[Dict]:
    """Stored trait scores with the OLQ factor group of each trait."""
    if not feedback:
        return []
    return [
        {
            **trait_display(Trait(item["trait"])),
            "score": item["score"],
            "description": item.get("description", ""),
        }
        for item in feedback.get("trait_scores", [])
    ]


class TraitScore(BaseModel):
    trait: Trait
    score: float = Field(..., ge=0, le=10)
    description: str = ""


class Feedback(BaseModel):
    """Feedback for one response or a whole session, as returned by the model."""
    model_config = ConfigDict(populate_by_name=True)

    overall_score: float = Field(0, ge=0, le=10, alias="overallScore")
    trait_scores: List[TraitScore] = Field(default_factory=list, alias="traitScores")
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    officer_like_qualities: List[str] = Field(default_factory=list, alias="officerLikeQualities")
    sample_response: Optional[str] = Field(None, alias="sampleResponse")

    def category_scores(self) -> Dict[str, float]:
        """Average trait score per OLQ factor group."""
        grouped: Dict[TraitCategory, List[float]] = {}
        for item in self.trait_scores:
            grouped.setdefault(TRAIT_CATEGORIES[item.trait], []).append(item.score)
        return {
            category.value: round(sum(scores) / len(scores), 2)
            for category, scores in grouped.items()
        }


class ResponseItem(BaseModel):
    prompt_id: str
    prompt_text: Optional[str] = None
    image_url: Optional[str] = None
    answer: str
    elapsed_ms: int = 0


class AnalysisRequest(BaseModel):
    identity: str
    session_id: int
    test_type: str
    responses: List[ResponseItem]
    is_premium: bool


class SessionFeedback(BaseModel):
    responses: Dict[str, Feedback] = Field(default_factory=dict)
    summary: Feedback


Analyzer = Callable[[AnalysisRequest], SessionFeedback]


SYSTEM_PROMPT = (
    "You are a psychologist who assesses candidates for the Services Selection Board. "
    "Rate the written response against the officer-like qualities: {traits}. "
    "Scores run from 1 to 10. Gibberish or irrelevant text scores 1-2, incoherent writing 2-3, "
    "shallow answers 3-4, average answers 5-6, answers showing clear officer-like qualities 7-8 "
    "and exceptional leadership 9-10. Respond with JSON only."
)

PREMIUM_FORMAT = (
    "Score every quality with evidence from the response. Return JSON with keys "
    "overallScore, traitScores (list of {{trait, score, description}} using the exact quality names), "
    "strengths, improvements, recommendations, officerLikeQualities and sampleResponse."
)

BASIC_FORMAT = (
    "Give a short overall assessment without per-quality scores. Return JSON with keys "
    "overallScore, traitScores (empty list), strengths, improvements, recommendations "
    "(include a note that premium analysis covers all fifteen qualities), officerLikeQualities "
    "and sampleResponse."
)


def build_system_prompt(is_premium: bool) -> str:
    base = SYSTEM_PROMPT.format(traits=", ".join(t.value for t in Trait))
    return f"{base}\n\n{PREMIUM_FORMAT if is_premium else BASIC_FORMAT}"


def build_user_prompt(test_type: str, answer: str, prompt_text: Optional[str] = None) -> str:
    lines = [f"Test type: {test_type.upper()}"]
    if prompt_text:
        lines.append(f"Prompt: {prompt_text}")
    lines.append(f"Candidate response: {answer}")
    return "\n".join(lines)


class OpenAIAnalyzer:
    """Analyzer backed by an OpenAI chat model in JSON mode."""

    def __init__(self, api_key: str, model: str, timeout: float = 60.0, client: OpenAI = None):
        self.model = model
        self.client = client or OpenAI(api_key=api_key, timeout=timeout)

    def _complete(self, system_prompt: str, user_prompt: str, image_url: Optional[str] = None) -> Feedback:
        user_content = user_prompt
        if image_url:
            user_content = [
                {"type": "text", "text": user_prompt},
                {"type": "image_url", "image_url": {"url": image_url}},
            ]

        completion = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            temperature=0.2,
            max_tokens=3500,
            response_format={"type": "json_object"},
        )
        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise AnalysisDispatchError("Analysis model returned an empty response")
        try:
            return Feedback.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise AnalysisDispatchError("Analysis model returned malformed feedback") from e

    def __call__(self, request: AnalysisRequest) -> SessionFeedback:
        system_prompt = build_system_prompt(request.is_premium)
        per_response = {
            item.prompt_id: self._complete(
                system_prompt,
                build_user_prompt(request.test_type, item.answer, item.prompt_text),
                item.image_url,
            )
            for item in request.responses
        }
        combined = "\n\n".join(item.answer for item in request.responses)
        summary = self._complete(
            system_prompt,
            build_user_prompt(
                request.test_type,
                combined,
                f"Combined {request.test_type.upper()} session with {len(request.responses)} responses",
            ),
        )
        return SessionFeedback(responses=per_response, summary=summary)


def can_get_free_analysis(db: Session, identity: Identity) -> bool:
    usage = read_with_retry(
        db,
        lambda: db.query(AnalysisUsage).filter(AnalysisUsage.identity == identity.id).first(),
        "analysis usage lookup"
    )
    used = usage.free_analyses_used if usage else 0
    return used < FREE_ANALYSES_LIMIT


def is_premium_analysis(db: Session, identity: Identity) -> bool:
    """Premium when subscribed, or once the free analyses are used up."""
    return has_active_subscription(db, identity) or not can_get_free_analysis(db, identity)


def _record_usage(db: Session, identity: Identity, is_free: bool) -> None:
    usage = db.query(AnalysisUsage).filter(AnalysisUsage.identity == identity.id).first()
    if usage is None:
        usage = AnalysisUsage(identity=identity.id, free_analyses_used=0, total_analyses=0)
        db.add(usage)
    usage.total_analyses += 1
    if is_free:
        usage.free_analyses_used += 1
        usage.last_free_analysis_date = date.today()


def build_request(db: Session, session: TestSession, is_premium: bool) -> AnalysisRequest:
    responses = db.query(TestResponse).filter(TestResponse.session_id == session.id).all()
    by_prompt = {response.prompt_id: response for response in responses}
    prompts = load_prompts(db, session.prompt_ids)

    items = []
    for prompt_id in session.prompt_ids:
        response = by_prompt.get(prompt_id)
        if response is None:
            continue
        prompt = prompts.get(prompt_id)
        items.append(ResponseItem(
            prompt_id=prompt_id,
            prompt_text=prompt.content if prompt else None,
            image_url=prompt.image_url if prompt else None,
            answer=response.answer_text,
            elapsed_ms=response.elapsed_ms,
        ))

    return AnalysisRequest(
        identity=session.owner,
        session_id=session.id,
        test_type=session.test_type,
        responses=items,
        is_premium=is_premium,
    )


def stored_feedback(session: TestSession) -> Dict:
    """Feedback already attached to a session, in response order."""
    by_prompt = {response.prompt_id: response for response in session.responses}
    return {
        "analysis_status": session.analysis_status,
        "is_premium": session.is_premium_analysis,
        "overall_score": session.overall_score,
        "summary": session.summary_feedback,
        "traits": render_trait_scores(session.summary_feedback),
        "responses": [
            {
                "prompt_id": prompt_id,
                "answer": by_prompt[prompt_id].answer_text,
                "elapsed_ms": by_prompt[prompt_id].elapsed_ms,
                "overall_score": by_prompt[prompt_id].overall_score,
                "feedback": by_prompt[prompt_id].feedback,
            }
            for prompt_id in session.prompt_ids
            if prompt_id in by_prompt
        ],
    }


def _mark_failed(db: Session, session: TestSession) -> None:
    with write_transaction(db, "analysis failure status"):
        session.analysis_status = "failed"


def dispatch_analysis(
    db: Session,
    session_id: int,
    analyzer: Optional[Analyzer],
    owner: Optional[Identity] = None,
) -> Dict:
    """
    Run the analysis collaborator once for a completed session.

    Idempotent: a session whose analysis already completed returns the
    stored feedback without calling the analyzer again. A session whose
    charge failed at completion is charged here when ``owner`` is given.

    Raises:
        InvalidStateError: Session missing, not completed, or never charged
        LimitExceededError: The retried charge found no attempts left
        PersistenceError: The retried charge could not be written
        AnalysisDispatchError: The collaborator failed; status is set to failed
    """
    session = read_with_retry(
        db,
        lambda: db.query(TestSession).filter(TestSession.id == session_id).first(),
        "session lookup"
    )
    if session is None:
        raise InvalidStateError("Session not found", not_found=True)
    if session.status != "completed":
        raise InvalidStateError("Only completed sessions can be analysed")
    if session.analysis_status == "completed":
        return stored_feedback(session)
    if not session.limit_charged:
        if session.analysis_status == "limit_exceeded" or owner is None:
            raise InvalidStateError("Session exceeded its usage limit and cannot be analysed")
        if not charge_session(db, owner, session):
            raise LimitExceededError(owner.id, session.test_type)

    log_extra = {"identity": session.owner, "session_id": session.id, "test_type": session.test_type}
    identity = Identity(id=session.owner)
    is_premium = is_premium_analysis(db, identity)

    with write_transaction(db, "analysis pending status"):
        session.analysis_status = "pending"
        session.is_premium_analysis = is_premium

    if analyzer is None:
        _mark_failed(db, session)
        logger.error("Analysis requested but no analyzer is configured", extra=log_extra)
        raise AnalysisDispatchError("Analysis backend is not configured")

    request = build_request(db, session, is_premium)
    if not request.responses:
        _mark_failed(db, session)
        raise AnalysisDispatchError("Session has no responses to analyse")

    logger.info(
        f"Dispatching analysis for {len(request.responses)} responses (premium={is_premium})",
        extra=log_extra
    )
    try:
        result = analyzer(request)
    except Exception as e:
        _mark_failed(db, session)
        logger.error(f"Analysis failed: {e}", exc_info=True, extra=log_extra)
        if isinstance(e, AnalysisDispatchError):
            raise
        raise AnalysisDispatchError() from e

    with write_transaction(db, "analysis result storage"):
        for response in session.responses:
            feedback = result.responses.get(response.prompt_id)
            if feedback is not None:
                response.feedback = feedback.model_dump(mode="json")
                response.overall_score = feedback.overall_score
        summary = result.summary.model_dump(mode="json")
        summary["category_scores"] = result.summary.category_scores()
        session.summary_feedback = summary
        session.overall_score = result.summary.overall_score
        session.analysis_status = "completed"
        _record_usage(db, identity, is_free=not is_premium)

    logger.info("Analysis stored", extra=log_extra)
    return stored_feedback(session)


def get_analyzer() -> Optional[Analyzer]:
    """FastAPI dependency returning the configured analyzer, or None."""
    if not settings.analysis_configured:
        return None
    return OpenAIAnalyzer(
        api_key=settings.OPENAI_API_KEY,
        model=settings.OPENAI_MODEL,
        timeout=settings.OPENAI_TIMEOUT,
    )


def run_analysis_task(session_factory: Callable[[], Session], session_id: int, analyzer: Analyzer) -> None:
    """
    Background entry point scheduled when a session completes.

    Runs on its own database session. Failures are logged and left for an
    explicit retry; the session itself stays completed.
    """
    db = session_factory()
    try:
        dispatch_analysis(db, session_id, analyzer)
    except (AnalysisDispatchError, InvalidStateError, PersistenceError) as e:
        logger.warning(
            f"Background analysis did not complete: {e.message}",
            extra={"session_id": session_id}
        )
    finally:
        db.close()
