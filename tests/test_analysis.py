"""Tests for analysis dispatch and the feedback contract."""
import json
from types import SimpleNamespace

import pytest
from ssbprep.db.models import AnalysisUsage, TestResponse, UserAccount
from ssbprep.errors import AnalysisDispatchError, InvalidStateError, LimitExceededError
from ssbprep.services.analysis import (
    CATEGORY_LABELS,
    TRAIT_CATEGORIES,
    Feedback,
    OpenAIAnalyzer,
    Trait,
    TraitCategory,
    can_get_free_analysis,
    dispatch_analysis,
    is_premium_analysis,
    render_trait_scores,
    trait_display,
)
from ssbprep.services import ledger
from ssbprep.services.content import select_prompts
from ssbprep.services.session_machine import advance, create_session, open_session, submit_response

from conftest import FakeAnalyzer


def completed_session(db, identity, test_type="ppdt", charged=True):
    """Run a session to completion with one answer per prompt."""
    session = create_session(db, identity, test_type, select_prompts(db, test_type))
    ctx = open_session(db, session.id, identity)
    while not ctx.is_completed:
        submit_response(ctx, ctx.session.current_prompt_id, "The group repaired the vehicle and reached the village")
        advance(ctx)
    ctx.session.limit_charged = charged
    db.commit()
    return ctx.session


class FakeCompletions:
    def __init__(self, contents):
        self.contents = list(contents)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        content = self.contents.pop(0)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def fake_client(*contents):
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(contents)))


MODEL_FEEDBACK = {
    "overallScore": 7.5,
    "traitScores": [
        {"trait": "Leadership", "score": 8, "description": "Organises the group"},
        {"trait": "Effective Intelligence", "score": 7, "description": "Practical plan"},
    ],
    "strengths": ["Clear plan"],
    "improvements": ["Add detail"],
    "recommendations": ["Practise daily"],
    "officerLikeQualities": ["Leadership"],
    "sampleResponse": "The leader organised the villagers and repaired the bridge.",
}


class TestTraits:
    """Tests for the closed trait enumeration."""

    def test_every_trait_has_a_category(self):
        assert len(Trait) == 15
        assert set(TRAIT_CATEGORIES) == set(Trait)
        assert set(CATEGORY_LABELS) == set(TraitCategory)

    def test_trait_display(self):
        display = trait_display(Trait.COURAGE)
        assert display["category"] == "dynamic"
        assert display["category_label"] == "Dynamic"

    def test_render_trait_scores(self):
        feedback = Feedback.model_validate(MODEL_FEEDBACK).model_dump(mode="json")
        rendered = render_trait_scores(feedback)
        assert rendered[0]["trait"] == "Leadership"
        assert rendered[0]["category_label"] == "Social Effectiveness"
        assert rendered[1]["category"] == "planning_and_organising"
        assert render_trait_scores(None) == []

    def test_unknown_trait_is_rejected(self):
        with pytest.raises(ValueError):
            Feedback.model_validate({"traitScores": [{"trait": "Charisma", "score": 5}]})


class TestFeedbackModel:
    """Tests for parsing model output."""

    def test_parses_camel_case(self):
        feedback = Feedback.model_validate(MODEL_FEEDBACK)
        assert feedback.overall_score == 7.5
        assert feedback.trait_scores[0].trait == Trait.LEADERSHIP
        assert feedback.officer_like_qualities == ["Leadership"]

    def test_category_scores(self):
        feedback = Feedback.model_validate(MODEL_FEEDBACK)
        assert feedback.category_scores() == {
            "social_effectiveness": 8.0,
            "planning_and_organising": 7.0,
        }

    def test_score_out_of_range(self):
        with pytest.raises(ValueError):
            Feedback.model_validate({"overallScore": 14})


class TestOpenAIAnalyzer:
    """Tests for the OpenAI collaborator with a stubbed client."""

    def test_analyses_each_response_and_summary(self, test_db, registered_user):
        session = completed_session(test_db, registered_user)
        client = fake_client(json.dumps(MODEL_FEEDBACK), json.dumps(MODEL_FEEDBACK))
        analyzer = OpenAIAnalyzer(api_key="sk-test", model="gpt-4o-mini", client=client)

        result = dispatch_analysis(test_db, session.id, analyzer)

        calls = client.chat.completions.calls
        assert len(calls) == 2
        assert calls[0]["response_format"] == {"type": "json_object"}
        assert calls[0]["model"] == "gpt-4o-mini"
        assert result["analysis_status"] == "completed"
        assert result["overall_score"] == 7.5

    def test_malformed_output_fails_dispatch(self, test_db, registered_user):
        session = completed_session(test_db, registered_user)
        analyzer = OpenAIAnalyzer(api_key="sk-test", model="gpt-4o-mini", client=fake_client("not json"))

        with pytest.raises(AnalysisDispatchError):
            dispatch_analysis(test_db, session.id, analyzer)
        test_db.refresh(session)
        assert session.analysis_status == "failed"


class TestDispatch:
    """Tests for the dispatch boundary."""

    def test_stores_feedback(self, test_db, registered_user, fake_analyzer):
        session = completed_session(test_db, registered_user, test_type="tat")

        result = dispatch_analysis(test_db, session.id, fake_analyzer)

        assert result["analysis_status"] == "completed"
        assert result["summary"]["overall_score"] == 7
        assert result["summary"]["category_scores"]["social_effectiveness"] == 8.0
        assert len(result["responses"]) == 12
        assert all(item["overall_score"] == 6 for item in result["responses"])
        request = fake_analyzer.requests[0]
        assert request.test_type == "tat"
        assert request.identity == registered_user.id

    def test_dispatch_is_idempotent(self, test_db, registered_user, fake_analyzer):
        session = completed_session(test_db, registered_user)
        dispatch_analysis(test_db, session.id, fake_analyzer)
        dispatch_analysis(test_db, session.id, fake_analyzer)
        assert len(fake_analyzer.requests) == 1

    def test_in_progress_session_cannot_be_analysed(self, test_db, registered_user, fake_analyzer):
        session = create_session(test_db, registered_user, "wat", ["p1", "p2"])
        with pytest.raises(InvalidStateError):
            dispatch_analysis(test_db, session.id, fake_analyzer)
        assert fake_analyzer.requests == []

    def test_uncharged_session_cannot_be_analysed(self, test_db, registered_user, fake_analyzer):
        session = completed_session(test_db, registered_user, charged=False)
        with pytest.raises(InvalidStateError):
            dispatch_analysis(test_db, session.id, fake_analyzer)

    def test_failure_leaves_session_completed_and_retryable(self, test_db, registered_user):
        session = completed_session(test_db, registered_user)

        with pytest.raises(AnalysisDispatchError):
            dispatch_analysis(test_db, session.id, FakeAnalyzer(fail=True))
        test_db.refresh(session)
        assert session.status == "completed"
        assert session.analysis_status == "failed"
        assert test_db.query(TestResponse).filter(TestResponse.feedback.isnot(None)).count() == 0

        result = dispatch_analysis(test_db, session.id, FakeAnalyzer())
        assert result["analysis_status"] == "completed"

    def test_missing_analyzer(self, test_db, registered_user):
        session = completed_session(test_db, registered_user)
        with pytest.raises(AnalysisDispatchError):
            dispatch_analysis(test_db, session.id, None)

    def test_failed_charge_is_retried_for_the_owner(self, test_db, registered_user, fake_analyzer):
        session = completed_session(test_db, registered_user, charged=False)
        session.analysis_status = "charge_failed"
        test_db.commit()

        result = dispatch_analysis(test_db, session.id, fake_analyzer, owner=registered_user)

        assert result["analysis_status"] == "completed"
        test_db.refresh(session)
        assert session.limit_charged is True
        assert ledger.get_limits(test_db, registered_user)["ppdt"] == 1

    def test_retried_charge_without_attempts(self, test_db, registered_user, fake_analyzer):
        session = completed_session(test_db, registered_user, charged=False)
        session.analysis_status = "charge_failed"
        test_db.commit()
        ledger.decrement(test_db, registered_user, "ppdt")
        ledger.decrement(test_db, registered_user, "ppdt")

        with pytest.raises(LimitExceededError):
            dispatch_analysis(test_db, session.id, fake_analyzer, owner=registered_user)

        test_db.refresh(session)
        assert session.analysis_status == "limit_exceeded"
        assert fake_analyzer.requests == []

    def test_limit_exceeded_session_is_never_charged_again(self, test_db, registered_user, fake_analyzer):
        session = completed_session(test_db, registered_user, charged=False)
        session.analysis_status = "limit_exceeded"
        test_db.commit()

        with pytest.raises(InvalidStateError):
            dispatch_analysis(test_db, session.id, fake_analyzer, owner=registered_user)
        assert ledger.get_limits(test_db, registered_user)["ppdt"] == 2


class TestAnalysisUsage:
    """Tests for free and premium analysis accounting."""

    def test_free_analyses_then_premium(self, test_db, registered_user, fake_analyzer):
        assert can_get_free_analysis(test_db, registered_user)

        for _ in range(2):
            session = completed_session(test_db, registered_user)
            dispatch_analysis(test_db, session.id, fake_analyzer)

        usage = test_db.query(AnalysisUsage).filter(AnalysisUsage.identity == registered_user.id).one()
        assert usage.free_analyses_used == 2
        assert not can_get_free_analysis(test_db, registered_user)
        assert is_premium_analysis(test_db, registered_user)
        assert [request.is_premium for request in fake_analyzer.requests] == [False, False]

    def test_subscribers_get_premium(self, test_db, fake_analyzer):
        test_db.add(UserAccount(id="usr_paid", subscription_type="paid"))
        test_db.commit()
        from ssbprep.services.identity import Identity

        identity = Identity.registered("usr_paid")
        session = completed_session(test_db, identity)
        result = dispatch_analysis(test_db, session.id, fake_analyzer)

        assert result["is_premium"] is True
        usage = test_db.query(AnalysisUsage).filter(AnalysisUsage.identity == "usr_paid").one()
        assert usage.free_analyses_used == 0
        assert usage.total_analyses == 1
