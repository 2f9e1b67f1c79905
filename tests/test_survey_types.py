from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from autosurveyagent.core.survey_types import (
    Decision,
    EngineEvent,
    QuestionState,
    RunReport,
    StepArtifact,
    StepResult,
    SurveyOption,
    is_valid_survey_surface,
    state_fingerprint,
)


def test_fingerprint_format():
    state = QuestionState(
        "Pick colors",
        options=(SurveyOption("Red", True), SurveyOption("Blue")),
        progress="2 of 5",
        filled_value="",
    )
    assert state_fingerprint(state) == "Pick colors|2 of 5|Red:1,Blue:0|"


def test_fingerprint_ignores_url_support_nav_and_counts():
    a = QuestionState(
        "Q",
        options=(SurveyOption("A"),),
        url="https://one.example.com",
        support_text=("x",),
        navigation_buttons=("Next",),
        visible_input_count=3,
        input_type="single_select",
    )
    b = QuestionState(
        "Q",
        options=(SurveyOption("A"),),
        url="https://two.example.com",
        visible_input_count=9,
        input_type="unknown",
    )
    assert state_fingerprint(a) == state_fingerprint(b)


def test_fingerprint_changes_with_selection_and_value():
    base = QuestionState("Q", options=(SurveyOption("A"),))
    selected = QuestionState("Q", options=(SurveyOption("A", True),))
    typed = QuestionState("Q", options=(SurveyOption("A"),), filled_value="hi")
    assert state_fingerprint(base) != state_fingerprint(selected)
    assert state_fingerprint(base) != state_fingerprint(typed)


def test_validity_monotonicity():
    empty = QuestionState("Survey step")
    assert is_valid_survey_surface(empty) is False
    assert is_valid_survey_surface(QuestionState("Survey step", visible_input_count=1)) is True
    assert is_valid_survey_surface(QuestionState("Survey step", navigation_buttons=("Next",))) is True


def test_decision_defaults_and_bounds():
    decision = Decision(action="click_next", confidence=0.9, reason="go")
    assert decision.selections == []
    assert decision.text == ""
    assert decision.needs_screenshot is False
    assert decision.assertions == []

    with pytest.raises(ValidationError):
        Decision(action="click_next", confidence=1.5, reason="x")
    with pytest.raises(ValidationError):
        Decision(action="click_next", confidence=0.5, reason="")
    with pytest.raises(ValidationError):
        Decision(action="jump", confidence=0.5, reason="x")
    with pytest.raises(ValidationError):
        Decision(action="select_single", selections=[{"label": ""}], confidence=0.5, reason="x")


def test_report_to_dict_and_video_is_optional():
    started = datetime(2024, 1, 1, tzinfo=timezone.utc)
    state = QuestionState("Q", navigation_buttons=("Next",))
    step = StepResult(
        step=1,
        state=state,
        decision=Decision(action="click_next", confidence=0.3, reason="nav"),
        action_succeeded=True,
        progressed=True,
        artifacts=[StepArtifact(path="/tmp/a.png")],
    )
    report = RunReport(
        run_id="r1",
        survey_url="https://survey.example.com",
        status="success",
        started_at=started,
        finished_at=started + timedelta(milliseconds=1500),
        steps=[step],
        message="done",
        artifacts_dir="/tmp/r1",
    )
    data = report.to_dict()
    assert data["duration_ms"] == 1500
    assert data["started_at"] == "2024-01-01T00:00:00+00:00"
    assert "video" not in data
    assert data["steps"][0]["artifacts"] == [{"type": "screenshot", "path": "/tmp/a.png"}]
    assert data["steps"][0]["state"]["navigation_buttons"] == ["Next"]

    report.video = "video/recording.webm"
    assert report.to_dict()["video"] == "video/recording.webm"


def test_engine_event_omits_unset_fields():
    event = EngineEvent(type="status", status="running", message="Step 1")
    data = event.to_dict()
    assert set(data) == {"type", "ts", "status", "message"}
