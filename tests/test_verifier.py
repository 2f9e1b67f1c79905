from autosurveyagent.core.survey_types import Decision, QuestionState, SurveyOption
from autosurveyagent.core.verifier import (
    NAVIGATED_ASSERTION,
    TYPED_TEXT_MISSING,
    check_assertion,
    evaluate_assertions,
    texts_overlap,
)


def _select(labels, assertions=None, action="select_single"):
    return Decision(
        action=action,
        selections=[{"label": label} for label in labels],
        confidence=0.8,
        reason="pick",
        assertions=assertions or [],
    )


def test_check_assertion_haystack():
    state = QuestionState(
        "Favourite colour",
        support_text=("Choose wisely",),
        options=(SurveyOption("Red", True), SurveyOption("Blue")),
        filled_value="typed words",
    )
    assert check_assertion("favourite", state) is True
    assert check_assertion("WISELY", state) is True
    assert check_assertion("red", state) is True
    assert check_assertion("typed", state) is True
    # 未选中的选项不在 haystack 里
    assert check_assertion("blue", state) is False


def test_question_change_skips_all_checks():
    before = QuestionState("Q1", options=(SurveyOption("A"),))
    after = QuestionState("Q2")
    passed, failed = evaluate_assertions(before, after, _select(["A"], ["nope"]))
    assert passed == [NAVIGATED_ASSERTION]
    assert failed == []


def test_missing_assertion_fails_even_when_fingerprint_changed():
    before = QuestionState("Q1", options=(SurveyOption("A"), SurveyOption("B")))
    after = QuestionState("Q1", options=(SurveyOption("A", True), SurveyOption("B")))
    passed, failed = evaluate_assertions(before, after, _select(["A"], ["Thanks"]))
    assert passed == []
    assert failed == ["Thanks"]


def test_selection_not_reflected():
    before = QuestionState("Q1", options=(SurveyOption("A"), SurveyOption("B")))
    after = QuestionState("Q1", options=(SurveyOption("a", True), SurveyOption("B")))
    passed, failed = evaluate_assertions(
        before, after, _select(["A", "B"], action="select_multi")
    )
    assert passed == []
    assert failed == ["Selection not reflected: B"]


def test_typed_text_check():
    before = QuestionState("Email", input_type="text")
    decision = Decision(action="type_text", text="a@b.com", confidence=0.7, reason="type")

    ok_after = QuestionState("Email", input_type="text", filled_value="a@b.com")
    assert evaluate_assertions(before, ok_after, decision) == ([], [])

    bad_after = QuestionState("Email", input_type="text", filled_value="")
    assert evaluate_assertions(before, bad_after, decision) == ([], [TYPED_TEXT_MISSING])


def test_navigation_actions_only_check_explicit_assertions():
    before = QuestionState("Intro", navigation_buttons=("Next",))
    decision = Decision(action="click_next", confidence=0.6, reason="go", assertions=["intro"])
    assert evaluate_assertions(before, before, decision) == (["intro"], [])


def test_texts_overlap():
    assert texts_overlap("hello world", "hello") is True
    assert texts_overlap("hel", "hello") is True
    assert texts_overlap("bye", "hello") is False
    assert texts_overlap("", "hello") is False
