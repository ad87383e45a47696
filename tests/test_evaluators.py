import pytest

from conftest import FakeEquivalence, question
from assessgrade.core.errors import RubricParseError
from assessgrade.services.answer_keys import (
    ChoiceKey, EssayRubric, KeywordRubric, MatchingKey, TextKey, TrueFalseKey, parse_correct_answer,
)
from assessgrade.services.evaluators import EvaluationContext, evaluate, round_half_up

MCQ = dict(correct_answer="B", positive_marks=2, negative_marks=1)
RUBRIC = {"required_keywords": ["mitochondria", "energy"], "min_required_match": 2}


# ---------- multiple choice ----------

def test_mcq_exact_match():
    out = evaluate(question("multiple_choice", **MCQ), "B")
    assert out.is_correct and out.scored_marks == 2 and out.grading_method == "auto"


def test_mcq_wrong_answer_is_penalized():
    out = evaluate(question("multiple_choice", **MCQ), "A")
    assert not out.is_correct and out.scored_marks == -1
    assert "B" in out.feedback


def test_mcq_unanswered_scores_zero():
    out = evaluate(question("multiple_choice", **MCQ), None)
    assert out.scored_marks == 0 and not out.is_correct and not out.answered


def test_mcq_normalizes_case_and_quotes():
    assert evaluate(question("multiple_choice", '"Paris"'), " paris ").is_correct


def test_mcq_selected_set_contains_correct_option():
    assert evaluate(question("multiple_choice", **MCQ), ["A", "b"]).is_correct
    assert not evaluate(question("multiple_choice", **MCQ), ["A", "C"]).is_correct


@pytest.mark.parametrize("option", ["[0, 1)", "[1, 2]", "{x | x > 0}"])
def test_mcq_option_text_that_looks_like_json(option):
    out = evaluate(question("multiple_choice", option, positive_marks=2), option)
    assert out.is_correct and out.scored_marks == 2 and out.grading_method == "auto"
    assert parse_correct_answer("multiple_choice", option) == ChoiceKey(option)
    assert parse_correct_answer("multiple_choice", '{"answer": "[0, 1)"}') == ChoiceKey("[0, 1)")


def test_mcq_empty_string_is_answered_wrong():
    out = evaluate(question("multiple_choice", **MCQ), "")
    assert out.answered and out.scored_marks == -1


# ---------- true / false ----------

@pytest.mark.parametrize("raw", ["True", "true", " T ", "yes", True, "1"])
def test_true_false_accepts_true_spellings(raw):
    assert evaluate(question("true_false", "true", 1), raw).is_correct


def test_true_false_stored_as_bool():
    q = question("true_false", False, 1, 0.5)
    assert evaluate(q, "false").is_correct
    out = evaluate(q, "maybe")
    assert not out.is_correct and out.scored_marks == -0.5


# ---------- short answer ----------

def test_keyword_match_all_required():
    out = evaluate(question("short_answer", RUBRIC, 5), "Mitochondria produce energy")
    assert out.is_correct and out.scored_marks == 5


def test_keyword_match_below_threshold_is_binary_zero():
    out = evaluate(question("short_answer", RUBRIC, 5), "Mitochondria is a cell part")
    assert not out.is_correct and out.scored_marks == 0
    assert "1/2" in out.feedback


def test_keyword_min_defaults_to_all_required():
    rubric = {"required_keywords": ["alpha", "beta"]}
    assert not evaluate(question("short_answer", rubric), "alpha only").is_correct
    assert evaluate(question("short_answer", rubric), "alpha and beta").is_correct


def test_keyword_rubric_accepts_json_string():
    rubric = '{"required_keywords": ["atp"], "optional_keywords": ["phosphate"]}'
    out = evaluate(question("short_answer", rubric, 2), "ATP with a phosphate")
    assert out.is_correct and "phosphate" in out.feedback


def test_whole_string_short_answer():
    q = question("short_answer", "Nucleus", 3, 1)
    assert evaluate(q, '  "nucleus" ').scored_marks == 3
    assert evaluate(q, "ribosome").scored_marks == -1


def test_equivalence_consulted_only_after_exact_miss():
    eq = FakeEquivalence(verdict=True)
    ctx = EvaluationContext(equivalence=eq, language="ur")
    q = question("short_answer", "Nucleus", 3)
    assert evaluate(q, "nucleus", ctx).is_correct
    assert eq.calls == []
    out = evaluate(q, "the cell nucleus", ctx)
    assert out.is_correct and out.grading_notes == "ai-equivalence"
    assert eq.calls == [("the cell nucleus", "Nucleus", "ur")]


def test_equivalence_never_used_for_keyword_rubrics():
    eq = FakeEquivalence(verdict=True)
    out = evaluate(question("short_answer", RUBRIC, 5), "cell part", EvaluationContext(equivalence=eq))
    assert not out.is_correct and eq.calls == []


def test_equivalence_timeout_defers_to_manual():
    ctx = EvaluationContext(equivalence=FakeEquivalence(timeout=True))
    out = evaluate(question("short_answer", "Nucleus", 3, 1), "cell core", ctx)
    assert out.grading_method == "manual" and out.scored_marks == 0
    assert "Equivalence check failed" in out.grading_notes


# ---------- matching ----------

PAIRS = [["Heart", "Pump"], ["Lung", "Gas exchange"]]


def test_matching_positional_right_hand_side():
    q = question("matching", PAIRS, 2, 1)
    assert evaluate(q, [["Heart", "Pump"], ["Lung", "Gas exchange"]]).is_correct
    assert evaluate(q, ["Pump", "Gas exchange"]).is_correct
    assert not evaluate(q, [["Heart", "Gas exchange"], ["Lung", "Pump"]]).is_correct


def test_matching_length_mismatch_is_wrong():
    out = evaluate(question("matching", PAIRS, 2, 1), [["Heart", "Pump"]])
    assert not out.is_correct and out.scored_marks == -1


def test_matching_malformed_student_answer_is_wrong_not_an_error():
    out = evaluate(question("matching", PAIRS, 2, 1), "Pump, Gas exchange")
    assert not out.is_correct and out.grading_method == "auto"
    assert "Malformed" in out.grading_notes


# ---------- essay ----------

ESSAY = {"criteria": [
    {"name": "Content", "max_marks": 4, "keywords": ["photosynthesis", "chlorophyll", "light"]},
    {"name": "Length", "max_marks": 2},
]}


def test_essay_keyword_and_length_criteria():
    answer = "Photosynthesis uses light. " * 3
    out = evaluate(question("essay", ESSAY, 6), answer)
    # 2/3 keywords of 4 marks -> 2.67 -> 3; length 80 >= 50 -> 2
    assert out.scored_marks == 5 and out.grading_method == "auto" and not out.is_correct
    assert "Content: 2/3 keywords found" in out.feedback


def test_essay_short_answer_gets_partial_length_credit():
    out = evaluate(question("essay", {"criteria": [{"name": "Length", "max_marks": 4}]}, 4), "x" * 25)
    assert out.scored_marks == 2
    assert "too short" in out.feedback


def test_essay_full_marks_is_correct():
    answer = "Photosynthesis needs chlorophyll and light, and the answer is long enough to count."
    out = evaluate(question("essay", ESSAY, 6), answer)
    assert out.scored_marks == 6 and out.is_correct


def test_essay_without_rubric_goes_to_manual():
    out = evaluate(question("essay", None, 10), "Anything at all")
    assert out.grading_method == "manual" and out.scored_marks == 0


def test_unanswered_essay_is_auto_zero():
    out = evaluate(question("essay", None, 10, 3), None)
    assert out.grading_method == "auto" and out.scored_marks == 0


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.5) == 1
    assert round_half_up(2.49) == 2


# ---------- answer keys ----------

def test_parse_correct_answer_variants():
    assert parse_correct_answer("multiple_choice", {"answer": "C"}) == ChoiceKey("C")
    assert parse_correct_answer("true_false", "false") == TrueFalseKey(False)
    assert parse_correct_answer("short_answer", "Nucleus") == TextKey("Nucleus")
    assert isinstance(parse_correct_answer("short_answer", RUBRIC), KeywordRubric)
    assert parse_correct_answer("matching", PAIRS) == MatchingKey((("Heart", "Pump"), ("Lung", "Gas exchange")))
    assert parse_correct_answer("essay", ESSAY).max_marks == 6
    assert parse_correct_answer("essay", "") is None


@pytest.mark.parametrize("text", ["[1, 2]", "{a, b}", '{"set": "empty"}'])
def test_short_answer_text_that_looks_like_json(text):
    assert parse_correct_answer("short_answer", text) == TextKey(text)
    assert evaluate(question("short_answer", text), text).is_correct


def test_min_required_match_is_clamped():
    key = parse_correct_answer("short_answer", {"required_keywords": ["a", "b"], "min_required_match": 9})
    assert key.min_required_match == 2
    key = parse_correct_answer("short_answer", {"required_keywords": ["a", "b"], "min_required_match": 0})
    assert key.min_required_match == 1


@pytest.mark.parametrize("qtype,raw", [
    ("short_answer", '{"required_keywords": ['),
    ("short_answer", {"required_keywords": []}),
    ("true_false", "perhaps"),
    ("multiple_choice", None),
    ("matching", "Heart-Pump"),
    ("essay", {"criteria": []}),
    ("essay", {"criteria": [{"name": "x", "max_marks": "lots"}]}),
])
def test_malformed_keys_raise(qtype, raw):
    with pytest.raises(RubricParseError):
        parse_correct_answer(qtype, raw)


def test_malformed_key_surfaces_from_evaluate():
    with pytest.raises(RubricParseError):
        evaluate(question("short_answer", '{"required_keywords": ['), "anything")


def test_unsupported_type_is_manual():
    out = evaluate(question("diagram", "x"), "y")
    assert out.grading_method == "manual"
