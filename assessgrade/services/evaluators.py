"""
Question-type evaluators.

``evaluate`` parses the question's correct answer, normalizes the student's
raw answer and dispatches on ``question_type``. Expected conditions (no
answer, no rubric, equivalence check unavailable) come back as a
``GradingOutcome``; only a malformed correct answer raises
(RubricParseError), which the orchestrator turns into a manual-review marker.

Rounding happens once, at the leaf: each essay criterion is rounded half-up
to a whole mark. Every other score is the question's marks as stored, so
decimal marks pass through untouched.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional

from assessgrade.core.errors import EvaluationTimeout
from assessgrade.services.aggregator import signed_score
from assessgrade.services.answer_keys import (
    ChoiceKey, EssayRubric, KeywordRubric, MatchingKey, TextKey, TrueFalseKey, as_boolean, parse_correct_answer,
)
from assessgrade.services.normalizer import is_unanswered, keyword_present, normalize, normalize_text

logger = logging.getLogger(__name__)

AUTO = "auto"
MANUAL = "manual"


@dataclass(frozen=True)
class GradingOutcome:
    is_correct: bool
    scored_marks: float
    grading_method: str
    feedback: str
    grading_notes: str = ""
    answered: bool = True


@dataclass
class EvaluationContext:
    equivalence: Optional[Any] = None  # anything with is_equivalent(student, correct, language)
    language: str = "en"
    essay_min_length: int = 50


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def unanswered_outcome() -> GradingOutcome:
    return GradingOutcome(is_correct=False, scored_marks=0.0, grading_method=AUTO,
                          feedback="No answer provided", answered=False)


def manual_outcome(feedback: str, notes: str = "", answered: bool = True) -> GradingOutcome:
    return GradingOutcome(is_correct=False, scored_marks=0.0, grading_method=MANUAL,
                          feedback=feedback, grading_notes=notes, answered=answered)


def _binary(question, ok: bool, correct_display: Any, notes: str = "") -> GradingOutcome:
    score = signed_score(ok, True, question.positive_marks, question.negative_marks)
    feedback = "Correct answer" if ok else f"Incorrect. Correct answer was: {correct_display}"
    return GradingOutcome(is_correct=ok, scored_marks=score, grading_method=AUTO, feedback=feedback, grading_notes=notes)


def _joined(raw: Any) -> Any:
    if isinstance(raw, (list, tuple)):
        return " ".join(str(v) for v in raw)
    return raw


# ---------------------------------------------------------------------------
# per-type evaluators
# ---------------------------------------------------------------------------

def evaluate_multiple_choice(question, key: ChoiceKey, raw: Any, ctx: EvaluationContext) -> GradingOutcome:
    answer = normalize("multiple_choice", raw)
    correct = normalize_text(key.answer)
    if isinstance(answer, frozenset):
        if not answer:
            return _binary(question, False, key.answer, "Empty selection")
        return _binary(question, correct in answer, key.answer)
    return _binary(question, answer == correct, key.answer)


def evaluate_true_false(question, key: TrueFalseKey, raw: Any, ctx: EvaluationContext) -> GradingOutcome:
    answer = normalize("true_false", raw)
    if isinstance(answer, frozenset):
        answer = next(iter(answer)) if len(answer) == 1 else None
    chosen = as_boolean(answer) if isinstance(answer, str) else None
    display = "True" if key.answer else "False"
    return _binary(question, chosen is not None and chosen == key.answer, display)


def evaluate_short_answer(question, key, raw: Any, ctx: EvaluationContext) -> GradingOutcome:
    answer = normalize("short_answer", _joined(raw))
    if isinstance(key, KeywordRubric):
        return _keyword_match(question, key, answer)
    return _whole_string(question, key, answer, raw, ctx)


def _keyword_match(question, key: KeywordRubric, answer: str) -> GradingOutcome:
    matched = [k for k in key.required_keywords if keyword_present(k, answer)]
    optional = [k for k in key.optional_keywords if keyword_present(k, answer)]
    ok = len(matched) >= key.min_required_match
    score = signed_score(ok, True, question.positive_marks, question.negative_marks)
    feedback = (f"Keyword matching: {len(matched)}/{len(key.required_keywords)} required keywords "
                f"(need {key.min_required_match})")
    if optional:
        feedback += f"; optional keywords found: {', '.join(optional)}"
    notes = f"matched: {', '.join(matched) or '-'}"
    return GradingOutcome(is_correct=ok, scored_marks=score, grading_method=AUTO, feedback=feedback, grading_notes=notes)


def _whole_string(question, key: TextKey, answer: str, raw: Any, ctx: EvaluationContext) -> GradingOutcome:
    if answer == normalize_text(key.answer):
        return _binary(question, True, key.answer)
    if ctx.equivalence is None or answer == "":
        return _binary(question, False, key.answer)
    try:
        equivalent = ctx.equivalence.is_equivalent(str(_joined(raw)), key.answer, ctx.language)
    except EvaluationTimeout as exc:
        logger.warning("Equivalence check unavailable for question %s: %s", getattr(question, "id", "?"), exc)
        return manual_outcome("Answer queued for instructor review", notes=f"Equivalence check failed: {exc.message}")
    return _binary(question, bool(equivalent), key.answer, notes="ai-equivalence" if equivalent else "")


def evaluate_matching(question, key: MatchingKey, raw: Any, ctx: EvaluationContext) -> GradingOutcome:
    try:
        pairs = normalize("matching", raw)
    except (TypeError, ValueError) as exc:
        return _binary(question, False, _rights(key.pairs), notes=f"Malformed matching answer: {exc}")
    ok = len(pairs) == len(key.pairs) and all(s[1] == c[1] for s, c in zip(pairs, key.pairs))
    return _binary(question, ok, _rights(key.pairs))


def _rights(pairs) -> str:
    return ", ".join(str(p[1]) for p in pairs)


def evaluate_essay(question, key: Optional[EssayRubric], raw: Any, ctx: EvaluationContext) -> GradingOutcome:
    if key is None:
        return manual_outcome("Essay requires manual grading", notes="No rubric provided for essay grading")
    answer = normalize("essay", _joined(raw))
    total = 0.0
    feedback, notes = [], []
    for c in key.criteria:
        if c.keywords:
            hits = sum(1 for k in c.keywords if keyword_present(k, answer))
            score = round_half_up(hits / len(c.keywords) * c.max_marks)
            feedback.append(f"{c.name}: {hits}/{len(c.keywords)} keywords found")
        else:
            score = min(c.max_marks, round_half_up(len(answer) / max(1, ctx.essay_min_length) * c.max_marks))
            if len(answer) >= ctx.essay_min_length:
                feedback.append(f"{c.name}: Good length and content")
            else:
                feedback.append(f"{c.name}: Answer too short, expected at least {ctx.essay_min_length} characters")
        total += score
        notes.append(f"{c.name}: {score:g}/{c.max_marks:g}")
    scored = min(float(total), float(question.positive_marks))
    return GradingOutcome(is_correct=scored >= float(question.positive_marks), scored_marks=scored, grading_method=AUTO,
                          feedback="; ".join(feedback), grading_notes="; ".join(notes))


EVALUATORS: Dict[str, Callable[..., GradingOutcome]] = {
    "multiple_choice": evaluate_multiple_choice,
    "true_false": evaluate_true_false,
    "short_answer": evaluate_short_answer,
    "matching": evaluate_matching,
    "essay": evaluate_essay,
}


def evaluate(question, raw_answer: Any, ctx: Optional[EvaluationContext] = None) -> GradingOutcome:
    """Grade one question. Raises RubricParseError for a malformed correct answer."""
    ctx = ctx or EvaluationContext()
    evaluator = EVALUATORS.get(question.question_type)
    if evaluator is None:
        return manual_outcome("Question type not supported for auto-grading",
                              notes=f"Unsupported type {question.question_type}", answered=not is_unanswered(raw_answer))
    if is_unanswered(raw_answer):
        return unanswered_outcome()
    key = parse_correct_answer(question.question_type, question.correct_answer)
    return evaluator(question, key, raw_answer, ctx)
