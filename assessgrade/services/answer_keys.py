"""
Correct-answer variants.

A question's stored ``correct_answer`` is polymorphic on ``question_type``.
It is parsed exactly once into one of the frozen dataclasses below and the
evaluators only ever see the parsed form.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple, Union

from assessgrade.core.errors import RubricParseError
from assessgrade.services.normalizer import normalize_pairs, normalize_text


@dataclass(frozen=True)
class ChoiceKey:
    answer: str


@dataclass(frozen=True)
class TrueFalseKey:
    answer: bool


@dataclass(frozen=True)
class TextKey:
    answer: str


@dataclass(frozen=True)
class KeywordRubric:
    required_keywords: Tuple[str, ...]
    optional_keywords: Tuple[str, ...] = ()
    min_required_match: int = 0
    grading_type: str = "keyword_match"


@dataclass(frozen=True)
class RubricCriterion:
    name: str
    max_marks: float
    keywords: Tuple[str, ...] = ()
    description: Optional[str] = None


@dataclass(frozen=True)
class EssayRubric:
    criteria: Tuple[RubricCriterion, ...] = field(default_factory=tuple)

    @property
    def max_marks(self) -> float:
        return sum(c.max_marks for c in self.criteria)


@dataclass(frozen=True)
class MatchingKey:
    pairs: Tuple[Tuple[Any, Any], ...]


AnswerKey = Union[ChoiceKey, TrueFalseKey, TextKey, KeywordRubric, EssayRubric, MatchingKey]

_TRUE = {"true", "t", "yes", "1"}
_FALSE = {"false", "f", "no", "0"}


def as_boolean(text: str) -> Optional[bool]:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return None


def _decode(raw: Any, *, strict: bool = True) -> Any:
    """JSON columns sometimes hold a JSON document encoded a second time as a string.

    Without ``strict`` a string that fails to decode is returned unchanged.
    """
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped[:1] in ("{", "["):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError as exc:
                if strict:
                    raise RubricParseError(f"Correct answer is not valid JSON: {exc.msg}") from exc
    return raw


def _keywords(value: Any, label: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)) or not all(isinstance(k, str) for k in value):
        raise RubricParseError(f"{label} must be a list of strings")
    return tuple(k for k in value if k.strip())


def _number(value: Any, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise RubricParseError(f"{label} must be a number") from None
    return float(value)


def parse_keyword_rubric(data: dict) -> KeywordRubric:
    required = _keywords(data.get("required_keywords"), "required_keywords")
    if not required:
        raise RubricParseError("Keyword rubric needs at least one required keyword")
    optional = _keywords(data.get("optional_keywords"), "optional_keywords")
    raw_min = data.get("min_required_match")
    minimum = len(required) if raw_min is None else int(_number(raw_min, "min_required_match"))
    # a threshold outside [1, len(required)] would make the rubric meaningless
    minimum = max(1, min(minimum, len(required)))
    return KeywordRubric(required_keywords=required, optional_keywords=optional, min_required_match=minimum,
                         grading_type=str(data.get("grading_type") or "keyword_match"))


def parse_essay_rubric(data: Any) -> EssayRubric:
    if isinstance(data, list):
        data = {"criteria": data}
    if not isinstance(data, dict):
        raise RubricParseError("Essay rubric must be an object with a criteria list")
    raw_criteria = data.get("criteria")
    if not isinstance(raw_criteria, list) or not raw_criteria:
        raise RubricParseError("Essay rubric must list at least one criterion")
    criteria = []
    for i, c in enumerate(raw_criteria, start=1):
        if not isinstance(c, dict):
            raise RubricParseError(f"Criterion {i} is not an object")
        max_marks = _number(c.get("max_marks"), f"criteria[{i}].max_marks")
        if max_marks < 0:
            raise RubricParseError(f"criteria[{i}].max_marks must not be negative")
        criteria.append(RubricCriterion(name=str(c.get("name") or f"Criterion {i}"), max_marks=max_marks,
                                        keywords=_keywords(c.get("keywords"), f"criteria[{i}].keywords"),
                                        description=c.get("description")))
    return EssayRubric(criteria=tuple(criteria))


def parse_correct_answer(question_type: str, raw: Any) -> Optional[AnswerKey]:
    """Parse a stored correct answer into its variant.

    Returns ``None`` only for an essay without a rubric, which is not
    auto-gradable. Raises RubricParseError for anything malformed.
    """
    if question_type == "multiple_choice":
        data = _decode(raw, strict=False)
        if isinstance(data, dict) and "answer" in data:
            data = data["answer"]
        elif isinstance(raw, str):
            # option text such as "[0, 1)" is not a document
            data = raw
        if data is None or isinstance(data, (dict, list)) or str(data).strip() == "":
            raise RubricParseError("Multiple choice question has no correct option")
        return ChoiceKey(str(data))
    if question_type == "true_false":
        data = raw
        if isinstance(data, bool):
            return TrueFalseKey(data)
        value = as_boolean(normalize_text(data)) if data is not None else None
        if value is not None:
            return TrueFalseKey(value)
        raise RubricParseError(f"True/false answer must be true or false, got {data!r}")
    if question_type == "short_answer":
        # only a string naming required_keywords must decode; anything else may be plain answer text
        data = _decode(raw, strict=isinstance(raw, str) and "required_keywords" in raw)
        if isinstance(data, dict):
            if "required_keywords" in data:
                return parse_keyword_rubric(data)
            if "answer" in data and isinstance(data["answer"], str):
                return TextKey(data["answer"])
            if isinstance(raw, str):
                return TextKey(raw)
            raise RubricParseError("Short answer rubric has no required_keywords")
        if isinstance(data, list) and isinstance(raw, str):
            data = raw
        if data is None or isinstance(data, list) or str(data).strip() == "":
            raise RubricParseError("Short answer question has no expected answer")
        return TextKey(str(data))
    data = _decode(raw)
    if question_type == "matching":
        try:
            pairs = normalize_pairs(data)
        except (TypeError, ValueError) as exc:
            raise RubricParseError(f"Matching answer must be a list of pairs: {exc}") from exc
        if not pairs:
            raise RubricParseError("Matching answer has no pairs")
        return MatchingKey(pairs)
    if question_type == "essay":
        if data is None or data == "" or data == {}:
            return None
        return parse_essay_rubric(data)
    raise RubricParseError(f"Unsupported question type: {question_type}")
