"""
Answer normalization.

One canonical text normalization is used everywhere a string is compared:
unescape backslash-escaped quotes, lower-case, strip surrounding quotes and
whitespace, and collapse internal whitespace. Matching answers are left
untouched apart from being coerced into a tuple of ``(left, right)`` pairs.
"""
import re
from typing import Any

QUOTE_CHARS = "\"'`“”‘’"
_WS = re.compile(r"\s+")
_ESCAPED_QUOTE = re.compile(r'\\+"')
_EDGES = re.compile(r"^[\s" + re.escape(QUOTE_CHARS) + r"]+|[\s" + re.escape(QUOTE_CHARS) + r"]+$")

TEXT_TYPES = ("multiple_choice", "true_false", "short_answer", "essay")


class _Unanswered:
    """Sentinel for a question the student never answered."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNANSWERED"

    def __bool__(self) -> bool:
        return False


UNANSWERED = _Unanswered()


def is_unanswered(value: Any) -> bool:
    return value is None or value is UNANSWERED


def normalize_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    text = _ESCAPED_QUOTE.sub('"', str(value)).lower()
    text = _EDGES.sub("", text)
    return _WS.sub(" ", text)


def normalize_pairs(value: Any) -> tuple:
    if isinstance(value, str):
        raise ValueError("Matching answer must be a list of pairs")
    if isinstance(value, dict):
        return tuple((k, v) for k, v in value.items())
    pairs = []
    for item in value:
        if isinstance(item, dict):
            pairs.append((item.get("left"), item.get("right")))
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            pairs.append((item[0], item[1]))
        elif isinstance(item, str):
            # bare right-hand selection, position gives the left side
            pairs.append((None, item))
        else:
            raise ValueError(f"Not a matching pair: {item!r}")
    return tuple(pairs)


def normalize(question_type: str, value: Any):
    """Canonicalize a raw answer so that plain equality decides correctness."""
    if is_unanswered(value):
        return UNANSWERED
    if question_type == "matching":
        return normalize_pairs(value)
    if question_type not in TEXT_TYPES:
        raise ValueError(f"Unknown question type: {question_type}")
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(normalize_text(v) for v in value)
    return normalize_text(value)


def keyword_present(keyword: str, normalized_answer: str) -> bool:
    needle = normalize_text(keyword)
    return bool(needle) and needle in normalized_answer
