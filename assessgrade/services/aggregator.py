"""
Scoring aggregation.

Per-question scores are kept signed and unclamped for audit; only the
attempt total is clamped at zero.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

MANUAL = "manual"


def signed_score(is_correct: bool, answered: bool, positive_marks: float, negative_marks: float) -> float:
    """Score for a right/wrong question. Skipping is never penalized."""
    if not answered:
        return 0.0
    if is_correct:
        return float(positive_marks)
    return -abs(float(negative_marks or 0))


@dataclass(frozen=True)
class ScoredItem:
    positive_marks: float
    scored_marks: Optional[float]
    grading_method: Optional[str]


@dataclass(frozen=True)
class AggregateResult:
    total_score: float
    max_score: float
    percentage: float
    auto_graded_count: int
    manual_required_count: int
    status: str
    raw_total: float

    def as_dict(self) -> dict:
        return {
            "total_score": self.total_score, "max_score": self.max_score, "percentage": self.percentage,
            "auto_graded_count": self.auto_graded_count, "manual_required_count": self.manual_required_count,
            "status": self.status, "raw_total": self.raw_total,
        }


def aggregate(items: Iterable[ScoredItem]) -> AggregateResult:
    raw_total = 0.0
    max_score = 0.0
    auto = manual = 0
    for item in items:
        max_score += float(item.positive_marks or 0)
        raw_total += float(item.scored_marks or 0)
        if item.grading_method == MANUAL or item.grading_method is None:
            manual += 1
        else:
            auto += 1
    total = max(0.0, raw_total)
    percentage = round(total / max_score * 100, 2) if max_score > 0 else 0.0
    return AggregateResult(
        total_score=total, max_score=max_score, percentage=percentage,
        auto_graded_count=auto, manual_required_count=manual,
        status="fully_graded" if manual == 0 else "partially_graded", raw_total=raw_total,
    )
