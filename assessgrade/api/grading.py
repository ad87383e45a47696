import math
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, constr, field_validator
from typing import Optional
from sqlalchemy.orm import Session
from assessgrade.api.deps import get_equivalence, get_generation_pool, get_lock_factory
from assessgrade.core.auth import require_roles, TokenData
from assessgrade.core.config import settings
from assessgrade.core.database import get_db
from assessgrade.services.evaluators import EVALUATORS
from assessgrade.services.overrides import override

router = APIRouter()

class OverrideIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    answer_id: int = Field(alias="answerId")
    new_score: float = Field(alias="newScore")
    feedback: Optional[str] = None
    reason: constr(strip_whitespace=True, min_length=1)

    @field_validator("new_score")
    @classmethod
    def finite(cls, v: float) -> float:
        if not math.isfinite(v): raise ValueError("newScore must be a finite number")
        return v


@router.post("/override", dependencies=[Depends(require_roles("instructor","admin"))])
def override_answer(payload: OverrideIn, user: TokenData = Depends(require_roles("instructor","admin")),
                    db: Session = Depends(get_db), lock_factory=Depends(get_lock_factory)):
    res = override(db, payload.answer_id, payload.new_score, payload.feedback, payload.reason, user, lock_factory=lock_factory)
    a = res.answer
    return {
        "answer": {"answer_id": a.id, "attempt_id": a.attempt_id, "question_id": a.question_id, "score": a.score,
                   "is_correct": a.is_correct, "grading_method": a.grading_method, "feedback": a.feedback,
                   "grading_notes": a.grading_notes, "overridden_by": a.overridden_by, "overridden_at": a.overridden_at},
        "attempt": {"attempt_id": a.attempt_id, **res.aggregate.as_dict()},
    }


@router.get("/status")
def grading_status(pool=Depends(get_generation_pool), equivalence=Depends(get_equivalence)):
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "question_types": list(EVALUATORS),
        "features": {
            "question_generation": pool is not None,
            "ai_equivalence": equivalence is not None,
            "provider_policy": settings.AI_PROVIDER_POLICY,
            "providers": [p.name for p in pool.providers] if pool else [],
            "short_answer_keyword_mode": "binary",
            "essay_min_length": settings.ESSAY_MIN_LENGTH,
        },
    }
