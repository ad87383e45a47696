"""
Background regrade of every completed attempt of an assessment, typically
after an instructor fixed a broken rubric. Overridden answers keep their
instructor score.
"""
import logging
from typing import Optional

from rq import get_current_job

from assessgrade.core.config import settings
from assessgrade.core.database import SessionLocal
from assessgrade.services.ai_providers import build_pool
from assessgrade.services.equivalence import EquivalenceChecker
from assessgrade.services.grading import GradingOrchestrator

logger = logging.getLogger(__name__)


def _equivalence() -> Optional[EquivalenceChecker]:
    if not settings.AI_EQUIVALENCE_ENABLED:
        return None
    pool = build_pool(settings, checking=True)
    return EquivalenceChecker(pool) if pool else None


def regrade_assessment_job(assessment_id: int, session_factory=SessionLocal, equivalence=None, lock_factory=None):
    job = get_current_job()

    def progress(done: int, total: int) -> None:
        if job:
            job.meta.update({"done": done, "total": total}); job.save_meta()

    if job:
        job.meta.update({"state": "running", "assessment_id": assessment_id}); job.save_meta()
    db = session_factory()
    try:
        kwargs = {"equivalence": equivalence if equivalence is not None else _equivalence()}
        if lock_factory is not None:
            kwargs["lock_factory"] = lock_factory
        orchestrator = GradingOrchestrator(db, **kwargs)
        reports = orchestrator.regrade_assessment(assessment_id, on_progress=progress)
    except Exception:
        logger.exception("Regrade of assessment %s failed", assessment_id)
        if job:
            job.meta.update({"state": "failed"}); job.save_meta()
        raise
    finally:
        db.close()
    result = {
        "assessment_id": assessment_id,
        "regraded": len(reports),
        "attempts": [{"attempt_id": r.attempt_id, **r.aggregate.as_dict()} for r in reports],
    }
    if job:
        job.meta.update({"state": "done"}); job.save_meta()
    logger.info("Regraded %d attempts of assessment %s", len(reports), assessment_id)
    return result
