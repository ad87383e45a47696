"""
Shared FastAPI dependencies. Tests swap these through ``app.dependency_overrides``.
"""
from functools import lru_cache
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from assessgrade.core.cache import attempt_lock
from assessgrade.core.config import settings
from assessgrade.core.database import get_db
from assessgrade.jobs.queue import queue
from assessgrade.services.ai_providers import ProviderPool, build_pool
from assessgrade.services.equivalence import EquivalenceChecker
from assessgrade.services.grading import GradingOrchestrator


@lru_cache()
def get_generation_pool() -> Optional[ProviderPool]:
    return build_pool(settings)


@lru_cache()
def _checking_pool() -> Optional[ProviderPool]:
    return build_pool(settings, checking=True)


def get_equivalence() -> Optional[EquivalenceChecker]:
    if not settings.AI_EQUIVALENCE_ENABLED:
        return None
    pool = _checking_pool()
    return EquivalenceChecker(pool) if pool else None


def get_lock_factory():
    return attempt_lock


def get_queue():
    return queue


def get_orchestrator(db: Session = Depends(get_db), equivalence=Depends(get_equivalence),
                     lock_factory=Depends(get_lock_factory)) -> GradingOrchestrator:
    return GradingOrchestrator(db, equivalence=equivalence, lock_factory=lock_factory)
