import logging
import redis
from redis.exceptions import LockError
from contextlib import contextmanager
from assessgrade.core.config import settings
from assessgrade.core.errors import ConflictError

logger = logging.getLogger(__name__)

redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


def lock_key(attempt_id: int) -> str:
    return f"grading:attempt:{attempt_id}"


@contextmanager
def attempt_lock(attempt_id: int):
    """Serialize grading of one attempt across workers; different attempts never contend."""
    lock = redis_client.lock(lock_key(attempt_id), timeout=settings.GRADING_LOCK_TIMEOUT,
                             blocking_timeout=settings.GRADING_LOCK_WAIT)
    if not lock.acquire():
        raise ConflictError(f"Attempt {attempt_id} is already being graded")
    try:
        yield
    finally:
        try:
            lock.release()
        except LockError:
            # expired while held; the row lock still protected the write
            logger.warning("Grading lock for attempt %s expired before release", attempt_id)
