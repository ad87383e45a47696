"""
AI equivalence check for whole-string short answers.

Only consulted after the normalized exact comparison has failed. One retry,
then the caller gets EvaluationTimeout and the answer goes to manual review.
"""
import logging
import re
from typing import Dict, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from assessgrade.core.errors import EvaluationTimeout, ProviderError
from assessgrade.services.ai_providers import ProviderPool

logger = logging.getLogger(__name__)

LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English",
    "ur": "Urdu",
    "ar": "Arabic",
    "fa": "Persian",
}

_VERDICT = re.compile(r"^[\s\"'`.*]*(true|false)[\s\"'`.*!]*$", re.IGNORECASE)


def map_language(code: Optional[str], names: Optional[Dict[str, str]] = None) -> str:
    names = names or LANGUAGE_NAMES
    return names.get((code or "").strip().lower(), "English")


def build_prompt(student: str, correct: str, language_name: str) -> str:
    return (
        f'In {language_name}, evaluate if the student\'s answer "{student}" matches the correct answer '
        f'"{correct}" for a short-answer question. Return "true" if they are equivalent (ignoring case and '
        f'minor phrasing differences), "false" otherwise. Reply with the single word true or false.'
    )


def parse_verdict(text: str) -> bool:
    m = _VERDICT.match(text or "")
    if not m:
        raise ProviderError(f"Unexpected equivalence verdict: {text[:80]!r}")
    return m.group(1).lower() == "true"


class EquivalenceChecker:
    def __init__(self, pool: ProviderPool, language_names: Optional[Dict[str, str]] = None,
                 retries: int = 1, wait_seconds: float = 0.0) -> None:
        self.pool = pool
        self.language_names = language_names or LANGUAGE_NAMES
        self.retries = retries
        self.wait_seconds = wait_seconds

    def is_equivalent(self, student: str, correct: str, language: str = "en") -> bool:
        prompt = build_prompt(student, correct, map_language(language, self.language_names))
        retrying = Retrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_fixed(self.wait_seconds),
            retry=retry_if_exception_type(ProviderError),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    text = self.pool.complete(prompt, max_output_tokens=10, temperature=0.0)
                    return parse_verdict(text)
        except ProviderError as exc:
            logger.warning("Equivalence check gave up after %d attempts: %s", self.retries + 1, exc.message)
            raise EvaluationTimeout(f"Equivalence check unavailable: {exc.message}") from exc
        raise EvaluationTimeout("Equivalence check produced no verdict")
