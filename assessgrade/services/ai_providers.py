"""
Generative-AI providers and the pool that rotates between them.

Callers never reach for a module-level client: they receive a ``ProviderPool``
holding an ordered list of providers and a rotation policy, so tests can hand
in fakes. A call goes to the primary chosen by the policy and falls back to
the next provider on any failure, up to ``max_attempts`` calls in total.
"""
import itertools
import logging
import random
import threading
from typing import List, Optional, Sequence

import httpx

from assessgrade.core.config import Settings
from assessgrade.core.errors import ProviderError, ProviderExhausted

logger = logging.getLogger(__name__)


class Provider:
    """Anything that turns a prompt into text."""

    name = "provider"

    def complete(self, prompt: str, *, max_output_tokens: int = 3000, temperature: float = 0.7) -> str:
        raise NotImplementedError


def _check_response(r: httpx.Response, name: str) -> None:
    if r.status_code == 429 or "RESOURCE_EXHAUSTED" in r.text:
        raise ProviderExhausted(f"{name} quota exhausted (HTTP {r.status_code})")
    if r.is_error:
        raise ProviderError(f"{name} returned HTTP {r.status_code}: {r.text[:200]}")


class GeminiProvider(Provider):
    name = "gemini"

    def __init__(self, api_key: str, *, model: str, base_url: str, timeout: float = 20.0,
                 client: Optional[httpx.Client] = None) -> None:
        if not api_key:
            raise ValueError("Gemini API key is not configured")
        self.api_key = api_key
        self.model = model
        self.url = f"{base_url.rstrip('/')}/{model}:generateContent"
        self._client = client or httpx.Client(timeout=timeout)

    def complete(self, prompt: str, *, max_output_tokens: int = 3000, temperature: float = 0.7) -> str:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"maxOutputTokens": max_output_tokens, "temperature": temperature},
        }
        try:
            r = self._client.post(self.url, params={"key": self.api_key}, json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"gemini timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"gemini request failed: {exc}") from exc
        _check_response(r, self.name)
        try:
            text = r.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError(f"Unexpected Gemini response: {r.text[:200]}") from exc
        if not text:
            raise ProviderError("Empty Gemini response")
        return text


class GroqProvider(Provider):
    """OpenAI-compatible chat completions endpoint."""

    name = "groq"

    def __init__(self, api_key: str, *, model: str, base_url: str, timeout: float = 20.0,
                 client: Optional[httpx.Client] = None) -> None:
        if not api_key:
            raise ValueError("Groq API key is not configured")
        self.model = model
        self.url = base_url
        self._headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        self._client = client or httpx.Client(timeout=timeout)

    def complete(self, prompt: str, *, max_output_tokens: int = 3000, temperature: float = 0.7) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": max_output_tokens,
        }
        try:
            r = self._client.post(self.url, headers=self._headers, json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"groq timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"groq request failed: {exc}") from exc
        _check_response(r, self.name)
        try:
            text = r.json()["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError(f"Unexpected Groq response: {r.text[:200]}") from exc
        if not text:
            raise ProviderError("Empty Groq response")
        return text


class ProviderPool:
    def __init__(self, providers: Sequence[Provider], policy: str = "random", max_attempts: int = 2,
                 rng: Optional[random.Random] = None) -> None:
        if not providers:
            raise ProviderError("No AI providers available")
        if policy not in ("random", "round_robin"):
            raise ValueError(f"Unknown rotation policy: {policy}")
        self.providers: List[Provider] = list(providers)
        self.policy = policy
        self.max_attempts = max(1, max_attempts)
        self._rng = rng or random.Random()
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def _start(self) -> int:
        n = len(self.providers)
        if self.policy == "round_robin":
            with self._lock:
                return next(self._counter) % n
        return self._rng.randrange(n)

    def attempt_order(self) -> List[Provider]:
        start, n = self._start(), len(self.providers)
        return [self.providers[(start + i) % n] for i in range(self.max_attempts)]

    def complete(self, prompt: str, **options) -> str:
        last_error: Optional[ProviderError] = None
        for i, provider in enumerate(self.attempt_order()):
            try:
                text = provider.complete(prompt, **options)
                logger.info("AI %s used: %s", "fallback" if i else "primary", provider.name)
                return text
            except ProviderError as exc:
                logger.warning("AI provider %s failed: %s", provider.name, exc.message)
                last_error = exc
        raise ProviderError(f"All AI providers failed: {last_error.message if last_error else 'unknown error'}")


def _secret(value) -> str:
    return value.get_secret_value().strip() if value is not None else ""


def build_pool(settings: Settings, *, checking: bool = False, client: Optional[httpx.Client] = None) -> Optional[ProviderPool]:
    """Build a pool from configuration; ``None`` when no key is configured.

    The checking pool prefers the dedicated checking key and falls back to
    the creation providers.
    """
    timeout = settings.AI_TIMEOUT_SECONDS
    gemini = dict(model=settings.GEMINI_MODEL, base_url=settings.GEMINI_BASE_URL, timeout=timeout, client=client)
    providers: List[Provider] = []
    checking_key = _secret(settings.GEMINI_CHECKING_API_KEY)
    groq_key = _secret(settings.GROQ_API_KEY)
    if checking and checking_key:
        providers.append(GeminiProvider(checking_key, **gemini))
    else:
        providers.extend(GeminiProvider(key, **gemini) for key in settings.gemini_keys())
        if groq_key:
            providers.append(GroqProvider(groq_key, model=settings.GROQ_MODEL,
                                          base_url=settings.GROQ_BASE_URL, timeout=timeout, client=client))
    if not providers:
        return None
    # the equivalence checker does its own single retry
    attempts = 1 if checking else settings.AI_MAX_ATTEMPTS
    return ProviderPool(providers, policy=settings.AI_PROVIDER_POLICY, max_attempts=attempts)
