"""Async client for the lesson content and speech provider."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from .content_loader import MalformedLessonError, exercise_from_dict
from .models import Difficulty, Exercise, ExerciseType

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

LESSON_SIZE = 5

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]


class ContentProviderError(Exception):
    """Base error for provider calls."""


class RateLimitedError(ContentProviderError):
    """Provider asked the client to slow down (HTTP 429)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientProviderError(ContentProviderError):
    """Server-side or transport failure that may succeed on retry."""


class InvalidResponseError(ContentProviderError):
    """Provider answered with content that cannot be used."""


class ContentGenerationFailed(ContentProviderError):
    """Lesson generation gave up; `cause` holds the last underlying error."""

    def __init__(self, message: str, cause: Exception, attempts: int) -> None:
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff schedule with a longer floor for rate limits."""

    max_attempts: int = 4
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    rate_limit_floor: float = 5.0

    def is_retryable(self, error: Exception) -> bool:
        return isinstance(error, (RateLimitedError, TransientProviderError))

    def delay_for(self, attempt: int, error: Exception) -> float:
        """Return the wait before retrying after failed attempt number `attempt` (1-based).

        Server `Retry-After` hints are honored up to `max_delay`.
        """
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))
        if isinstance(error, RateLimitedError):
            delay = min(self.max_delay, max(delay, self.rate_limit_floor, error.retry_after or 0.0))
        return delay


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: SleepFn = asyncio.sleep,
    description: str = "provider call",
) -> T:
    """Run `operation`, retrying retryable failures per `policy`.

    Raises ContentGenerationFailed once attempts are exhausted or a
    non-retryable provider error occurs.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except ContentProviderError as exc:
            if not policy.is_retryable(exc) or attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempt(s): %s", description, attempt, exc)
                raise ContentGenerationFailed(f"{description} failed: {exc}", cause=exc, attempts=attempt) from exc
            delay = policy.delay_for(attempt, exc)
            logger.warning("%s attempt %d failed (%s); retrying in %.1fs", description, attempt, exc, delay)
            await sleep(delay)


def fallback_exercises() -> tuple[Exercise, ...]:
    """Static exercises used when generation fails and nothing is cached."""
    return (
        Exercise(
            id=1,
            type=ExerciseType.TRANSLATE_TO_TARGET,
            prompt="Hello",
            correct_answer="Hola",
            options=("Hola", "Adiós", "Gato", "Perro"),
            translation="Hello",
            explanation="'Hola' is the standard greeting for 'Hello' in Spanish.",
        ),
        Exercise(
            id=2,
            type=ExerciseType.SELECT_MEANING,
            prompt="What does 'gracias' mean?",
            correct_answer="Thank you",
            options=("Please", "Thank you", "Goodbye", "Sorry"),
            translation="Thank you",
            explanation="'Gracias' is how you say thank you.",
        ),
        Exercise(
            id=3,
            type=ExerciseType.TRANSLATE_TO_SOURCE,
            prompt="Buenos días",
            correct_answer="Good morning",
            options=("Good", "morning", "night", "evening"),
            translation="Good morning",
            explanation="'Buenos días' is used until midday.",
        ),
    )


def _lesson_prompt(language_name: str, topic_text: str, difficulty: Difficulty) -> str:
    return f"""Create a list of {LESSON_SIZE} language learning exercises for a {difficulty.value} level student \
learning {language_name}. {topic_text}

The exercises should vary in type:
1. TRANSLATE_TO_TARGET: Translate English to {language_name}. Provide a "word bank" of options including distractors.
2. TRANSLATE_TO_SOURCE: Translate {language_name} to English. Provide a "word bank".
3. SELECT_MEANING: Simple multiple choice for vocabulary.
4. FILL_IN_THE_BLANK: A sentence with "___" marking the missing word.

Return ONLY a JSON object of the form:
{{"exercises": [{{"id": 1, "type": "...", "prompt": "...", "correctAnswer": "...", "options": ["..."],
"translation": "...", "explanation": "...", "pronunciation": "..."}}]}}

Ensure the content is appropriate for the level."""


class ContentProvider:
    """Client for an OpenAI-compatible completion and speech API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        *,
        speech_model: str = "tts-1",
        speech_voice: str = "alloy",
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.speech_model = speech_model
        self.speech_voice = speech_voice
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self.timeout = timeout
        self._client = client
        self._headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    @classmethod
    def from_settings(cls, settings: Settings) -> ContentProvider:
        return cls(
            settings.provider_base_url,
            settings.provider_api_key,
            settings.provider_model,
            speech_model=settings.speech_model,
            speech_voice=settings.speech_voice,
            timeout=settings.request_timeout_seconds,
            retry_policy=settings.retry_policy(),
        )

    async def generate_lesson(
        self, language_name: str, topic_name: str, difficulty: Difficulty
    ) -> tuple[Exercise, ...]:
        """Generate exercises for one topic."""
        prompt = _lesson_prompt(language_name, f'The topic is "{topic_name}".', difficulty)
        return await call_with_retry(
            lambda: self._generate(prompt),
            self.retry_policy,
            sleep=self._sleep,
            description=f"lesson generation ({language_name}/{topic_name})",
        )

    async def generate_practice(
        self, language_name: str, topic_names: Sequence[str], difficulty: Difficulty
    ) -> tuple[Exercise, ...]:
        """Generate a mixed review lesson across several topics."""
        if not topic_names:
            raise ValueError("Practice needs at least one topic.")
        topics = ", ".join(f'"{name}"' for name in topic_names)
        prompt = _lesson_prompt(language_name, f"This is a review session mixing the topics {topics}.", difficulty)
        return await call_with_retry(
            lambda: self._generate(prompt),
            self.retry_policy,
            sleep=self._sleep,
            description=f"practice generation ({language_name})",
        )

    async def synthesize_speech(self, text: str, language_code: str) -> bytes | None:
        """Return spoken audio for `text`, or None on any failure."""
        try:
            response = await self._post(
                "/audio/speech",
                {"model": self.speech_model, "voice": self.speech_voice, "input": text},
            )
            response.raise_for_status()
        except Exception as exc:
            logger.warning("Speech synthesis failed for %s: %s", language_code, exc)
            return None
        return response.content or None

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        """POST through the injected client, or a short-lived one per call."""
        if self._client is not None:
            return await self._client.post(f"{self.base_url}{path}", headers=self._headers, json=payload)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(f"{self.base_url}{path}", headers=self._headers, json=payload)

    async def _generate(self, prompt: str) -> tuple[Exercise, ...]:
        payload = await self._chat_json(prompt)
        return _exercises_from_payload(payload)

    async def _chat_json(self, prompt: str) -> object:
        try:
            response = await self._post(
                "/chat/completions",
                {
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "temperature": 0.7,
                    "response_format": {"type": "json_object"},
                },
            )
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"transport error: {exc}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ContentProviderError(f"request failed: {exc}") from exc

        _raise_for_status(response)
        try:
            content = response.json()["choices"][0]["message"]["content"]
            return json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise InvalidResponseError(f"unreadable completion: {exc}") from exc


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if status == 429:
        raise RateLimitedError("rate limited", retry_after=_retry_after(response))
    if status >= 500:
        raise TransientProviderError(f"server error {status}")
    if status >= 400:
        raise ContentProviderError(f"request rejected with status {status}")


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _exercises_from_payload(payload: object) -> tuple[Exercise, ...]:
    """Validate generated exercises; malformed content is never retried."""
    raw_items: Any = payload.get("exercises") if isinstance(payload, dict) else payload
    if not isinstance(raw_items, list) or not raw_items:
        raise InvalidResponseError("completion contained no exercises")
    items = raw_items[:LESSON_SIZE]
    if len(items) < LESSON_SIZE:
        raise InvalidResponseError(f"completion contained {len(items)} exercises, expected {LESSON_SIZE}")
    if not all(isinstance(item, dict) for item in items):
        raise InvalidResponseError("completion contained a non-object exercise")
    try:
        return tuple(exercise_from_dict(item, fallback_id=index + 1) for index, item in enumerate(items))
    except MalformedLessonError as exc:
        raise InvalidResponseError(str(exc)) from exc
