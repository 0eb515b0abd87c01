"""LiteLLM wrapper returning explicit result values.

All completion and embedding calls in the batch pipeline route through this
module. ``request_json`` never raises for provider failures: it returns
``Success``, ``TransientError`` or ``PermanentError`` and leaves retrying to
the caller (``call_with_backoff``, a tenacity policy). LiteLLM's own retry is
disabled (num_retries=0) so attempts are counted in one place.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

import litellm
from pydantic import BaseModel, ValidationError
from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from docstream.errors import ModelCallFailed
from docstream.rag.llm_cache import ResponseCache

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


# ------------------------------------------------------------------
# Result type
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Success(Generic[T]):
    """A validated model response.

    Attributes:
        value: The parsed pydantic object.
        raw: Response text as returned by the provider.
        reprompted: True when the corrective re-prompt was needed.
    """

    value: T
    raw: str = ""
    reprompted: bool = False


@dataclass(frozen=True)
class TransientError:
    """Retryable failure: rate limit, timeout, connection, 5xx, empty response."""

    message: str
    retry_after: float | None = None
    status_code: int | None = None


@dataclass(frozen=True)
class PermanentError:
    """Non-retryable failure: bad request, auth, unknown model, unparseable output."""

    message: str
    status_code: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


LLMResult = Union[Success, TransientError, PermanentError]


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


# ------------------------------------------------------------------
# Error classification
# ------------------------------------------------------------------

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)

_PERMANENT_TYPES: tuple[type[BaseException], ...] = (
    litellm.ContextWindowExceededError,
    litellm.BadRequestError,
    litellm.AuthenticationError,
    litellm.PermissionDeniedError,
    litellm.NotFoundError,
    litellm.UnprocessableEntityError,
)

_PERMANENT_STATUS = {400, 401, 403, 404, 422}


def classify_exception(exc: BaseException) -> TransientError | PermanentError:
    """Map a provider exception onto the result type."""
    status = getattr(exc, "status_code", None)
    status = status if isinstance(status, int) else None
    message = f"{type(exc).__name__}: {exc}"

    if isinstance(exc, _PERMANENT_TYPES):
        return PermanentError(message, status_code=status)
    if isinstance(exc, _TRANSIENT_TYPES):
        return TransientError(message, retry_after=_retry_after(exc), status_code=status)
    if status in _PERMANENT_STATUS:
        return PermanentError(message, status_code=status)
    if status == 429 or (status is not None and status >= 500):
        return TransientError(message, retry_after=_retry_after(exc), status_code=status)
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransientError(message)
    return PermanentError(message, status_code=status)


def _retry_after(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# ------------------------------------------------------------------
# Structured completion
# ------------------------------------------------------------------

_CORRECTIVE_PROMPT = (
    "Your previous reply could not be used: {error}\n"
    "Reply again with ONLY a JSON object that matches the requested schema. "
    "No prose, no markdown fences."
)


def request_json(
    model: str,
    system: str,
    user: str,
    schema: type[T],
    *,
    max_tokens: int = 2048,
    temperature: float = 0.0,
    timeout: float = 120.0,
    cache: ResponseCache | None = None,
    purpose: str = "general",
) -> LLMResult:
    """Ask *model* for a JSON object matching *schema*.

    One provider call, plus one corrective re-prompt carrying the validation
    error when the first reply does not parse. A second parse failure is a
    ``PermanentError``.

    Args:
        model: LiteLLM model string (provider/model format).
        system: System prompt.
        user: User prompt.
        schema: Pydantic model the reply must validate against.
        max_tokens: Maximum output tokens.
        temperature: Sampling temperature (0 = deterministic).
        timeout: Per-call timeout in seconds.
        cache: Optional reply cache; a hit skips the provider call and a
            validated reply is stored.
        purpose: Cache label (``classification``, ``proposal``...).
    """
    messages: list[dict[str, str]] = [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]

    key = ""
    if cache is not None:
        key = ResponseCache.make_key(purpose, model, messages, schema)
        cached = cache.get(key)
        if cached is not None:
            try:
                return Success(value=schema.model_validate_json(_strip_fences(cached)), raw=cached)
            except ValidationError:
                logger.warning("Cached %s reply no longer validates; calling %s", purpose, model)

    reply = _complete(model, messages, max_tokens, temperature, timeout)
    if not isinstance(reply, str):
        return reply

    reprompted = False
    try:
        value = schema.model_validate_json(_strip_fences(reply))
    except ValidationError as exc:
        logger.info("Response from %s invalid; re-prompting once", model)
        messages = messages + [
            {"role": "assistant", "content": reply},
            {"role": "user", "content": _CORRECTIVE_PROMPT.format(error=_short(exc))},
        ]
        reply = _complete(model, messages, max_tokens, temperature, timeout)
        if not isinstance(reply, str):
            return reply
        try:
            value = schema.model_validate_json(_strip_fences(reply))
        except ValidationError as second:
            return PermanentError(
                f"Response from {model} did not match {schema.__name__} "
                f"after a corrective re-prompt",
                details={"errors": second.errors(include_url=False)},
            )
        reprompted = True

    if cache is not None:
        cache.put(key, purpose, model, reply)
    return Success(value=value, raw=reply, reprompted=reprompted)


def _complete(
    model: str,
    messages: list[dict[str, str]],
    max_tokens: int,
    temperature: float,
    timeout: float,
) -> str | TransientError | PermanentError:
    """One provider call. Returns the reply text or the classified failure."""
    try:
        response = litellm.completion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
            num_retries=0,
        )
    except Exception as exc:
        result = classify_exception(exc)
        logger.warning("Model call to %s failed: %s", model, result.message)
        return result

    content = _response_text(response)
    if not content.strip():
        return TransientError(f"Empty response from {model}")
    return content


def _response_text(response: Any) -> str:
    try:
        return response.choices[0].message.content or ""
    except (AttributeError, IndexError):
        return ""


def _strip_fences(text: str) -> str:
    """Drop a surrounding ```json fence; models add one despite instructions."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def _short(exc: ValidationError) -> str:
    errors = exc.errors(include_url=False)[:5]
    return json.dumps(
        [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in errors],
        default=str,
    )


# ------------------------------------------------------------------
# Backoff (caller-driven)
# ------------------------------------------------------------------


class _wait_retry_after(wait_base):
    """Exponential wait, raised to a provider ``retry_after`` hint (both capped)."""

    def __init__(self, base_delay: float, max_delay: float) -> None:
        self._exponential = wait_exponential(multiplier=base_delay, max=max_delay)
        self._max_delay = max_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._exponential(retry_state)
        hint = getattr(retry_state.outcome.result(), "retry_after", None)
        if hint:
            delay = max(delay, min(hint, self._max_delay))
        return delay


def call_with_backoff(
    fn: Callable[[], LLMResult],
    *,
    attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    sleep: Callable[[float], None] = time.sleep,
) -> LLMResult:
    """Call *fn* until it returns a non-transient result or *attempts* runs out.

    Sleeps ``base_delay * 2**n`` (capped at *max_delay*, raised to a provider
    ``retry_after`` hint) between transient results.

    Returns:
        The first ``Success`` or ``PermanentError``, else the last ``TransientError``.
    """
    attempts = max(1, attempts)

    def log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            "Transient model error (attempt %d/%d), retrying in %.1fs: %s",
            retry_state.attempt_number,
            attempts,
            retry_state.next_action.sleep,
            retry_state.outcome.result().message,
        )

    retrying = Retrying(
        retry=retry_if_result(lambda r: isinstance(r, TransientError)),
        stop=stop_after_attempt(attempts),
        wait=_wait_retry_after(base_delay, max_delay),
        sleep=sleep,
        before_sleep=log_retry,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )
    return retrying(fn)


# ------------------------------------------------------------------
# Embeddings and tokens
# ------------------------------------------------------------------


def embed(
    model: str,
    texts: list[str],
    *,
    attempts: int = 3,
    base_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> list[list[float]]:
    """Embed *texts* with *model*, backing off on transient failures.

    Raises:
        ModelCallFailed: On provider failure; ``transient`` tells the caller
            whether a later retry may succeed.
    """
    if not texts:
        return []

    def attempt() -> LLMResult:
        try:
            response = litellm.embedding(model=model, input=texts, num_retries=0)
        except Exception as exc:
            return classify_exception(exc)
        return Success(value=[item["embedding"] for item in response.data])

    result = call_with_backoff(attempt, attempts=attempts, base_delay=base_delay, sleep=sleep)
    if isinstance(result, Success):
        return result.value
    raise ModelCallFailed(
        f"Embedding with {model} failed: {result.message}",
        transient=isinstance(result, TransientError),
    )


def count_tokens(model: str, text: str) -> int:
    """Count tokens in *text* for *model* using LiteLLM's provider-aware counter.

    Falls back to character-based approximation (4 chars ≈ 1 token) if the model
    is not supported by litellm.token_counter().
    """
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        return max(1, len(text) // 4)
