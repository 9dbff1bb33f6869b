"""Provider adapters for the external AI generation service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import anthropic

from codegen_queue.generation.errors import GenerationError
from codegen_queue.queue.models import FailureClass

logger = logging.getLogger(__name__)

_HTTP_BAD_REQUEST = 400
_HTTP_SERVER_ERROR = 500
# Request timeout and conflict are retried by the SDK itself.
_HTTP_RETRYABLE_CLIENT_ERRORS = {408: FailureClass.TIMEOUT, 409: FailureClass.PROVIDER_TRANSIENT}


@dataclass(slots=True)
class ProviderRequest:
    """One request/response exchange with the provider."""

    operation: str
    prompt: str
    max_tokens: int
    temperature: float | None = None


@dataclass(slots=True)
class ProviderReply:
    """Text reply with token usage as reported by the provider."""

    text: str
    input_tokens: int
    output_tokens: int
    model: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class GenerationProvider(Protocol):
    """Protocol implemented by provider adapters."""

    def complete(self, request: ProviderRequest) -> ProviderReply:
        """Send one prompt and return the text reply."""


class AnthropicProvider:
    """Anthropic Messages API adapter.

    SDK exceptions are translated into ``GenerationError`` so the executor
    can tell transient provider trouble from inputs that will never succeed.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        timeout_seconds: float = 60.0,
        max_retries: int = 0,
        client: anthropic.Anthropic | None = None,
    ) -> None:
        self.model = model
        self._client = client or anthropic.Anthropic(
            api_key=api_key,
            timeout=timeout_seconds,
            max_retries=max_retries,
        )

    def complete(self, request: ProviderRequest) -> ProviderReply:
        kwargs: dict[str, object] = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        try:
            message = self._client.messages.create(**kwargs)  # type: ignore[call-overload]
        except anthropic.APIError as error:
            raise _translate_error(error, operation=request.operation) from error

        text = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )
        if not text.strip():
            raise GenerationError(
                f"{request.operation}: provider returned no text content.",
                failure_class=FailureClass.PROVIDER_RESPONSE_INVALID,
                operation=request.operation,
            )
        return ProviderReply(
            text=text,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
            model=message.model,
        )

    def __repr__(self) -> str:
        return f"AnthropicProvider(model={self.model!r})"


def _translate_error(error: anthropic.APIError, *, operation: str) -> GenerationError:
    if isinstance(error, anthropic.APITimeoutError):
        failure_class = FailureClass.TIMEOUT
    elif isinstance(error, anthropic.APIConnectionError):
        failure_class = FailureClass.PROVIDER_TRANSIENT
    elif isinstance(error, anthropic.RateLimitError):
        failure_class = FailureClass.PROVIDER_RATE_LIMITED
    elif isinstance(error, anthropic.AuthenticationError | anthropic.PermissionDeniedError):
        failure_class = FailureClass.ACCESS_OR_AUTH
    elif isinstance(error, anthropic.NotFoundError):
        failure_class = FailureClass.MODEL_NOT_AVAILABLE
    elif isinstance(error, anthropic.APIStatusError):
        failure_class = _classify_status(error)
    else:
        failure_class = FailureClass.PROVIDER_TRANSIENT

    status_code = getattr(error, "status_code", None)
    logger.warning(
        "Provider call %s failed: status=%s class=%s: %s",
        operation,
        status_code,
        failure_class.value,
        error,
    )
    return GenerationError(
        f"{operation}: {error}",
        failure_class=failure_class,
        operation=operation,
        status_code=status_code,
    )


def _classify_status(error: anthropic.APIStatusError) -> FailureClass:
    if error.status_code >= _HTTP_SERVER_ERROR:
        return FailureClass.PROVIDER_TRANSIENT
    if error.status_code in _HTTP_RETRYABLE_CLIENT_ERRORS:
        return _HTTP_RETRYABLE_CLIENT_ERRORS[error.status_code]
    message = str(error).lower()
    if "credit balance" in message or "billing" in message or "quota" in message:
        return FailureClass.BILLING_OR_QUOTA
    if error.status_code >= _HTTP_BAD_REQUEST:
        return FailureClass.INPUT_CONTRACT_ERROR
    return FailureClass.PROVIDER_TRANSIENT
