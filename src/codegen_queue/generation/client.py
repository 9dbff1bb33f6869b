"""Generation client: provider calls with response caching and token accounting."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field

from codegen_queue.config import GenerationSettings
from codegen_queue.generation import prompts
from codegen_queue.generation.cache import TtlCache
from codegen_queue.generation.errors import GenerationError
from codegen_queue.generation.provider import GenerationProvider, ProviderReply, ProviderRequest
from codegen_queue.queue.models import FailureClass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GenerationResult:
    """Generated component code with the tokens spent producing it."""

    code: str
    tokens_used: int
    cached: bool = False


@dataclass(slots=True)
class ValidationReport:
    """Provider verdict on a component."""

    valid: bool
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {"valid": self.valid, "issues": list(self.issues)}


@dataclass(slots=True)
class TokenUsage:
    """Cumulative provider usage for one client instance."""

    requests: int = 0
    cache_hits: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class GenerationClient:
    """Calls the provider for code generation, improvement, explanation, tests and validation."""

    def __init__(
        self,
        provider: GenerationProvider,
        *,
        settings: GenerationSettings | None = None,
        cache: TtlCache[str] | None = None,
    ) -> None:
        self.provider = provider
        self.settings = settings or GenerationSettings()
        if cache is None:
            cache = TtlCache(
                ttl_seconds=self.settings.cache_ttl_seconds,
                max_entries=self.settings.cache_max_entries,
                sweep_interval_seconds=self.settings.cache_sweep_interval_seconds,
            )
        self.cache: TtlCache[str] = cache
        self._usage = TokenUsage()
        self._usage_lock = threading.Lock()

    def generate_component(self, prompt: str) -> GenerationResult:
        """Generate component code; identical prompts within the cache TTL cost no tokens."""

        _require_text(prompt, name="prompt", operation="generate_component")
        logger.debug("Generating component, prompt length=%d", len(prompt))

        cached = self.cache.get(prompt)
        if cached is not None:
            logger.info("Returning cached generation result")
            with self._usage_lock:
                self._usage.cache_hits += 1
            return GenerationResult(code=cached, tokens_used=0, cached=True)

        reply = self._complete(
            operation="generate_component",
            prompt=prompts.generate_component_prompt(prompt),
            max_tokens=self.settings.generate_max_tokens,
            temperature=self.settings.temperature,
        )
        self.cache.set(prompt, reply.text)
        return GenerationResult(code=reply.text, tokens_used=reply.total_tokens)

    def improve_code(self, code: str, feedback: str) -> str:
        _require_text(code, name="code", operation="improve_code")
        _require_text(feedback, name="feedback", operation="improve_code")
        reply = self._complete(
            operation="improve_code",
            prompt=prompts.improve_code_prompt(code, feedback),
            max_tokens=self.settings.improve_max_tokens,
        )
        return reply.text

    def explain_code(self, code: str) -> str:
        _require_text(code, name="code", operation="explain_code")
        reply = self._complete(
            operation="explain_code",
            prompt=prompts.explain_code_prompt(code),
            max_tokens=self.settings.explain_max_tokens,
        )
        return reply.text

    def generate_tests(self, code: str) -> str:
        _require_text(code, name="code", operation="generate_tests")
        reply = self._complete(
            operation="generate_tests",
            prompt=prompts.generate_tests_prompt(code),
            max_tokens=self.settings.tests_max_tokens,
        )
        return reply.text

    def validate_component(self, code: str) -> ValidationReport:
        _require_text(code, name="code", operation="validate_component")
        reply = self._complete(
            operation="validate_component",
            prompt=prompts.validate_component_prompt(code),
            max_tokens=self.settings.validate_max_tokens,
        )
        return parse_validation_reply(reply.text)

    def usage(self) -> TokenUsage:
        """Snapshot of cumulative usage."""

        with self._usage_lock:
            return TokenUsage(
                requests=self._usage.requests,
                cache_hits=self._usage.cache_hits,
                input_tokens=self._usage.input_tokens,
                output_tokens=self._usage.output_tokens,
            )

    def cache_size(self) -> int:
        return len(self.cache)

    def clear_cache(self) -> None:
        self.cache.clear()

    def _complete(
        self,
        *,
        operation: str,
        prompt: str,
        max_tokens: int,
        temperature: float | None = None,
    ) -> ProviderReply:
        reply = self.provider.complete(
            ProviderRequest(
                operation=operation,
                prompt=prompt,
                max_tokens=max_tokens,
                temperature=temperature,
            ),
        )
        with self._usage_lock:
            self._usage.requests += 1
            self._usage.input_tokens += reply.input_tokens
            self._usage.output_tokens += reply.output_tokens
        logger.info(
            "Provider %s: input_tokens=%d output_tokens=%d",
            operation,
            reply.input_tokens,
            reply.output_tokens,
        )
        return reply


def parse_validation_reply(text: str) -> ValidationReport:
    """Read the JSON verdict; fall back to keyword matching for free-form replies."""

    verdict = _extract_json_object(text)
    if verdict is not None:
        valid = verdict.get("valid")
        issues = verdict.get("issues", [])
        if isinstance(valid, bool) and isinstance(issues, list):
            return ValidationReport(
                valid=valid,
                issues=[str(issue) for issue in issues if str(issue).strip()],
            )

    lowered = text.lower()
    has_issues = "issue" in lowered or "error" in lowered
    return ValidationReport(valid=not has_issues, issues=[text] if has_issues else [])


def _extract_json_object(text: str) -> dict[str, object] | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _require_text(value: object, *, name: str, operation: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise GenerationError(
            f"{operation}: {name} must be a non-empty string.",
            failure_class=FailureClass.INPUT_CONTRACT_ERROR,
            operation=operation,
        )
