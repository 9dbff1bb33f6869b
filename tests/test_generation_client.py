from __future__ import annotations

import allure
import pytest
from conftest import FakeProvider

from codegen_queue.config import GenerationSettings
from codegen_queue.generation import GenerationClient, GenerationError, TtlCache
from codegen_queue.generation.client import parse_validation_reply
from codegen_queue.queue.models import FailureClass

pytestmark = [
    allure.epic("Generation"),
    allure.feature("Generation Client"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_cached_generation_costs_no_tokens() -> None:
    clock = FakeClock()
    provider = FakeProvider("<Button />", "<Button v2 />")
    client = GenerationClient(
        provider,
        settings=GenerationSettings(cache_ttl_seconds=3600),
        cache=TtlCache(ttl_seconds=3600, clock=clock),
    )

    first = client.generate_component("a button")
    second = client.generate_component("a button")
    clock.now = 3600.0
    third = client.generate_component("a button")

    assert first.code == "<Button />"
    assert first.tokens_used == 42
    assert not first.cached
    assert second.code == "<Button />"
    assert second.tokens_used == 0
    assert second.cached
    assert third.code == "<Button v2 />"
    assert third.tokens_used > 0
    assert len(provider.requests) == 2

    usage = client.usage()
    assert usage.requests == 2
    assert usage.cache_hits == 1
    assert usage.total_tokens == 84


def test_injected_cache_is_used_even_when_empty() -> None:
    cache: TtlCache[str] = TtlCache(ttl_seconds=10, max_entries=7)
    client = GenerationClient(FakeProvider("<Card />"), cache=cache)

    client.generate_component("a card")

    assert client.cache is cache
    assert len(cache) == 1
    assert cache.get("a card") == "<Card />"


def test_requests_use_operation_budgets() -> None:
    provider = FakeProvider(
        "better code",
        "it renders a button",
        "test('renders')",
        '{"valid": true, "issues": []}',
        "generated",
    )
    client = GenerationClient(provider, settings=GenerationSettings(temperature=0.3))

    assert client.improve_code("old code", "make it blue") == "better code"
    assert client.explain_code("code") == "it renders a button"
    assert client.generate_tests("code") == "test('renders')"
    assert client.validate_component("code").valid
    client.generate_component("a card")

    budgets = {request.operation: request.max_tokens for request in provider.requests}
    assert budgets == {
        "improve_code": 8000,
        "explain_code": 4000,
        "generate_tests": 6000,
        "validate_component": 4000,
        "generate_component": 8000,
    }
    assert "make it blue" in provider.requests[0].prompt
    assert provider.requests[-1].temperature == 0.3


def test_empty_input_is_rejected_without_provider_call() -> None:
    provider = FakeProvider(default=None)
    client = GenerationClient(provider)

    with pytest.raises(GenerationError) as raised:
        client.improve_code("code", "   ")

    assert raised.value.failure_class == FailureClass.INPUT_CONTRACT_ERROR
    assert not raised.value.transient
    assert provider.requests == []


def test_provider_errors_propagate_and_are_not_cached() -> None:
    provider = FakeProvider(
        GenerationError("overloaded", failure_class=FailureClass.PROVIDER_TRANSIENT),
        "<Ok />",
    )
    client = GenerationClient(provider)

    with pytest.raises(GenerationError):
        client.generate_component("a button")
    result = client.generate_component("a button")

    assert result.code == "<Ok />"
    assert not result.cached
    assert client.cache_size() == 1


def test_validation_reply_prefers_json_verdict() -> None:
    report = parse_validation_reply(
        'Here is my review:\n{"valid": false, "issues": ["missing key prop", ""]}',
    )

    assert not report.valid
    assert report.issues == ["missing key prop"]
    assert report.to_dict() == {"valid": False, "issues": ["missing key prop"]}


@pytest.mark.parametrize(
    ("text", "valid"),
    [
        ("Looks good to me.", True),
        ("Found an issue with state handling.", False),
        ("Syntax error on line 3.", False),
    ],
)
def test_validation_reply_keyword_fallback(text: str, valid: bool) -> None:
    report = parse_validation_reply(text)

    assert report.valid is valid
    assert report.issues == ([] if valid else [text])
