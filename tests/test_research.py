"""Tests for the research query builder and Perplexity client."""

import asyncio
import json

import httpx
import pytest

from autofill.agents.errors import ResearchFailure
from autofill.agents.models import ExtractedData, FieldContext, FieldRequest, VehicleIdentity
from autofill.agents.research import (
    PerplexityResearcher,
    build_research_query,
    build_search_prompt,
    calculate_search_confidence,
    extract_sources,
)
from autofill.core.retry import RetryPolicy

NO_WAIT = RetryPolicy(max_attempts=3, base_delay_s=0)


def _researcher(handler, policy=NO_WAIT, budget_s=30.0):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PerplexityResearcher(
        api_key="test-key", client=client, retry_policy=policy, budget_s=budget_s
    )


def _completion(content, tokens=42):
    return httpx.Response(
        200,
        json={"choices": [{"message": {"content": content}}], "usage": {"total_tokens": tokens}},
    )


# ── Query Builder ────────────────────────────────────────────────────


def test_query_uses_field_template_and_vehicle():
    ctx = FieldContext(
        extracted_data=ExtractedData.model_validate(
            {"make": "VW", "model": "T-Roc", "variant": "Style", "year": 2023}
        )
    )
    query = build_research_query(FieldRequest(field_name="fuel_type"), ctx)
    assert "VW T-Roc Style 2023" in query
    assert "fuel" in query


def test_query_generic_fallback_and_placeholder():
    query = build_research_query(FieldRequest(field_name="paint_code"), FieldContext())
    assert "paint_code" in query
    assert "unknown vehicle" in query


def test_query_make_only():
    ctx = FieldContext(current_form_data={"make": "Skoda"})
    query = build_research_query(FieldRequest(field_name="cylinders"), ctx)
    assert "engine of the Skoda have?" in query


def test_search_prompt_includes_vehicle_block():
    prompt = build_search_prompt("q?", VehicleIdentity(make="BMW", model="X5", year=2021))
    assert prompt.startswith("Vehicle: BMW X5 (2021)")
    assert "CONFIDENCE: [High/Medium/Low]" in prompt


# ── Scoring ──────────────────────────────────────────────────────────


def test_extract_sources_dedups_urls_and_sources_line():
    content = (
        "ANSWER: 150 PS (https://vw.de/spec)\n"
        "CONFIDENCE: High\n"
        "SOURCES: manufacturer brochure, https://vw.de/spec"
    )
    sources = extract_sources(content)
    assert sources == ["https://vw.de/spec", "manufacturer brochure"]


def test_confidence_high_with_sources_and_figures():
    content = "ANSWER: 150 PS\nCONFIDENCE: High"
    assert calculate_search_confidence(content, ["official site"]) == 100


def test_confidence_low_and_hedging():
    content = "ANSWER: possibly a diesel\nCONFIDENCE: Low"
    assert calculate_search_confidence(content, []) == 15


def test_confidence_base():
    assert calculate_search_confidence("no idea", []) == 50


# ── Client ───────────────────────────────────────────────────────────


def test_missing_api_key_raises(monkeypatch):
    monkeypatch.delenv("PERPLEXITY_API_KEY", raising=False)
    with pytest.raises(ResearchFailure):
        PerplexityResearcher()


def test_search_success():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return _completion("ANSWER: 150 PS\nCONFIDENCE: High\nSOURCES: https://vw.de")

    result = asyncio.run(_researcher(handler).search("How much power?"))
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["model"] == "sonar"
    assert seen["body"]["temperature"] == 0.1
    assert result.confidence == 100
    assert result.sources == ["https://vw.de"]
    assert result.tokens_used == 42


def test_search_retries_rate_limit_then_succeeds():
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(429)
        return _completion("ANSWER: Diesel")

    result = asyncio.run(_researcher(handler).search("fuel?"))
    assert len(calls) == 3
    assert result.result_text == "ANSWER: Diesel"


def test_search_degrades_after_exhausted_retries():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(429)

    result = asyncio.run(_researcher(handler).search("fuel?"))
    assert len(calls) == 3
    assert result.confidence == 0
    assert result.result_text == ""
    assert result.sources == []


def test_search_does_not_retry_server_error():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(500)

    result = asyncio.run(_researcher(handler).search("fuel?"))
    assert len(calls) == 1
    assert result.confidence == 0


def test_search_retries_transport_errors():
    calls = []

    def handler(request):
        calls.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    result = asyncio.run(_researcher(handler).search("fuel?"))
    assert len(calls) == 3
    assert result.confidence == 0


def test_search_retries_slow_attempt_within_budget():
    calls = []

    async def handler(request):
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(5)
        return _completion("ANSWER: Diesel\nCONFIDENCE: High")

    researcher = _researcher(
        handler, policy=RetryPolicy(max_attempts=3, base_delay_s=0.01), budget_s=0.5
    )
    result = asyncio.run(asyncio.wait_for(researcher.search("fuel?"), 0.5))

    assert len(calls) == 2
    assert result.result_text.startswith("ANSWER: Diesel")
    assert result.confidence > 0


def test_search_gives_up_when_every_attempt_is_slow():
    calls = []

    async def handler(request):
        calls.append(1)
        await asyncio.sleep(5)

    researcher = _researcher(
        handler, policy=RetryPolicy(max_attempts=2, base_delay_s=0.01), budget_s=0.2
    )
    result = asyncio.run(asyncio.wait_for(researcher.search("fuel?"), 0.5))

    assert len(calls) == 2
    assert result.confidence == 0


def test_search_empty_content_degrades():
    result = asyncio.run(_researcher(lambda r: _completion("")).search("fuel?"))
    assert result.confidence == 0


# ── Retry Policy ─────────────────────────────────────────────────────


def test_retry_delays_double():
    policy = RetryPolicy(max_attempts=3, base_delay_s=1.0)
    assert [policy.delay_for(a) for a in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_retry_stops_on_non_retryable():
    attempts = []

    async def call():
        attempts.append(1)
        raise KeyError("boom")

    with pytest.raises(KeyError):
        asyncio.run(NO_WAIT.run(call, lambda exc: False))
    assert len(attempts) == 1


def test_attempt_timeout_leaves_room_for_backoff():
    policy = RetryPolicy(max_attempts=3, base_delay_s=1.0)
    assert policy.total_backoff() == 3.0
    assert policy.attempt_timeout(30) == 9.0
    assert NO_WAIT.attempt_timeout(30) == 10.0


def test_attempt_timeout_rejects_budget_below_backoff():
    with pytest.raises(ValueError, match="does not cover"):
        RetryPolicy(max_attempts=3, base_delay_s=1.0).attempt_timeout(3)


# ── Live Search ──────────────────────────────────────────────────────


@pytest.mark.network
def test_live_search_returns_sourced_answer():
    vehicle = VehicleIdentity(make="Volkswagen", model="Golf", variant="1.5 TSI", year=2021)

    async def run():
        researcher = PerplexityResearcher()
        try:
            return await researcher.search("How much power in PS does this engine have?", vehicle)
        finally:
            await researcher.aclose()

    result = asyncio.run(run())

    assert result.result_text
    assert result.confidence > 0
