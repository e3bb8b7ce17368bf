"""Web research collaborator backed by the Perplexity chat-completions API."""

import asyncio
import logging
import os
import re
from typing import Optional, Protocol

import httpx

from autofill.agents.errors import ResearchFailure
from autofill.agents.models import FieldContext, FieldRequest, ResearchResult, VehicleIdentity
from autofill.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

API_URL = "https://api.perplexity.ai/chat/completions"
MODEL = "sonar"

UNKNOWN_VEHICLE = "unknown vehicle"


class ResearchCollaborator(Protocol):
    async def search(
        self, query: str, vehicle: Optional[VehicleIdentity] = None
    ) -> ResearchResult: ...


# ── Query Builder ────────────────────────────────────────────────────

_QUERY_TEMPLATES: dict[str, str] = {
    "vehicle_type": (
        "What is the exact body style of the {vehicle}? Is it a crossover (compact "
        "city SUV such as T-Cross or T-Roc), an SUV (larger, such as Tiguan), a compact "
        "car, saloon, estate, small car, convertible or coupé?"
    ),
    "fuel_type": "Which fuel does the {vehicle} use? Petrol, diesel, electric, hybrid or other?",
    "power_ps": "How much engine power does the {vehicle} have? Give the value in PS and kW.",
    "displacement": "What is the engine displacement of the {vehicle}? Give litres or ccm.",
    "transmission_type": "Which transmission does the {vehicle} have? Manual, automatic, DSG or other?",
    "cylinders": "How many cylinders does the engine of the {vehicle} have?",
    "co2_emissions": "What are the combined CO2 emissions of the {vehicle} in g/km?",
    "emission_class": (
        "Which energy efficiency class does the {vehicle} have? Answer with a class "
        "from A (very efficient) to G (least efficient) according to Pkw-EnVKV."
    ),
    "euro_standard": "Which Euro emission standard does the {vehicle} meet?",
    "fuel_consumption_combined": (
        "What is the combined fuel consumption of the {vehicle} in l/100km or kWh/100km?"
    ),
    "acceleration_0_100": "How fast does the {vehicle} accelerate from 0-100 km/h, in seconds?",
    "top_speed": "What is the top speed of the {vehicle} in km/h?",
    "weight_empty": "What is the kerb weight of the {vehicle} in kg?",
}
_QUERY_TEMPLATES["body_style"] = _QUERY_TEMPLATES["vehicle_type"]
_QUERY_TEMPLATES["power_kw"] = _QUERY_TEMPLATES["power_ps"]

_GENERIC_TEMPLATE = "What technical data is available on the {field} of the {vehicle}?"


def build_research_query(request: FieldRequest, context: FieldContext) -> str:
    """Field-specific question about the vehicle; generic template for unknown fields."""
    vehicle = context.vehicle_identity().describe(UNKNOWN_VEHICLE)
    template = _QUERY_TEMPLATES.get(request.field_name, _GENERIC_TEMPLATE)
    return template.format(vehicle=vehicle, field=request.field_name)


def build_search_prompt(query: str, vehicle: Optional[VehicleIdentity] = None) -> str:
    context = ""
    if vehicle and vehicle.make and vehicle.model:
        context = f"Vehicle: {vehicle.make} {vehicle.model}"
        if vehicle.variant:
            context += f" {vehicle.variant}"
        if vehicle.year:
            context += f" ({vehicle.year})"
        context += "\n\n"

    return f"""{context}Specific question: {query}

Please provide a precise answer with the following requirements:
- Focus on factual, technical information
- Cite reliable sources (manufacturer websites, official spec sheets)
- If uncertain, express the level of confidence
- Keep the answer concise but complete

Answer format:
ANSWER: [your response]
CONFIDENCE: [High/Medium/Low]
SOURCES: [list sources if available]"""


# ── Response Scoring ─────────────────────────────────────────────────

_URL_RE = re.compile(r"https?://[^\s)]+")
_SOURCES_LINE_RE = re.compile(r"SOURCES?:\s*(.+?)(?:\n|$)", re.IGNORECASE)
_TECH_FIGURE_RE = re.compile(r"\d+\s*(ps|kw|nm|mm|kg|l/100|g/km)", re.IGNORECASE)
_HEDGES = ("uncertain", "might be", "possibly")


def extract_sources(content: str) -> list[str]:
    """URLs in the text plus the comma-separated ``SOURCES:`` line, deduplicated."""
    sources = _URL_RE.findall(content)
    match = _SOURCES_LINE_RE.search(content)
    if match:
        sources.extend(s.strip() for s in match.group(1).split(",") if s.strip())
    return list(dict.fromkeys(sources))


def calculate_search_confidence(content: str, sources: list[str]) -> int:
    text = content.lower()
    confidence = 50

    if "confidence: high" in text:
        confidence += 30
    elif "confidence: medium" in text:
        confidence += 15
    elif "confidence: low" in text:
        confidence -= 20

    if sources:
        confidence += 20
    if any("manufacturer" in s or "official" in s for s in sources):
        confidence += 15

    if _TECH_FIGURE_RE.search(content):
        confidence += 10

    if any(h in text for h in _HEDGES):
        confidence -= 15

    return max(0, min(100, confidence))


# ── Perplexity Client ────────────────────────────────────────────────


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    return isinstance(exc, (httpx.TransportError, asyncio.TimeoutError))


class PerplexityResearcher:
    """``ResearchCollaborator`` over HTTP; never raises from ``search``."""

    def __init__(
        self,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        model: str = MODEL,
        budget_s: float = 30.0,
    ):
        """``budget_s`` bounds one ``search`` including retries; pass the caller's timeout."""
        self.api_key = api_key or os.environ.get("PERPLEXITY_API_KEY", "")
        if not self.api_key:
            raise ResearchFailure("PERPLEXITY_API_KEY is not set")
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy()
        self.attempt_timeout_s = self.retry_policy.attempt_timeout(budget_s)
        self._client = client or httpx.AsyncClient(timeout=self.attempt_timeout_s)

    async def search(
        self, query: str, vehicle: Optional[VehicleIdentity] = None
    ) -> ResearchResult:
        logger.info("Perplexity search: %s", query)
        try:
            data = await self.retry_policy.run(
                lambda: asyncio.wait_for(
                    self._post(build_search_prompt(query, vehicle)), self.attempt_timeout_s
                ),
                _is_retryable,
                label="Perplexity search",
            )
            content = _message_content(data)
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError, ResearchFailure) as exc:
            logger.warning("Perplexity search failed for '%s': %s", query, exc)
            return ResearchResult(query=query, confidence=0)

        sources = extract_sources(content)
        confidence = calculate_search_confidence(content, sources)
        usage = data.get("usage") or {}
        logger.info(
            "Perplexity result: confidence=%d, %d sources", confidence, len(sources)
        )
        return ResearchResult(
            query=query,
            result_text=content,
            confidence=confidence,
            sources=sources,
            tokens_used=usage.get("total_tokens", 0),
        )

    async def _post(self, prompt: str) -> dict:
        response = await self._client.post(
            API_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "messages": [
                    {
                        "role": "system",
                        "content": (
                            "You are a vehicle expert. Answer the specific question "
                            "with accurate information and cite your sources."
                        ),
                    },
                    {"role": "user", "content": prompt},
                ],
                "temperature": 0.1,
                "max_tokens": 1000,
                "stream": False,
            },
        )
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()


def _message_content(data: dict) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ResearchFailure(f"Malformed Perplexity response: {exc}") from exc
    if not content:
        raise ResearchFailure("No content in Perplexity response")
    return content
