"""Language-model collaborator: analysis and synthesis prompts via Ollama."""

import json
import logging
import os
import re
from typing import Any, Optional, Protocol

import ollama

from autofill.agents.adapters import to_number
from autofill.agents.models import (
    AgentThought,
    ConfidenceScoredValue,
    FieldContext,
    FieldRequest,
    FieldResolution,
    FieldType,
    ResearchResult,
)

logger = logging.getLogger(__name__)

MODEL = "qwen3:8b"

DEFAULT_CONFIDENCE = 50
FALLBACK_REASONING = "Fallback to first available option"
TRUE_WORDS = {"true", "ja", "yes", "1"}
EMPTY_WORDS = {"", "null", "none", "unknown", "n/a"}


class LanguageModel(Protocol):
    async def complete(self, prompt: str) -> str: ...


# ── Ollama Client ────────────────────────────────────────────────────


class OllamaLanguageModel:
    """``LanguageModel`` backed by a local Ollama server."""

    def __init__(
        self,
        model: str = MODEL,
        host: str | None = None,
        timeout_s: float = 60.0,
        client: ollama.AsyncClient | None = None,
    ):
        self.model = model
        self._client = client or ollama.AsyncClient(
            host=host or os.environ.get("OLLAMA_HOST"), timeout=timeout_s
        )

    async def complete(self, prompt: str) -> str:
        response = await self._client.chat(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": (
                        "You are an expert in vehicle data extraction for car dealer "
                        "listings. Follow the requested answer format exactly."
                    ),
                },
                {"role": "user", "content": prompt},
            ],
            options={"temperature": 0},
        )
        content = response.message.content or ""
        return parse_thinking_trace(content, keep="answer")


def parse_thinking_trace(content: str, keep: str = "trace") -> str:
    """Split ``<think>...</think>`` output from reasoning models.

    ``keep="trace"`` returns the thinking block (or the full content when
    there is none); ``keep="answer"`` returns the text after it.
    """
    match = re.search(r"<think>(.*?)</think>", content, re.DOTALL)
    if not match:
        return content.strip()
    if keep == "answer":
        return content[match.end():].strip()
    return match.group(1).strip()


# ── Prompt Builders ──────────────────────────────────────────────────


def build_analysis_prompt(request: FieldRequest, context: FieldContext) -> str:
    """Ask for a short note on what is sought and which evidence looks relevant."""
    vehicle = context.vehicle_identity().describe()
    constraints = (
        json.dumps(request.constraints.model_dump(exclude_none=True))
        if request.constraints
        else "none"
    )

    def available(item: Any) -> str:
        return "available" if item else "not available"

    prompt = f"""/no_think
You are an expert in vehicle data extraction. Analyse this request:

FIELD: {request.field_name}
TYPE: {request.field_type.value}
CONSTRAINTS: {constraints}
VEHICLE: {vehicle}

AVAILABLE CONTEXT:
- PDF text: {available(context.pdf_text)}
- Extracted data: {available(context.extracted_data)}
- Enrichment data: {available(context.enriched_data)}
- Form data: {available(context.current_form_data)}

NOTES ON BODY STYLE:
- T-Cross, T-Roc and Taigo are CROSSOVER (compact city SUVs)
- Tiguan and Touareg are real SUVs (larger)
- When unsure between crossover and SUV, compact models are usually crossovers
"""
    if context.instructions:
        prompt += f"\nCALLER INSTRUCTIONS:\n{context.instructions}\n"

    prompt += """
Analyse step by step:
1. What exactly is being looked for?
2. Which data sources could be relevant?
3. Which difficulties do you see?

Answer in 2-3 sentences:"""
    return prompt


def build_synthesis_prompt(
    request: FieldRequest,
    thoughts: list[AgentThought],
    attempts: list[ConfidenceScoredValue],
    research: list[ResearchResult],
    last_failure: Optional[str] = None,
) -> str:
    """Combine all gathered evidence into one question with a fixed answer grammar."""
    if request.enum_options:
        constraint_text = f"Choose from: {', '.join(request.enum_options)}"
    else:
        constraint_text = f"Return a {request.field_type.value} value"
        c = request.constraints
        if c and c.min is not None:
            constraint_text += f", at least {c.min:g}"
        if c and c.max is not None:
            constraint_text += f", at most {c.max:g}"
        if c and c.pattern:
            constraint_text += f", matching the regular expression {c.pattern}"

    notes = "\n".join(f"- {t.step}: {t.reasoning}" for t in thoughts) or "- none"
    extraction = (
        "\n".join(f"- {a.source.value}: {a.value} ({a.confidence}%)" for a in attempts)
        or "- none"
    )
    findings = (
        "\n".join(f'- Research "{r.query}": {r.result_text or "no result"}' for r in research)
        or "- none"
    )

    prompt = f"""/no_think
Determine the most plausible value for "{request.field_name}" from the available information.

AVAILABLE INFORMATION:
{notes}

EXTRACTION ATTEMPTS:
{extraction}

RESEARCH RESULTS:
{findings}

RULES:
- {constraint_text}
- Never use 'UNKNOWN' or invented values
"""
    if request.is_required_enum:
        prompt += """
CRITICAL: this is a required selection field.
You MUST choose one of the given options. Null, empty or "no selection" is FORBIDDEN.
When unsure, pick the most likely option, even at 10% confidence.
A wrong choice is better than no choice.
"""
    if last_failure:
        prompt += f"\nYOUR PREVIOUS ANSWER WAS REJECTED: {last_failure}\n"

    prompt += """
Answer in exactly this format:
VALUE: [your best estimate]
CONFIDENCE: [0-100]
REASONING: [short explanation why this value is plausible]"""
    return prompt


# ── Reply Parsing ────────────────────────────────────────────────────

_LABELS = {
    "value": ("VALUE:", "WERT:"),
    "confidence": ("CONFIDENCE:", "KONFIDENZ:"),
    "reasoning": ("REASONING:", "BEGRÜNDUNG:"),
}


def _strip_label(line: str, key: str) -> Optional[str]:
    for label in _LABELS[key]:
        if line.upper().startswith(label):
            return line[len(label):].strip()
    return None


def match_enum_option(value: Any, options: list[str]) -> Optional[str]:
    """Case-insensitive exact match, then the longest option found as a whole word."""
    if value is None:
        return None
    text = str(value).strip().strip("\"'[]").lower()
    if not text:
        return None
    for option in options:
        if option.lower() == text:
            return option
    for option in sorted(options, key=len, reverse=True):
        if re.search(rf"(?<!\w){re.escape(option.lower())}(?!\w)", text):
            return option
    return None


def coerce_value(value: Any, field_type: FieldType) -> Any:
    """Convert synthesized text to the field's type; unparsable numbers stay as text."""
    if value is None:
        return None
    if field_type == FieldType.NUMBER:
        number = to_number(value)
        if number is None:
            return value
        return int(number) if number == int(number) else number
    if field_type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in TRUE_WORDS
    return value


def parse_synthesis_response(
    response: str,
    request: FieldRequest,
    fallback_confidence: int = 10,
) -> FieldResolution:
    """Parse the ``VALUE/CONFIDENCE/REASONING`` reply into a resolution.

    A required enum never comes back empty: the first option is substituted
    with ``fallback_confidence``.
    """
    value: Any = None
    confidence = DEFAULT_CONFIDENCE
    reasoning = "AI synthesis"

    for raw_line in response.splitlines():
        line = raw_line.strip().lstrip("*-").strip()
        if (v := _strip_label(line, "value")) is not None:
            value = v
        elif (v := _strip_label(line, "confidence")) is not None:
            digits = re.search(r"\d+", v)
            confidence = int(digits.group()) if digits else DEFAULT_CONFIDENCE
            confidence = max(0, min(100, confidence)) or DEFAULT_CONFIDENCE
        elif (v := _strip_label(line, "reasoning")) is not None:
            reasoning = v or reasoning

    if isinstance(value, str) and value.strip().lower() in EMPTY_WORDS:
        value = None

    if request.enum_options and value is not None:
        value = match_enum_option(value, request.enum_options) or value

    if value is None and request.is_required_enum:
        logger.warning(
            "Synthesis returned no value for required enum '%s' — using first option",
            request.field_name,
        )
        value = request.enum_options[0]
        confidence = fallback_confidence
        reasoning = FALLBACK_REASONING

    value = coerce_value(value, request.field_type)

    return FieldResolution(
        field_name=request.field_name,
        value=value,
        confidence=confidence,
        reasoning=reasoning,
        sources=["ai_synthesis"],
    )
