"""Field resolution pipeline: analyze → extract → research → synthesize → validate."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from autofill.agents.adapters import (
    Adapter,
    SimilarVehicleStore,
    collect_candidates,
    default_adapters,
)
from autofill.agents.errors import (
    AnalysisFailure,
    ResolutionError,
    RetriesExhausted,
    SynthesisFailure,
)
from autofill.agents.models import (
    AgentResponse,
    AgentThought,
    ConfidenceScoredValue,
    FieldContext,
    FieldRequest,
    FieldResolution,
    FieldType,
    ResearchResult,
    ValueSource,
)
from autofill.agents.research import ResearchCollaborator, build_research_query
from autofill.agents.synthesis import (
    LanguageModel,
    build_analysis_prompt,
    build_synthesis_prompt,
    coerce_value,
    match_enum_option,
    parse_synthesis_response,
)
from autofill.agents.validation import validate_value
from autofill.core.field_spec import AgentConfig

logger = logging.getLogger(__name__)


class PipelineStep(str, Enum):
    ANALYZE = "analyze"
    EXTRACT_FROM_CONTEXT = "extractFromContext"
    PERFORM_RESEARCH = "performResearch"
    SYNTHESIZE = "synthesize"
    VALIDATE = "validate"
    END = "end"


@dataclass
class _RunState:
    """Working state owned by exactly one ``resolve_field`` call."""

    request: FieldRequest
    context: FieldContext
    thoughts: list[AgentThought] = field(default_factory=list)
    attempts: list[ConfidenceScoredValue] = field(default_factory=list)
    research: list[ResearchResult] = field(default_factory=list)
    resolution: Optional[FieldResolution] = None
    resolution_source: Optional[ValueSource] = None
    retry_count: int = 0
    last_failure: Optional[str] = None
    errors: list[str] = field(default_factory=list)


# ── Pipeline ─────────────────────────────────────────────────────────


class FieldResolutionPipeline:
    """Resolve one form field from document evidence, research and an LLM.

    Collaborators are injected; the pipeline itself holds no per-run state,
    so one instance can serve concurrent ``resolve_field`` calls.
    """

    def __init__(
        self,
        llm: LanguageModel,
        researcher: Optional[ResearchCollaborator] = None,
        database: Optional[SimilarVehicleStore] = None,
        config: Optional[AgentConfig] = None,
        adapters: Optional[list[Adapter]] = None,
    ):
        self.llm = llm
        self.researcher = researcher
        self.config = config or AgentConfig()
        self.adapters = adapters or default_adapters(
            database, self.config.similar_vehicle_limit
        )
        self._handlers: dict[PipelineStep, Callable[[_RunState], Awaitable[PipelineStep]]] = {
            PipelineStep.ANALYZE: self._analyze,
            PipelineStep.EXTRACT_FROM_CONTEXT: self._extract_from_context,
            PipelineStep.PERFORM_RESEARCH: self._perform_research,
            PipelineStep.SYNTHESIZE: self._synthesize,
            PipelineStep.VALIDATE: self._validate,
        }
        missing = set(PipelineStep) - set(self._handlers) - {PipelineStep.END}
        if missing:
            raise RuntimeError(f"No handler for pipeline steps: {sorted(missing)}")

    async def resolve_field(
        self, request: FieldRequest, context: Optional[FieldContext] = None
    ) -> AgentResponse:
        """Run the pipeline for one field; failures come back as an error response."""
        start = time.perf_counter()
        state = _RunState(request=request, context=context or FieldContext())

        try:
            await self._run(state)
        except ResolutionError as exc:
            logger.warning("Resolution of '%s' failed: %s", request.field_name, exc)
            return AgentResponse(
                success=False,
                field_name=request.field_name,
                thoughts=state.thoughts,
                research_performed=bool(state.research),
                retry_count=state.retry_count,
                processing_time_ms=_elapsed_ms(start),
                error=str(exc),
                error_kind=type(exc).__name__,
            )

        resolution = self._finalize(state)
        logger.info(
            "Resolved '%s' = %r (confidence %d%s)",
            request.field_name,
            resolution.value,
            resolution.confidence,
            ", needs review" if resolution.needs_review else "",
        )
        return AgentResponse(
            success=True,
            field_name=request.field_name,
            resolution=resolution,
            thoughts=state.thoughts,
            research_performed=bool(state.research),
            retry_count=state.retry_count,
            processing_time_ms=_elapsed_ms(start),
        )

    async def _run(self, state: _RunState) -> None:
        step = PipelineStep.ANALYZE
        while step is not PipelineStep.END:
            step = await self._handlers[step](state)

    # ── Steps ────────────────────────────────────────────────

    async def _analyze(self, state: _RunState) -> PipelineStep:
        prompt = build_analysis_prompt(state.request, state.context)
        try:
            note = await asyncio.wait_for(
                self.llm.complete(prompt), timeout=self.config.synthesis_timeout_s
            )
        except Exception as exc:
            raise AnalysisFailure(f"Analysis failed: {_describe(exc)}") from exc

        self._think(state, PipelineStep.ANALYZE, note.strip() or "No analysis note")
        return PipelineStep.EXTRACT_FROM_CONTEXT

    async def _extract_from_context(self, state: _RunState) -> PipelineStep:
        state.attempts = collect_candidates(state.request, state.context, self.adapters)
        threshold = (
            self.config.required_enum_confidence_floor
            if state.request.is_required_enum
            else self.config.min_confidence_threshold
        )

        best = state.attempts[0] if state.attempts else None
        if best is not None and best.confidence >= threshold:
            value = _normalize(state.request, best.value)
            if value is not None:
                state.resolution = FieldResolution(
                    field_name=state.request.field_name,
                    value=value,
                    confidence=best.confidence,
                    reasoning=best.reasoning or f"Extracted from {best.source.value}",
                    sources=[best.source.value],
                )
                state.resolution_source = best.source
                self._think(
                    state,
                    PipelineStep.EXTRACT_FROM_CONTEXT,
                    f"Accepted {best.source.value} candidate {value!r} "
                    f"({best.confidence}% >= {threshold}%)",
                    best.confidence,
                )
                return PipelineStep.VALIDATE

        best_confidence = best.confidence if best else 0
        research = self.config.enable_perplexity_research and self.researcher is not None
        self._think(
            state,
            PipelineStep.EXTRACT_FROM_CONTEXT,
            f"Best extraction confidence: {best_confidence} from {len(state.attempts)} "
            f"candidate(s), below {threshold}. "
            + ("Need research." if research else "Synthesizing without research."),
            best_confidence,
        )
        return PipelineStep.PERFORM_RESEARCH if research else PipelineStep.SYNTHESIZE

    async def _perform_research(self, state: _RunState) -> PipelineStep:
        query = build_research_query(state.request, state.context)
        try:
            result = await asyncio.wait_for(
                self.researcher.search(query, state.context.vehicle_identity()),
                timeout=self.config.research_timeout_s,
            )
        except Exception as exc:
            # Research is best effort; synthesis still runs.
            reason = f"Research failed: {_describe(exc)}"
            logger.warning("%s (field '%s')", reason, state.request.field_name)
            state.errors.append(reason)
            result = ResearchResult(query=query, result_text="", confidence=0)
            self._think(state, PipelineStep.PERFORM_RESEARCH, reason, 0)
        else:
            self._think(
                state,
                PipelineStep.PERFORM_RESEARCH,
                f'Researched: "{query}" ({len(result.sources)} sources)',
                result.confidence,
            )
        state.research.append(result)
        return PipelineStep.SYNTHESIZE

    async def _synthesize(self, state: _RunState) -> PipelineStep:
        prompt = build_synthesis_prompt(
            state.request,
            state.thoughts,
            state.attempts,
            state.research,
            last_failure=state.last_failure,
        )
        try:
            reply = await asyncio.wait_for(
                self.llm.complete(prompt), timeout=self.config.synthesis_timeout_s
            )
        except Exception as exc:
            raise SynthesisFailure(f"Synthesis failed: {_describe(exc)}") from exc

        resolution = parse_synthesis_response(
            reply, state.request, self.config.enum_fallback_confidence
        )
        research_sources = [s for r in state.research for s in r.sources]
        state.resolution = resolution.model_copy(
            update={"sources": list(dict.fromkeys(resolution.sources + research_sources))}
        )
        state.resolution_source = ValueSource.AI_EXTRACTION
        self._think(
            state,
            PipelineStep.SYNTHESIZE,
            f"Synthesized answer: {resolution.value!r} ({resolution.confidence}% confidence)",
            resolution.confidence,
        )
        return PipelineStep.VALIDATE

    async def _validate(self, state: _RunState) -> PipelineStep:
        result = validate_value(
            state.resolution.value, state.request.constraints, state.request.field_type
        )
        if result.is_valid:
            self._think(
                state,
                PipelineStep.VALIDATE,
                f"Validation successful: {result.reason}",
                state.resolution.confidence,
            )
            return PipelineStep.END

        state.last_failure = result.reason
        if state.retry_count < self.config.max_retries:
            state.retry_count += 1
            self._think(
                state,
                PipelineStep.VALIDATE,
                f"Validation failed: {result.reason}. Retrying "
                f"({state.retry_count}/{self.config.max_retries})",
                0,
            )
            return PipelineStep.SYNTHESIZE

        self._think(state, PipelineStep.VALIDATE, f"Validation failed: {result.reason}", 0)
        raise RetriesExhausted(self.config.max_retries, result.reason)

    # ── Helpers ──────────────────────────────────────────────

    def _think(
        self,
        state: _RunState,
        step: PipelineStep,
        reasoning: str,
        confidence: Optional[int] = None,
    ) -> None:
        state.thoughts.append(
            AgentThought(step=step.value, reasoning=reasoning, confidence=confidence)
        )
        level = logging.INFO if self.config.debug else logging.DEBUG
        logger.log(level, "[%s] %s: %s", state.request.field_name, step.value, reasoning)

    def _finalize(self, state: _RunState) -> FieldResolution:
        resolution = state.resolution
        needs_review = (
            resolution.confidence < self.config.review_threshold
            and state.resolution_source is not ValueSource.USER_INPUT
        )
        return resolution.model_copy(update={"needs_review": needs_review})


def _normalize(request: FieldRequest, value: Any) -> Any:
    """Map a candidate onto the field's type and option spelling; None if impossible."""
    if request.enum_options:
        return match_enum_option(value, request.enum_options) or value
    if request.field_type == FieldType.NUMBER:
        number = coerce_value(value, request.field_type)
        return None if isinstance(number, (str, bool)) else number
    if request.field_type == FieldType.BOOLEAN:
        return coerce_value(value, request.field_type)
    return value


def _describe(exc: Exception) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    return str(exc) or type(exc).__name__


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
