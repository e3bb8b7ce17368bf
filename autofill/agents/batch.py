"""Category orchestrator: resolve a group of related fields as a report or a stream."""

import asyncio
import logging
from statistics import mean
from typing import AsyncIterator, Optional, Sequence, Union

from autofill.agents.models import (
    AgentResponse,
    CategoryReport,
    FieldContext,
    FieldErrorEvent,
    FieldRequest,
    FieldResolvedEvent,
    ReportMetadata,
    StreamCompleteEvent,
    StreamEvent,
    StreamFailedEvent,
)
from autofill.agents.resolver import FieldResolutionPipeline
from autofill.core.field_spec import AgentConfig, FieldSpec

logger = logging.getLogger(__name__)

FieldRef = Union[str, FieldRequest]

_DONE = object()


class CategoryOrchestrator:
    """Runs one pipeline per field; a failing field never aborts the others."""

    def __init__(
        self,
        pipeline: FieldResolutionPipeline,
        catalog: Optional[FieldSpec] = None,
        config: Optional[AgentConfig] = None,
    ):
        self.pipeline = pipeline
        self.catalog = catalog
        self.config = config or pipeline.config

    # ── Field lookup ─────────────────────────────────────────

    def requests_for(self, fields: Sequence[FieldRef]) -> list[FieldRequest]:
        """Turn field names into catalog requests; ``FieldRequest`` objects pass through."""
        requests = []
        for f in fields:
            if isinstance(f, FieldRequest):
                requests.append(f)
            elif self.catalog is not None:
                requests.append(self.catalog.request_for(f))
            else:
                requests.append(FieldRequest(field_name=f))
        return requests

    async def resolve_named_category(
        self, name: str, context: FieldContext
    ) -> CategoryReport:
        if self.catalog is None:
            raise ValueError("resolve_named_category needs a field catalog")
        category = self.catalog.category(name)
        return await self.resolve_category(category.fields, context, category=name)

    # ── Batch mode ───────────────────────────────────────────

    async def resolve_category(
        self,
        fields: Sequence[FieldRef],
        context: FieldContext,
        category: Optional[str] = None,
    ) -> CategoryReport:
        """Resolve every field and aggregate one report in declaration order."""
        requests = self.requests_for(fields)
        logger.info(
            "Resolving %d fields%s (concurrency %d)",
            len(requests),
            f" for category '{category}'" if category else "",
            self.config.batch_concurrency,
        )

        if self.config.batch_concurrency > 1:
            semaphore = asyncio.Semaphore(self.config.batch_concurrency)

            async def bounded(request: FieldRequest) -> AgentResponse:
                async with semaphore:
                    return await self._resolve_one(request, context)

            responses = list(await asyncio.gather(*(bounded(r) for r in requests)))
        else:
            responses = []
            for i, request in enumerate(requests):
                if i > 0:
                    await asyncio.sleep(self.config.inter_field_delay_s)
                responses.append(await self._resolve_one(request, context))

        return build_report(responses, category)

    # ── Streaming mode ───────────────────────────────────────

    async def resolve_category_stream(
        self, fields: Sequence[FieldRef], context: FieldContext
    ) -> AsyncIterator[StreamEvent]:
        """Yield one event per field, then a terminal completion (or failure) event.

        Sequential runs emit in declaration order; with ``batch_concurrency > 1``
        events arrive in completion order and carry their declaration ``index``.
        """
        requests = self.requests_for(fields)
        total = len(requests)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.stream_buffer_size)

        async def emit(index: int, request: FieldRequest) -> bool:
            response = await self._resolve_one(request, context)
            await queue.put(_field_event(response, index, total))
            return response.success

        async def produce() -> None:
            try:
                if self.config.batch_concurrency > 1:
                    semaphore = asyncio.Semaphore(self.config.batch_concurrency)

                    async def bounded(index: int, request: FieldRequest) -> bool:
                        async with semaphore:
                            return await emit(index, request)

                    outcomes = await asyncio.gather(
                        *(bounded(i, r) for i, r in enumerate(requests, start=1))
                    )
                else:
                    outcomes = []
                    for i, request in enumerate(requests, start=1):
                        if i > 1:
                            await asyncio.sleep(self.config.inter_field_delay_s)
                        outcomes.append(await emit(i, request))

                logger.info(
                    "All fields processed. Success: %d/%d", sum(outcomes), total
                )
                await queue.put(
                    StreamCompleteEvent(total_processed=total, success_count=sum(outcomes))
                )
            except Exception as exc:
                logger.exception("Fatal stream error")
                await queue.put(StreamFailedEvent(message=str(exc)))
            await queue.put(_DONE)

        producer = asyncio.create_task(produce())
        try:
            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event
        finally:
            if not producer.done():
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass

    # ── Helpers ──────────────────────────────────────────────

    async def _resolve_one(
        self, request: FieldRequest, context: FieldContext
    ) -> AgentResponse:
        logger.debug("Resolving field %s", request.field_name)
        try:
            return await self.pipeline.resolve_field(request, context)
        except Exception as exc:
            logger.exception("Unexpected error resolving '%s'", request.field_name)
            return AgentResponse(
                success=False,
                field_name=request.field_name,
                error=str(exc) or type(exc).__name__,
                error_kind=type(exc).__name__,
            )


def _field_event(response: AgentResponse, index: int, total: int) -> StreamEvent:
    if response.success:
        return FieldResolvedEvent(
            field=response.field_name,
            value=response.resolution.value,
            confidence=response.resolution.confidence,
            needs_review=response.resolution.needs_review,
            reasoning=response.resolution.reasoning,
            sources=response.resolution.sources,
            index=index,
            total=total,
        )
    return FieldErrorEvent(
        field=response.field_name,
        message=response.error or "Unknown error",
        index=index,
        total=total,
    )


def build_report(
    responses: list[AgentResponse], category: Optional[str] = None
) -> CategoryReport:
    """Aggregate pipeline responses; overall confidence is the rounded mean."""
    resolved = [r.resolution for r in responses if r.success and r.resolution is not None]
    sources: list[str] = []
    for resolution in resolved:
        for s in resolution.sources:
            if s not in sources:
                sources.append(s)

    return CategoryReport(
        category=category,
        mapped_values=resolved,
        overall_confidence=round(mean(r.confidence for r in resolved)) if resolved else 0,
        per_field_confidence={r.field_name: r.confidence for r in resolved},
        errors={r.field_name: r.error or "Unknown error" for r in responses if not r.success},
        metadata=ReportMetadata(
            total_fields=len(responses),
            resolved_count=len(resolved),
            sources_used=sources,
            research_invoked=any(r.research_performed for r in responses),
        ),
    )
