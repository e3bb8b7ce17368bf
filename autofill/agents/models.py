"""Shared data models for the field resolution and equipment agents."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ── Field Requests ───────────────────────────────────────────────────


class FieldType(str, Enum):
    ENUM = "enum"
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"


class FieldConstraints(BaseModel):
    """Constraints a resolved value has to satisfy."""

    enum_options: Optional[list[str]] = Field(
        default=None, description="Allowed values, in display order"
    )
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = Field(
        default=None, description="Regular expression for string values"
    )
    format: Optional[Literal["email", "url"]] = None
    required: bool = False


class FieldRequest(BaseModel):
    """Identifies one form field to resolve."""

    field_name: str
    field_type: FieldType = FieldType.STRING
    constraints: Optional[FieldConstraints] = None

    @model_validator(mode="after")
    def required_enum_has_options(self) -> "FieldRequest":
        if self.field_type == FieldType.ENUM and self.is_required and not self.enum_options:
            raise ValueError(
                f"Required enum field '{self.field_name}' must define enum_options"
            )
        return self

    @property
    def enum_options(self) -> list[str]:
        if self.constraints and self.constraints.enum_options:
            return self.constraints.enum_options
        return []

    @property
    def is_required(self) -> bool:
        return bool(self.constraints and self.constraints.required)

    @property
    def is_required_enum(self) -> bool:
        return (
            self.field_type == FieldType.ENUM
            and self.is_required
            and bool(self.enum_options)
        )


# ── Evidence Context ─────────────────────────────────────────────────


class ExtractedData(BaseModel):
    """Fields previously machine-extracted from the listing PDF.

    The shape is open: extra keys are kept as-is and nested sections
    (``technical``, ``vehicle`` ...) are reachable through dotted paths.
    """

    model_config = ConfigDict(extra="allow")

    schema_version: int = 1
    raw_text: Optional[str] = None

    def get(self, path: str) -> Any:
        current: Any = self.model_dump(exclude={"schema_version"})
        for part in path.split("."):
            if not isinstance(current, dict):
                return None
            current = current.get(part)
            if current is None:
                return None
        return current


class VehicleSpecs(BaseModel):
    """Researched vehicle data cached on the document."""

    model_config = ConfigDict(extra="allow")

    make: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    year: Optional[int] = None
    body_style: Optional[str] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    power_ps: Optional[float] = None
    power_kw: Optional[float] = None
    displacement: Optional[float] = None
    cylinders: Optional[int] = None
    co2_emissions: Optional[float] = None


class EnrichedData(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: int = 1
    vehicle: VehicleSpecs = Field(default_factory=VehicleSpecs)
    confidence_scores: dict[str, int] = Field(default_factory=dict)
    sources: list[str] = Field(default_factory=list)


class VehicleIdentity(BaseModel):
    make: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    year: Optional[int] = None

    def describe(self, unknown: str = "unknown vehicle") -> str:
        """Compact identity string, degrading to make alone or a placeholder."""
        if self.make and self.model:
            parts = [self.make, self.model]
            if self.variant:
                parts.append(self.variant)
            if self.year:
                parts.append(str(self.year))
            return " ".join(parts)
        if self.make:
            return self.make
        return unknown


class FieldContext(BaseModel):
    """Read-only evidence bundle handed to the pipeline."""

    model_config = ConfigDict(frozen=True)

    pdf_text: Optional[str] = None
    extracted_data: Optional[ExtractedData] = None
    enriched_data: Optional[EnrichedData] = None
    current_form_data: dict[str, Any] = Field(default_factory=dict)
    instructions: Optional[str] = None

    def vehicle_identity(self) -> VehicleIdentity:
        """Make/model/variant/year from extraction, then enrichment, then the form."""
        extracted = self.extracted_data or ExtractedData()
        vehicle = (self.enriched_data or EnrichedData()).vehicle
        form = self.current_form_data

        def first(*values: Any) -> Any:
            for v in values:
                if v not in (None, ""):
                    return v
            return None

        year = first(extracted.get("year"), vehicle.year, form.get("year"))
        try:
            year = int(year) if year is not None else None
        except (TypeError, ValueError):
            year = None
        return VehicleIdentity(
            make=first(extracted.get("make"), extracted.get("vehicle.make"), vehicle.make, form.get("make")),
            model=first(extracted.get("model"), extracted.get("vehicle.model"), vehicle.model, form.get("model")),
            variant=first(extracted.get("variant"), extracted.get("trim"), vehicle.variant, form.get("trim")),
            year=year,
        )


# ── Candidates & Thoughts ────────────────────────────────────────────


class ValueSource(str, Enum):
    USER_INPUT = "user_input"
    AI_EXTRACTION = "ai_extraction"
    ENRICHMENT = "enrichment"
    PATTERN_MATCHING = "pattern_matching"
    DATABASE_LOOKUP = "database_lookup"
    PERPLEXITY_RESEARCH = "perplexity_research"


class ConfidenceScoredValue(BaseModel):
    """One candidate value for a field, with where it came from."""

    model_config = ConfigDict(frozen=True)

    value: Any
    confidence: int = Field(ge=0, le=100)
    source: ValueSource
    reasoning: Optional[str] = None


class AgentThought(BaseModel):
    """Append-only log entry for one pipeline transition."""

    model_config = ConfigDict(frozen=True)

    step: str
    reasoning: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    confidence: Optional[int] = None


class ResearchResult(BaseModel):
    source: Literal["perplexity", "database", "pattern_matching"] = "perplexity"
    query: str
    result_text: str = ""
    confidence: int = Field(default=0, ge=0, le=100)
    sources: list[str] = Field(default_factory=list)
    tokens_used: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Results ──────────────────────────────────────────────────────────


class FieldResolution(BaseModel):
    """Terminal output of the pipeline for one field."""

    model_config = ConfigDict(frozen=True)

    field_name: Optional[str] = None
    value: Any
    confidence: int = Field(ge=0, le=100)
    reasoning: str
    sources: list[str] = Field(default_factory=list)
    needs_review: bool = False


class ValidationResult(BaseModel):
    is_valid: bool
    reason: str


class AgentResponse(BaseModel):
    """What ``resolve_field`` hands back: a resolution or an explicit error."""

    success: bool
    field_name: str
    resolution: Optional[FieldResolution] = None
    thoughts: list[AgentThought] = Field(default_factory=list)
    research_performed: bool = False
    retry_count: int = 0
    processing_time_ms: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None


class ReportMetadata(BaseModel):
    total_fields: int
    resolved_count: int
    sources_used: list[str] = Field(default_factory=list)
    research_invoked: bool = False


class CategoryReport(BaseModel):
    """Aggregated results of resolving a set of related fields."""

    category: Optional[str] = None
    mapped_values: list[FieldResolution] = Field(default_factory=list)
    overall_confidence: int = 0
    per_field_confidence: dict[str, int] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    metadata: ReportMetadata


# ── Stream Events ────────────────────────────────────────────────────


class FieldResolvedEvent(BaseModel):
    field: str
    value: Any
    confidence: int
    needs_review: bool = False
    reasoning: str = ""
    sources: list[str] = Field(default_factory=list)
    index: int
    total: int

    def to_resolution(self) -> FieldResolution:
        return FieldResolution(
            field_name=self.field,
            value=self.value,
            confidence=self.confidence,
            reasoning=self.reasoning,
            sources=self.sources,
            needs_review=self.needs_review,
        )


class FieldErrorEvent(BaseModel):
    field: str
    error: Literal[True] = True
    message: str
    index: int
    total: int


class StreamCompleteEvent(BaseModel):
    complete: Literal[True] = True
    total_processed: int
    success_count: int


class StreamFailedEvent(BaseModel):
    error: Literal[True] = True
    message: str


StreamEvent = FieldResolvedEvent | FieldErrorEvent | StreamCompleteEvent | StreamFailedEvent


def format_sse(event: BaseModel) -> str:
    """Render one event as a server-sent-events ``data:`` frame."""
    return f"data: {event.model_dump_json()}\n\n"
