"""Field Spec: YAML parser for agent settings and the field catalog."""

import hashlib
import json
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from autofill.agents.models import FieldRequest, FieldType

logger = logging.getLogger(__name__)


# ── Agent Settings ───────────────────────────────────────────────────


class AgentConfig(BaseModel):
    """Tunable behaviour of the resolution pipeline and its orchestrator."""

    max_retries: int = Field(default=2, ge=0)
    min_confidence_threshold: int = Field(default=70, ge=0, le=100)
    enable_perplexity_research: bool = True
    debug: bool = False

    # Policy constants kept for compatibility with stored wizard data.
    required_enum_confidence_floor: int = Field(default=20, ge=0, le=100)
    enum_fallback_confidence: int = Field(default=10, ge=0, le=100)
    review_threshold: int = Field(default=80, ge=0, le=100)

    synthesis_model: str = "qwen3:8b"
    synthesis_timeout_s: float = Field(default=30.0, gt=0)
    research_timeout_s: float = Field(default=30.0, gt=0)

    similar_vehicle_limit: int = Field(default=10, ge=1)
    batch_concurrency: int = Field(
        default=1, ge=1, description="1 = sequential, declaration-ordered"
    )
    inter_field_delay_s: float = Field(default=0.1, ge=0)
    stream_buffer_size: int = Field(default=8, ge=1)


# ── Field Catalog ────────────────────────────────────────────────────


class FieldCategory(BaseModel):
    """A named group of fields resolved together (one wizard step)."""

    name: str
    description: str = ""
    fields: list[FieldRequest]

    @field_validator("fields")
    @classmethod
    def unique_field_names(cls, v: list[FieldRequest]) -> list[FieldRequest]:
        names = [f.field_name for f in v]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate field names in category: {', '.join(dupes)}")
        return v


class FieldSpec(BaseModel):
    """Top-level model for a field spec file."""

    title: str
    version: str
    agent: AgentConfig = Field(default_factory=AgentConfig)
    categories: list[FieldCategory]

    @model_validator(mode="after")
    def consistent_definitions(self) -> "FieldSpec":
        seen: dict[str, FieldRequest] = {}
        for category in self.categories:
            for f in category.fields:
                previous = seen.setdefault(f.field_name, f)
                if previous != f:
                    raise ValueError(
                        f"Field '{f.field_name}' is defined differently in two categories"
                    )
        return self

    def category(self, name: str) -> FieldCategory:
        for c in self.categories:
            if c.name == name:
                return c
        known = ", ".join(c.name for c in self.categories)
        raise KeyError(f"Unknown category '{name}' (known: {known})")

    def request_for(self, field_name: str) -> FieldRequest:
        """Catalog definition for a field; unknown names become optional strings."""
        for c in self.categories:
            for f in c.fields:
                if f.field_name == field_name:
                    return f
        logger.warning("Field '%s' not in catalog — resolving as optional string", field_name)
        return FieldRequest(field_name=field_name, field_type=FieldType.STRING)

    # ── Catalog hashing ──────────────────────────────────────

    def category_hash(self, name: str) -> str:
        """SHA-256 of one category's field definitions (canonical JSON)."""
        return _canonical_hash(self.category(name).model_dump(mode="json"))


# ── Helpers ──────────────────────────────────────────────────────────


def _canonical_hash(data: dict) -> str:
    """Deterministic SHA-256 hash of a dict via sorted-key JSON."""
    blob = json.dumps(data, sort_keys=True, default=str).encode()
    return hashlib.sha256(blob).hexdigest()


def load_field_spec(path: str | Path, overrides: Optional[dict] = None) -> FieldSpec:
    """Load a YAML field spec from disk and return a validated model."""
    path = Path(path)
    with open(path) as f:
        raw = yaml.safe_load(f)
    if overrides:
        raw.setdefault("agent", {}).update(overrides)
    return FieldSpec.model_validate(raw)
