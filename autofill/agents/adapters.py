"""Extraction source adapters: read-only candidate producers per evidence source."""

import logging
import re
import statistics
from typing import Any, Callable, Optional, Protocol

from autofill.agents.models import (
    ConfidenceScoredValue,
    FieldContext,
    FieldRequest,
    FieldType,
    ValueSource,
)

logger = logging.getLogger(__name__)

PS_TO_KW = 0.735499
KW_TO_PS = 1.35962

USER_INPUT_CONFIDENCE = 100
DIRECT_CONFIDENCE = 85
ALIAS_CONFIDENCE = 75
PATTERN_CONFIDENCE = 70
DATABASE_CONFIDENCE = 60

# Known alternative keys (and dotted paths) for fields in extracted data.
FIELD_ALIASES: dict[str, list[str]] = {
    "vehicle_type": ["body_style", "category", "type", "vehicle.body_style"],
    "make": ["brand", "manufacturer", "vehicle.make"],
    "model": ["model_name", "series", "vehicle.model"],
    "variant": ["trim", "version", "vehicle.variant"],
    "year": ["model_year", "first_registration_year", "vehicle.year"],
    "fuel_type": ["fuel", "kraftstoff", "technical.fuel_type"],
    "power_ps": ["power", "ps", "horsepower", "technical.power_ps"],
    "power_kw": ["kw", "kilowatt", "technical.power_kw"],
    "displacement": ["hubraum", "engine_displacement", "technical.displacement"],
    "cylinders": ["zylinder", "technical.cylinders"],
    "transmission_type": ["transmission", "getriebe", "gearbox", "technical.transmission"],
    "co2_emissions": ["co2", "co2_combined", "environment.co2_emissions"],
    "fuel_consumption_combined": ["consumption_combined", "verbrauch", "environment.consumption_combined"],
    "emission_class": ["efficiency_class", "energy_class", "environment.efficiency_class"],
    "euro_standard": ["emission_standard", "schadstoffklasse", "environment.euro_standard"],
}

# Enrichment fields: (attribute on enriched_data.vehicle, fixed confidence).
ENRICHMENT_FIELDS: dict[str, tuple[str, int]] = {
    "power_ps": ("power_ps", 95),
    "power_kw": ("power_kw", 95),
    "fuel_type": ("fuel_type", 90),
    "displacement": ("displacement", 85),
    "cylinders": ("cylinders", 85),
    "transmission_type": ("transmission", 85),
    "co2_emissions": ("co2_emissions", 80),
    "vehicle_type": ("body_style", 80),
}

# Upper bounds (g/km combined CO2) for efficiency classes A..F; above is G.
CO2_CLASS_LIMITS: list[tuple[float, str]] = [
    (0, "A"),
    (95, "B"),
    (115, "C"),
    (135, "D"),
    (155, "E"),
    (175, "F"),
]

# First year a Euro standard became mandatory for new registrations.
EURO_STANDARD_YEARS: list[tuple[int, str]] = [
    (2015, "Euro 6"),
    (2011, "Euro 5"),
    (2006, "Euro 4"),
    (2001, "Euro 3"),
    (1997, "Euro 2"),
    (1993, "Euro 1"),
]


class SimilarVehicleStore(Protocol):
    def lookup_similar(self, make: str, model: str, limit: int = 10) -> list[dict]: ...


Adapter = Callable[[FieldRequest, FieldContext], Optional[ConfidenceScoredValue]]


# ── Helpers ──────────────────────────────────────────────────────────

_NUMBER_RE = re.compile(r"(?:(?<![\w-])-)?\d+(?:[.,]\d+)?")


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_number(value: Any) -> Optional[float]:
    """First number in ints, floats and strings like ``"ca. 150 PS"`` or ``"6,5"``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _NUMBER_RE.search(value)
        if match is None:
            return None
        return float(match.group().replace(",", "."))
    return None


def _known_value(field_name: str, context: FieldContext) -> Any:
    """Value of another field from the form, extraction or enrichment (in that order)."""
    value = context.current_form_data.get(field_name)
    if not is_empty(value):
        return value
    if context.extracted_data is not None:
        value = context.extracted_data.get(field_name)
        if not is_empty(value):
            return value
        for alias in FIELD_ALIASES.get(field_name, []):
            value = context.extracted_data.get(alias)
            if not is_empty(value):
                return value
    if context.enriched_data is not None and field_name in ENRICHMENT_FIELDS:
        attr, _ = ENRICHMENT_FIELDS[field_name]
        value = getattr(context.enriched_data.vehicle, attr, None)
        if not is_empty(value):
            return value
    return None


# ── Conversions ──────────────────────────────────────────────────────


def ps_to_kw(ps: float) -> int:
    return round(ps * PS_TO_KW)


def kw_to_ps(kw: float) -> int:
    return round(kw * KW_TO_PS)


def efficiency_class_for_co2(co2: float) -> str:
    for limit, label in CO2_CLASS_LIMITS:
        if co2 <= limit:
            return label
    return "G"


def euro_standard_for_year(year: int) -> Optional[str]:
    for first_year, label in EURO_STANDARD_YEARS:
        if year >= first_year:
            return label
    return None


# ── Adapters ─────────────────────────────────────────────────────────


def user_input_adapter(
    request: FieldRequest, context: FieldContext
) -> Optional[ConfidenceScoredValue]:
    value = context.current_form_data.get(request.field_name)
    if is_empty(value):
        return None
    return ConfidenceScoredValue(
        value=value,
        confidence=USER_INPUT_CONFIDENCE,
        source=ValueSource.USER_INPUT,
        reasoning="Value already entered by the user",
    )


def direct_field_adapter(
    request: FieldRequest, context: FieldContext
) -> Optional[ConfidenceScoredValue]:
    """Verbatim key in the extracted data, then the static alias table."""
    extracted = context.extracted_data
    if extracted is None:
        return None

    value = extracted.get(request.field_name)
    if not is_empty(value):
        return ConfidenceScoredValue(
            value=value,
            confidence=DIRECT_CONFIDENCE,
            source=ValueSource.AI_EXTRACTION,
            reasoning=f"Found '{request.field_name}' in extracted data",
        )

    for alias in FIELD_ALIASES.get(request.field_name, []):
        value = extracted.get(alias)
        if not is_empty(value):
            return ConfidenceScoredValue(
                value=value,
                confidence=ALIAS_CONFIDENCE,
                source=ValueSource.AI_EXTRACTION,
                reasoning=f"Found as '{alias}' in extracted data",
            )
    return None


def enrichment_adapter(
    request: FieldRequest, context: FieldContext
) -> Optional[ConfidenceScoredValue]:
    if context.enriched_data is None or request.field_name not in ENRICHMENT_FIELDS:
        return None
    attr, confidence = ENRICHMENT_FIELDS[request.field_name]
    value = getattr(context.enriched_data.vehicle, attr, None)
    if is_empty(value):
        return None
    return ConfidenceScoredValue(
        value=value,
        confidence=confidence,
        source=ValueSource.ENRICHMENT,
        reasoning=f"Taken from enriched vehicle data ({attr})",
    )


def pattern_adapter(
    request: FieldRequest, context: FieldContext
) -> Optional[ConfidenceScoredValue]:
    """Derive the field from other known fields via fixed domain rules."""
    name = request.field_name
    value: Any = None
    reasoning = ""

    if name == "power_kw":
        ps = to_number(_known_value("power_ps", context))
        if ps:
            value, reasoning = ps_to_kw(ps), f"Converted from {ps:g} PS"
    elif name == "power_ps":
        kw = to_number(_known_value("power_kw", context))
        if kw:
            value, reasoning = kw_to_ps(kw), f"Converted from {kw:g} kW"
    elif name == "emission_class":
        co2 = to_number(_known_value("co2_emissions", context))
        if co2 is not None:
            value = efficiency_class_for_co2(co2)
            reasoning = f"Inferred from CO2 emissions of {co2:g} g/km"
    elif name == "euro_standard":
        year = to_number(_known_value("year", context))
        if year is not None:
            value = euro_standard_for_year(int(year))
            reasoning = f"Inferred from registration year {int(year)}"

    if value is None:
        return None
    return ConfidenceScoredValue(
        value=value,
        confidence=PATTERN_CONFIDENCE,
        source=ValueSource.PATTERN_MATCHING,
        reasoning=reasoning,
    )


def make_database_adapter(store: SimilarVehicleStore, limit: int = 10) -> Adapter:
    """Median of a numeric field across stored vehicles of the same make/model."""

    def database_adapter(
        request: FieldRequest, context: FieldContext
    ) -> Optional[ConfidenceScoredValue]:
        if request.field_type != FieldType.NUMBER:
            return None
        identity = context.vehicle_identity()
        if not identity.make or not identity.model:
            return None

        try:
            records = store.lookup_similar(identity.make, identity.model, limit)
        except Exception as exc:
            logger.warning(
                "Similar-vehicle lookup failed for %s %s: %s", identity.make, identity.model, exc
            )
            return None
        values = [
            n for n in (to_number(r.get(request.field_name)) for r in records) if n is not None
        ]
        if not values:
            return None

        median = statistics.median(values)
        if median == int(median):
            median = int(median)
        return ConfidenceScoredValue(
            value=median,
            confidence=DATABASE_CONFIDENCE,
            source=ValueSource.DATABASE_LOOKUP,
            reasoning=(
                f"Median of {len(values)} similar {identity.make} {identity.model} vehicles"
            ),
        )

    return database_adapter


def default_adapters(
    store: SimilarVehicleStore | None = None, limit: int = 10
) -> list[Adapter]:
    """Adapters in priority order; this order is also the ranking tie-break."""
    adapters: list[Adapter] = [
        user_input_adapter,
        direct_field_adapter,
        enrichment_adapter,
        pattern_adapter,
    ]
    if store is not None:
        adapters.append(make_database_adapter(store, limit))
    return adapters


# ── Ranking ──────────────────────────────────────────────────────────


def collect_candidates(
    request: FieldRequest, context: FieldContext, adapters: list[Adapter]
) -> list[ConfidenceScoredValue]:
    """Run every adapter and return candidates ranked best first.

    ``sorted`` is stable, so equal confidences keep adapter order.
    """
    candidates: list[ConfidenceScoredValue] = []
    for adapter in adapters:
        candidate = adapter(request, context)
        if candidate is not None:
            candidates.append(candidate)
    return sorted(candidates, key=lambda c: c.confidence, reverse=True)
