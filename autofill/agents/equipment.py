"""Equipment extraction agent: keywords → categories → stored equipment items."""

import json
import logging
import re
import time
import uuid
from enum import Enum
from statistics import mean
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from autofill.agents.models import VehicleIdentity
from autofill.agents.research import ResearchCollaborator
from autofill.agents.synthesis import LanguageModel

logger = logging.getLogger(__name__)


# ── Categories ───────────────────────────────────────────────────────


class EquipmentCategory(str, Enum):
    SAFETY = "safety"
    COMFORT = "comfort"
    ASSISTANCE = "assistance"
    INFOTAINMENT = "infotainment"
    PERFORMANCE = "performance"
    EXTERIOR = "exterior"
    INTERIOR = "interior"
    LIGHTING = "lighting"
    OTHER = "other"


# German and English names found in stored data, mapped onto the closed set.
CATEGORY_ALIASES: dict[str, EquipmentCategory] = {
    "sicherheit": EquipmentCategory.SAFETY,
    "komfort": EquipmentCategory.COMFORT,
    "assistenzsysteme": EquipmentCategory.ASSISTANCE,
    "assistenz": EquipmentCategory.ASSISTANCE,
    "multimedia": EquipmentCategory.INFOTAINMENT,
    "entertainment": EquipmentCategory.INFOTAINMENT,
    "sport": EquipmentCategory.PERFORMANCE,
    "leistung": EquipmentCategory.PERFORMANCE,
    "exterieur": EquipmentCategory.EXTERIOR,
    "außen": EquipmentCategory.EXTERIOR,
    "interieur": EquipmentCategory.INTERIOR,
    "innen": EquipmentCategory.INTERIOR,
    "innenraum": EquipmentCategory.INTERIOR,
    "beleuchtung": EquipmentCategory.LIGHTING,
    "licht": EquipmentCategory.LIGHTING,
    "sonstiges": EquipmentCategory.OTHER,
    **{c.value: c for c in EquipmentCategory},
}

CATEGORY_DESCRIPTIONS: dict[EquipmentCategory, str] = {
    EquipmentCategory.SAFETY: "Safety equipment such as ABS, ESP, airbags, emergency braking",
    EquipmentCategory.COMFORT: "Comfort features such as seat heating, climate control, massage seats",
    EquipmentCategory.ASSISTANCE: "Driver assistance such as ACC, lane keeping, park pilot, blind spot",
    EquipmentCategory.INFOTAINMENT: "Entertainment and connectivity such as navigation, CarPlay, sound",
    EquipmentCategory.PERFORMANCE: "Performance equipment such as sport suspension, M package, brakes",
    EquipmentCategory.EXTERIOR: "Exterior equipment such as alloy wheels, panoramic roof, tow bar",
    EquipmentCategory.INTERIOR: "Interior equipment such as leather, ambient lighting, head-up display",
    EquipmentCategory.LIGHTING: "Lighting such as LED headlights, xenon, laser, adaptive light",
    EquipmentCategory.OTHER: "Anything that fits no other category",
}

# Substring rules, checked in category order; first hit wins.
CATEGORY_KEYWORDS: dict[EquipmentCategory, list[str]] = {
    EquipmentCategory.SAFETY: ["abs", "esp", "airbag", "notbrems", "kollision", "gurt", "isofix"],
    EquipmentCategory.COMFORT: ["heizung", "klima", "massage", "elektrisch", "memory", "komfort"],
    EquipmentCategory.ASSISTANCE: ["assistent", "acc", "spurhalte", "park", "pilot", "radar", "kamera"],
    EquipmentCategory.INFOTAINMENT: ["navi", "carplay", "android", "bluetooth", "sound", "display", "touchscreen"],
    EquipmentCategory.PERFORMANCE: ["sport", "performance", "m-paket", "amg", "rs", "tuning", "fahrwerk"],
    EquipmentCategory.EXTERIOR: ["felgen", "alu", "panorama", "dach", "anhänger", "spoiler", "chrom"],
    EquipmentCategory.INTERIOR: ["leder", "alcantara", "ambiente", "head-up", "holz", "carbon"],
    EquipmentCategory.LIGHTING: ["led", "xenon", "laser", "matrix", "adaptiv", "scheinwerfer", "tagfahr"],
    EquipmentCategory.OTHER: [],
}

FALLBACK_PATTERNS = [
    "navigationssystem", "klimaautomatik", "sitzheizung", "lederausstattung",
    "led-scheinwerfer", "xenon", "alufelgen", "einparkhilfe", "parkassistent",
    "tempomat", "adaptive cruise control", "bluetooth", "carplay", "android auto",
    "panoramadach", "schiebedach", "allradantrieb", "automatikgetriebe",
    "head-up display", "spurhalteassistent", "notbremsassistent",
]

AUTO_APPLY = 80
SUGGEST = 60
RESEARCH_NEEDED = 40
IGNORE = 20

LLM_KEYWORD_CONFIDENCE = 85
PATTERN_KEYWORD_CONFIDENCE = 70
RESEARCH_KEYWORD_CONFIDENCE = 85
CUSTOM_ITEM_CONFIDENCE = 70
FUZZY_MATCH_FACTOR = 0.8


def normalize_category(name: Any) -> Optional[EquipmentCategory]:
    """Map a German or English category name onto the closed set; None if unknown."""
    if not isinstance(name, str):
        return None
    key = name.strip().strip("\"'.").lower()
    return CATEGORY_ALIASES.get(key)


def categorize_by_keyword(keyword: str) -> Optional[EquipmentCategory]:
    lower = keyword.lower()
    for category, needles in CATEGORY_KEYWORDS.items():
        if any(n in lower for n in needles):
            return category
    return None


async def categorize_feature(
    keyword: str, llm: Optional[LanguageModel] = None
) -> EquipmentCategory:
    """Keyword rules first, then the language model; ``other`` when neither decides."""
    category = categorize_by_keyword(keyword)
    if category is not None:
        return category
    if llm is None:
        return EquipmentCategory.OTHER

    options = "\n".join(f"- {c.value} ({CATEGORY_DESCRIPTIONS[c]})" for c in EquipmentCategory)
    prompt = f"""/no_think
Categorize this vehicle equipment feature into EXACTLY ONE of these categories:
{options}

Equipment feature: "{keyword}"

Answer ONLY with the category name (e.g. "comfort")."""
    try:
        reply = await llm.complete(prompt)
    except Exception as exc:
        logger.warning("Categorization failed for '%s': %s", keyword, exc)
        return EquipmentCategory.OTHER
    return normalize_category(reply) or EquipmentCategory.OTHER


# ── Models ───────────────────────────────────────────────────────────


class EquipmentSource(str, Enum):
    PDF_EXPLICIT = "pdf_explicit"
    AI_EXTRACTION = "ai_extraction"
    PERPLEXITY_RESEARCH = "perplexity_research"
    PATTERN_MATCHING = "pattern_matching"
    AI_INFERRED = "ai_inferred"
    DATABASE_LOOKUP = "database_lookup"
    USER_INPUT = "user_input"


class EquipmentFeature(BaseModel):
    keyword: str
    category: Optional[EquipmentCategory] = None
    confidence: int = Field(ge=0, le=100)
    source: EquipmentSource
    reasoning: Optional[str] = None


class EquipmentMapping(BaseModel):
    equipment_id: str
    equipment_name: str
    category: EquipmentCategory
    confidence: int = Field(ge=0, le=100)
    source: EquipmentSource
    is_new_item: bool = False


class EquipmentOptions(BaseModel):
    enable_research: bool = False
    include_custom_equipment: bool = False


class EquipmentRequest(BaseModel):
    document_id: str
    pdf_text: str = ""
    extracted_data: Optional[dict[str, Any]] = None
    enriched_data: Optional[dict[str, Any]] = None
    vehicle: Optional[VehicleIdentity] = None
    options: EquipmentOptions = Field(default_factory=EquipmentOptions)


class EquipmentMetadata(BaseModel):
    total_found: int = 0
    mapped_count: int = 0
    custom_count: int = 0
    processing_time_ms: int = 0
    sources: list[EquipmentSource] = Field(default_factory=list)
    research_used: bool = False


class EquipmentReport(BaseModel):
    mapped_equipment: list[EquipmentMapping] = Field(default_factory=list)
    custom_equipment: list[str] = Field(default_factory=list)
    categories: dict[EquipmentCategory, list[EquipmentMapping]] = Field(
        default_factory=lambda: {c: [] for c in EquipmentCategory}
    )
    overall_confidence: int = 0
    confidence_by_category: dict[EquipmentCategory, int] = Field(
        default_factory=lambda: {c: 0 for c in EquipmentCategory}
    )
    metadata: EquipmentMetadata = Field(default_factory=EquipmentMetadata)


class EquipmentStore(Protocol):
    def find_equipment(self, keyword: str) -> Optional[dict]: ...


# ── Parsing helpers ──────────────────────────────────────────────────


def extract_keywords_by_pattern(text: str) -> list[str]:
    lower = text.lower()
    return [p[0].upper() + p[1:] for p in FALLBACK_PATTERNS if p in lower]


def parse_keyword_list(reply: str) -> list[str]:
    """First JSON array in the reply, as unique non-empty strings."""
    match = re.search(r"\[[\s\S]*\]", reply)
    if not match:
        raise ValueError("No JSON array in keyword reply")
    items = json.loads(match.group(0))
    return list(dict.fromkeys(str(i).strip() for i in items if str(i).strip()))


def parse_research_for_equipment(text: str) -> list[str]:
    found = []
    for line in text.splitlines():
        if "-" in line or "•" in line or "*" in line:
            clean = re.sub(r"^\s*[-•*]\s*", "", line).strip()
            if 2 < len(clean) < 50:
                found.append(clean)
    return list(dict.fromkeys(found))


# ── Agent ────────────────────────────────────────────────────────────


class EquipmentExtractionAgent:
    """Extract, categorize and map a listing's equipment features."""

    def __init__(
        self,
        llm: LanguageModel,
        store: Optional[EquipmentStore] = None,
        researcher: Optional[ResearchCollaborator] = None,
    ):
        self.llm = llm
        self.store = store
        self.researcher = researcher

    async def extract_equipment(self, request: EquipmentRequest) -> EquipmentReport:
        start = time.perf_counter()
        logger.info("Extracting equipment for document %s", request.document_id[:12])
        try:
            report = await self._extract(request)
        except Exception:
            logger.exception("Equipment extraction failed for %s", request.document_id[:12])
            return EquipmentReport()
        report.metadata.processing_time_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Equipment extraction done: %d items, %d%% confidence",
            len(report.mapped_equipment),
            report.overall_confidence,
        )
        return report

    async def _extract(self, request: EquipmentRequest) -> EquipmentReport:
        features = await self._extract_keywords(request)
        for f in features:
            f.category = await categorize_feature(f.keyword, self.llm)

        research_used = False
        if request.options.enable_research and self.researcher is not None:
            extra = await self._research(request, features)
            if extra is not None:
                research_used = True
                known = {f.keyword.lower() for f in features}
                for f in extra:
                    if f.keyword.lower() not in known:
                        f.category = await categorize_feature(f.keyword, self.llm)
                        features.append(f)
                        known.add(f.keyword.lower())

        mappings: list[EquipmentMapping] = []
        unmapped: list[EquipmentFeature] = []
        for f in features:
            mapping = self._map_to_store(f)
            if mapping is not None:
                mappings.append(mapping)
            else:
                unmapped.append(f)

        custom = list(dict.fromkeys(f.keyword for f in unmapped))
        if request.options.include_custom_equipment:
            for f in unmapped:
                mappings.append(
                    EquipmentMapping(
                        equipment_id=f"custom-{uuid.uuid4().hex[:12]}",
                        equipment_name=f.keyword,
                        category=f.category or EquipmentCategory.OTHER,
                        confidence=CUSTOM_ITEM_CONFIDENCE,
                        source=EquipmentSource.AI_INFERRED,
                        is_new_item=True,
                    )
                )

        return _finalize(mappings, custom, len(features), research_used)

    async def _extract_keywords(self, request: EquipmentRequest) -> list[EquipmentFeature]:
        prompt = build_keyword_prompt(request)
        try:
            keywords = parse_keyword_list(await self.llm.complete(prompt))
        except Exception as exc:
            logger.warning("Keyword extraction failed, using pattern list: %s", exc)
            return [
                EquipmentFeature(
                    keyword=k,
                    confidence=PATTERN_KEYWORD_CONFIDENCE,
                    source=EquipmentSource.PATTERN_MATCHING,
                    reasoning="Recognized by pattern matching",
                )
                for k in extract_keywords_by_pattern(request.pdf_text)
            ]
        logger.info("%d equipment keywords extracted", len(keywords))
        return [
            EquipmentFeature(
                keyword=k,
                confidence=LLM_KEYWORD_CONFIDENCE,
                source=EquipmentSource.AI_EXTRACTION,
                reasoning="Extracted from PDF text by the language model",
            )
            for k in keywords
        ]

    async def _research(
        self, request: EquipmentRequest, features: list[EquipmentFeature]
    ) -> Optional[list[EquipmentFeature]]:
        """Web research when features are uncertain or none were found."""
        vehicle = request.vehicle
        if vehicle is None or not vehicle.make or not vehicle.model:
            return None
        uncertain = [f for f in features if f.confidence < SUGGEST]
        if features and not uncertain:
            return None

        focus = ", ".join(f.keyword for f in uncertain) or "all equipment"
        query = (
            f"Which equipment features does the {vehicle.describe()} have as standard "
            f"and as options? Focus on: {focus}"
        )
        try:
            result = await self.researcher.search(query, vehicle)
        except Exception as exc:
            logger.warning("Equipment research failed: %s", exc)
            return None
        found = parse_research_for_equipment(result.result_text)
        logger.info("%d additional features found through research", len(found))
        return [
            EquipmentFeature(
                keyword=k,
                confidence=RESEARCH_KEYWORD_CONFIDENCE,
                source=EquipmentSource.PERPLEXITY_RESEARCH,
                reasoning="Confirmed by web research",
            )
            for k in found
        ]

    def _map_to_store(self, feature: EquipmentFeature) -> Optional[EquipmentMapping]:
        if self.store is None:
            return None
        try:
            item = self.store.find_equipment(feature.keyword)
            confidence = feature.confidence
            if item is None:
                # Fuzzy: the longest word of a multi-word keyword.
                words = sorted(re.split(r"[\s\-/]+", feature.keyword), key=len, reverse=True)
                if len(words) > 1 and len(words[0]) >= 4:
                    item = self.store.find_equipment(words[0])
                    confidence = int(feature.confidence * FUZZY_MATCH_FACTOR)
        except Exception as exc:
            logger.warning("Mapping failed for '%s': %s", feature.keyword, exc)
            return None
        if item is None:
            return None
        return EquipmentMapping(
            equipment_id=str(item["id"]),
            equipment_name=item["name"],
            category=normalize_category(item["category"]) or EquipmentCategory.OTHER,
            confidence=confidence,
            source=feature.source,
        )


def build_keyword_prompt(request: EquipmentRequest) -> str:
    prompt = f"""/no_think
Analyse the following vehicle text and extract ALL equipment features.
Pay particular attention to: safety, comfort, assistance systems, infotainment,
performance, exterior, interior.

TEXT:
{request.pdf_text[:3000]}
"""
    if request.extracted_data:
        prompt += f"\nALREADY EXTRACTED DATA:\n{json.dumps(request.extracted_data, indent=2)}\n"
    if request.enriched_data:
        prompt += f"\nENRICHED DATA:\n{json.dumps(request.enriched_data, indent=2)}\n"
    prompt += """
Return ONLY a JSON array of equipment names, e.g.:
["Navigationssystem", "LED-Scheinwerfer", "Sitzheizung", "Parkassistent"]

IMPORTANT:
- Use German names
- No duplicates
- Only concrete equipment, no general terms
- At least 5, at most 30 items"""
    return prompt


def _finalize(
    mappings: list[EquipmentMapping],
    custom: list[str],
    total_found: int,
    research_used: bool,
) -> EquipmentReport:
    categories: dict[EquipmentCategory, list[EquipmentMapping]] = {c: [] for c in EquipmentCategory}
    for m in mappings:
        categories[m.category].append(m)

    return EquipmentReport(
        mapped_equipment=mappings,
        custom_equipment=custom,
        categories=categories,
        overall_confidence=round(mean(m.confidence for m in mappings)) if mappings else 0,
        confidence_by_category={
            c: round(mean(m.confidence for m in items)) if items else 0
            for c, items in categories.items()
        },
        metadata=EquipmentMetadata(
            total_found=total_found,
            mapped_count=sum(1 for m in mappings if not m.is_new_item),
            custom_count=len(custom),
            sources=list(dict.fromkeys(m.source for m in mappings)),
            research_used=research_used,
        ),
    )
