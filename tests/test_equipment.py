"""Tests for equipment categorization, keyword extraction and mapping."""

import asyncio
from unittest.mock import patch

import pytest

from autofill.agents.equipment import (
    EquipmentCategory,
    EquipmentExtractionAgent,
    EquipmentOptions,
    EquipmentRequest,
    EquipmentSource,
    categorize_by_keyword,
    categorize_feature,
    extract_keywords_by_pattern,
    normalize_category,
    parse_keyword_list,
    parse_research_for_equipment,
)
from autofill.agents.models import VehicleIdentity
from autofill.core.database import ListingDatabase

from conftest import FakeResearcher


class EquipmentLLM:
    """Answers keyword prompts with ``keywords`` and category prompts with ``category``."""

    def __init__(self, keywords="[]", category="other", fail=False):
        self.keywords = keywords
        self.category = category
        self.fail = fail
        self.category_prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        if "Categorize this vehicle equipment" in prompt:
            self.category_prompts.append(prompt)
            if self.fail:
                raise ConnectionError("ollama unavailable")
            return self.category
        return self.keywords


@pytest.fixture()
def store(tmp_path):
    db = ListingDatabase("test_dealer", data_root=tmp_path)
    db.add_equipment("Navigationssystem", "infotainment")
    db.add_equipment("Sitzheizung vorne", "comfort")
    db.add_equipment("LED Scheinwerfer", "lighting")
    yield db
    db.close()


def _extract(agent, **kw):
    return asyncio.run(agent.extract_equipment(EquipmentRequest(document_id="abc123", **kw)))


# ── Categorization ───────────────────────────────────────────────────


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Komfort", EquipmentCategory.COMFORT),
        ('"sicherheit".', EquipmentCategory.SAFETY),
        ("Assistenzsysteme", EquipmentCategory.ASSISTANCE),
        ("lighting", EquipmentCategory.LIGHTING),
        ("Innenraum", EquipmentCategory.INTERIOR),
        ("Kofferraum", None),
        (None, None),
    ],
)
def test_normalize_category(name, expected):
    assert normalize_category(name) == expected


@pytest.mark.parametrize(
    "keyword, expected",
    [
        ("Navigationssystem", EquipmentCategory.INFOTAINMENT),
        ("Sitzheizung", EquipmentCategory.COMFORT),
        ("Parkassistent", EquipmentCategory.ASSISTANCE),
        ("LED-Scheinwerfer", EquipmentCategory.LIGHTING),
        ("Panoramadach", EquipmentCategory.EXTERIOR),
        ("Seitenairbags", EquipmentCategory.SAFETY),
        ("Raucherpaket", None),
    ],
)
def test_categorize_by_keyword(keyword, expected):
    assert categorize_by_keyword(keyword) == expected


def test_rules_win_before_model():
    llm = EquipmentLLM(category="exterior")
    assert asyncio.run(categorize_feature("Sitzheizung", llm)) == EquipmentCategory.COMFORT
    assert llm.category_prompts == []


def test_model_decides_unknown_keyword():
    llm = EquipmentLLM(category="Interieur")
    assert asyncio.run(categorize_feature("Raucherpaket", llm)) == EquipmentCategory.INTERIOR
    assert '"Raucherpaket"' in llm.category_prompts[0]


def test_model_failure_defaults_to_other():
    llm = EquipmentLLM(fail=True)
    assert asyncio.run(categorize_feature("Raucherpaket", llm)) == EquipmentCategory.OTHER


def test_no_model_defaults_to_other():
    assert asyncio.run(categorize_feature("Raucherpaket")) == EquipmentCategory.OTHER


@pytest.mark.parametrize("reply", ["", "comfort, maybe safety", "KATEGORIE: Licht", "beleuchtung"])
@pytest.mark.parametrize("keyword", ["Raucherpaket", "Skisack", "Xenon", "Anhängerkupplung"])
def test_category_always_in_closed_set(keyword, reply):
    category = asyncio.run(categorize_feature(keyword, EquipmentLLM(category=reply)))
    assert category in set(EquipmentCategory)


# ── Parsing ──────────────────────────────────────────────────────────


def test_parse_keyword_list_dedups_and_strips():
    reply = 'Here you go:\n["Navigationssystem", " Sitzheizung ", "Navigationssystem", ""]'
    assert parse_keyword_list(reply) == ["Navigationssystem", "Sitzheizung"]


def test_parse_keyword_list_without_array():
    with pytest.raises(ValueError):
        parse_keyword_list("No equipment found.")


def test_pattern_fallback_keywords():
    text = "Serienausstattung: Klimaautomatik, Sitzheizung und Android Auto."
    assert extract_keywords_by_pattern(text) == ["Klimaautomatik", "Sitzheizung", "Android auto"]


def test_parse_research_bullets():
    text = "Standard equipment:\n- Sitzheizung\n• Rückfahrkamera\n* Sitzheizung\nNo bullet here"
    assert parse_research_for_equipment(text) == ["Sitzheizung", "Rückfahrkamera"]


# ── Agent ────────────────────────────────────────────────────────────


def test_extract_and_map_against_store(store):
    llm = EquipmentLLM('["Navigationssystem", "Sitzheizung", "Raucherpaket"]', category="interieur")
    report = _extract(EquipmentExtractionAgent(llm, store), pdf_text="...")

    names = [m.equipment_name for m in report.mapped_equipment]
    assert names == ["Navigationssystem", "Sitzheizung vorne"]
    assert all(m.source == EquipmentSource.AI_EXTRACTION for m in report.mapped_equipment)
    assert report.custom_equipment == ["Raucherpaket"]
    assert report.overall_confidence == 85
    assert len(report.categories[EquipmentCategory.INFOTAINMENT]) == 1
    assert report.confidence_by_category[EquipmentCategory.COMFORT] == 85
    assert report.confidence_by_category[EquipmentCategory.SAFETY] == 0
    assert report.metadata.total_found == 3
    assert report.metadata.mapped_count == 2
    assert report.metadata.custom_count == 1
    assert not report.metadata.research_used


def test_fuzzy_match_on_longest_word(store):
    llm = EquipmentLLM('["Sitzheizung hinten"]')
    report = _extract(EquipmentExtractionAgent(llm, store))

    [mapping] = report.mapped_equipment
    assert mapping.equipment_name == "Sitzheizung vorne"
    assert mapping.confidence == 68


def test_pattern_fallback_when_model_returns_no_json(store):
    llm = EquipmentLLM("Sorry, I cannot help with that.")
    report = _extract(
        EquipmentExtractionAgent(llm, store),
        pdf_text="Ausstattung: Navigationssystem, LED-Scheinwerfer",
    )

    assert [m.equipment_name for m in report.mapped_equipment] == [
        "Navigationssystem",
        "LED Scheinwerfer",
    ]
    assert {m.confidence for m in report.mapped_equipment} == {70}
    assert report.metadata.sources == [EquipmentSource.PATTERN_MATCHING]


def test_research_when_nothing_found_and_custom_items():
    researcher = FakeResearcher("- Sitzheizung\n- Rückfahrkamera")
    agent = EquipmentExtractionAgent(EquipmentLLM("[]"), researcher=researcher)

    report = _extract(
        agent,
        vehicle=VehicleIdentity(make="VW", model="Golf"),
        options=EquipmentOptions(enable_research=True, include_custom_equipment=True),
    )

    assert len(researcher.queries) == 1
    assert "VW Golf" in researcher.queries[0]
    assert report.metadata.research_used
    assert report.custom_equipment == ["Sitzheizung", "Rückfahrkamera"]
    assert all(m.is_new_item for m in report.mapped_equipment)
    assert all(m.equipment_id.startswith("custom-") for m in report.mapped_equipment)
    assert all(m.source == EquipmentSource.AI_INFERRED for m in report.mapped_equipment)
    assert report.categories[EquipmentCategory.ASSISTANCE][0].equipment_name == "Rückfahrkamera"
    assert report.metadata.mapped_count == 0


def test_no_research_when_features_are_certain():
    researcher = FakeResearcher("- Sitzheizung")
    agent = EquipmentExtractionAgent(EquipmentLLM('["Navigationssystem"]'), researcher=researcher)

    report = _extract(
        agent,
        vehicle=VehicleIdentity(make="VW", model="Golf"),
        options=EquipmentOptions(enable_research=True),
    )

    assert researcher.queries == []
    assert not report.metadata.research_used


def test_no_research_without_vehicle_identity():
    researcher = FakeResearcher("- Sitzheizung")
    agent = EquipmentExtractionAgent(EquipmentLLM("[]"), researcher=researcher)

    _extract(agent, options=EquipmentOptions(enable_research=True))

    assert researcher.queries == []


def test_unexpected_error_returns_empty_report(store):
    agent = EquipmentExtractionAgent(EquipmentLLM('["Navigationssystem"]'), store)

    with patch("autofill.agents.equipment._finalize", side_effect=RuntimeError("boom")):
        report = _extract(agent)

    assert report.mapped_equipment == []
    assert report.overall_confidence == 0
    assert set(report.categories) == set(EquipmentCategory)
