"""Shared fakes for the language-model and research collaborators."""

from pathlib import Path

import pytest

from autofill.agents.models import ResearchResult

SPEC_PATH = Path(__file__).resolve().parent.parent / "field_specs" / "vehicle_fields.yaml"


class ScriptedLLM:
    """Returns canned replies; analysis prompts get a fixed note."""

    def __init__(self, *synthesis_replies: str, fail_on: str | None = None):
        self.synthesis_replies = list(synthesis_replies)
        self.fail_on = fail_on
        self.prompts: list[str] = []

    @property
    def synthesis_prompts(self) -> list[str]:
        return [p for p in self.prompts if "Answer in exactly this format" in p]

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        is_synthesis = "Answer in exactly this format" in prompt
        if self.fail_on == "analysis" and not is_synthesis:
            raise ConnectionError("ollama unavailable")
        if not is_synthesis:
            return "Looking for the field in the extracted data."
        if self.fail_on == "synthesis":
            raise ConnectionError("ollama unavailable")
        if len(self.synthesis_replies) > 1:
            return self.synthesis_replies.pop(0)
        return self.synthesis_replies[0] if self.synthesis_replies else ""


class FakeResearcher:
    def __init__(self, result_text: str = "", confidence: int = 60, error: Exception | None = None):
        self.result_text = result_text
        self.confidence = confidence
        self.error = error
        self.queries: list[str] = []

    async def search(self, query, vehicle=None):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return ResearchResult(
            query=query,
            result_text=self.result_text,
            confidence=self.confidence,
            sources=["https://example.com/spec"] if self.result_text else [],
        )


@pytest.fixture()
def researcher():
    return FakeResearcher("ANSWER: 150 PS\nCONFIDENCE: High", confidence=90)
