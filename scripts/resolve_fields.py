#!/usr/bin/env python3
"""Resolve listing wizard fields for one PDF document."""

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from autofill.agents.batch import CategoryOrchestrator
from autofill.agents.equipment import EquipmentExtractionAgent, EquipmentOptions, EquipmentRequest
from autofill.agents.errors import ResearchFailure
from autofill.agents.models import FieldContext, FieldResolvedEvent, format_sse
from autofill.agents.research import PerplexityResearcher
from autofill.agents.resolver import FieldResolutionPipeline
from autofill.agents.synthesis import OllamaLanguageModel
from autofill.core.database import ListingDatabase
from autofill.core.field_spec import FieldSpec, load_field_spec
from autofill.parsers.pdf_text import compute_pdf_hash, extract_pdf_text

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("resolve_fields")

DEFAULT_SPEC = PROJECT_ROOT / "field_specs" / "vehicle_fields.yaml"


# ── Document ingestion ───────────────────────────────────────────────


def ingest_document(
    db: ListingDatabase,
    pdf_path: str | None,
    document_id: str | None,
    extracted_path: str | None,
    enriched_path: str | None,
) -> str:
    """Store the PDF (if given) and any evidence JSON; return the document id."""
    extracted = _read_json(extracted_path)
    enriched = _read_json(enriched_path)

    if pdf_path:
        document_id = compute_pdf_hash(pdf_path)
        text = extract_pdf_text(pdf_path)
        if db.add_document(document_id, text, Path(pdf_path).name, extracted, enriched):
            logger.info("Stored %s as document %s", Path(pdf_path).name, document_id[:12])
            return document_id

    if document_id is None:
        raise ValueError("Either --pdf or --document is required")
    if extracted is not None or enriched is not None:
        db.update_document_data(document_id, extracted, enriched)
    return document_id


def build_context(db: ListingDatabase, document_id: str, form_path: str | None) -> FieldContext:
    doc = db.lookup_extracted_document(document_id)
    if doc is None:
        raise ValueError(f"Document {document_id} not found")
    return FieldContext(
        pdf_text=doc["pdf_text"],
        extracted_data=doc.extracted_data,
        enriched_data=doc.enriched_data,
        current_form_data=_read_json(form_path) or {},
    )


# ── Modes ────────────────────────────────────────────────────────────


async def run_field(
    pipeline: FieldResolutionPipeline,
    spec: FieldSpec,
    db: ListingDatabase,
    document_id: str,
    context: FieldContext,
    field_name: str,
) -> bool:
    response = await pipeline.resolve_field(spec.request_for(field_name), context)
    print(response.model_dump_json(indent=2))
    if response.success:
        db.save_resolution(document_id, response.resolution)
    return response.success


async def run_category(
    orchestrator: CategoryOrchestrator,
    spec: FieldSpec,
    db: ListingDatabase,
    document_id: str,
    context: FieldContext,
    category: str,
    stream: bool,
    force: bool,
) -> bool:
    catalog_hash = spec.category_hash(category)
    fields = spec.category(category).fields
    if not force:
        done = db.get_resolved_fields(document_id, catalog_hash)
        if done:
            logger.info("Skipping %d fields already resolved with this catalog", len(done))
        fields = [f for f in fields if f.field_name not in done]
    if not fields:
        logger.info("Nothing to resolve for category '%s'", category)
        return True

    if stream:
        ok = True
        async for event in orchestrator.resolve_category_stream(fields, context):
            sys.stdout.write(format_sse(event))
            sys.stdout.flush()
            if isinstance(event, FieldResolvedEvent):
                db.save_resolution(document_id, event.to_resolution(), catalog_hash)
            elif getattr(event, "error", False):
                ok = False
        return ok

    report = await orchestrator.resolve_category(fields, context, category=category)
    for resolution in report.mapped_values:
        db.save_resolution(document_id, resolution, catalog_hash)
    print(report.model_dump_json(indent=2))
    return not report.errors


async def run_equipment(
    llm: OllamaLanguageModel,
    researcher: PerplexityResearcher | None,
    db: ListingDatabase,
    document_id: str,
    context: FieldContext,
    include_custom: bool,
) -> bool:
    agent = EquipmentExtractionAgent(llm, store=db, researcher=researcher)
    request = EquipmentRequest(
        document_id=document_id,
        pdf_text=context.pdf_text or "",
        extracted_data=context.extracted_data.model_dump() if context.extracted_data else None,
        enriched_data=context.enriched_data.model_dump() if context.enriched_data else None,
        vehicle=context.vehicle_identity(),
        options=EquipmentOptions(
            enable_research=researcher is not None,
            include_custom_equipment=include_custom,
        ),
    )
    report = await agent.extract_equipment(request)
    print(report.model_dump_json(indent=2))
    return True


# ── Runner ───────────────────────────────────────────────────────────


async def run(args: argparse.Namespace) -> bool:
    overrides = {}
    if args.no_research:
        overrides["enable_perplexity_research"] = False
    if args.debug:
        overrides["debug"] = True
    spec = load_field_spec(args.spec, overrides)
    logger.info("Field spec: %s (v%s)", spec.title, spec.version)

    db = ListingDatabase(args.name)
    logger.info("Database: %s", db.db_path)

    researcher = None
    if spec.agent.enable_perplexity_research:
        try:
            researcher = PerplexityResearcher(budget_s=spec.agent.research_timeout_s)
        except ResearchFailure as exc:
            logger.warning("%s — continuing without web research", exc)

    t = time.time()
    try:
        document_id = ingest_document(
            db, args.pdf, args.document, args.extracted, args.enriched
        )
        context = build_context(db, document_id, args.form)

        llm = OllamaLanguageModel(model=spec.agent.synthesis_model)
        if args.equipment:
            return await run_equipment(
                llm, researcher, db, document_id, context, args.include_custom
            )

        pipeline = FieldResolutionPipeline(llm, researcher, database=db, config=spec.agent)
        if args.field:
            return await run_field(pipeline, spec, db, document_id, context, args.field)

        orchestrator = CategoryOrchestrator(pipeline, catalog=spec)
        return await run_category(
            orchestrator, spec, db, document_id, context, args.category, args.stream, args.force
        )
    finally:
        if researcher is not None:
            await researcher.aclose()
        logger.info("Done in %.1fs", time.time() - t)
        db.close()


def _read_json(path: str | None) -> dict | None:
    if not path:
        return None
    with open(path) as f:
        return json.load(f)


# ── CLI ──────────────────────────────────────────────────────────────


def main():
    parser = argparse.ArgumentParser(description="Resolve vehicle listing fields")
    parser.add_argument("--name", required=True, help="Dataset name (used for database/directory)")
    parser.add_argument("--spec", default=str(DEFAULT_SPEC), help="Path to field spec YAML file")

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--pdf", help="Listing PDF to ingest")
    source.add_argument("--document", help="Id of an already stored document")

    parser.add_argument("--extracted", help="JSON file with extracted listing data")
    parser.add_argument("--enriched", help="JSON file with enriched vehicle data")
    parser.add_argument("--form", help="JSON file with values already entered in the form")

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--field", help="Resolve a single field")
    mode.add_argument("--category", help="Resolve every field of a catalog category")
    mode.add_argument("--equipment", action="store_true", help="Extract equipment features")

    parser.add_argument("--stream", action="store_true", help="Emit SSE frames per field")
    parser.add_argument("--force", action="store_true", help="Re-resolve already stored fields")
    parser.add_argument("--no-research", action="store_true", help="Disable web research")
    parser.add_argument("--include-custom", action="store_true", help="Keep unmapped equipment")
    parser.add_argument("--debug", action="store_true", help="Log every pipeline step")
    args = parser.parse_args()

    ok = asyncio.run(run(args))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
