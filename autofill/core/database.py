"""SQLite database manager: one database per dealer dataset."""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from autofill.agents.models import EnrichedData, ExtractedData, FieldResolution

logger = logging.getLogger(__name__)

DATA_ROOT = Path("data")

# ── Schema DDL ───────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id              TEXT PRIMARY KEY,
    filename        TEXT,
    pdf_text        TEXT,
    extracted_data  TEXT,          -- JSON
    enriched_data   TEXT,          -- JSON
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vehicles (
    id              INTEGER PRIMARY KEY,
    make            TEXT NOT NULL,
    model           TEXT NOT NULL,
    variant         TEXT,
    year            INTEGER,
    specs           TEXT NOT NULL DEFAULT '{}',  -- JSON
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_vehicles_make_model ON vehicles(make, model);

CREATE TABLE IF NOT EXISTS equipment (
    id              INTEGER PRIMARY KEY,
    name            TEXT NOT NULL UNIQUE,
    category        TEXT NOT NULL
                    CHECK (category IN ('safety', 'comfort', 'assistance',
                        'infotainment', 'performance', 'exterior',
                        'interior', 'lighting', 'other'))
);

CREATE TABLE IF NOT EXISTS field_resolutions (
    id              INTEGER PRIMARY KEY,
    document_id     TEXT NOT NULL REFERENCES documents(id),
    field_name      TEXT NOT NULL,
    catalog_hash    TEXT,
    value           TEXT,          -- JSON
    confidence      INTEGER CHECK (confidence >= 0 AND confidence <= 100),
    reasoning       TEXT,
    sources         TEXT NOT NULL DEFAULT '[]',  -- JSON array
    needs_review    INTEGER NOT NULL DEFAULT 0,
    resolved_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_resolutions_document ON field_resolutions(document_id);
"""


class StoredDocument(dict):
    """Row from ``documents`` with decoded evidence records."""

    @property
    def extracted_data(self) -> Optional[ExtractedData]:
        return self.get("extracted")

    @property
    def enriched_data(self) -> Optional[EnrichedData]:
        return self.get("enriched")


# ── ListingDatabase ──────────────────────────────────────────────────


class ListingDatabase:
    """SQLite store for listing documents, reference vehicles and results."""

    def __init__(self, dataset_name: str, data_root: Path | None = None):
        root = (data_root or DATA_ROOT) / dataset_name
        root.mkdir(parents=True, exist_ok=True)
        (root / "pdfs").mkdir(exist_ok=True)

        self.db_path = root / "listing.db"
        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    # ── Documents ────────────────────────────────────────────

    def add_document(
        self,
        document_id: str,
        pdf_text: str | None = None,
        filename: str | None = None,
        extracted_data: dict | None = None,
        enriched_data: dict | None = None,
    ) -> bool:
        """Insert a document. Returns False if the id already exists."""
        now = _now()
        try:
            self._conn.execute(
                """INSERT INTO documents
                   (id, filename, pdf_text, extracted_data, enriched_data,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    document_id,
                    filename,
                    pdf_text,
                    _dumps_or_none(extracted_data),
                    _dumps_or_none(enriched_data),
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            logger.info("Document %s already stored — skipping insert", document_id[:12])
            return False
        self._conn.commit()
        return True

    def update_document_data(
        self,
        document_id: str,
        extracted_data: dict | None = None,
        enriched_data: dict | None = None,
    ) -> None:
        """Replace the extraction and/or enrichment JSON of a document."""
        row = self._conn.execute(
            "SELECT id FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        if row is None:
            raise ValueError(f"Document {document_id} not found")

        if extracted_data is not None:
            self._conn.execute(
                "UPDATE documents SET extracted_data = ?, updated_at = ? WHERE id = ?",
                (json.dumps(extracted_data), _now(), document_id),
            )
        if enriched_data is not None:
            self._conn.execute(
                "UPDATE documents SET enriched_data = ?, updated_at = ? WHERE id = ?",
                (json.dumps(enriched_data), _now(), document_id),
            )
        self._conn.commit()

    def lookup_extracted_document(self, document_id: str) -> StoredDocument | None:
        """Return the document with validated extraction/enrichment records."""
        row = self._conn.execute(
            "SELECT * FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        if row is None:
            return None

        doc = StoredDocument(dict(row))
        if row["extracted_data"]:
            doc["extracted"] = ExtractedData.model_validate(json.loads(row["extracted_data"]))
        if row["enriched_data"]:
            doc["enriched"] = EnrichedData.model_validate(json.loads(row["enriched_data"]))
        return doc

    # ── Reference Vehicles ───────────────────────────────────

    def add_vehicle(
        self,
        make: str,
        model: str,
        specs: dict[str, Any],
        variant: str | None = None,
        year: int | None = None,
    ) -> int:
        """Record a previously listed vehicle. Returns the vehicle id."""
        cur = self._conn.execute(
            """INSERT INTO vehicles (make, model, variant, year, specs, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (make, model, variant, year, json.dumps(specs), _now()),
        )
        self._conn.commit()
        return cur.lastrowid

    def lookup_similar(self, make: str, model: str, limit: int = 10) -> list[dict]:
        """Most recent vehicles with the same make and model (case-insensitive)."""
        rows = self._conn.execute(
            """SELECT * FROM vehicles
               WHERE lower(make) = lower(?) AND lower(model) = lower(?)
               ORDER BY id DESC LIMIT ?""",
            (make, model, limit),
        ).fetchall()
        records = []
        for r in rows:
            record = json.loads(r["specs"])
            record.update(make=r["make"], model=r["model"], variant=r["variant"], year=r["year"])
            records.append(record)
        return records

    # ── Equipment ────────────────────────────────────────────

    def add_equipment(self, name: str, category: str) -> int:
        cur = self._conn.execute(
            "INSERT INTO equipment (name, category) VALUES (?, ?)", (name, category)
        )
        self._conn.commit()
        return cur.lastrowid

    def find_equipment(self, keyword: str) -> dict | None:
        """First equipment item whose name contains the keyword (or its spaced form)."""
        row = self._conn.execute(
            """SELECT * FROM equipment
               WHERE name LIKE ? OR name LIKE ?
               ORDER BY length(name) LIMIT 1""",
            (f"%{keyword}%", f"%{keyword.replace('-', ' ')}%"),
        ).fetchone()
        return dict(row) if row else None

    # ── Resolutions ──────────────────────────────────────────

    def save_resolution(
        self,
        document_id: str,
        resolution: FieldResolution,
        catalog_hash: str | None = None,
    ) -> int:
        """Record a field resolution. Returns the row id."""
        if resolution.field_name is None:
            raise ValueError("Resolution has no field_name")
        cur = self._conn.execute(
            """INSERT INTO field_resolutions
               (document_id, field_name, catalog_hash, value, confidence,
                reasoning, sources, needs_review, resolved_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                document_id,
                resolution.field_name,
                catalog_hash,
                json.dumps(resolution.value),
                resolution.confidence,
                resolution.reasoning,
                json.dumps(resolution.sources),
                int(resolution.needs_review),
                _now(),
            ),
        )
        self._conn.commit()
        return cur.lastrowid

    def get_resolutions(self, document_id: str) -> dict[str, FieldResolution]:
        """Latest resolution per field for a document."""
        rows = self._conn.execute(
            """SELECT * FROM field_resolutions
               WHERE document_id = ? ORDER BY id""",
            (document_id,),
        ).fetchall()
        latest: dict[str, FieldResolution] = {}
        for r in rows:
            latest[r["field_name"]] = FieldResolution(
                field_name=r["field_name"],
                value=json.loads(r["value"]),
                confidence=r["confidence"],
                reasoning=r["reasoning"] or "",
                sources=json.loads(r["sources"]),
                needs_review=bool(r["needs_review"]),
            )
        return latest

    def get_resolved_fields(self, document_id: str, catalog_hash: str) -> set[str]:
        """Fields already resolved for this document with the current catalog hash."""
        rows = self._conn.execute(
            """SELECT DISTINCT field_name FROM field_resolutions
               WHERE document_id = ? AND catalog_hash = ?""",
            (document_id, catalog_hash),
        ).fetchall()
        return {r["field_name"] for r in rows}

    # ── Cleanup ──────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()


# ── Helpers ──────────────────────────────────────────────────────────


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps_or_none(data: dict | None) -> str | None:
    return json.dumps(data) if data is not None else None
