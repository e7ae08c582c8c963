"""Idempotent merge of staged rows into companies, entities and holdings.

Module notes:
- Every write is an upsert on the collection's unique key, so merging the
  same staged rows twice leaves the canonical collections unchanged.
- Holdings take the incoming share count (overwrite, never add); totals are
  recomputed separately by `aggregate.totals`.
- Consumed staged rows are deleted only after all three upserts succeed; a
  failure in between leaves them staged for the retry.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, TypeVar

from pymongo.database import Database

from shareholder_pipeline.db import (
    COMPANIES,
    COMPANY_KEY,
    ENTITIES,
    ENTITY_KEY,
    HOLDINGS,
    HOLDING_KEY,
    STAGING,
    bulk_upsert,
    translate_errors,
)
from shareholder_pipeline.merge.stage import stage_batch
from shareholder_pipeline.models import ShareholderRow

log = logging.getLogger(__name__)

BATCH_SIZE = 1000
ROW_FIELDS = tuple(ShareholderRow.model_fields)

T = TypeVar("T")


@dataclass(frozen=True)
class MergeResult:
    """Counts of distinct records upserted by one merge."""
    companies: int = 0
    entities: int = 0
    holdings: int = 0
    rows: int = 0
    years: tuple[int, ...] = ()


def _chunks(items: list[T], size: int) -> Iterator[list[T]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _row_from_staging(doc: dict[str, Any]) -> ShareholderRow:
    return ShareholderRow.model_validate({k: doc.get(k) for k in ROW_FIELDS})


def _company_docs(rows: Iterable[ShareholderRow], owner_id: str) -> list[dict[str, Any]]:
    companies: dict[tuple[str, int], dict[str, Any]] = {}
    for r in rows:
        companies[(r.org_number, r.year)] = {
            "org_number": r.org_number,
            "year": r.year,
            "owner_id": owner_id,
            "name": r.company_name,
        }
    return list(companies.values())


def _entity_docs(rows: Iterable[ShareholderRow], owner_id: str) -> list[dict[str, Any]]:
    entities: dict[str, dict[str, Any]] = {}
    for r in rows:
        entities[r.entity_key] = {
            "owner_id": owner_id,
            "entity_key": r.entity_key,
            "entity_type": r.entity_type.value,
            "name": r.holder_name,
            "org_number": r.holder_org_number,
            "birth_year": r.holder_birth_year,
            "country_code": r.country_code,
        }
    return list(entities.values())


def _entity_ids(db: Database[dict[str, Any]], owner_id: str, keys: list[str]) -> dict[str, str]:
    ids: dict[str, str] = {}
    with translate_errors("look up entities"):
        for chunk in _chunks(keys, BATCH_SIZE):
            cursor = db[ENTITIES].find(
                {"owner_id": owner_id, "entity_key": {"$in": chunk}},
                {"_id": False, "entity_key": True, "entity_id": True},
            )
            for doc in cursor:
                ids[doc["entity_key"]] = doc["entity_id"]
    return ids


def _holding_docs(
    rows: Iterable[ShareholderRow],
    owner_id: str,
    entity_ids: dict[str, str],
) -> list[dict[str, Any]]:
    holdings: dict[tuple[str, str, str, int], dict[str, Any]] = {}
    for r in rows:
        holder_id = entity_ids[r.entity_key]
        holdings[(r.org_number, holder_id, r.share_class, r.year)] = {
            "company_org_number": r.org_number,
            "holder_entity_id": holder_id,
            "share_class": r.share_class,
            "year": r.year,
            "owner_id": owner_id,
            "share_count": r.share_count,
        }
    return list(holdings.values())


def merge_batch(db: Database[dict[str, Any]], owner_id: str) -> MergeResult:
    """Move every staged row of `owner_id` into the canonical collections.

    Steps:
    1. Upsert one company per (org_number, year, owner), seeding
       ``total_shares=0`` on insert.
    2. Upsert one entity per holder natural key.
    3. Upsert one holding per (company, holder, class, year, owner) with the
       incoming share count.
    4. Delete the consumed staged rows.

    Returns:
        `MergeResult` with distinct counts and the years touched.
    """
    with translate_errors("read staging"):
        staged = list(db[STAGING].find({"owner_id": owner_id}).sort("row_number", 1))
    if not staged:
        return MergeResult()

    rows = [_row_from_staging(doc) for doc in staged]
    now = datetime.now(timezone.utc)

    companies = _company_docs(rows, owner_id)
    bulk_upsert(
        db[COMPANIES],
        companies,
        COMPANY_KEY,
        batch_size=BATCH_SIZE,
        on_insert=lambda _: {"total_shares": 0, "created_at": now},
    )

    entities = _entity_docs(rows, owner_id)
    bulk_upsert(
        db[ENTITIES],
        entities,
        ENTITY_KEY,
        batch_size=BATCH_SIZE,
        on_insert=lambda _: {"entity_id": uuid.uuid4().hex, "created_at": now},
    )
    entity_ids = _entity_ids(db, owner_id, [e["entity_key"] for e in entities])

    holdings = _holding_docs(rows, owner_id, entity_ids)
    bulk_upsert(db[HOLDINGS], holdings, HOLDING_KEY, batch_size=BATCH_SIZE)

    with translate_errors("clear merged staging rows"):
        for chunk in _chunks([doc["_id"] for doc in staged], BATCH_SIZE):
            db[STAGING].delete_many({"_id": {"$in": chunk}})

    result = MergeResult(
        companies=len(companies),
        entities=len(entities),
        holdings=len(holdings),
        rows=len(rows),
        years=tuple(sorted({r.year for r in rows})),
    )
    log.info(
        "Merged %d rows for owner %s: companies=%d entities=%d holdings=%d",
        result.rows,
        owner_id,
        result.companies,
        result.entities,
        result.holdings,
    )
    return result


def stage_and_merge(
    db: Database[dict[str, Any]],
    owner_id: str,
    job_id: str,
    rows: list[ShareholderRow],
) -> MergeResult:
    """Stage a batch and merge it; the unit the drivers retry as a whole."""
    if rows:
        stage_batch(db, owner_id, job_id, rows)
    return merge_batch(db, owner_id)
