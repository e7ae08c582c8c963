"""Staging-area writes for normalized rows.

The staging collection is scoped by owner: it is cleared when a job starts
and accumulates the rows of the current batch until `merge_batch` consumes
them. Rows are upserted on (owner_id, row_number) so that re-staging a batch
after a retry never duplicates or fails.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from pymongo.database import Database

from shareholder_pipeline.db import STAGING, STAGING_KEY, bulk_upsert, translate_errors
from shareholder_pipeline.models import ShareholderRow

log = logging.getLogger(__name__)

BATCH_SIZE = 1000


def clear_staging(db: Database[dict[str, Any]], owner_id: str) -> int:
    """Remove every staged row for `owner_id` (residue of a failed run).

    Returns:
        Number of staged rows deleted.
    """
    with translate_errors("clear staging"):
        deleted = db[STAGING].delete_many({"owner_id": owner_id}).deleted_count
    if deleted:
        log.info("Cleared %d staged rows left over for owner %s", deleted, owner_id)
    return deleted


def _staging_doc(row: ShareholderRow, owner_id: str, job_id: str, staged_at: datetime) -> dict[str, Any]:
    if row.row_number is None:
        raise ValueError("staged rows need a row_number")
    doc = row.model_dump(mode="python")
    doc.update(owner_id=owner_id, job_id=job_id, staged_at=staged_at)
    return doc


def stage_batch(
    db: Database[dict[str, Any]],
    owner_id: str,
    job_id: str,
    rows: Iterable[ShareholderRow],
) -> int:
    """Bulk-write normalized rows into the owner's staging area.

    Args:
        db: Target database.
        owner_id: Tenant scope of the rows.
        job_id: Job the rows belong to (kept for diagnostics).
        rows: Normalized rows; each must carry a `row_number`.

    Returns:
        Number of rows staged.
    """
    staged_at = datetime.now(timezone.utc)
    docs = (_staging_doc(r, owner_id, job_id, staged_at) for r in rows)
    count = bulk_upsert(db[STAGING], docs, STAGING_KEY, batch_size=BATCH_SIZE)
    log.debug("Staged %d rows for owner %s", count, owner_id)
    return count


def staged_count(db: Database[dict[str, Any]], owner_id: str) -> int:
    with translate_errors("count staging"):
        return db[STAGING].count_documents({"owner_id": owner_id})
