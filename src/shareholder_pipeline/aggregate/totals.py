"""Per-company share totals.

`recompute_totals` rebuilds `share_companies.total_shares` from the current
holdings with a MongoDB aggregation. It is always a full recompute for the
(year, owner) scope, never an incremental sum, so the result does not depend
on batch order or on how often a batch was retried.

`verify` reports the stored counts of a scope and flags companies whose
total is out of date, so a recompute can be run as a recovery step.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from pymongo import UpdateOne
from pymongo.database import Database

from shareholder_pipeline.db import COMPANIES, HOLDINGS, translate_errors
from shareholder_pipeline.models import ImportJob, VerificationSummary

log = logging.getLogger(__name__)

BATCH_SIZE = 1000


def holding_totals(db: Database[dict[str, Any]], year: int, owner_id: str) -> dict[str, int]:
    """Return company org number → summed share count for the scope."""
    pipeline = [
        {"$match": {"year": year, "owner_id": owner_id}},
        {"$group": {"_id": "$company_org_number", "total": {"$sum": "$share_count"}}},
    ]
    with translate_errors("aggregate holdings"):
        return {doc["_id"]: int(doc["total"]) for doc in db[HOLDINGS].aggregate(pipeline)}


def recompute_totals(db: Database[dict[str, Any]], year: int, owner_id: str) -> int:
    """Set `total_shares` of every company in (year, owner) from its holdings.

    Companies without holdings get 0.

    Returns:
        Number of companies in scope.
    """
    totals = holding_totals(db, year, owner_id)

    with translate_errors("read companies"):
        org_numbers = [
            doc["org_number"]
            for doc in db[COMPANIES].find(
                {"year": year, "owner_id": owner_id}, {"_id": False, "org_number": True}
            )
        ]

    ops: list[UpdateOne] = []
    with translate_errors("update company totals"):
        for org in org_numbers:
            ops.append(
                UpdateOne(
                    {"org_number": org, "year": year, "owner_id": owner_id},
                    {"$set": {"total_shares": totals.get(org, 0)}},
                )
            )
            if len(ops) >= BATCH_SIZE:
                db[COMPANIES].bulk_write(ops, ordered=False)
                ops.clear()
        if ops:
            db[COMPANIES].bulk_write(ops, ordered=False)

    log.info(
        "Recomputed total_shares for %d companies (year=%d owner=%s)",
        len(org_numbers),
        year,
        owner_id,
    )
    return len(org_numbers)


def recompute_years(db: Database[dict[str, Any]], years: Iterable[int], owner_id: str) -> int:
    """Recompute totals for each year a job touched."""
    return sum(recompute_totals(db, year, owner_id) for year in sorted(set(years)))


def verify(
    db: Database[dict[str, Any]],
    year: int,
    owner_id: str,
    job: ImportJob | None = None,
) -> VerificationSummary:
    """Summarise what is stored for (year, owner), optionally against a job.

    When `job` is given and touched `year`, its accepted rows are compared
    with the stored holdings; the surplus is reported as duplicate rows.
    """
    scope = {"year": year, "owner_id": owner_id}
    totals = holding_totals(db, year, owner_id)

    with translate_errors("verify import"):
        stored = {
            doc["org_number"]: doc.get("total_shares", 0)
            for doc in db[COMPANIES].find(scope, {"_id": False, "org_number": True, "total_shares": True})
        }
        holdings = db[HOLDINGS].count_documents(scope)
        entities = len(db[HOLDINGS].distinct("holder_entity_id", scope))
        orphaned = db[HOLDINGS].count_documents({**scope, "company_org_number": {"$nin": list(stored)}})

    stale = sorted(org for org, total in stored.items() if total != totals.get(org, 0))
    summary = VerificationSummary(
        year=year,
        owner_id=owner_id,
        companies=len(stored),
        entities=entities,
        holdings=holdings,
        orphaned_holdings=orphaned,
        stale_companies=stale,
        needs_aggregation=bool(stale),
    )
    if job is not None:
        summary.job_id = job.id
        summary.job_status = job.status
        summary.file_rows = job.total_rows
        summary.rows_loaded = job.rows_loaded
        summary.rows_rejected = job.rows_rejected
        if year in job.years:
            summary.duplicate_rows = max(job.rows_loaded - holdings, 0)

    log.info(
        "Verified year=%d owner=%s: companies=%d holdings=%d stale=%d orphaned=%d",
        year,
        owner_id,
        summary.companies,
        summary.holdings,
        len(stale),
        orphaned,
    )
    return summary
