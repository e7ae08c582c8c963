from __future__ import annotations

from typing import Any

import pytest

from shareholder_pipeline.db import COMPANIES, ENTITIES, HOLDINGS, STAGING
from shareholder_pipeline.merge.merge import merge_batch, stage_and_merge
from shareholder_pipeline.merge.stage import clear_staging, stage_batch, staged_count
from shareholder_pipeline.models import ShareholderRow

OWNER = "owner-1"


def _row(n: int, **overrides: Any) -> ShareholderRow:
    data: dict[str, Any] = {
        "row_number": n,
        "org_number": "912345678",
        "company_name": "Fjord Shipping AS",
        "holder_name": "Ola Nordmann",
        "holder_birth_year": 1975,
        "share_class": "A",
        "share_count": 100,
        "year": 2023,
    }
    data.update(overrides)
    return ShareholderRow(**data)


ROWS = [
    _row(0),
    _row(1, holder_name="Kari Holding AS", holder_birth_year=None, holder_org_number="987654321", share_count=900),
    _row(2, org_number="923456789", company_name="Nordlys Kraft ASA", share_count=50),
]


def _snapshot(db: Any) -> dict[str, list[dict[str, Any]]]:
    def dump(name: str) -> list[dict[str, Any]]:
        return sorted(
            (d for d in db[name].find({}, {"_id": False})),
            key=lambda d: sorted((k, str(v)) for k, v in d.items()),
        )

    return {name: dump(name) for name in (COMPANIES, ENTITIES, HOLDINGS)}


def test_stage_batch_is_idempotent_per_row_number(db: Any) -> None:
    assert stage_batch(db, OWNER, "job-1", ROWS) == 3
    stage_batch(db, OWNER, "job-1", ROWS[:2])
    assert staged_count(db, OWNER) == 3
    assert clear_staging(db, OWNER) == 3
    assert staged_count(db, OWNER) == 0


def test_stage_batch_requires_row_numbers(db: Any) -> None:
    with pytest.raises(ValueError):
        stage_batch(db, OWNER, "job-1", [_row(0).model_copy(update={"row_number": None})])


def test_merge_creates_one_record_per_key(db: Any) -> None:
    result = stage_and_merge(db, OWNER, "job-1", ROWS)

    assert (result.companies, result.entities, result.holdings, result.rows) == (2, 2, 3, 3)
    assert result.years == (2023,)
    assert db[COMPANIES].count_documents({"owner_id": OWNER}) == 2
    assert db[ENTITIES].count_documents({"owner_id": OWNER}) == 2
    assert db[HOLDINGS].count_documents({"owner_id": OWNER}) == 3
    assert db[STAGING].count_documents({}) == 0

    kari = db[ENTITIES].find_one({"entity_key": "org:987654321"})
    assert kari["entity_type"] == "company"
    ola = db[ENTITIES].find_one({"entity_key": "p:OLA NORDMANN:1975"})
    assert ola["entity_type"] == "person"
    assert ola["birth_year"] == 1975

    company = db[COMPANIES].find_one({"org_number": "912345678"})
    assert company["total_shares"] == 0


def test_merge_twice_leaves_collections_unchanged(db: Any) -> None:
    stage_and_merge(db, OWNER, "job-1", ROWS)
    before = _snapshot(db)
    stage_and_merge(db, OWNER, "job-2", ROWS)
    assert _snapshot(db) == before


def test_holding_takes_latest_share_count(db: Any) -> None:
    stage_and_merge(db, OWNER, "job-1", [_row(0, share_count=100)])
    stage_and_merge(db, OWNER, "job-1", [_row(0, share_count=40)])
    holdings = list(db[HOLDINGS].find({"owner_id": OWNER}))
    assert len(holdings) == 1
    assert holdings[0]["share_count"] == 40


def test_entities_are_shared_across_companies(db: Any) -> None:
    stage_and_merge(db, OWNER, "job-1", [_row(0), _row(1, org_number="923456789", company_name="Nordlys")])
    holdings = list(db[HOLDINGS].find({"owner_id": OWNER}))
    assert len(holdings) == 2
    assert holdings[0]["holder_entity_id"] == holdings[1]["holder_entity_id"]


def test_owners_are_isolated(db: Any) -> None:
    stage_and_merge(db, "owner-a", "job-a", ROWS)
    stage_and_merge(db, "owner-b", "job-b", ROWS[:1])
    assert db[HOLDINGS].count_documents({"owner_id": "owner-a"}) == 3
    assert db[HOLDINGS].count_documents({"owner_id": "owner-b"}) == 1


def test_non_positive_share_count_never_reaches_merge() -> None:
    with pytest.raises(ValueError):
        _row(0, share_count=0)


def test_merge_batch_with_empty_staging_is_noop(db: Any) -> None:
    result = merge_batch(db, OWNER)
    assert result.rows == 0
    assert db[COMPANIES].count_documents({}) == 0
