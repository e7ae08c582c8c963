from __future__ import annotations

import pytest
from pydantic import ValidationError

from shareholder_pipeline.models import ChunkResult, ImportJob, JobState, ShareholderRow, SourceFormat


def _row(**overrides: object) -> dict[str, object]:
    rec: dict[str, object] = {
        "org_number": "912345678",
        "company_name": "Fjord Shipping AS",
        "holder_name": "Ola Nordmann",
        "share_count": 10,
        "year": 2023,
    }
    rec.update(overrides)
    return rec


def test_shareholder_row_validates() -> None:
    row = ShareholderRow.model_validate(_row())
    assert row.country_code == "NO"
    assert row.share_class == "A"
    assert row.entity_key == "p:OLA NORDMANN:"


@pytest.mark.parametrize(
    "overrides",
    [
        {"org_number": "12345"},
        {"share_count": 0},
        {"year": 1899},
        {"holder_name": ""},
        {"holder_org_number": "987654321", "holder_birth_year": 1975},
        {"unexpected": "field"},
    ],
)
def test_shareholder_row_rejects_invalid(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        ShareholderRow.model_validate(_row(**overrides))


def test_import_job_from_document() -> None:
    job = ImportJob.from_doc(
        {
            "_id": "abc",
            "owner_id": "o1",
            "source_location": "o1/register.csv",
            "source_format": "delimited",
            "status": "running",
            "default_year": 2023,
            "total_rows": 10,
            "rows_loaded": 4,
            "source_offset": 6,
        }
    )
    assert job.id == "abc"
    assert job.source_format is SourceFormat.DELIMITED
    status = job.to_status()
    assert status.next_offset == 6
    assert status.done is False
    assert JobState("completed").terminal
    assert not JobState.RUNNING.terminal


def test_status_payloads_use_camel_case() -> None:
    result = ChunkResult(job_id="abc", next_offset=4, processed_in_chunk=4, done=False, status=JobState.RUNNING)
    payload = result.model_dump(by_alias=True, mode="json")
    assert payload["nextOffset"] == 4
    assert payload["processedInChunk"] == 4
    assert payload["status"] == "running"
