from __future__ import annotations

import io
from dataclasses import replace
from pathlib import Path
from typing import Any

import mongomock
import pandas as pd
import pytest

from shareholder_pipeline.config import Settings
from shareholder_pipeline.db import ensure_indexes
from shareholder_pipeline.ingest.fetch_source import LocalBlobStore

REGISTRY_CSV = """\
Orgnr;Selskap;Aksjeklasse;Navn aksjonær;Fødselsår/orgnr;Landkode;Antall aksjer
912345678;Fjord Shipping AS;Ordinære aksjer;Ola Nordmann;1975;NO;100
912345678;Fjord Shipping AS;Ordinære aksjer;Kari Holding AS;987654321;NO;900
923456789;Nordlys Kraft ASA;A-aksjer;Ola Nordmann;1975;NO;50
923456789;Nordlys Kraft ASA;B-aksjer;Ola Nordmann;1975;NO;25
12345;Broken AS;A;Someone;1980;NO;10
923456789;Nordlys Kraft ASA;A-aksjer;Per Hansen;1960;SE;0
"""

# Fjord: 100 + 900, Nordlys: 50 + 25 (the zero-share row is rejected)
EXPECTED_TOTALS = {"912345678": 1000, "923456789": 75}


def registry_xlsx(rows: list[dict[str, str]]) -> bytes:
    buf = io.BytesIO()
    pd.DataFrame(rows).to_excel(buf, index=False, engine="openpyxl")
    return buf.getvalue()


@pytest.fixture
def db() -> Any:
    database = mongomock.MongoClient()["shareholders_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        mongo_uri="mongodb://localhost:27017",
        mongo_db="shareholders_test",
        storage_root=tmp_path,
        chunk_size=4,
        stream_batch_size=2,
        max_retries=3,
        retry_backoff_seconds=0.5,
        yield_seconds=0.0,
        error_sample_size=10,
    )


@pytest.fixture
def strict_settings(settings: Settings) -> Settings:
    return replace(settings, require_owner_prefix=True)


@pytest.fixture
def store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path)


@pytest.fixture
def registry_file(tmp_path: Path) -> str:
    path = tmp_path / "owner-1" / "aksjonaerregister.csv"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(REGISTRY_CSV, encoding="utf-8")
    return "owner-1/aksjonaerregister.csv"
