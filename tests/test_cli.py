from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from shareholder_pipeline import cli
from shareholder_pipeline.config import Settings
from shareholder_pipeline.db import COMPANIES


@pytest.fixture
def wired(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, db: Any, settings: Settings) -> Any:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    monkeypatch.setattr(cli, "_connect", lambda s: db)
    return db


def _last_json(out: str) -> dict[str, Any]:
    lines = [ln for ln in out.splitlines() if ln.startswith("{")]
    return json.loads(lines[-1])


def test_run_prints_final_status(wired: Any, registry_file: str, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["run", "--source", registry_file, "--owner", "owner-1", "--year", "2023", "--chunk-size", "2"])
    payload = _last_json(capsys.readouterr().out)
    assert payload["status"] == "completed"
    assert payload["rowsLoaded"] == 4
    assert payload["totalRows"] == 6


def test_start_then_step(wired: Any, registry_file: str, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["start", "--source", registry_file, "--owner", "owner-1", "--year", "2023"])
    job_id = _last_json(capsys.readouterr().out)["jobId"]

    cli.main(["step", "--job-id", job_id, "--owner", "owner-1", "--offset", "0", "--limit", "10"])
    step = _last_json(capsys.readouterr().out)
    assert step["done"] is True
    assert step["nextOffset"] == 6

    cli.main(["status", "--job-id", job_id])
    assert _last_json(capsys.readouterr().out)["status"] == "completed"


def test_stream_command(wired: Any, registry_file: str, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["stream", "--file", str(tmp_path / registry_file), "--owner", "owner-1", "--year", "2023"])
    assert _last_json(capsys.readouterr().out)["rowsLoaded"] == 4


def test_pipeline_errors_exit_nonzero(wired: Any, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["status", "--job-id", "missing"])
    assert exc.value.code == 1
    assert "JobNotFoundError" in capsys.readouterr().err


def test_verify_and_recompute(wired: Any, registry_file: str, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["run", "--source", registry_file, "--owner", "owner-1", "--year", "2023"])
    job_id = _last_json(capsys.readouterr().out)["jobId"]

    cli.main(["verify", "--year", "2023", "--owner", "owner-1", "--job-id", job_id])
    summary = _last_json(capsys.readouterr().out)
    assert (summary["companies"], summary["holdings"], summary["entities"]) == (2, 4, 2)
    assert (summary["fileRows"], summary["rowsLoaded"], summary["duplicateRows"]) == (6, 4, 0)
    assert summary["needsAggregation"] is False

    wired[COMPANIES].update_many({"owner_id": "owner-1"}, {"$set": {"total_shares": 0}})
    cli.main(["verify", "--year", "2023", "--owner", "owner-1"])
    assert _last_json(capsys.readouterr().out)["needsAggregation"] is True

    cli.main(["recompute", "--year", "2023", "--owner", "owner-1"])
    recovered = _last_json(capsys.readouterr().out)
    assert recovered["needsAggregation"] is False
    assert recovered["staleCompanies"] == []


@pytest.mark.parametrize("mapping", ['{"Orgnr": ', '["Orgnr"]', '{"Orgnr": "favourite_colour"}'])
def test_bad_mapping_exits_nonzero(
    wired: Any, registry_file: str, mapping: str, capsys: pytest.CaptureFixture[str]
) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["start", "--source", registry_file, "--owner", "owner-1", "--year", "2023", "--mapping", mapping])
    assert exc.value.code == 1
    assert json.loads(capsys.readouterr().err.strip().splitlines()[-1])["error"] == "ValueError"
