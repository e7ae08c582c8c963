"""Command-line interface for running shareholder imports.

Provides subcommands: `start`, `step`, `run`, `stream`, `status`, `cancel`,
`verify` and `recompute`. Each command is implemented as a `cmd_*` function
that accepts an argparse namespace and prints its result as JSON.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo.database import Database

from shareholder_pipeline.aggregate.totals import recompute_totals, verify
from shareholder_pipeline.config import Settings, get_settings
from shareholder_pipeline.db import ensure_indexes, get_client, get_db
from shareholder_pipeline.errors import ImportPipelineError
from shareholder_pipeline.ingest.parse_source import detect_format
from shareholder_pipeline.jobs.driver import ImportDriver
from shareholder_pipeline.jobs.state import JobStateManager
from shareholder_pipeline.jobs.stream import StreamingImporter
from shareholder_pipeline.logging_config import configure_logging, level_from_name
from shareholder_pipeline.models import SourceFormat

log = logging.getLogger(__name__)


# --------------------------------------------------
# Helpers
# --------------------------------------------------
def _connect(s: Settings) -> Database[dict[str, Any]]:
    client = get_client(s.mongo_uri, tls=s.mongo_tls)
    db = get_db(client, s.mongo_db)
    ensure_indexes(db)
    return db


def _emit(payload: BaseModel) -> None:
    print(payload.model_dump_json(by_alias=True))


def _mapping(raw: str | None) -> dict[str, str] | None:
    """Parse the ``--mapping`` JSON object of source column → field."""
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"--mapping is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise ValueError("--mapping must be a JSON object")
    return {str(k): str(v) for k, v in value.items()}


def _format(raw: str | None) -> SourceFormat | None:
    return SourceFormat(raw) if raw else None


# --------------------------------------------------
# Commands
# --------------------------------------------------
def cmd_start(args: argparse.Namespace) -> None:
    """Register a job for a stored source; chunks are imported by `step`."""
    s = get_settings()
    driver = ImportDriver(_connect(s), settings=s)
    job = driver.start_job(
        args.source,
        args.owner,
        year=args.year,
        fmt=_format(args.format),
        mapping=_mapping(args.mapping),
    )
    _emit(job.to_status())


def cmd_step(args: argparse.Namespace) -> None:
    """Import one chunk of a started job (caller-iterated mode)."""
    s = get_settings()
    driver = ImportDriver(_connect(s), settings=s)
    result = driver.process_chunk(
        args.job_id,
        args.offset,
        args.limit or s.chunk_size,
        owner_id=args.owner,
    )
    _emit(result)


def cmd_run(args: argparse.Namespace) -> None:
    """Drive a job to the end, starting it first or resuming where it stopped."""
    s = get_settings()
    driver = ImportDriver(_connect(s), settings=s)

    job_id = args.job_id
    if job_id is None:
        if args.source is None or args.year is None:
            raise SystemExit("run needs --job-id, or --source together with --year")
        running = driver.jobs.find_running(args.owner)
        if running is not None and running.source_location == args.source:
            log.info("Resuming job %s at offset %d", running.id, running.source_offset)
            job_id = running.id
        else:
            job_id = driver.start_job(
                args.source,
                args.owner,
                year=args.year,
                fmt=_format(args.format),
                mapping=_mapping(args.mapping),
            ).id

    _emit(driver.run(job_id, owner_id=args.owner, chunk_size=args.chunk_size))


def cmd_stream(args: argparse.Namespace) -> None:
    """Import a local file through the streaming importer."""
    s = get_settings()
    path = Path(args.file)
    fmt = _format(args.format) or detect_format(path.name)
    importer = StreamingImporter(
        _connect(s),
        owner_id=args.owner,
        year=args.year,
        mapping=_mapping(args.mapping),
        batch_size=args.batch_size,
        settings=s,
    )
    with path.open("rb") as handle:
        _emit(importer.run(handle, fmt, path.name))


def cmd_status(args: argparse.Namespace) -> None:
    s = get_settings()
    _emit(ImportDriver(_connect(s), settings=s).status(args.job_id))


def cmd_cancel(args: argparse.Namespace) -> None:
    s = get_settings()
    _emit(ImportDriver(_connect(s), settings=s).cancel(args.job_id, owner_id=args.owner))


def cmd_verify(args: argparse.Namespace) -> None:
    """Report stored counts for a year and whether totals need recomputing."""
    s = get_settings()
    db = _connect(s)
    job = JobStateManager(db).get_for_owner(args.job_id, args.owner) if args.job_id else None
    _emit(verify(db, args.year, args.owner, job))


def cmd_recompute(args: argparse.Namespace) -> None:
    """Rebuild company totals for a year outside any job, then verify them."""
    s = get_settings()
    db = _connect(s)
    recompute_totals(db, args.year, args.owner)
    _emit(verify(db, args.year, args.owner))


# --------------------------------------------------
# CLI
# --------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    """Build and return the top-level argument parser for the CLI.

    Returns:
        Configured argparse.ArgumentParser instance.
    """
    p = argparse.ArgumentParser(prog="shareholder-pipeline")
    sub = p.add_subparsers(dest="cmd", required=True)
    formats = [f.value for f in SourceFormat]

    p_start = sub.add_parser("start")
    p_start.add_argument("--source", required=True)
    p_start.add_argument("--owner", required=True)
    p_start.add_argument("--year", type=int, required=True)
    p_start.add_argument("--format", choices=formats, default=None)
    p_start.add_argument("--mapping", default=None)

    p_step = sub.add_parser("step")
    p_step.add_argument("--job-id", required=True)
    p_step.add_argument("--owner", required=True)
    p_step.add_argument("--offset", type=int, required=True)
    p_step.add_argument("--limit", type=int, default=None)

    p_run = sub.add_parser("run")
    p_run.add_argument("--job-id", default=None)
    p_run.add_argument("--source", default=None)
    p_run.add_argument("--owner", required=True)
    p_run.add_argument("--year", type=int, default=None)
    p_run.add_argument("--format", choices=formats, default=None)
    p_run.add_argument("--mapping", default=None)
    p_run.add_argument("--chunk-size", type=int, default=None)

    p_stream = sub.add_parser("stream")
    p_stream.add_argument("--file", required=True)
    p_stream.add_argument("--owner", required=True)
    p_stream.add_argument("--year", type=int, required=True)
    p_stream.add_argument("--format", choices=formats, default=None)
    p_stream.add_argument("--mapping", default=None)
    p_stream.add_argument("--batch-size", type=int, default=None)

    p_status = sub.add_parser("status")
    p_status.add_argument("--job-id", required=True)

    p_cancel = sub.add_parser("cancel")
    p_cancel.add_argument("--job-id", required=True)
    p_cancel.add_argument("--owner", required=True)

    p_verify = sub.add_parser("verify")
    p_verify.add_argument("--year", type=int, required=True)
    p_verify.add_argument("--owner", required=True)
    p_verify.add_argument("--job-id", default=None)

    p_recompute = sub.add_parser("recompute")
    p_recompute.add_argument("--year", type=int, required=True)
    p_recompute.add_argument("--owner", required=True)

    return p


COMMANDS = {
    "start": cmd_start,
    "step": cmd_step,
    "run": cmd_run,
    "stream": cmd_stream,
    "status": cmd_status,
    "cancel": cmd_cancel,
    "verify": cmd_verify,
    "recompute": cmd_recompute,
}


def main(argv: list[str] | None = None) -> None:
    """CLI entry point: parse args, configure logging and dispatch commands."""
    load_dotenv()
    configure_logging(Path("logs/import.log"), level_from_name(os.getenv("LOG_LEVEL")))

    args = build_parser().parse_args(argv)
    try:
        COMMANDS[args.cmd](args)
    except (ImportPipelineError, ValueError) as e:
        log.error("%s failed: %s", args.cmd, e)
        print(json.dumps({"error": type(e).__name__, "message": str(e)}), file=sys.stderr)
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
