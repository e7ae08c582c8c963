"""Offset-driven import orchestration.

Two ways to drive a job:
- caller-iterated: the caller invokes `ImportDriver.process_chunk` with the
  `next_offset` of the previous result until `done` is true;
- self-driving: `ImportDriver.run` loops over chunks itself, pausing briefly
  between them and honouring cancellation.

Both share the same chunk step: read → normalize → stage + merge → progress.
Totals are recomputed once, after the final chunk.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Mapping

from pymongo.database import Database

from shareholder_pipeline.aggregate.totals import recompute_years
from shareholder_pipeline.clean.normalize import normalize_rows, validate_mapping
from shareholder_pipeline.config import Settings, get_settings
from shareholder_pipeline.errors import (
    AuthorizationError,
    ParseError,
    PersistenceError,
    ProgressRegressionError,
)
from shareholder_pipeline.ingest.fetch_source import BlobStore, blob_store_from_settings, clean_source_path
from shareholder_pipeline.ingest.parse_source import ChunkRead, SourceReader, detect_format
from shareholder_pipeline.jobs.retry import call_with_retry
from shareholder_pipeline.jobs.state import JobStateManager
from shareholder_pipeline.merge.merge import stage_and_merge
from shareholder_pipeline.merge.stage import clear_staging
from shareholder_pipeline.models import ChunkResult, ImportJob, JobStatus, SourceFormat

log = logging.getLogger(__name__)

CANCELLED = "cancelled"


def check_owner_scope(source_ref: str, owner_id: str, require_prefix: bool) -> None:
    """Refuse empty owners and, optionally, sources outside ``<owner_id>/``."""
    if not owner_id or not owner_id.strip():
        raise AuthorizationError("An owner id is required")
    if require_prefix and not source_ref.lstrip("/").startswith(f"{owner_id}/"):
        raise AuthorizationError(f"Source {source_ref} is outside the scope of owner {owner_id}")


class ImportDriver:
    """Run shareholder imports against a MongoDB database.

    Args:
        db: Target database.
        blob_store: Where sources are downloaded from; defaults to the store
            configured in `settings`.
        settings: Pipeline settings; read from the environment when omitted.
        reader: Chunk reader; built over `blob_store` when omitted.
        jobs: Job state manager; built over `db` when omitted.
        sleep: Sleep function used for yields and retry backoff.
    """

    def __init__(
        self,
        db: Database[dict[str, Any]],
        blob_store: BlobStore | None = None,
        settings: Settings | None = None,
        reader: SourceReader | None = None,
        jobs: JobStateManager | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.blob_store = blob_store or blob_store_from_settings(self.settings)
        self.reader = reader or SourceReader(self.blob_store, self.settings.source_cache_size)
        self.jobs = jobs or JobStateManager(db, self.settings.error_sample_size)
        self.sleep = sleep

    # -----------------------------
    # Job entry points
    # -----------------------------
    def start_job(
        self,
        source_ref: str,
        owner_id: str,
        *,
        year: int,
        fmt: SourceFormat | None = None,
        mapping: Mapping[str, str] | None = None,
    ) -> ImportJob:
        """Authorize the request and register a running job.

        Raises:
            AuthorizationError: if the owner may not import `source_ref` or the
                path escapes the storage root.
            ParseError: if the format cannot be inferred from the path.
            ValueError: if `mapping` names an unknown field.
            JobConflictError: if the owner already has a job in progress.
        """
        check_owner_scope(source_ref, owner_id, self.settings.require_owner_prefix)
        clean_source_path(source_ref)
        fmt = fmt or detect_format(source_ref)
        clean_mapping = validate_mapping(mapping)

        job = self.jobs.create(
            source_ref,
            owner_id,
            source_format=fmt,
            default_year=year,
            mapping=clean_mapping,
        )
        # staging residue of an earlier crashed run must not be merged into this job
        clear_staging(self.db, owner_id)
        return job

    def status(self, job_id: str) -> JobStatus:
        return self.jobs.status(job_id)

    def cancel(self, job_id: str, *, owner_id: str) -> JobStatus:
        self.jobs.get_for_owner(job_id, owner_id)
        return self.jobs.request_cancel(job_id).to_status()

    # -----------------------------
    # Caller-iterated mode
    # -----------------------------
    def process_chunk(self, job_id: str, offset: int, limit: int, *, owner_id: str) -> ChunkResult:
        """Import source rows [offset, offset + limit) for a running job.

        Rows before the job's `source_offset` were already merged by an
        earlier call; they are merged again (a no-op on the upsert keys) but
        not counted twice.

        Returns:
            `ChunkResult` whose `next_offset` is where the next call starts.

        Raises:
            ProgressRegressionError: if `offset` skips rows not yet consumed.
            ParseError: if the source is unreadable or changed mid-job.
            PersistenceError: if storage failed after all retries.
            AuthorizationError: if storage refused access to the source.
        """
        job = self.jobs.get_for_owner(job_id, owner_id)
        if job.status.terminal:
            return self._result(job, processed=0)
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        if offset < 0 or offset > job.source_offset:
            raise ProgressRegressionError(
                f"Offset {offset} does not continue job {job_id} (next offset {job.source_offset})"
            )
        if job.cancel_requested:
            job = self._finish_cancelled(job)
            return self._result(job, processed=0)

        try:
            return self._process(job, offset, limit)
        except (AuthorizationError, ParseError, PersistenceError) as e:
            log.error("Import job %s failed at offset %d: %s", job_id, offset, e)
            self.jobs.fail(job_id, str(e))
            raise

    def _read(self, job: ImportJob, offset: int, limit: int) -> ChunkRead:
        def read() -> ChunkRead:
            parsed = self.reader.load(job.source_location, job.source_format)
            recorded = self.jobs.set_source_digest(job.id, parsed.digest)
            if recorded != parsed.digest:
                self.reader.cache.discard(job.source_location)
                raise ParseError(f"Source {job.source_location} changed while job {job.id} was running")
            return self.reader.read_chunk(job.source_location, job.source_format, offset, limit)

        return call_with_retry(
            read,
            action=f"read {job.source_location}",
            max_retries=self.settings.max_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            sleep=self.sleep,
        )

    def _process(self, job: ImportJob, offset: int, limit: int) -> ChunkResult:
        chunk = self._read(job, offset, limit)
        numbered = chunk.numbered()
        seen = [item for item in numbered if item[0] < job.source_offset]
        fresh = [item for item in numbered if item[0] >= job.source_offset]

        sample_size = self.settings.error_sample_size
        replayed, _ = normalize_rows(seen, job.mapping, job.default_year, sample_size)
        accepted, rejections = normalize_rows(fresh, job.mapping, job.default_year, sample_size)

        result = call_with_retry(
            lambda: stage_and_merge(self.db, job.owner_id, job.id, replayed + accepted),
            action=f"merge rows {offset}-{offset + len(numbered)} of job {job.id}",
            max_retries=self.settings.max_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            sleep=self.sleep,
        )

        self.jobs.record_rejections(job.id, rejections)
        self.jobs.add_years(job.id, result.years)
        job = self.jobs.update_progress(
            job.id,
            rows_loaded=job.rows_loaded + len(accepted),
            total_rows=chunk.total_rows,
            source_offset=max(job.source_offset, offset + len(numbered)),
            source_exhausted=chunk.done,
        )
        log.info(
            "Job %s chunk at %d: %d rows read, %d merged, %d rejected (%d/%d)",
            job.id,
            offset,
            len(numbered),
            len(accepted),
            rejections.total,
            job.source_offset,
            job.total_rows,
        )

        if chunk.done:
            job = self._finish(job)
        return self._result(
            job,
            processed=len(numbered),
            merged=len(accepted),
            rejected=rejections.total,
        )

    # -----------------------------
    # Self-driving mode
    # -----------------------------
    def run(
        self,
        job_id: str,
        *,
        owner_id: str,
        chunk_size: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> JobStatus:
        """Process every remaining chunk of a job, resuming from its offset.

        Args:
            job_id: Job to drive.
            owner_id: Owner the job must belong to.
            chunk_size: Rows per chunk (defaults to `Settings.chunk_size`).
            cancel_event: Set from another thread to stop between chunks.

        Returns:
            Final `JobStatus`.
        """
        limit = chunk_size or self.settings.chunk_size
        job = self.jobs.get_for_owner(job_id, owner_id)
        while not job.status.terminal:
            if cancel_event is not None and cancel_event.is_set():
                self.jobs.request_cancel(job_id)
            self.process_chunk(job_id, job.source_offset, limit, owner_id=owner_id)
            job = self.jobs.get(job_id)
            if not job.status.terminal and self.settings.yield_seconds:
                self.sleep(self.settings.yield_seconds)
        return job.to_status()

    # -----------------------------
    # Finishing
    # -----------------------------
    def _recompute(self, job: ImportJob) -> None:
        call_with_retry(
            lambda: recompute_years(self.db, job.years, job.owner_id),
            action=f"recompute totals for job {job.id}",
            max_retries=self.settings.max_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            sleep=self.sleep,
        )

    def _finish(self, job: ImportJob) -> ImportJob:
        self._recompute(job)
        job = self.jobs.complete(job.id)
        log.info(
            "Import job %s completed: %d rows loaded, %d rejected",
            job.id,
            job.rows_loaded,
            job.rows_rejected,
        )
        return job

    def _finish_cancelled(self, job: ImportJob) -> ImportJob:
        # merged batches stay; their totals must reflect them
        self._recompute(job)
        log.warning("Import job %s cancelled at offset %d", job.id, job.source_offset)
        return self.jobs.fail(job.id, CANCELLED)

    @staticmethod
    def _result(job: ImportJob, processed: int, merged: int = 0, rejected: int = 0) -> ChunkResult:
        return ChunkResult(
            job_id=job.id,
            next_offset=job.source_offset,
            processed_in_chunk=processed,
            merged_in_chunk=merged,
            rejected_in_chunk=rejected,
            total_rows=job.total_rows,
            rows_loaded=job.rows_loaded,
            done=job.status.terminal or job.source_exhausted,
            status=job.status,
        )
