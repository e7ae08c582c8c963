"""Streaming import from a live file handle with pause, resume and cancel.

Rows are pulled one at a time from the parser into a buffer of `batch_size`
rows. A full buffer is staged and merged before the next row is pulled, so
memory stays bounded by the batch size whatever the file size. Control
requests from other threads take effect at the next row boundary.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import IO, Any, Callable, Generator, Mapping

from pymongo.database import Database

from shareholder_pipeline.aggregate.totals import recompute_years
from shareholder_pipeline.clean.normalize import normalize_rows, validate_mapping
from shareholder_pipeline.config import Settings, get_settings
from shareholder_pipeline.errors import ParseError, PersistenceError
from shareholder_pipeline.ingest.parse_source import RawRow, iter_delimited_rows, iter_spreadsheet_rows
from shareholder_pipeline.jobs.driver import CANCELLED, check_owner_scope
from shareholder_pipeline.jobs.retry import call_with_retry
from shareholder_pipeline.jobs.state import JobStateManager
from shareholder_pipeline.merge.merge import stage_and_merge
from shareholder_pipeline.merge.stage import clear_staging
from shareholder_pipeline.models import JobStatus, SourceFormat

log = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    DONE = "done"


class StreamingImporter:
    """Import one file handle as a job, batch by batch.

    Args:
        db: Target database.
        owner_id: Owner the imported rows belong to.
        year: Registry year for rows without one.
        mapping: Optional source column → field mapping.
        batch_size: Rows per merged batch (defaults to
            `Settings.stream_batch_size`).
        settings: Pipeline settings; read from the environment when omitted.
        jobs: Job state manager; built over `db` when omitted.
        on_batch: Called with the job status after every merged batch.
        sleep: Sleep function used for retry backoff.
    """

    def __init__(
        self,
        db: Database[dict[str, Any]],
        *,
        owner_id: str,
        year: int,
        mapping: Mapping[str, str] | None = None,
        batch_size: int | None = None,
        settings: Settings | None = None,
        jobs: JobStateManager | None = None,
        on_batch: Callable[[JobStatus], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.owner_id = owner_id
        self.year = year
        self.mapping = validate_mapping(mapping)
        self.settings = settings or get_settings()
        self.batch_size = batch_size or self.settings.stream_batch_size
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        self.jobs = jobs or JobStateManager(db, self.settings.error_sample_size)
        self.on_batch = on_batch
        self.sleep = sleep
        self.job_id: str | None = None

        self._cond = threading.Condition()
        self._state = StreamState.IDLE
        self._consumed = 0
        self._loaded = 0

    # -----------------------------
    # Control (thread-safe)
    # -----------------------------
    @property
    def state(self) -> StreamState:
        with self._cond:
            return self._state

    def pause(self) -> None:
        with self._cond:
            if self._state is StreamState.STREAMING:
                self._state = StreamState.PAUSED
                log.info("Stream for job %s paused", self.job_id)

    def resume(self) -> None:
        with self._cond:
            if self._state is StreamState.PAUSED:
                self._state = StreamState.STREAMING
                self._cond.notify_all()
                log.info("Stream for job %s resumed", self.job_id)

    def cancel(self) -> None:
        with self._cond:
            if self._state in (StreamState.IDLE, StreamState.STREAMING, StreamState.PAUSED):
                self._state = StreamState.CANCELLED
                self._cond.notify_all()

    def _checkpoint(self) -> bool:
        """Block while paused; return False once cancelled."""
        with self._cond:
            while self._state is StreamState.PAUSED:
                self._cond.wait()
            return self._state is not StreamState.CANCELLED

    # -----------------------------
    # Import
    # -----------------------------
    def run(self, handle: IO[bytes], fmt: SourceFormat, source_name: str) -> JobStatus:
        """Import every row readable from `handle`.

        Args:
            handle: Binary file handle positioned at the start of the source.
            fmt: Source format of the handle's content.
            source_name: Name recorded as the job's source location.

        Returns:
            Final job status (completed, or error with message "cancelled").

        Raises:
            ParseError: if the content cannot be parsed; the job fails.
            PersistenceError: if storage failed after all retries; the job fails.
        """
        check_owner_scope(source_name, self.owner_id, require_prefix=False)
        with self._cond:
            if self.job_id is not None:
                raise RuntimeError("StreamingImporter instances run a single import")
            if self._state is StreamState.IDLE:
                self._state = StreamState.STREAMING

        job = self.jobs.create(
            source_name,
            self.owner_id,
            source_format=fmt,
            default_year=self.year,
            mapping=self.mapping,
        )
        self.job_id = job.id
        clear_staging(self.db, self.owner_id)
        log.info("Streaming %s into job %s (batch size %d)", source_name, job.id, self.batch_size)

        rows = self._rows(handle, fmt)
        buffer: list[tuple[int, RawRow]] = []
        try:
            for item in rows:
                if not self._checkpoint():
                    break
                buffer.append(item)
                if len(buffer) >= self.batch_size:
                    self._flush(job.id, buffer)
                    buffer = []
            if buffer and self._checkpoint():
                self._flush(job.id, buffer)
                buffer = []
        except (ParseError, PersistenceError) as e:
            log.error("Streaming job %s failed after %d rows: %s", job.id, self._consumed, e)
            self.jobs.fail(job.id, str(e))
            with self._cond:
                self._state = StreamState.DONE
            raise
        finally:
            rows.close()

        if self.state is StreamState.CANCELLED:
            log.warning(
                "Streaming job %s cancelled: %d buffered rows dropped, %d rows kept",
                job.id,
                len(buffer),
                self._loaded,
            )
            self._recompute(job.id)
            return self.jobs.fail(job.id, CANCELLED).to_status()

        self.jobs.update_progress(
            job.id,
            rows_loaded=self._loaded,
            total_rows=self._consumed,
            source_offset=self._consumed,
            source_exhausted=True,
        )
        self._recompute(job.id)
        done = self.jobs.complete(job.id)
        with self._cond:
            self._state = StreamState.DONE
        log.info("Streaming job %s completed: %d rows loaded", job.id, done.rows_loaded)
        return done.to_status()

    def _rows(self, handle: IO[bytes], fmt: SourceFormat) -> Generator[tuple[int, RawRow], None, None]:
        if fmt is SourceFormat.SPREADSHEET:
            return iter_spreadsheet_rows(handle)
        return iter_delimited_rows(handle)

    def _flush(self, job_id: str, buffer: list[tuple[int, RawRow]]) -> None:
        accepted, rejections = normalize_rows(
            buffer, self.mapping, self.year, self.settings.error_sample_size
        )
        result = call_with_retry(
            lambda: stage_and_merge(self.db, self.owner_id, job_id, accepted),
            action=f"merge stream batch of job {job_id}",
            max_retries=self.settings.max_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            sleep=self.sleep,
        )
        self._consumed = buffer[-1][0] + 1
        self._loaded += len(accepted)

        self.jobs.record_rejections(job_id, rejections)
        self.jobs.add_years(job_id, result.years)
        job = self.jobs.update_progress(
            job_id, rows_loaded=self._loaded, source_offset=self._consumed
        )
        log.debug("Job %s: %d rows streamed, %d loaded", job_id, self._consumed, self._loaded)

        if job.cancel_requested:
            self.cancel()
        if self.on_batch is not None:
            self.on_batch(job.to_status())

    def _recompute(self, job_id: str) -> None:
        job = self.jobs.get(job_id)
        call_with_retry(
            lambda: recompute_years(self.db, job.years, job.owner_id),
            action=f"recompute totals for job {job_id}",
            max_retries=self.settings.max_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            sleep=self.sleep,
        )
