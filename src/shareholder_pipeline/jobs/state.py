"""Persistence of import jobs and their lifecycle.

`JobStateManager` owns the `import_jobs` collection and the per-owner lock in
`import_locks`. Status moves only pending → running → completed | error;
progress counters only move forward; terminal calls are idempotent.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from shareholder_pipeline.clean.normalize import Rejections
from shareholder_pipeline.db import JOBS, LOCKS, translate_errors
from shareholder_pipeline.errors import (
    AuthorizationError,
    InvalidTransitionError,
    JobConflictError,
    JobNotFoundError,
    ProgressRegressionError,
)
from shareholder_pipeline.models import ImportJob, JobState, JobStatus, SourceFormat

log = logging.getLogger(__name__)

_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.PENDING: {JobState.RUNNING},
    JobState.RUNNING: {JobState.COMPLETED, JobState.ERROR},
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobStateManager:
    """Create, advance and finish import jobs.

    Attributes:
        db: Database holding the jobs and locks collections.
        error_sample_size: Cap on rejected-row messages kept per job.
    """

    def __init__(self, db: Database[dict[str, Any]], error_sample_size: int = 50) -> None:
        self.db = db
        self.error_sample_size = error_sample_size

    # -----------------------------
    # Reads
    # -----------------------------
    def get(self, job_id: str) -> ImportJob:
        with translate_errors("read job"):
            doc = self.db[JOBS].find_one({"_id": job_id})
        if doc is None:
            raise JobNotFoundError(f"Import job {job_id} not found")
        return ImportJob.from_doc(doc)

    def get_for_owner(self, job_id: str, owner_id: str) -> ImportJob:
        """Return the job, refusing access from any other owner."""
        job = self.get(job_id)
        if job.owner_id != owner_id:
            raise AuthorizationError(f"Import job {job_id} does not belong to {owner_id}")
        return job

    def status(self, job_id: str) -> JobStatus:
        return self.get(job_id).to_status()

    def find_running(self, owner_id: str) -> ImportJob | None:
        with translate_errors("read job"):
            doc = self.db[JOBS].find_one({"owner_id": owner_id, "status": JobState.RUNNING.value})
        return ImportJob.from_doc(doc) if doc else None

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def create(
        self,
        source_location: str,
        owner_id: str,
        *,
        source_format: SourceFormat,
        default_year: int,
        mapping: Mapping[str, str] | None = None,
    ) -> ImportJob:
        """Register a job for `owner_id` and move it to running.

        Raises:
            JobConflictError: if another running job holds the owner's lock.
        """
        job_id = uuid.uuid4().hex
        self._acquire_lock(owner_id, job_id)

        now = _now()
        doc = {
            "_id": job_id,
            "owner_id": owner_id,
            "source_location": source_location,
            "source_format": source_format.value,
            "status": JobState.PENDING.value,
            "default_year": default_year,
            "mapping": dict(mapping or {}),
            "total_rows": 0,
            "rows_loaded": 0,
            "source_offset": 0,
            "rows_rejected": 0,
            "rejections": {},
            "error_sample": [],
            "error_message": None,
            "years": [],
            "source_digest": None,
            "source_exhausted": False,
            "cancel_requested": False,
            "created_at": now,
            "updated_at": now,
            "finished_at": None,
        }
        try:
            with translate_errors("create job"):
                self.db[JOBS].insert_one(doc)
        except Exception:
            self._release_lock(owner_id, job_id)
            raise

        job = self._transition(job_id, JobState.RUNNING)
        log.info("Created import job %s for owner %s (%s)", job_id, owner_id, source_location)
        return job

    def complete(self, job_id: str) -> ImportJob:
        """Mark the job completed (no-op if it already is)."""
        job = self._transition(job_id, JobState.COMPLETED, {"finished_at": _now()})
        self._release_lock(job.owner_id, job.id)
        return job

    def fail(self, job_id: str, message: str) -> ImportJob:
        """Mark the job failed with `message` (no-op if it already failed)."""
        job = self._transition(
            job_id, JobState.ERROR, {"error_message": message, "finished_at": _now()}
        )
        self._release_lock(job.owner_id, job.id)
        return job

    def request_cancel(self, job_id: str) -> ImportJob:
        """Flag the job for cooperative cancellation at the next batch boundary."""
        with translate_errors("request cancel"):
            self.db[JOBS].update_one(
                {"_id": job_id, "status": {"$in": [JobState.PENDING.value, JobState.RUNNING.value]}},
                {"$set": {"cancel_requested": True, "updated_at": _now()}},
            )
        return self.get(job_id)

    # -----------------------------
    # Progress
    # -----------------------------
    def update_progress(
        self,
        job_id: str,
        rows_loaded: int,
        total_rows: int | None = None,
        source_offset: int | None = None,
        source_exhausted: bool | None = None,
    ) -> ImportJob:
        """Advance the job's counters.

        Args:
            job_id: Job to update.
            rows_loaded: Rows merged so far; must not decrease.
            total_rows: Source row count once known.
            source_offset: Source rows consumed so far; must not decrease.
            source_exhausted: Set once the final chunk has been read.

        Raises:
            ProgressRegressionError: if a counter would move backwards or
                rows_loaded would exceed the known total.
            InvalidTransitionError: if the job is not running.
        """
        if total_rows is not None and rows_loaded > total_rows:
            raise ProgressRegressionError(
                f"rows_loaded={rows_loaded} exceeds total_rows={total_rows} for job {job_id}"
            )

        query: dict[str, Any] = {
            "_id": job_id,
            "status": JobState.RUNNING.value,
            "rows_loaded": {"$lte": rows_loaded},
        }
        update: dict[str, Any] = {"rows_loaded": rows_loaded, "updated_at": _now()}
        if total_rows is None:
            query["$or"] = [{"total_rows": 0}, {"total_rows": {"$gte": rows_loaded}}]
        else:
            update["total_rows"] = total_rows
        if source_offset is not None:
            query["source_offset"] = {"$lte": source_offset}
            update["source_offset"] = source_offset
        if source_exhausted is not None:
            update["source_exhausted"] = source_exhausted

        with translate_errors("update job progress"):
            doc = self.db[JOBS].find_one_and_update(
                query, {"$set": update}, return_document=ReturnDocument.AFTER
            )
        if doc is not None:
            return ImportJob.from_doc(doc)

        current = self.get(job_id)
        if current.status is not JobState.RUNNING:
            raise InvalidTransitionError(
                f"Job {job_id} is {current.status.value}; progress updates need a running job"
            )
        raise ProgressRegressionError(
            f"Job {job_id} progress would regress: rows_loaded {current.rows_loaded} -> {rows_loaded}, "
            f"source_offset {current.source_offset} -> {source_offset}, total_rows {current.total_rows}"
        )

    def record_rejections(self, job_id: str, rejections: Rejections) -> None:
        """Add rejection counts and extend the capped error sample."""
        if rejections.total == 0:
            return
        job = self.get(job_id)
        sample = (job.error_sample + rejections.sample)[: self.error_sample_size]
        inc: dict[str, int] = {"rows_rejected": rejections.total}
        for reason, count in rejections.counts.items():
            inc[f"rejections.{reason}"] = count
        with translate_errors("record rejections"):
            self.db[JOBS].update_one(
                {"_id": job_id},
                {"$inc": inc, "$set": {"error_sample": sample, "updated_at": _now()}},
            )

    def add_years(self, job_id: str, years: Iterable[int]) -> None:
        """Remember which registry years the job has merged rows for."""
        new = set(years)
        if not new:
            return
        job = self.get(job_id)
        merged = sorted(set(job.years) | new)
        if merged == job.years:
            return
        with translate_errors("record job years"):
            self.db[JOBS].update_one({"_id": job_id}, {"$set": {"years": merged}})

    def set_source_digest(self, job_id: str, digest: str) -> str:
        """Record the source digest on first read; return the digest on record."""
        with translate_errors("record source digest"):
            self.db[JOBS].update_one(
                {"_id": job_id, "source_digest": None}, {"$set": {"source_digest": digest}}
            )
        recorded = self.get(job_id).source_digest
        return recorded or digest

    # -----------------------------
    # Internals
    # -----------------------------
    def _transition(
        self,
        job_id: str,
        target: JobState,
        extra: dict[str, Any] | None = None,
    ) -> ImportJob:
        sources = [s.value for s, targets in _TRANSITIONS.items() if target in targets]
        update = {"status": target.value, "updated_at": _now(), **(extra or {})}
        with translate_errors(f"mark job {target.value}"):
            doc = self.db[JOBS].find_one_and_update(
                {"_id": job_id, "status": {"$in": sources}},
                {"$set": update},
                return_document=ReturnDocument.AFTER,
            )
        if doc is not None:
            log.info("Job %s -> %s", job_id, target.value)
            return ImportJob.from_doc(doc)

        current = self.get(job_id)
        if current.status is target and target.terminal:
            return current
        raise InvalidTransitionError(
            f"Job {job_id} cannot move from {current.status.value} to {target.value}"
        )

    def _acquire_lock(self, owner_id: str, job_id: str) -> None:
        now = _now()
        with translate_errors("acquire owner lock"):
            try:
                self.db[LOCKS].insert_one({"_id": owner_id, "job_id": job_id, "acquired_at": now})
                return
            except DuplicateKeyError:
                lock = self.db[LOCKS].find_one({"_id": owner_id})

            holder_id = lock["job_id"] if lock else None
            holder = self.db[JOBS].find_one({"_id": holder_id}) if holder_id else None
            if holder is not None and not JobState(holder["status"]).terminal:
                raise JobConflictError(
                    f"Owner {owner_id} already has import job {holder_id} in progress"
                )

            # stale lock left by a finished or vanished job
            result = self.db[LOCKS].update_one(
                {"_id": owner_id, "job_id": holder_id},
                {"$set": {"job_id": job_id, "acquired_at": now}},
                upsert=lock is None,
            )
            if result.matched_count == 0 and result.upserted_id is None:
                raise JobConflictError(f"Owner {owner_id} lock was taken concurrently")
            log.info("Took over stale import lock of owner %s from job %s", owner_id, holder_id)

    def _release_lock(self, owner_id: str, job_id: str) -> None:
        with translate_errors("release owner lock"):
            self.db[LOCKS].delete_one({"_id": owner_id, "job_id": job_id})
