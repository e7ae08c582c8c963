"""Pydantic models used for normalized rows, job records and status output.

These models define the canonical shareholder row produced by the
normalizer, the persisted import job record, and the status/progress payloads
returned to callers (serialized with camelCase aliases).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

MIN_YEAR = 1900
MAX_YEAR = 2100


class SourceFormat(str, Enum):
    DELIMITED = "delimited"
    SPREADSHEET = "spreadsheet"


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.ERROR)


class EntityType(str, Enum):
    PERSON = "person"
    COMPANY = "company"


class RejectReason(str, Enum):
    INVALID_ORG_NUMBER = "invalid_org_number"
    MISSING_COMPANY_NAME = "missing_company_name"
    MISSING_HOLDER_NAME = "missing_holder_name"
    INVALID_SHARE_COUNT = "invalid_share_count"
    NON_POSITIVE_SHARE_COUNT = "non_positive_share_count"
    INVALID_YEAR = "invalid_year"


class ShareholderRow(BaseModel):
    """A fully normalized shareholder-registry row ready for staging.

    Attributes:
        row_number: Zero-based index of the source data row, used as the
            staging key. ``None`` for rows built outside a source.
        org_number: Nine-digit organization number of the company.
        company_name: Company name, whitespace-collapsed.
        holder_name: Shareholder name, whitespace-collapsed.
        holder_org_number: Nine-digit org number when the holder is a company.
        holder_birth_year: Birth year when the holder is a person.
        country_code: Holder country code (uppercased, default ``NO``).
        share_class: Normalized share class (default ``A``).
        share_count: Number of shares held, strictly positive.
        year: Registry (fiscal) year.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    row_number: int | None = Field(None, ge=0)
    org_number: str = Field(..., pattern=r"^\d{9}$")
    company_name: str = Field(..., min_length=1)
    holder_name: str = Field(..., min_length=1)
    holder_org_number: str | None = Field(None, pattern=r"^\d{9}$")
    holder_birth_year: int | None = Field(None, ge=MIN_YEAR, le=MAX_YEAR)
    country_code: str = "NO"
    share_class: str = "A"
    share_count: int = Field(..., gt=0)
    year: int = Field(..., ge=MIN_YEAR, le=MAX_YEAR)

    @model_validator(mode="after")
    def _holder_identity_is_exclusive(self) -> "ShareholderRow":
        if self.holder_org_number is not None and self.holder_birth_year is not None:
            raise ValueError("holder_org_number and holder_birth_year are mutually exclusive")
        return self

    @property
    def entity_type(self) -> EntityType:
        return EntityType.COMPANY if self.holder_org_number else EntityType.PERSON

    @property
    def entity_key(self) -> str:
        """Natural key of the holder: org number if present, else name + birth year."""
        if self.holder_org_number:
            return f"org:{self.holder_org_number}"
        birth = "" if self.holder_birth_year is None else str(self.holder_birth_year)
        return f"p:{self.holder_name.upper()}:{birth}"


class RejectedRow(BaseModel):
    """A source row that failed normalization."""
    model_config = ConfigDict(frozen=True)

    row_number: int | None = None
    reason: RejectReason
    detail: str = ""

    @property
    def message(self) -> str:
        where = f"row {self.row_number}" if self.row_number is not None else "row"
        suffix = f" ({self.detail})" if self.detail else ""
        return f"{where}: {self.reason.value}{suffix}"


class ImportJob(BaseModel):
    """Persisted record of one import run (the `import_jobs` document)."""
    model_config = ConfigDict(use_enum_values=False)

    id: str
    owner_id: str
    source_location: str
    source_format: SourceFormat
    status: JobState = JobState.PENDING
    default_year: int
    mapping: dict[str, str] = Field(default_factory=dict)
    total_rows: int = Field(0, ge=0)
    rows_loaded: int = Field(0, ge=0)
    source_offset: int = Field(0, ge=0)
    rows_rejected: int = Field(0, ge=0)
    rejections: dict[str, int] = Field(default_factory=dict)
    error_sample: list[str] = Field(default_factory=list)
    error_message: str | None = None
    years: list[int] = Field(default_factory=list)
    source_digest: str | None = None
    source_exhausted: bool = False
    cancel_requested: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "ImportJob":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)

    def to_status(self) -> "JobStatus":
        return JobStatus(
            job_id=self.id,
            status=self.status,
            total_rows=self.total_rows,
            rows_loaded=self.rows_loaded,
            next_offset=self.source_offset,
            done=self.status.terminal or self.source_exhausted,
            error_message=self.error_message,
            rows_rejected=self.rows_rejected,
            rejections=dict(self.rejections),
            error_sample=list(self.error_sample),
        )


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobStatus(_CamelModel):
    """Status surface returned to callers after every step."""
    job_id: str
    status: JobState
    total_rows: int
    rows_loaded: int
    next_offset: int
    done: bool
    error_message: str | None = None
    rows_rejected: int = 0
    rejections: dict[str, int] = Field(default_factory=dict)
    error_sample: list[str] = Field(default_factory=list)


class ChunkResult(_CamelModel):
    """Outcome of one `process_chunk` step in caller-iterated mode."""
    job_id: str
    next_offset: int
    processed_in_chunk: int
    merged_in_chunk: int = 0
    rejected_in_chunk: int = 0
    total_rows: int = 0
    rows_loaded: int = 0
    done: bool
    status: JobState


class VerificationSummary(_CamelModel):
    """Stored counts for one (year, owner) and whether totals need recomputing.

    Attributes:
        companies: Companies in scope.
        entities: Distinct holders referenced by the scope's holdings.
        holdings: Holdings in scope.
        orphaned_holdings: Holdings whose company is missing.
        stale_companies: Org numbers whose `total_shares` differs from the
            sum of their holdings.
        needs_aggregation: True when any company total is stale.
        job_id: Job the counts are compared with, if one was given.
        file_rows: Data rows the job read from its source.
        duplicate_rows: Accepted rows of the job that collapsed onto an
            already stored holding key.
    """
    year: int
    owner_id: str
    companies: int
    entities: int
    holdings: int
    orphaned_holdings: int = 0
    stale_companies: list[str] = Field(default_factory=list)
    needs_aggregation: bool = False
    job_id: str | None = None
    job_status: JobState | None = None
    file_rows: int | None = None
    rows_loaded: int | None = None
    rows_rejected: int | None = None
    duplicate_rows: int | None = None
