"""Row normalization: raw registry rows → canonical `ShareholderRow`.

Registry exports arrive with many header spellings (Norwegian, English,
mis-decoded, user-renamed). Each canonical field is resolved from the user's
explicit mapping first and otherwise from a ranked alias list; header
comparison is case-insensitive and accent-stripped. Values are then cleaned
and validated, and the row is either returned as a `ShareholderRow` or as a
`RejectedRow` carrying the reason.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import lru_cache
from typing import Mapping

from pydantic import ValidationError

from shareholder_pipeline.errors import RowValidationError
from shareholder_pipeline.models import (
    MAX_YEAR,
    MIN_YEAR,
    RejectReason,
    RejectedRow,
    ShareholderRow,
)

log = logging.getLogger(__name__)

DEFAULT_COUNTRY = "NO"
DEFAULT_SHARE_CLASS = "A"
ORDINARY_SHARE_CLASS = "ORDINÆR"
PREFERENCE_SHARE_CLASS = "PREF"


class CanonicalField(str, Enum):
    ORG_NUMBER = "org_number"
    COMPANY_NAME = "company_name"
    HOLDER_NAME = "holder_name"
    HOLDER_ID = "holder_id"  # combined "birth year or org number" column
    HOLDER_ORG_NUMBER = "holder_org_number"
    HOLDER_BIRTH_YEAR = "holder_birth_year"
    COUNTRY_CODE = "country_code"
    SHARE_CLASS = "share_class"
    SHARE_COUNT = "share_count"
    YEAR = "year"


# Ranked: earlier aliases win when a file carries several candidates.
FIELD_ALIASES: dict[CanonicalField, tuple[str, ...]] = {
    CanonicalField.ORG_NUMBER: (
        "orgnr", "org_nr", "organisasjonsnummer", "org_number", "orgnumber",
        "company_orgnr", "organization_number",
    ),
    CanonicalField.COMPANY_NAME: (
        "selskap", "selskapsnavn", "company_name", "companyname", "company", "navn",
    ),
    CanonicalField.HOLDER_NAME: (
        "navn_aksjonaer", "aksjonaer", "aksjonar", "eier", "eier_navn",
        "holder_name", "holdername", "holder", "shareholder",
    ),
    CanonicalField.HOLDER_ID: (
        "fodselsar_orgnr", "fodselsaar_orgnr", "fodselsar_org_nr",
        "birth_year_orgnr", "birth_year_or_orgnr", "holder_id",
    ),
    CanonicalField.HOLDER_ORG_NUMBER: (
        "eier_orgnr", "holder_orgnr", "holder_org_number", "holderorgnumber",
    ),
    CanonicalField.HOLDER_BIRTH_YEAR: (
        "fodselsar", "fodselsaar", "birth_year", "holder_birth_year", "holderbirthyear",
    ),
    CanonicalField.COUNTRY_CODE: (
        "landkode", "country_code", "countrycode", "country", "land",
    ),
    CanonicalField.SHARE_CLASS: (
        "aksjeklasse", "share_class", "shareclass", "klasse", "class",
    ),
    CanonicalField.SHARE_COUNT: (
        "antall_aksjer", "aksjer", "shares", "share_count", "sharecount",
        "andeler", "antall",
    ),
    CanonicalField.YEAR: (
        "year", "ar", "aar", "regnskapsar", "regnskapsaar",
    ),
}

_FOLD = str.maketrans({"æ": "ae", "ø": "o", "å": "a", "Æ": "ae", "Ø": "o", "Å": "a"})
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_WS = re.compile(r"\s+")
_FLOAT_ARTEFACT = re.compile(r"^(\d+)\.0+$")
_THOUSANDS = re.compile(r"^\d{1,3}([.,]\d{3})+$")
_CLASS_LETTER = re.compile(r"^([A-Z])-?AKSJER?$")


def normalize_header(header: str) -> str:
    """Fold a header to its comparison form: lowercase, accent-free, `_`-joined.

    >>> normalize_header("Fødselsår/orgnr")
    'fodselsar_orgnr'
    """
    text = (header or "").strip().strip('"\'').translate(_FOLD)
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).lower()
    return _NON_ALNUM.sub("_", text).strip("_")


_ALIAS_TO_FIELD: dict[str, CanonicalField] = {}
for _field, _aliases in FIELD_ALIASES.items():
    _ALIAS_TO_FIELD.setdefault(_field.value, _field)
    for _alias in _aliases:
        _ALIAS_TO_FIELD.setdefault(_alias, _field)


def canonical_field(name: str) -> CanonicalField | None:
    """Resolve a mapping target (canonical name, camelCase name or alias)."""
    return _ALIAS_TO_FIELD.get(normalize_header(name))


def validate_mapping(mapping: Mapping[str, str] | None) -> dict[str, str]:
    """Check that every non-empty mapping target names a canonical field.

    Raises:
        ValueError: for an unknown target or a field mapped twice.
    """
    cleaned: dict[str, str] = {}
    seen: dict[CanonicalField, str] = {}
    for source, target in (mapping or {}).items():
        if not target or not str(target).strip():
            cleaned[source] = ""
            continue
        field = canonical_field(str(target))
        if field is None:
            raise ValueError(f"mapping target {target!r} for column {source!r} is not a known field")
        if field in seen:
            raise ValueError(f"field {field.value!r} mapped from both {seen[field]!r} and {source!r}")
        seen[field] = source
        cleaned[source] = field.value
    return cleaned


@lru_cache(maxsize=256)
def resolve_headers(
    headers: tuple[str, ...],
    mapping: tuple[tuple[str, str], ...] = (),
) -> dict[CanonicalField, str]:
    """Decide which source header feeds each canonical field.

    Explicit mapping entries are applied first (matched exactly, then by
    folded form); fields left unresolved are looked up through the ranked
    aliases among the headers the mapping did not claim.

    Returns:
        Dict of canonical field → source header present in `headers`.
    """
    folded = {h: normalize_header(h) for h in headers}
    by_folded: dict[str, str] = {}
    for h, f in folded.items():
        by_folded.setdefault(f, h)

    resolved: dict[CanonicalField, str] = {}
    claimed: set[str] = set()
    for source, target in mapping:
        header = source if source in folded else by_folded.get(normalize_header(source))
        if header is None:
            continue
        claimed.add(header)
        field = canonical_field(target) if target else None
        if field is not None and field not in resolved:
            resolved[field] = header

    free = {f: h for f, h in by_folded.items() if h not in claimed}
    for field, aliases in FIELD_ALIASES.items():
        if field in resolved:
            continue
        for alias in (field.value,) + aliases:
            if alias in free:
                resolved[field] = free[alias]
                break
    return resolved


# -----------------------------
# Value cleaning
# -----------------------------
def _text(value: object) -> str:
    if value is None:
        return ""
    return _WS.sub(" ", str(value)).strip().strip('"').strip()


def _digits(value: object) -> str:
    text = _text(value)
    m = _FLOAT_ARTEFACT.match(text)
    if m:
        text = m.group(1)
    return re.sub(r"\D", "", text)


def normalize_org_number(value: object) -> str | None:
    """Return a nine-digit org number, padding 8-digit values with one zero."""
    digits = _digits(value)
    if len(digits) == 8:
        digits = "0" + digits
    return digits if len(digits) == 9 else None


def parse_share_count(value: object) -> int | None:
    """Parse a share count, tolerating spaces, thousands separators and ``.0``.

    Returns:
        The integer count, or ``None`` when the value is not an integer.
    """
    text = _text(value).replace(" ", "")
    if not text:
        return None
    if _THOUSANDS.match(text):
        text = re.sub(r"[.,]", "", text)
    try:
        number = Decimal(text.replace(",", "."))
    except InvalidOperation:
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    return int(number)


def _plausible_year(digits: str) -> int | None:
    if not digits or len(digits) > 4:
        return None
    year = int(digits)
    return year if MIN_YEAR <= year <= MAX_YEAR else None


def split_holder_id(value: object) -> tuple[str | None, int | None]:
    """Disambiguate the combined "birth year or org number" column.

    A 9-digit value is an org number, otherwise a plausible year is a birth
    year, otherwise neither is set.
    """
    digits = _digits(value)
    if len(digits) == 9:
        return digits, None
    return None, _plausible_year(digits)


def normalize_share_class(value: object) -> str:
    """Normalize share class spellings (``A-aksjer`` → ``A``, ordinary → ``ORDINÆR``)."""
    text = _text(value).upper()
    if not text:
        return DEFAULT_SHARE_CLASS
    m = _CLASS_LETTER.match(text)
    if m:
        return m.group(1)
    if re.search(r"ORDINÆR|ORDINAER|ORDINARY|VANLIG", text) or text == "AKSJER":
        return ORDINARY_SHARE_CLASS
    if re.search(r"PREFERANSE|PREFERENCE|PREF", text):
        return PREFERENCE_SHARE_CLASS
    # ISIN-shaped and bespoke class codes are kept as written
    return text


# -----------------------------
# Row normalization
# -----------------------------
def _build_row(
    raw: Mapping[str, object],
    columns: dict[CanonicalField, str],
    default_year: int,
    row_number: int | None,
) -> ShareholderRow:
    def get(field: CanonicalField) -> object:
        header = columns.get(field)
        return raw.get(header) if header is not None else None

    org_number = normalize_org_number(get(CanonicalField.ORG_NUMBER))
    if org_number is None:
        raise RowValidationError(
            RejectReason.INVALID_ORG_NUMBER.value, _text(get(CanonicalField.ORG_NUMBER))
        )

    company_name = _text(get(CanonicalField.COMPANY_NAME))
    if not company_name:
        raise RowValidationError(RejectReason.MISSING_COMPANY_NAME.value, org_number)

    holder_name = _text(get(CanonicalField.HOLDER_NAME))
    if not holder_name:
        raise RowValidationError(RejectReason.MISSING_HOLDER_NAME.value, org_number)

    raw_count = get(CanonicalField.SHARE_COUNT)
    share_count = parse_share_count(raw_count)
    if share_count is None:
        raise RowValidationError(RejectReason.INVALID_SHARE_COUNT.value, _text(raw_count))
    if share_count <= 0:
        raise RowValidationError(RejectReason.NON_POSITIVE_SHARE_COUNT.value, str(share_count))

    year = default_year
    raw_year = _text(get(CanonicalField.YEAR))
    if raw_year:
        parsed_year = _plausible_year(_digits(raw_year))
        if parsed_year is None:
            raise RowValidationError(RejectReason.INVALID_YEAR.value, raw_year)
        year = parsed_year

    # Dedicated columns beat the combined one
    holder_org = normalize_org_number(get(CanonicalField.HOLDER_ORG_NUMBER))
    birth_year = _plausible_year(_digits(get(CanonicalField.HOLDER_BIRTH_YEAR)))
    if holder_org is None and birth_year is None:
        holder_org, birth_year = split_holder_id(get(CanonicalField.HOLDER_ID))
    if holder_org is not None:
        birth_year = None

    country = _text(get(CanonicalField.COUNTRY_CODE)).upper() or DEFAULT_COUNTRY

    return ShareholderRow(
        row_number=row_number,
        org_number=org_number,
        company_name=company_name,
        holder_name=holder_name,
        holder_org_number=holder_org,
        holder_birth_year=birth_year,
        country_code=country,
        share_class=normalize_share_class(get(CanonicalField.SHARE_CLASS)),
        share_count=share_count,
        year=year,
    )


def normalize(
    raw_row: Mapping[str, object],
    mapping: Mapping[str, str] | None,
    default_year: int,
    row_number: int | None = None,
) -> ShareholderRow | RejectedRow:
    """Map one raw row (arbitrary headers) to a canonical row or a rejection.

    Args:
        raw_row: Header → cell value for one source row.
        mapping: Optional explicit source header → canonical field mapping.
        default_year: Year applied when the row has no year column.
        row_number: Zero-based source row index, carried to staging.

    Returns:
        `ShareholderRow` on success, `RejectedRow` naming the reason otherwise.
    """
    columns = resolve_headers(tuple(raw_row.keys()), tuple(sorted((mapping or {}).items())))
    try:
        return _build_row(raw_row, columns, default_year, row_number)
    except RowValidationError as e:
        log.debug("Rejected row %s: %s", row_number, e)
        return RejectedRow(row_number=row_number, reason=RejectReason(e.reason), detail=e.detail)
    except ValidationError as e:
        # only an out-of-range default_year gets past the checks above
        if e.errors()[0]["loc"] != ("year",):
            raise
        log.debug("Rejected row %s: default year %s out of range", row_number, default_year)
        return RejectedRow(
            row_number=row_number, reason=RejectReason.INVALID_YEAR, detail=str(default_year)
        )


class Rejections:
    """Aggregate rejection bookkeeping: counts per reason plus a capped sample."""

    def __init__(self, sample_size: int = 50) -> None:
        self.sample_size = sample_size
        self.counts: dict[str, int] = {}
        self.sample: list[str] = []

    def add(self, rejected: RejectedRow) -> None:
        key = rejected.reason.value
        self.counts[key] = self.counts.get(key, 0) + 1
        if len(self.sample) < self.sample_size:
            self.sample.append(rejected.message)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def normalize_rows(
    rows: list[tuple[int, Mapping[str, object]]],
    mapping: Mapping[str, str] | None,
    default_year: int,
    sample_size: int = 50,
) -> tuple[list[ShareholderRow], Rejections]:
    """Normalize numbered raw rows, splitting accepted rows from rejections."""
    accepted: list[ShareholderRow] = []
    rejections = Rejections(sample_size)
    for row_number, raw in rows:
        result = normalize(raw, mapping, default_year, row_number)
        if isinstance(result, RejectedRow):
            rejections.add(result)
        else:
            accepted.append(result)
    return accepted, rejections
