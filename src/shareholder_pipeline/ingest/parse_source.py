"""Parsing helpers for registry source files.

`SourceReader.read_chunk` returns a bounded window of raw rows (header →
cell text) from a delimited-text or spreadsheet source. Each source is parsed
once per process and kept in a small LRU cache, so successive chunk calls
slice an already-split source instead of re-parsing the whole file. The
`iter_*_rows` generators apply the same rules to a live file handle for the
streaming importer.
"""

from __future__ import annotations

import codecs
import csv
import hashlib
import io
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import IO, Any, Iterable, Iterator

import pandas as pd

from shareholder_pipeline.errors import ParseError
from shareholder_pipeline.ingest.fetch_source import BlobStore
from shareholder_pipeline.models import SourceFormat

log = logging.getLogger(__name__)

DELIMITED_SUFFIXES = {".csv", ".txt", ".tsv"}
SPREADSHEET_SUFFIXES = {".xlsx", ".xlsm"}

UTF8 = "utf-8-sig"
LEGACY_ENCODING = "cp1252"
SNIFF_BYTES = 64 * 1024

RawRow = dict[str, str]


def detect_format(source_ref: str) -> SourceFormat:
    """Infer the source format from the file extension.

    Raises:
        ParseError: if the extension is not a supported one.
    """
    suffix = PurePosixPath(source_ref).suffix.lower()
    if suffix in DELIMITED_SUFFIXES:
        return SourceFormat.DELIMITED
    if suffix in SPREADSHEET_SUFFIXES:
        return SourceFormat.SPREADSHEET
    raise ParseError(f"Unsupported file type {suffix or '(none)'!r}; use CSV or Excel (.xlsx)")


def detect_delimiter(header_line: str) -> str:
    """Pick `;` or `,` by frequency in the header line (ties favour `;`)."""
    return "," if header_line.count(",") > header_line.count(";") else ";"


def detect_encoding(head: bytes, final: bool = True) -> str:
    """Return ``utf-8-sig`` when `head` decodes as UTF-8, else cp1252.

    With ``final=False`` a multi-byte sequence cut off at the end of `head`
    is not held against it, so a leading block of a stream can be sniffed.
    """
    try:
        codecs.getincrementaldecoder(UTF8)().decode(head, final=final)
    except UnicodeDecodeError:
        return LEGACY_ENCODING
    return UTF8


def _decode_errors(encoding: str) -> str:
    # cp1252 leaves a few bytes undefined
    return "replace" if encoding == LEGACY_ENCODING else "strict"


def decode_source(data: bytes) -> str:
    """Decode source bytes as UTF-8 (BOM tolerated), falling back to cp1252."""
    encoding = detect_encoding(data)
    if encoding == LEGACY_ENCODING:
        log.info("Source is not valid UTF-8; decoding as %s", LEGACY_ENCODING)
    return data.decode(encoding, errors=_decode_errors(encoding))


def clean_headers(cells: Iterable[Any]) -> list[str]:
    """Strip quotes/BOM from headers, naming blanks and de-duplicating repeats."""
    headers: list[str] = []
    seen: dict[str, int] = {}
    for idx, cell in enumerate(cells):
        name = "" if cell is None else str(cell)
        name = name.replace("\ufeff", "").strip().strip("\"'\\").strip()
        if not name:
            name = f"column_{idx + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def read_delimited(text: IO[str]) -> tuple[list[str], Iterator[list[str]]]:
    """Split delimited text into cleaned headers and a lazy iterator of cell lists.

    The first non-blank line is the header and decides the delimiter. Data
    rows come from `csv.reader`, so quoted fields may hold delimiters,
    doubled quotes and line breaks. Rows with no content are skipped.

    Args:
        text: Text stream opened with ``newline=""``.

    Raises:
        ParseError: if there is no header row.
    """
    header_line = ""
    while not header_line.strip():
        line = text.readline()
        if not line:
            raise ParseError("Source is empty; expected a header row")
        header_line = line.rstrip("\r\n")

    delimiter = detect_delimiter(header_line)
    headers = clean_headers(next(csv.reader([header_line], delimiter=delimiter)))

    def rows() -> Iterator[list[str]]:
        try:
            for cells in csv.reader(text, delimiter=delimiter):
                cells = [c.strip() for c in cells]
                if any(cells):
                    yield cells
        except csv.Error as e:
            raise ParseError(f"Malformed delimited source: {e}") from e

    return headers, rows()


def _zip_row(headers: list[str], cells: list[str]) -> RawRow:
    return {h: (cells[i] if i < len(cells) else "") for i, h in enumerate(headers)}


@dataclass(frozen=True)
class ChunkRead:
    """A window of raw rows read from a source.

    Attributes:
        rows: Raw rows (header → cell text) in source order.
        total_rows: Number of data rows in the whole source.
        done: True when the window reaches the end of the source.
        offset: Index of the first row of the window.
    """
    rows: list[RawRow]
    total_rows: int
    done: bool
    offset: int = 0

    def numbered(self) -> list[tuple[int, RawRow]]:
        return [(self.offset + i, row) for i, row in enumerate(self.rows)]


@dataclass
class ParsedSource(ABC):
    """A source split into header and data rows, ready to be sliced."""
    headers: list[str]
    digest: str
    total_rows: int = 0
    fmt: SourceFormat = SourceFormat.DELIMITED

    @abstractmethod
    def rows(self, offset: int, limit: int) -> list[RawRow]:
        """Return data rows [offset, offset + limit)."""


@dataclass
class DelimitedSource(ParsedSource):
    records: list[list[str]] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> "DelimitedSource":
        headers, rows = read_delimited(io.StringIO(decode_source(data), newline=""))
        records = list(rows)
        return cls(
            headers=headers,
            digest=hashlib.sha256(data).hexdigest(),
            total_rows=len(records),
            fmt=SourceFormat.DELIMITED,
            records=records,
        )

    def rows(self, offset: int, limit: int) -> list[RawRow]:
        return [_zip_row(self.headers, cells) for cells in self.records[offset : offset + limit]]


@dataclass
class SpreadsheetSource(ParsedSource):
    records: list[RawRow] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> "SpreadsheetSource":
        try:
            pdf = pd.read_excel(
                io.BytesIO(data),
                sheet_name=0,
                header=None,
                dtype=str,
                keep_default_na=False,
                engine="openpyxl",
            )
        except Exception as e:
            raise ParseError(f"Spreadsheet could not be read: {e}") from e
        if pdf.empty:
            raise ParseError("Spreadsheet is empty; expected a header row")

        # header cells go through the same naming as the streaming reader
        headers = clean_headers(pdf.iloc[0].tolist())
        pdf = pdf.iloc[1:]
        pdf.columns = headers
        records = []
        for r in pdf.to_dict("records"):
            row = {h: str(v).strip() for h, v in r.items()}
            # rows with no content at all are padding, not data
            if any(row.values()):
                records.append(row)
        return cls(
            headers=headers,
            digest=hashlib.sha256(data).hexdigest(),
            total_rows=len(records),
            fmt=SourceFormat.SPREADSHEET,
            records=records,
        )

    def rows(self, offset: int, limit: int) -> list[RawRow]:
        return [dict(r) for r in self.records[offset : offset + limit]]


def parse_source(data: bytes, fmt: SourceFormat) -> ParsedSource:
    """Parse raw source bytes once into a sliceable `ParsedSource`."""
    if fmt is SourceFormat.SPREADSHEET:
        return SpreadsheetSource.from_bytes(data)
    return DelimitedSource.from_bytes(data)


class SourceCache:
    """Bounded LRU of parsed sources keyed by (source_ref, format)."""

    def __init__(self, maxsize: int = 4) -> None:
        self.maxsize = maxsize
        self._items: OrderedDict[tuple[str, SourceFormat], ParsedSource] = OrderedDict()

    def get(self, key: tuple[str, SourceFormat]) -> ParsedSource | None:
        item = self._items.get(key)
        if item is not None:
            self._items.move_to_end(key)
        return item

    def put(self, key: tuple[str, SourceFormat], source: ParsedSource) -> None:
        self._items[key] = source
        self._items.move_to_end(key)
        while len(self._items) > self.maxsize:
            evicted, _ = self._items.popitem(last=False)
            log.debug("Evicted parsed source %s", evicted[0])

    def discard(self, source_ref: str) -> None:
        for key in [k for k in self._items if k[0] == source_ref]:
            del self._items[key]


class SourceReader:
    """Read bounded windows of raw rows from stored sources.

    Sources are treated as immutable for the lifetime of a job, so a parsed
    source is reused across chunk calls until it falls out of the cache.
    """

    def __init__(self, blob_store: BlobStore, cache_size: int = 4) -> None:
        self.blob_store = blob_store
        self.cache = SourceCache(cache_size)

    def load(self, source_ref: str, fmt: SourceFormat | None = None) -> ParsedSource:
        """Return the parsed source, downloading and parsing it on a cache miss."""
        fmt = fmt or detect_format(source_ref)
        key = (source_ref, fmt)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        data = self.blob_store.download(source_ref)
        parsed = parse_source(data, fmt)
        log.info(
            "Parsed %s: %d rows, %d columns (%s)",
            source_ref,
            parsed.total_rows,
            len(parsed.headers),
            fmt.value,
        )
        self.cache.put(key, parsed)
        return parsed

    def read_chunk(
        self,
        source_ref: str,
        fmt: SourceFormat | None,
        offset: int,
        limit: int,
    ) -> ChunkRead:
        """Return rows [offset, offset + limit) of the source.

        Args:
            source_ref: Storage path of the source.
            fmt: Source format, or None to infer it from the extension.
            offset: Zero-based index of the first data row.
            limit: Maximum number of rows to return.

        Returns:
            `ChunkRead` with the rows, the total row count and a done flag.
        """
        if offset < 0 or limit <= 0:
            raise ValueError(f"invalid window offset={offset} limit={limit}")
        parsed = self.load(source_ref, fmt)
        rows = parsed.rows(offset, limit)
        done = offset + len(rows) >= parsed.total_rows
        return ChunkRead(rows=rows, total_rows=parsed.total_rows, done=done, offset=offset)




# -----------------------------
# Streaming row generators
# -----------------------------
def sniff_encoding(handle: IO[bytes]) -> str:
    """Pick the encoding of a seekable byte stream from its first block, then rewind."""
    if not handle.seekable():
        log.debug("Source stream is not seekable; assuming %s", UTF8)
        return UTF8
    start = handle.tell()
    head = handle.read(SNIFF_BYTES)
    handle.seek(start)
    return detect_encoding(head, final=len(head) < SNIFF_BYTES)


def iter_delimited_rows(handle: IO[bytes], encoding: str | None = None) -> Iterator[tuple[int, RawRow]]:
    """Yield ``(row_number, raw_row)`` from a delimited byte stream, one record at a time.

    The encoding is sniffed from the start of the stream unless given, with
    the same UTF-8 then cp1252 rule as the chunked reader.
    """
    encoding = encoding or sniff_encoding(handle)
    if encoding == LEGACY_ENCODING:
        log.info("Source is not valid UTF-8; decoding as %s", LEGACY_ENCODING)
    text = io.TextIOWrapper(handle, encoding=encoding, errors=_decode_errors(encoding), newline="")
    try:
        headers, rows = read_delimited(text)
        for row_number, cells in enumerate(rows):
            yield row_number, _zip_row(headers, cells)
    except UnicodeDecodeError as e:
        raise ParseError(f"Source is not valid {encoding}: {e}") from e
    finally:
        text.detach()


def iter_spreadsheet_rows(handle: IO[bytes]) -> Iterator[tuple[int, RawRow]]:
    """Yield ``(row_number, raw_row)`` from the first sheet using openpyxl read-only mode."""
    from openpyxl import load_workbook

    try:
        wb = load_workbook(handle, read_only=True, data_only=True)
    except Exception as e:
        raise ParseError(f"Spreadsheet could not be read: {e}") from e
    try:
        sheet = wb.worksheets[0]
        values = sheet.iter_rows(values_only=True)
        header = next(values, None)
        if header is None:
            raise ParseError("Spreadsheet is empty; expected a header row")
        headers = clean_headers(header)
        row_number = 0
        for cells in values:
            texts = ["" if c is None else str(c).strip() for c in cells]
            if not any(texts):
                continue
            yield row_number, _zip_row(headers, texts)
            row_number += 1
    finally:
        wb.close()
