from __future__ import annotations

import io
from pathlib import Path

import pytest

from conftest import REGISTRY_CSV, registry_xlsx
from shareholder_pipeline.errors import AuthorizationError, ParseError, TransientStorageError
from shareholder_pipeline.ingest.fetch_source import HttpBlobStore, LocalBlobStore
from shareholder_pipeline.ingest.parse_source import (
    SNIFF_BYTES,
    ParsedSource,
    SourceReader,
    clean_headers,
    detect_delimiter,
    detect_format,
    iter_delimited_rows,
    iter_spreadsheet_rows,
    sniff_encoding,
)
from shareholder_pipeline.models import SourceFormat


class CountingStore:
    def __init__(self, files: dict[str, bytes]) -> None:
        self.files = files
        self.calls = 0

    def download(self, path: str) -> bytes:
        self.calls += 1
        return self.files[path]


def test_detect_format_by_extension() -> None:
    assert detect_format("a/b/register.CSV") is SourceFormat.DELIMITED
    assert detect_format("register.txt") is SourceFormat.DELIMITED
    assert detect_format("register.xlsx") is SourceFormat.SPREADSHEET
    with pytest.raises(ParseError):
        detect_format("register.pdf")


def test_detect_delimiter_prefers_semicolon_on_tie() -> None:
    assert detect_delimiter("a;b;c") == ";"
    assert detect_delimiter("a,b,c") == ","
    assert detect_delimiter("a;b,c") == ";"


QUOTED_CSV = (
    "Orgnr;Selskap;Navn aksjonær;Antall aksjer\r\n"
    "912345678;\"Fjord; Shipping\r\nAS\";\"Ola \"\"O\"\" Nordmann\";\" 10 \"\r\n"
    "923456789;Nordlys Kraft ASA;Per Hansen;5\r\n"
)


def test_quoted_fields_keep_delimiters_quotes_and_line_breaks() -> None:
    reader = SourceReader(CountingStore({"r.csv": QUOTED_CSV.encode("utf-8")}))
    chunk = reader.read_chunk("r.csv", None, 0, 10)
    assert chunk.total_rows == 2
    assert chunk.rows[0] == {
        "Orgnr": "912345678",
        "Selskap": "Fjord; Shipping\r\nAS",
        "Navn aksjonær": "Ola \"O\" Nordmann",
        "Antall aksjer": "10",
    }
    streamed = [row for _, row in iter_delimited_rows(io.BytesIO(QUOTED_CSV.encode("utf-8")))]
    assert streamed == chunk.rows



def test_clean_headers_names_blanks_and_dedupes() -> None:
    assert clean_headers(["\ufeffOrgnr", '"Navn"', "", "Navn"]) == [
        "Orgnr",
        "Navn",
        "column_3",
        "Navn_2",
    ]


def test_read_chunk_windows_and_done_flag() -> None:
    store = CountingStore({"r.csv": REGISTRY_CSV.encode("utf-8")})
    reader = SourceReader(store)

    first = reader.read_chunk("r.csv", None, 0, 4)
    assert first.total_rows == 6
    assert len(first.rows) == 4
    assert not first.done
    assert first.rows[0]["Selskap"] == "Fjord Shipping AS"
    assert first.rows[0]["Fødselsår/orgnr"] == "1975"

    last = reader.read_chunk("r.csv", None, 4, 4)
    assert len(last.rows) == 2
    assert last.done
    assert [n for n, _ in last.numbered()] == [4, 5]

    past_end = reader.read_chunk("r.csv", None, 6, 4)
    assert past_end.rows == []
    assert past_end.done

    # parsed once, sliced three times
    assert store.calls == 1


def test_read_chunk_is_reproducible() -> None:
    reader = SourceReader(CountingStore({"r.csv": REGISTRY_CSV.encode("utf-8")}))
    assert reader.read_chunk("r.csv", None, 1, 3).rows == reader.read_chunk("r.csv", None, 1, 3).rows


def test_read_chunk_rejects_invalid_window() -> None:
    reader = SourceReader(CountingStore({"r.csv": REGISTRY_CSV.encode("utf-8")}))
    with pytest.raises(ValueError):
        reader.read_chunk("r.csv", None, -1, 4)
    with pytest.raises(ValueError):
        reader.read_chunk("r.csv", None, 0, 0)


def test_comma_file_with_cp1252_and_blank_lines() -> None:
    text = "orgnr,company,holder,shares\r\n\r\n912345678,Bølgen AS,Åse,10\r\n"
    reader = SourceReader(CountingStore({"r.csv": text.encode("cp1252")}))
    chunk = reader.read_chunk("r.csv", None, 0, 10)
    assert chunk.total_rows == 1
    assert chunk.rows[0] == {"orgnr": "912345678", "company": "Bølgen AS", "holder": "Åse", "shares": "10"}


def test_empty_source_is_parse_error() -> None:
    reader = SourceReader(CountingStore({"r.csv": b"\n\n"}))
    with pytest.raises(ParseError):
        reader.read_chunk("r.csv", None, 0, 10)


def test_spreadsheet_source_reads_first_sheet() -> None:
    data = registry_xlsx(
        [
            {"Orgnr": "912345678", "Selskap": "Fjord Shipping AS", "Antall aksjer": "100"},
            {"Orgnr": "", "Selskap": "", "Antall aksjer": ""},
            {"Orgnr": "923456789", "Selskap": "Nordlys Kraft ASA", "Antall aksjer": "50"},
        ]
    )
    reader = SourceReader(CountingStore({"r.xlsx": data}))
    chunk = reader.read_chunk("r.xlsx", None, 0, 10)
    assert chunk.total_rows == 2
    assert chunk.rows[1]["Selskap"] == "Nordlys Kraft ASA"


def test_corrupt_spreadsheet_is_parse_error() -> None:
    reader = SourceReader(CountingStore({"r.xlsx": b"not a zip file"}))
    with pytest.raises(ParseError):
        reader.read_chunk("r.xlsx", None, 0, 10)


def test_iter_delimited_rows_streams_numbered_rows() -> None:
    rows = list(iter_delimited_rows(io.BytesIO(REGISTRY_CSV.encode("utf-8"))))
    assert [n for n, _ in rows] == list(range(6))
    assert rows[2][1]["Aksjeklasse"] == "A-aksjer"


def test_iter_spreadsheet_rows_skips_blank_rows() -> None:
    data = registry_xlsx(
        [
            {"Orgnr": "912345678", "Antall aksjer": "100"},
            {"Orgnr": "", "Antall aksjer": ""},
            {"Orgnr": "923456789", "Antall aksjer": "50"},
        ]
    )
    rows = list(iter_spreadsheet_rows(io.BytesIO(data)))
    assert [(n, r["Orgnr"]) for n, r in rows] == [(0, "912345678"), (1, "923456789")]


def test_local_blob_store_errors(tmp_path: Path) -> None:
    store = LocalBlobStore(tmp_path)
    (tmp_path / "ok.csv").write_bytes(b"x")
    assert store.download("ok.csv") == b"x"
    with pytest.raises(ParseError):
        store.download("missing.csv")
    with pytest.raises(AuthorizationError):
        store.download("../outside.csv")


class _Response:
    def __init__(self, status_code: int, content: bytes = b"") -> None:
        self.status_code = status_code
        self.content = content


@pytest.mark.parametrize(
    ("status", "error"),
    [(403, AuthorizationError), (404, ParseError), (503, TransientStorageError), (429, TransientStorageError)],
)
def test_http_blob_store_classifies_failures(
    monkeypatch: pytest.MonkeyPatch, status: int, error: type[Exception]
) -> None:
    import requests

    monkeypatch.setattr(requests, "get", lambda url, headers, timeout: _Response(status))
    with pytest.raises(error):
        HttpBlobStore("https://blobs.example/uploads/").download("owner-1/r.csv")


def test_http_blob_store_downloads(monkeypatch: pytest.MonkeyPatch) -> None:
    import requests

    seen: dict[str, object] = {}

    def fake_get(url: str, headers: dict[str, str], timeout: float) -> _Response:
        seen.update(url=url, headers=headers)
        return _Response(200, b"data")

    monkeypatch.setattr(requests, "get", fake_get)
    store = HttpBlobStore("https://blobs.example/uploads/", token="t0k")
    assert store.download("/owner-1/r.csv") == b"data"
    assert seen == {"url": "https://blobs.example/uploads/owner-1/r.csv", "headers": {"Authorization": "Bearer t0k"}}


def test_http_blob_store_connection_error_is_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    import requests

    def boom(url: str, headers: dict[str, str], timeout: float) -> _Response:
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "get", boom)
    with pytest.raises(TransientStorageError):
        HttpBlobStore("https://blobs.example").download("r.csv")


def test_stream_decodes_cp1252_like_the_chunk_reader() -> None:
    data = "orgnr,company,holder,shares\r\n912345678,Bølgen AS,Åse Ødegård,10\r\n".encode("cp1252")
    assert sniff_encoding(io.BytesIO(data)) == "cp1252"
    chunk = SourceReader(CountingStore({"r.csv": data})).read_chunk("r.csv", None, 0, 10)
    streamed = [row for _, row in iter_delimited_rows(io.BytesIO(data))]
    assert streamed == chunk.rows
    assert streamed[0]["holder"] == "Åse Ødegård"


def test_sniff_encoding_rewinds_and_tolerates_split_characters() -> None:
    handle = io.BytesIO(b"x" * (SNIFF_BYTES - 1) + "ø".encode("utf-8"))
    assert sniff_encoding(handle) == "utf-8-sig"
    assert handle.tell() == 0


def _workbook(rows: list[list[str | None]]) -> bytes:
    from openpyxl import Workbook

    wb = Workbook()
    sheet = wb.active
    for row in rows:
        sheet.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def test_spreadsheet_headers_match_between_readers() -> None:
    data = _workbook(
        [
            ["Orgnr", None, "Navn", "Navn"],
            ["912345678", "x", "Ola Nordmann", "Kari Nordmann"],
        ]
    )
    chunk = SourceReader(CountingStore({"r.xlsx": data})).read_chunk("r.xlsx", None, 0, 10)
    streamed = [row for _, row in iter_spreadsheet_rows(io.BytesIO(data))]
    assert list(chunk.rows[0]) == ["Orgnr", "column_2", "Navn", "Navn_2"]
    assert streamed == chunk.rows


def test_parsed_source_requires_a_concrete_form() -> None:
    with pytest.raises(TypeError):
        ParsedSource(headers=["Orgnr"], digest="0" * 64)
