"""Blob-storage access for uploaded registry files.

`BlobStore` is the `download(path) → bytes` collaborator of the pipeline.
`LocalBlobStore` serves files from a directory; `HttpBlobStore` fetches them
from an HTTP object store. Failures are classified into the pipeline's error
kinds so the driver can decide between retrying and failing the job.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Protocol

from shareholder_pipeline.config import Settings
from shareholder_pipeline.errors import AuthorizationError, ParseError, TransientStorageError

log = logging.getLogger(__name__)


class BlobStore(Protocol):
    def download(self, path: str) -> bytes:
        ...


def clean_source_path(path: str) -> PurePosixPath:
    """Return `path` relative to the storage root, refusing `..` and empty paths."""
    rel = PurePosixPath(path.lstrip("/"))
    if not rel.parts or any(part == ".." for part in rel.parts):
        raise AuthorizationError(f"Source path {path!r} is outside the storage scope")
    return rel


class LocalBlobStore:
    """Serve uploaded files from a local directory.

    Attributes:
        root: Directory that all source paths are relative to.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def download(self, path: str) -> bytes:
        """Return the bytes of `path` under `root`.

        Raises:
            AuthorizationError: if the path escapes the storage root.
            ParseError: if the file does not exist.
            TransientStorageError: for other OS-level read failures.
        """
        target = self.root / Path(*clean_source_path(path).parts)
        try:
            data = target.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as e:
            raise ParseError(f"Source file not found: {path}") from e
        except PermissionError as e:
            raise AuthorizationError(f"Source file not readable: {path}") from e
        except OSError as e:
            raise TransientStorageError(f"Reading {path} failed: {e}") from e
        log.info("Read %s (%d bytes)", target, len(data))
        return data


class HttpBlobStore:
    """Download uploaded files from an HTTP object store.

    Attributes:
        base_url: Prefix joined with the source path to form the object URL.
        token: Optional bearer token sent with each request.
        timeout: Request timeout in seconds.
    """

    def __init__(self, base_url: str, token: str | None = None, timeout: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{clean_source_path(path)}"

    def download(self, path: str) -> bytes:
        """Fetch the object at `path`.

        Raises:
            AuthorizationError: on 401/403 responses.
            ParseError: on 404 and other client errors.
            TransientStorageError: on connection errors, timeouts and 5xx/429.
        """
        import requests  # type: ignore[import-untyped]  # local import to avoid requiring type stubs at module import

        url = self.url_for(path)
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        log.info("Downloading %s", url)
        try:
            r = requests.get(url, headers=headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientStorageError(f"Download of {path} failed: {e}") from e

        if r.status_code in (401, 403):
            raise AuthorizationError(f"Access to {path} denied ({r.status_code})")
        if r.status_code == 429 or r.status_code >= 500:
            raise TransientStorageError(f"Download of {path} failed: {r.status_code}")
        if r.status_code >= 400:
            raise ParseError(f"Source {path} unavailable: {r.status_code}")

        log.info("Downloaded %s (%d bytes)", path, len(r.content))
        return r.content


def blob_store_from_settings(settings: Settings) -> BlobStore:
    """Return the HTTP store when a base URL is configured, else the local one."""
    if settings.storage_base_url:
        return HttpBlobStore(settings.storage_base_url, token=settings.storage_token)
    return LocalBlobStore(settings.storage_root)
