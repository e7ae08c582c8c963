"""MongoDB helpers and bulk upsert utility.

Centralizes creation of Mongo clients, the collection names and unique
indexes of the canonical model, a composite-key bulk_upsert used by the merge
engine, and translation of pymongo failures into pipeline errors.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator
import logging

import certifi
from pymongo import ASCENDING, MongoClient, UpdateOne
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, ExecutionTimeout, PyMongoError, WTimeoutError

from shareholder_pipeline.errors import PersistenceError, TransientStorageError

log = logging.getLogger(__name__)

JOBS = "import_jobs"
LOCKS = "import_locks"
STAGING = "shareholders_staging"
COMPANIES = "share_companies"
ENTITIES = "share_entities"
HOLDINGS = "share_holdings"

# Unique keys double as the upsert selectors of the merge step
COMPANY_KEY = ["org_number", "year", "owner_id"]
ENTITY_KEY = ["owner_id", "entity_key"]
HOLDING_KEY = ["company_org_number", "holder_entity_id", "share_class", "year", "owner_id"]
STAGING_KEY = ["owner_id", "row_number"]

_TRANSIENT = (ConnectionFailure, ExecutionTimeout, WTimeoutError)


def get_client(uri: str, tls: bool = False) -> MongoClient:
    """Return a configured PyMongo MongoClient for the provided URI.

    Args:
        uri: MongoDB connection URI.
        tls: Connect over TLS, validating against the certifi CA bundle.

    Returns:
        Configured MongoClient instance.
    """
    options: dict[str, Any] = {
        "serverSelectionTimeoutMS": 30000,
        "socketTimeoutMS": 30000,
        "connectTimeoutMS": 30000,
    }
    if tls:
        options.update(tls=True, tlsCAFile=certifi.where())
    return MongoClient(uri, **options)


def get_db(
    client: MongoClient[dict[str, Any]],
    db_name: str,
) -> Database[dict[str, Any]]:
    """Return the named Database instance from a MongoClient."""
    return client[db_name]


def ensure_indexes(db: Database[dict[str, Any]]) -> None:
    """Create the unique indexes the merge engine relies on.

    Safe to call repeatedly; MongoDB ignores identical index definitions.
    """
    with translate_errors("create indexes"):
        db[COMPANIES].create_index([(f, ASCENDING) for f in COMPANY_KEY], unique=True)
        db[ENTITIES].create_index([(f, ASCENDING) for f in ENTITY_KEY], unique=True)
        db[HOLDINGS].create_index([(f, ASCENDING) for f in HOLDING_KEY], unique=True)
        db[STAGING].create_index([(f, ASCENDING) for f in STAGING_KEY], unique=True)
        db[JOBS].create_index([("owner_id", ASCENDING), ("status", ASCENDING)])


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Re-raise pymongo failures as TransientStorageError or PersistenceError.

    Network-level failures and timeouts are considered retryable; everything
    else (write errors, duplicate keys, bad operations) is not.
    """
    try:
        yield
    except _TRANSIENT as e:
        log.warning("Transient storage failure during %s: %s", action, e)
        raise TransientStorageError(f"{action} failed: {e}") from e
    except PyMongoError as e:
        raise PersistenceError(f"{action} failed: {e}") from e


def bulk_upsert(
    collection: Collection[dict[str, Any]],
    docs: Iterable[dict[str, Any]],
    key_fields: list[str],
    batch_size: int = 1000,
    on_insert: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
) -> int:
    """Bulk upsert documents using the composite `key_fields` as the selector.

    Writes in batches of `batch_size` with unordered bulk writes. Failures
    propagate (translated by `translate_errors`) so a batch is never reported
    as merged when it was not.

    Args:
        collection: Target PyMongo collection.
        docs: Iterable of document dictionaries to upsert. Each must contain
            every key field.
        key_fields: Document keys forming the upsert selector.
        batch_size: Number of ops per bulk_write call.
        on_insert: Optional callable returning fields set only when the
            upsert inserts a new document (``$setOnInsert``).

    Returns:
        Integer number of documents written.
    """
    ops: list[UpdateOne] = []
    written = 0

    def _flush() -> None:
        with translate_errors(f"bulk upsert into {collection.name}"):
            collection.bulk_write(ops, ordered=False)

    for d in docs:
        missing = [k for k in key_fields if k not in d]
        if missing:
            raise ValueError(f"document lacks key fields {missing}: {d!r}")

        update: dict[str, Any] = {"$set": d}
        if on_insert is not None:
            update["$setOnInsert"] = on_insert(d)
        ops.append(UpdateOne({k: d[k] for k in key_fields}, update, upsert=True))
        written += 1

        if len(ops) >= batch_size:
            _flush()
            ops.clear()

    if ops:
        _flush()

    return written
