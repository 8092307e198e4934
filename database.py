"""
MongoDB access for the marketplace.

The `Database` wrapper is built once by `main.create_app` and handed to the
services; nothing in this module holds a client at import time.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import (
    AutoReconnect,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from errors import ServiceUnavailable, ValidationFailed
from settings import Settings

log = logging.getLogger(__name__)

RETRYABLE_ERRORS = (AutoReconnect, NetworkTimeout, ServerSelectionTimeoutError, ExecutionTimeout)
TRANSACTION_ATTEMPTS = 3

T = TypeVar("T")

# Values under these keys are user-shaped and returned untouched.
_OPAQUE_FIELDS = {"specifications"}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Drivers may hand back naive datetimes; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(id_str: Union[str, ObjectId]) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationFailed("Invalid id")


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Render a stored document as an API payload (camelCase keys, string ids)."""
    if doc is None:
        return None
    out: Dict[str, Any] = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif key in _OPAQUE_FIELDS:
            out[to_camel(key)] = value
        else:
            out[to_camel(key)] = _serialize_value(value)
    return out


def pagination(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


class Transaction:
    """
    Unit of work handed to code that must write atomically.

    With a server session the driver commits or aborts everything. Without
    one, writers register the inverse of each applied write through
    `on_rollback` and `rollback` replays them newest first.
    """

    def __init__(self, session=None):
        self.session = session
        self._undo: List[Callable[[], Any]] = []

    def on_rollback(self, action: Callable[[], Any]) -> None:
        if self.session is None:
            self._undo.append(action)

    def rollback(self) -> None:
        failure = None
        while self._undo:
            action = self._undo.pop()
            try:
                action()
            except Exception as exc:
                log.exception("Compensating write failed during rollback")
                failure = failure or exc
        if failure is not None:
            raise failure


class Database:
    def __init__(self, client: MongoClient, name: str, use_transactions: bool = False,
                 max_commit_time_ms: Optional[int] = None):
        self.client = client
        self.name = name
        self.use_transactions = use_transactions
        self.max_commit_time_ms = max_commit_time_ms
        self._db = client[name]

    def __getitem__(self, collection: str):
        return self._db[collection]

    def list_collection_names(self) -> List[str]:
        return self._db.list_collection_names()

    def create_document(self, collection: str, data: Union[BaseModel, Dict[str, Any]],
                        session=None) -> str:
        doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        now = now_utc()
        doc.setdefault("created_at", now)
        doc.setdefault("updated_at", now)
        result = self._db[collection].insert_one(doc, session=session)
        return str(result.inserted_id)

    def run_transaction(self, work: Callable[[Transaction], T]) -> T:
        """
        Run `work` as one unit of work and return its result.

        Server transactions aborted with TransientTransactionError (write
        conflicts between concurrent checkouts) are re-run from scratch, so
        the conditional updates see the winner's writes and fail as domain
        errors. When every attempt conflicts the caller gets a 503.
        """
        if not self.use_transactions:
            txn = Transaction()
            try:
                return work(txn)
            except Exception:
                log.warning("Rolling back unit of work")
                txn.rollback()
                raise

        for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
            try:
                with self.client.start_session() as session:
                    with session.start_transaction(max_commit_time_ms=self.max_commit_time_ms):
                        result = work(Transaction(session))
                return result
            except PyMongoError as exc:
                if not exc.has_error_label("TransientTransactionError"):
                    raise
                log.warning("Transaction attempt %d/%d aborted: %s", attempt, TRANSACTION_ATTEMPTS, exc)
        raise ServiceUnavailable("Service temporarily unavailable, please retry")

    def ensure_indexes(self) -> None:
        self._db["user"].create_index("email", unique=True)
        self._db["category"].create_index("slug", unique=True)
        self._db["product"].create_index("slug", unique=True)
        self._db["product"].create_index([("vendor_id", ASCENDING), ("created_at", DESCENDING)])
        self._db["cart_item"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
        self._db["wishlist_item"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
        self._db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        self._db["order"].create_index("items.product_id")
        self._db["coupon"].create_index("code", unique=True)
        self._db["review"].create_index([("product_id", ASCENDING), ("created_at", DESCENDING)])


def connect(settings: Settings) -> Database:
    client = MongoClient(
        settings.database_url,
        tz_aware=True,
        timeoutMS=settings.mongo_timeout_ms,
        serverSelectionTimeoutMS=settings.mongo_timeout_ms,
        connectTimeoutMS=settings.mongo_timeout_ms,
    )
    log.info("Connected MongoDB client for database %s", settings.database_name)
    return Database(
        client,
        settings.database_name,
        use_transactions=settings.mongo_transactions,
        max_commit_time_ms=settings.mongo_timeout_ms,
    )
