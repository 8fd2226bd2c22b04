"""Record store access: MongoDB in production, in-memory for local runs and tests"""

import copy
import os
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from jsonschema import Draft7Validator
from pydantic import BaseModel, Field
from pymongo import MongoClient, UpdateOne
from pymongo.errors import BulkWriteError, ConnectionFailure, CursorNotFound, PyMongoError

from gastos_analytics.db.schemas import COLLECTION_VALIDATORS, create_all_collections
from gastos_analytics.utils.errors import AnalyticsPipelineError, StoreConnectionError
from gastos_analytics.utils.logging import get_logger
from gastos_analytics.utils.metrics import store_connection_healthy

logger = get_logger(__name__)

SortSpec = Sequence[Tuple[str, int]]


class UpsertOp(BaseModel):
    """Blind upsert: set fields on the document matching filter, creating it if absent"""

    filter: Dict[str, Any] = Field(..., description="Natural-key filter")
    set_fields: Dict[str, Any] = Field(..., description="Fields replaced by $set")
    set_on_insert: Dict[str, Any] = Field(default_factory=dict, description="Fields written only on insert")


class BulkWriteSummary(BaseModel):
    """Outcome of an unordered bulk upsert"""

    upserted: int = 0
    modified: int = 0
    matched: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list, description="index, filter and message per failed op")

    @property
    def written(self) -> int:
        return self.upserted + self.matched

    def merge(self, other: "BulkWriteSummary") -> "BulkWriteSummary":
        return BulkWriteSummary(
            upserted=self.upserted + other.upserted,
            modified=self.modified + other.modified,
            matched=self.matched + other.matched,
            failed=self.failed + other.failed,
            errors=self.errors + other.errors,
        )


class RecordStore:
    """Operations the pipeline needs from the document store"""

    def count(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        raise NotImplementedError

    def iter_batches(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        projection: Optional[Dict[str, int]] = None,
        batch_size: int = 1000
    ) -> Iterator[List[Dict[str, Any]]]:
        raise NotImplementedError

    def find_one(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None
    ) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def bulk_upsert(self, collection: str, ops: Sequence[UpsertOp]) -> BulkWriteSummary:
        raise NotImplementedError

    def update_many(self, collection: str, filter: Dict[str, Any], set_fields: Dict[str, Any]) -> int:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def ensure_indexes(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MongoRecordStore(RecordStore):
    """pymongo-backed store"""

    def __init__(self, uri: str, database: str, server_selection_timeout_ms: int = 5000):
        self.client = MongoClient(uri, serverSelectionTimeoutMS=server_selection_timeout_ms)
        self.db = self.client[database]
        logger.info("Mongo record store configured", database=database)

    def count(self, collection, filter=None):
        try:
            return self.db[collection].count_documents(filter or {})
        except ConnectionFailure as e:
            raise StoreConnectionError(f"Lost connection counting {collection}: {e}")

    def iter_batches(self, collection, filter=None, projection=None, batch_size=1000):
        batch: List[Dict[str, Any]] = []
        cursor = None
        try:
            cursor = self.db[collection].find(filter or {}, projection, batch_size=batch_size).sort("_id", 1)
            for document in cursor:
                batch.append(document)
                if len(batch) >= batch_size:
                    yield batch
                    batch = []
        except (ConnectionFailure, CursorNotFound) as e:
            # A cursor lost mid-stage cannot be resumed; the run restarts from the top
            raise StoreConnectionError(f"Lost cursor or connection reading {collection}: {e}")
        except PyMongoError as e:
            raise AnalyticsPipelineError(f"Reading {collection} failed: {e}")
        finally:
            if cursor is not None:
                cursor.close()
        if batch:
            yield batch

    def find_one(self, collection, filter=None, sort=None):
        try:
            return self.db[collection].find_one(filter or {}, sort=list(sort) if sort else None)
        except ConnectionFailure as e:
            raise StoreConnectionError(f"Lost connection reading {collection}: {e}")

    def bulk_upsert(self, collection, ops):
        if not ops:
            return BulkWriteSummary()

        requests = []
        for op in ops:
            update = {"$set": op.set_fields}
            if op.set_on_insert:
                update["$setOnInsert"] = op.set_on_insert
            requests.append(UpdateOne(op.filter, update, upsert=True))

        try:
            result = self.db[collection].bulk_write(requests, ordered=False)
            return BulkWriteSummary(
                upserted=result.upserted_count,
                modified=result.modified_count,
                matched=result.matched_count,
            )
        except BulkWriteError as e:
            details = e.details
            errors = [
                {
                    "index": error.get("index"),
                    "filter": ops[error["index"]].filter if error.get("index") is not None else None,
                    "message": error.get("errmsg", str(error)),
                }
                for error in details.get("writeErrors", [])
            ]
            return BulkWriteSummary(
                upserted=details.get("nUpserted", 0),
                modified=details.get("nModified", 0),
                matched=details.get("nMatched", 0),
                failed=len(errors),
                errors=errors,
            )
        except ConnectionFailure as e:
            raise StoreConnectionError(f"Lost connection writing {collection}: {e}")
        except PyMongoError as e:
            raise AnalyticsPipelineError(f"Bulk write to {collection} failed: {e}")

    def update_many(self, collection, filter, set_fields):
        try:
            return self.db[collection].update_many(filter, {"$set": set_fields}).modified_count
        except ConnectionFailure as e:
            raise StoreConnectionError(f"Lost connection writing {collection}: {e}")

    def ping(self):
        try:
            self.client.admin.command("ping")
            store_connection_healthy.set(1)
            return True
        except PyMongoError as e:
            logger.warning(f"Record store ping failed: {e}")
            store_connection_healthy.set(0)
            return False

    def ensure_indexes(self):
        try:
            create_all_collections(self.db)
        except ConnectionFailure as e:
            raise StoreConnectionError(f"Lost connection creating collections: {e}")

    def close(self):
        self.client.close()


def _get_path(document: Dict[str, Any], path: str) -> Tuple[bool, Any]:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return False, None
        value = value[part]
    return True, value


def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _matches_condition(present: bool, actual: Any, condition: Any) -> bool:
    if condition is None:
        # null matches a missing field too
        return not present or actual is None
    if not isinstance(condition, dict) or not any(key.startswith("$") for key in condition):
        return present and _equals(actual, condition)

    for operator, operand in condition.items():
        if operator == "$exists":
            if bool(operand) != (present and actual is not None):
                return False
        elif operator == "$ne":
            if present and _equals(actual, operand):
                return False
        elif operator == "$in":
            if not present or not any(_equals(actual, option) for option in operand):
                return False
        elif operator == "$nin":
            if present and any(_equals(actual, option) for option in operand):
                return False
        elif operator in ("$gt", "$gte", "$lt", "$lte"):
            if not present or actual is None:
                return False
            try:
                passed = {
                    "$gt": actual > operand,
                    "$gte": actual >= operand,
                    "$lt": actual < operand,
                    "$lte": actual <= operand,
                }[operator]
            except TypeError:
                return False
            if not passed:
                return False
        else:
            raise ValueError(f"Unsupported filter operator: {operator}")
    return True


def matches_filter(document: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """Subset of MongoDB query semantics: equality, $exists, $ne, $in, $nin, comparisons, $and, $or"""
    for key, condition in (filter or {}).items():
        if key == "$and":
            if not all(matches_filter(document, clause) for clause in condition):
                return False
        elif key == "$or":
            if not any(matches_filter(document, clause) for clause in condition):
                return False
        else:
            present, actual = _get_path(document, key)
            if not _matches_condition(present, actual, condition):
                return False
    return True


class InMemoryRecordStore(RecordStore):
    """
    Dict-backed store for local runs and tests.

    Applies the same collection validators as the MongoDB deployment so
    per-document validation failures behave the same way.
    """

    def __init__(self, validators: Optional[Dict[str, Dict[str, Any]]] = None):
        self.collections: Dict[str, List[Dict[str, Any]]] = {}
        schemas = COLLECTION_VALIDATORS if validators is None else validators
        self.validators = {name: Draft7Validator(schema) for name, schema in schemas.items()}
        self.available = True
        self._next_id = 1

    def _check_available(self) -> None:
        if not self.available:
            raise StoreConnectionError("In-memory store marked unavailable")

    def _documents(self, collection: str) -> List[Dict[str, Any]]:
        self._check_available()
        return self.collections.setdefault(collection, [])

    def _validate(self, collection: str, document: Dict[str, Any]) -> Optional[str]:
        validator = self.validators.get(collection)
        if validator is None:
            return None
        error = next(iter(sorted(validator.iter_errors(document), key=lambda e: list(e.path))), None)
        if error is None:
            return None
        location = ".".join(str(part) for part in error.path) or "<root>"
        return f"Document failed validation at {location}: {error.message}"

    def insert_many(self, collection: str, documents: Sequence[Dict[str, Any]]) -> None:
        """Seed raw documents without validation"""
        target = self._documents(collection)
        for document in documents:
            stored = copy.deepcopy(document)
            stored.setdefault("_id", self._next_id)
            self._next_id += 1
            target.append(stored)

    def find(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self._documents(collection) if matches_filter(doc, filter)]

    def count(self, collection, filter=None):
        return sum(1 for doc in self._documents(collection) if matches_filter(doc, filter))

    def iter_batches(self, collection, filter=None, projection=None, batch_size=1000):
        batch: List[Dict[str, Any]] = []
        for document in list(self._documents(collection)):
            self._check_available()
            if not matches_filter(document, filter):
                continue
            if projection:
                fields = {path.split(".")[0] for path, include in projection.items() if include}
                fields.add("_id")
                document = {key: value for key, value in document.items() if key in fields}
            batch.append(copy.deepcopy(document))
            if len(batch) >= batch_size:
                yield batch
                batch = []
        if batch:
            yield batch

    def find_one(self, collection, filter=None, sort=None):
        candidates = [doc for doc in self._documents(collection) if matches_filter(doc, filter)]
        for field, direction in reversed(list(sort or [])):
            candidates.sort(key=lambda doc: _get_path(doc, field)[1] or 0, reverse=direction < 0)
        return copy.deepcopy(candidates[0]) if candidates else None

    def bulk_upsert(self, collection, ops):
        documents = self._documents(collection)
        summary = BulkWriteSummary()

        for index, op in enumerate(ops):
            existing = next((doc for doc in documents if matches_filter(doc, op.filter)), None)
            if existing is not None:
                candidate = copy.deepcopy(existing)
            else:
                candidate = {key: value for key, value in op.filter.items() if not isinstance(value, dict)}
                candidate.update(copy.deepcopy(op.set_on_insert))
            for path, value in op.set_fields.items():
                _set_path(candidate, path, copy.deepcopy(value))

            message = self._validate(collection, {k: v for k, v in candidate.items() if k != "_id"})
            if message:
                summary.failed += 1
                summary.errors.append({"index": index, "filter": op.filter, "message": message})
                continue

            if existing is not None:
                summary.matched += 1
                if candidate != existing:
                    summary.modified += 1
                    existing.clear()
                    existing.update(candidate)
            else:
                candidate["_id"] = self._next_id
                self._next_id += 1
                documents.append(candidate)
                summary.upserted += 1

        return summary

    def update_many(self, collection, filter, set_fields):
        modified = 0
        for document in self._documents(collection):
            if not matches_filter(document, filter):
                continue
            before = copy.deepcopy(document)
            for path, value in set_fields.items():
                _set_path(document, path, copy.deepcopy(value))
            if document != before:
                modified += 1
        return modified

    def ping(self):
        store_connection_healthy.set(1 if self.available else 0)
        return self.available

    def ensure_indexes(self):
        self._check_available()


@lru_cache(maxsize=1)
def get_record_store() -> RecordStore:
    """
    Singleton store selected by STORE_BACKEND ("mongo" or "memory").

    Raises:
        StoreConnectionError: If the MongoDB client cannot be created
    """
    backend = os.getenv("STORE_BACKEND", "mongo")
    if backend == "memory":
        logger.info("Using in-memory record store")
        return InMemoryRecordStore()

    try:
        return MongoRecordStore(
            uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            database=os.getenv("MONGODB_DATABASE", "gastos_gub"),
        )
    except PyMongoError as e:
        raise StoreConnectionError(f"Failed to configure MongoDB client: {e}")
