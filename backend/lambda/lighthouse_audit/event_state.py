"""event_state.py — Debounce gate over a conditionally-written event state store.

The gate admits a key at most once per cooldown window. Each check is a
read → decide → conditional write cycle: the write only lands if the entry
(or table) still has the version that was read, so two concurrent triggers
for the same key cannot both be admitted. A lost race re-runs the cycle,
which then sees the winner's timestamp and reports the key as active.

Two backends:

    S3EventStateStore      one JSON object holding the whole table
                           ({key: {"created": epoch_ms}}), versioned by ETag.
    DynamoEventStateStore  one item per key, versioned by its stored timestamp.

Read failures are not fatal: the gate treats the key as unseen and writes
unconditionally (ANY_VERSION). Write failures always propagate.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from errors import StateConflictError, StateStoreReadError, StateStoreWriteError
from serialization import _deserialize, _now_z, _serialize

__all__ = [
    "ANY_VERSION",
    "DebounceGate",
    "DynamoEventStateStore",
    "EventState",
    "EventStateEntry",
    "EventStateStore",
    "S3EventStateStore",
]

logger = logging.getLogger(__name__)


class _AnyVersion:
    def __repr__(self) -> str:
        return "ANY_VERSION"


# Passed to write() when the current version is unknown; the write is unconditional.
ANY_VERSION: Any = _AnyVersion()

_S3_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}
_S3_CONFLICT_CODES = {"PreconditionFailed", "ConditionalRequestConflict", "412", "409"}


@dataclass(frozen=True)
class EventStateEntry:
    key: str
    created_at_ms: int


@dataclass(frozen=True)
class EventState:
    active: bool
    delta_seconds: Optional[int] = None


class EventStateStore(ABC):
    @abstractmethod
    def read(self, key: str) -> Tuple[Optional[EventStateEntry], Any]:
        """Return (entry or None, version). Raises StateStoreReadError."""

    @abstractmethod
    def write(self, key: str, entry: EventStateEntry, expected_version: Any) -> None:
        """Persist entry iff the stored version still equals expected_version.

        Raises StateConflictError when it does not, StateStoreWriteError on
        any other failure.
        """


# ---------------------------------------------------------------------------
# S3 backend
# ---------------------------------------------------------------------------


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3EventStateStore(EventStateStore):
    def __init__(self, s3, bucket: str, key: str):
        if not bucket:
            raise ValueError("S3EventStateStore requires a bucket")
        self._s3 = s3
        self._bucket = bucket
        self._key = key

    def _load_table(self) -> Tuple[Dict[str, Any], Optional[str]]:
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=self._key)
        except ClientError as exc:
            if _client_error_code(exc) in _S3_MISSING_CODES:
                return {}, None
            raise StateStoreReadError(f"s3://{self._bucket}/{self._key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StateStoreReadError(f"s3://{self._bucket}/{self._key}: {exc}") from exc

        etag = resp.get("ETag")
        try:
            table = json.loads(resp["Body"].read().decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("Event state table s3://%s/%s is corrupt, treating as empty: %s", self._bucket, self._key, exc)
            return {}, etag
        if not isinstance(table, dict):
            logger.warning("Event state table s3://%s/%s is not an object, treating as empty", self._bucket, self._key)
            return {}, etag
        return table, etag

    def read(self, key: str) -> Tuple[Optional[EventStateEntry], Any]:
        table, etag = self._load_table()
        raw = table.get(key)
        created = raw.get("created") if isinstance(raw, dict) else None
        if not isinstance(created, (int, float)) or isinstance(created, bool):
            return None, etag
        return EventStateEntry(key=key, created_at_ms=int(created)), etag

    def write(self, key: str, entry: EventStateEntry, expected_version: Any) -> None:
        try:
            table, etag = self._load_table()
        except StateStoreReadError as exc:
            raise StateStoreWriteError(str(exc)) from exc
        if expected_version is not ANY_VERSION and etag != expected_version:
            raise StateConflictError(f"{key}: table version moved from {expected_version} to {etag}")

        table[key] = {"created": entry.created_at_ms}
        kwargs: Dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": self._key,
            "Body": json.dumps(table, indent=1, sort_keys=True).encode("utf-8"),
            "ContentType": "application/json",
        }
        if etag:
            kwargs["IfMatch"] = etag
        else:
            kwargs["IfNoneMatch"] = "*"

        try:
            self._s3.put_object(**kwargs)
        except ClientError as exc:
            if _client_error_code(exc) in _S3_CONFLICT_CODES:
                raise StateConflictError(f"{key}: {exc}") from exc
            raise StateStoreWriteError(f"s3://{self._bucket}/{self._key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StateStoreWriteError(f"s3://{self._bucket}/{self._key}: {exc}") from exc


# ---------------------------------------------------------------------------
# DynamoDB backend
# ---------------------------------------------------------------------------


class DynamoEventStateStore(EventStateStore):
    def __init__(self, ddb, table: str):
        self._ddb = ddb
        self._table = table

    def read(self, key: str) -> Tuple[Optional[EventStateEntry], Any]:
        try:
            resp = self._ddb.get_item(
                TableName=self._table,
                Key={"state_key": _serialize(key)},
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StateStoreReadError(f"{self._table}/{key}: {exc}") from exc

        raw = resp.get("Item")
        if not raw:
            return None, None
        item = _deserialize(raw)
        created = item.get("created_epoch_ms")
        if not isinstance(created, int):
            logger.warning("Event state item %s/%s has no usable created_epoch_ms", self._table, key)
            return None, ANY_VERSION
        return EventStateEntry(key=key, created_at_ms=created), created

    def write(self, key: str, entry: EventStateEntry, expected_version: Any) -> None:
        kwargs: Dict[str, Any] = {
            "TableName": self._table,
            "Item": {
                "state_key": _serialize(key),
                "created_epoch_ms": _serialize(entry.created_at_ms),
                "updated_at": _serialize(_now_z()),
            },
        }
        if expected_version is None:
            kwargs["ConditionExpression"] = "attribute_not_exists(state_key)"
        elif expected_version is not ANY_VERSION:
            kwargs["ConditionExpression"] = "created_epoch_ms = :expected"
            kwargs["ExpressionAttributeValues"] = {":expected": _serialize(expected_version)}

        try:
            self._ddb.put_item(**kwargs)
        except ClientError as exc:
            if _client_error_code(exc) == "ConditionalCheckFailedException":
                raise StateConflictError(f"{key}: {exc}") from exc
            raise StateStoreWriteError(f"{self._table}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StateStoreWriteError(f"{self._table}/{key}: {exc}") from exc


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class DebounceGate:
    def __init__(self, store: EventStateStore, cooldown_ms: int, max_attempts: int = 3):
        if cooldown_ms <= 0:
            raise ValueError("cooldown_ms must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.cooldown_ms = cooldown_ms
        self.max_attempts = max_attempts

    @property
    def cooldown_seconds(self) -> int:
        return int(self.cooldown_ms / 1000 + 0.5)

    def check_event_state(self, key: str, now_ms: int) -> EventState:
        """Admit ``key`` at ``now_ms`` unless it was admitted within the cooldown.

        Admission stamps the entry with ``now_ms`` before returning. Raises
        StateStoreWriteError when the stamp cannot be persisted.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                entry, version = self.store.read(key)
            except StateStoreReadError as exc:
                logger.warning("Event state read failed for %s, continuing as unseen: %s", key, exc)
                entry, version = None, ANY_VERSION

            if entry is not None:
                delta_ms = now_ms - entry.created_at_ms
                if delta_ms < self.cooldown_ms:
                    return EventState(active=True, delta_seconds=max(0, int(delta_ms / 1000 + 0.5)))

            try:
                self.store.write(key, EventStateEntry(key=key, created_at_ms=now_ms), version)
            except StateConflictError as exc:
                logger.info("Event state write for %s lost a race (attempt %d/%d): %s", key, attempt, self.max_attempts, exc)
                continue
            return EventState(active=False)

        raise StateStoreWriteError(
            f"Event state for {key} still conflicting after {self.max_attempts} attempts"
        )
