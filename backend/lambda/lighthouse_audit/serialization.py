"""serialization.py — DynamoDB (de)serialization, timestamps, NDJSON, structured observability."""
from __future__ import annotations

import datetime as dt
import json
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Union

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

from config import logger

__all__ = [
    "_deserialize",
    "_emit_structured_observability",
    "_now_ms",
    "_now_z",
    "_serialize",
    "_to_ndjson",
]

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

_SER = TypeSerializer()
_DESER = TypeDeserializer()


def _serialize(value: Any) -> Dict[str, Any]:
    """Serialize a Python value for DynamoDB."""
    if isinstance(value, float):
        value = Decimal(str(value))
    return _SER.serialize(value)


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict."""
    out: Dict[str, Any] = {}
    for k, v in item.items():
        val = _DESER.deserialize(v)
        if isinstance(val, Decimal):
            val = int(val) if val == int(val) else float(val)
        out[k] = val
    return out


def _now_z() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _to_ndjson(data: Union[Dict[str, Any], Iterable[Dict[str, Any]]]) -> str:
    """Converts a record (or records) to newline-delimited JSON."""
    rows = [data] if isinstance(data, dict) else list(data)
    return "".join(json.dumps(row, sort_keys=True, default=str) + "\n" for row in rows)


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    identity: Optional[str] = None,
    mode: Optional[str] = None,
    device: Optional[str] = None,
    batch_id: Optional[str] = None,
    job_id: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "identity": str(identity or ""),
        "mode": str(mode or ""),
        "device": str(device or ""),
        "batch_id": str(batch_id or ""),
        "job_id": str(job_id or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
    return payload
