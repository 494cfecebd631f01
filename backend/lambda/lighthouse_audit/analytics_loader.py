"""analytics_loader.py — Load one report row per admitted run into the analytical store.

Rows land in S3 as Parquet (default) or NDJSON, partitioned for Glue/Athena:

    <ANALYTICS_PREFIX>/site_id=<identity>/ingest_date=<YYYY-MM-DD>/<job_id>.parquet

When ANALYTICS_EVENT_BUS is set, a ``report-ready`` EventBridge event is
published after the write so a downstream crawler can pick the partition up.
"""
from __future__ import annotations

import datetime as dt
import io
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import pyarrow as pa
import pyarrow.parquet as pq
from botocore.exceptions import BotoCoreError, ClientError

from errors import CollaboratorUnavailableError
from serialization import _to_ndjson

__all__ = ["AnalyticsLoader", "sanitize_record", "write_parquet_to_buffer"]

logger = logging.getLogger(__name__)


def sanitize_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Convert nested structures to JSON strings to keep Arrow schema consistent."""
    sanitized: Dict[str, Any] = {}
    for key, value in record.items():
        if isinstance(value, (dict, list)):
            sanitized[key] = json.dumps(value, sort_keys=True)
        else:
            sanitized[key] = value
    return sanitized


def write_parquet_to_buffer(records: List[Dict[str, Any]], compression: str = "snappy") -> bytes:
    if not records:
        raise ValueError("No records to write to Parquet")
    all_keys = sorted({key for record in records for key in record.keys()})
    normalized_records = [{key: record.get(key) for key in all_keys} for record in records]
    table = pa.Table.from_pylist(normalized_records)
    sink = io.BytesIO()
    pq.write_table(table, sink, compression=compression, flavor="spark")
    return sink.getvalue()


class AnalyticsLoader:
    def __init__(
        self,
        s3,
        bucket: str,
        *,
        prefix: str = "analytics/reports",
        output_format: str = "parquet",
        events=None,
        event_bus: str = "",
        event_source: str = "lighthouse.audit",
        event_detail_type: str = "report-ready",
        compression: str = "snappy",
        today: Callable[[], dt.date] = lambda: dt.datetime.now(dt.timezone.utc).date(),
    ):
        if output_format not in ("parquet", "ndjson"):
            raise ValueError(f"Unsupported analytics format: {output_format}")
        self._s3 = s3
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._format = output_format
        self._events = events
        self._event_bus = event_bus
        self._event_source = event_source
        self._event_detail_type = event_detail_type
        self._compression = compression
        self._today = today

    def object_key(self, record: Dict[str, Any]) -> str:
        ext = "parquet" if self._format == "parquet" else "ndjson"
        parts = [
            self._prefix,
            f"site_id={record['site_id']}",
            f"ingest_date={self._today().isoformat()}",
            f"{record['job_id']}.{ext}",
        ]
        return "/".join(part for part in parts if part)

    def _encode(self, record: Dict[str, Any]) -> bytes:
        if self._format == "parquet":
            return write_parquet_to_buffer([sanitize_record(record)], compression=self._compression)
        return _to_ndjson(record).encode("utf-8")

    def load(self, record: Dict[str, Any]) -> str:
        """Write ``record`` (must carry site_id and job_id); returns the s3:// URI."""
        if not self._bucket:
            raise CollaboratorUnavailableError("analytics", "ANALYTICS_BUCKET is not configured")
        key = self.object_key(record)
        try:
            body = self._encode(record)
        except (pa.ArrowException, ValueError, TypeError) as exc:
            raise CollaboratorUnavailableError(
                "analytics", f"could not encode row for job {record.get('job_id')}: {exc}", cause=exc
            ) from exc
        content_type = "application/octet-stream" if self._format == "parquet" else "application/x-ndjson"
        try:
            self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                ServerSideEncryption="AES256",
            )
        except (BotoCoreError, ClientError) as exc:
            raise CollaboratorUnavailableError("analytics", f"put s3://{self._bucket}/{key} failed: {exc}", cause=exc) from exc

        uri = f"s3://{self._bucket}/{key}"
        logger.info("%s: report row for job %s written to %s", record.get("site_id"), record.get("job_id"), uri)
        if self._events is not None and self._event_bus:
            self._publish_ready(record, uri)
        return uri

    def _publish_ready(self, record: Dict[str, Any], uri: str) -> None:
        detail: Dict[str, Optional[Any]] = {
            "site_id": record.get("site_id"),
            "job_id": record.get("job_id"),
            "execution_id": record.get("execution_id"),
            "fetch_time": record.get("fetch_time"),
            "object_uri": uri,
            "format": self._format,
        }
        try:
            resp = self._events.put_events(
                Entries=[
                    {
                        "Source": self._event_source,
                        "DetailType": self._event_detail_type,
                        "Detail": json.dumps(detail),
                        "EventBusName": self._event_bus,
                    }
                ]
            )
        except (BotoCoreError, ClientError) as exc:
            raise CollaboratorUnavailableError("analytics", f"put_events to {self._event_bus} failed: {exc}", cause=exc) from exc
        if int(resp.get("FailedEntryCount") or 0):
            raise CollaboratorUnavailableError("analytics", f"EventBridge rejected report-ready event: {resp.get('Entries')}")
