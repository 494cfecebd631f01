"""Analytics loader tests: partitioned keys, Parquet/NDJSON bodies, report-ready events."""

from __future__ import annotations

import datetime as dt
import io
import json
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

import pyarrow as pa
import pyarrow.parquet as pq
from botocore.exceptions import ClientError

sys.path.insert(0, os.path.dirname(__file__))

import analytics_loader  # noqa: E402
from analytics_loader import AnalyticsLoader, sanitize_record, write_parquet_to_buffer  # noqa: E402
from errors import CollaboratorUnavailableError  # noqa: E402

RECORD = {
    "site_id": "home",
    "job_id": "job-1",
    "execution_id": "batch-1",
    "fetch_time": "2024-03-01T10:00:00.000Z",
    "performance_score": 0.9,
    "performance": {"speed_index": {"raw_value": 1500, "score": 0.9}},
    "blocked_urls": ["*.ads.com"],
}


def _today() -> dt.date:
    return dt.date(2024, 3, 1)


def test_sanitize_record_serializes_nested_values():
    out = sanitize_record(RECORD)
    assert out["performance_score"] == 0.9
    assert json.loads(out["performance"]) == RECORD["performance"]
    assert out["blocked_urls"] == '["*.ads.com"]'


def test_write_parquet_to_buffer_uses_union_of_keys():
    body = write_parquet_to_buffer([{"a": 1}, {"b": "x"}])
    table = pq.read_table(io.BytesIO(body))
    assert sorted(table.column_names) == ["a", "b"]
    assert table.to_pylist() == [{"a": 1, "b": None}, {"a": None, "b": "x"}]


class AnalyticsLoaderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.s3 = MagicMock()
        self.events = MagicMock()
        self.events.put_events.return_value = {"FailedEntryCount": 0, "Entries": [{"EventId": "e"}]}

    def test_parquet_row_is_partitioned_by_site_and_date(self) -> None:
        loader = AnalyticsLoader(self.s3, "analytics", today=_today)

        uri = loader.load(RECORD)

        key = "analytics/reports/site_id=home/ingest_date=2024-03-01/job-1.parquet"
        self.assertEqual(uri, f"s3://analytics/{key}")
        kwargs = self.s3.put_object.call_args.kwargs
        self.assertEqual(kwargs["Key"], key)
        self.assertEqual(kwargs["ServerSideEncryption"], "AES256")
        rows = pq.read_table(io.BytesIO(kwargs["Body"])).to_pylist()
        self.assertEqual(rows[0]["site_id"], "home")
        self.assertEqual(json.loads(rows[0]["performance"]), RECORD["performance"])

    def test_ndjson_format(self) -> None:
        loader = AnalyticsLoader(self.s3, "analytics", prefix="", output_format="ndjson", today=_today)
        loader.load(RECORD)
        kwargs = self.s3.put_object.call_args.kwargs
        self.assertEqual(kwargs["Key"], "site_id=home/ingest_date=2024-03-01/job-1.ndjson")
        self.assertEqual(json.loads(kwargs["Body"].decode("utf-8")), RECORD)

    def test_report_ready_event_is_published_when_bus_configured(self) -> None:
        loader = AnalyticsLoader(self.s3, "analytics", events=self.events, event_bus="lighthouse", today=_today)
        loader.load(RECORD)
        entry = self.events.put_events.call_args.kwargs["Entries"][0]
        self.assertEqual(entry["Source"], "lighthouse.audit")
        self.assertEqual(entry["DetailType"], "report-ready")
        self.assertEqual(entry["EventBusName"], "lighthouse")
        self.assertEqual(json.loads(entry["Detail"])["job_id"], "job-1")

    def test_no_event_without_bus(self) -> None:
        AnalyticsLoader(self.s3, "analytics", events=self.events, today=_today).load(RECORD)
        self.events.put_events.assert_not_called()

    def test_rejected_event_is_typed(self) -> None:
        self.events.put_events.return_value = {"FailedEntryCount": 1, "Entries": [{"ErrorCode": "x"}]}
        loader = AnalyticsLoader(self.s3, "analytics", events=self.events, event_bus="lighthouse", today=_today)
        with self.assertRaises(CollaboratorUnavailableError):
            loader.load(RECORD)

    def test_put_failure_is_typed(self) -> None:
        self.s3.put_object.side_effect = ClientError({"Error": {"Code": "SlowDown", "Message": "x"}}, "PutObject")
        with self.assertRaises(CollaboratorUnavailableError) as ctx:
            AnalyticsLoader(self.s3, "analytics", today=_today).load(RECORD)
        self.assertEqual(ctx.exception.collaborator, "analytics")

    def test_encode_failure_is_typed_and_nothing_is_written(self) -> None:
        loader = AnalyticsLoader(self.s3, "analytics", today=_today)
        with patch.object(analytics_loader, "write_parquet_to_buffer", side_effect=pa.ArrowInvalid("mixed types")):
            with self.assertRaises(CollaboratorUnavailableError) as ctx:
                loader.load(RECORD)
        self.assertEqual(ctx.exception.collaborator, "analytics")
        self.assertIn("job-1", str(ctx.exception))
        self.s3.put_object.assert_not_called()

    def test_unknown_format_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            AnalyticsLoader(self.s3, "analytics", output_format="csv")


if __name__ == "__main__":
    unittest.main()
