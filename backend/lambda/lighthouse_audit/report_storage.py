"""report_storage.py — Write Lighthouse reports and the raw LHR log to S3.

Layout (under REPORT_PREFIX):

    <identity>/<mode>-<device>/report_<fetchTime>.<html|json|csv>
    <identity>/<mode>-<device>/log_<fetchTime>.json
"""
from __future__ import annotations

import json
import logging
from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from audit_runner import AuditResult
from errors import CollaboratorUnavailableError
from message_codec import DispatchMessage

__all__ = ["CONTENT_TYPES", "ReportStorage"]

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "html": "text/html",
    "json": "application/json",
    "csv": "text/csv",
}


class ReportStorage:
    def __init__(self, s3, bucket: str, prefix: str = "", default_device: str = "mobile"):
        self._s3 = s3
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._default_device = default_device

    def base_key(self, message: DispatchMessage) -> str:
        device = message.device.value if message.device else self._default_device
        parts = [self._prefix, message.identity, f"{message.mode.value}-{device}"]
        return "/".join(part for part in parts if part)

    def _put(self, key: str, body: str, content_type: str) -> None:
        try:
            self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body.encode("utf-8"),
                ContentType=content_type,
                ServerSideEncryption="AES256",
            )
        except (BotoCoreError, ClientError) as exc:
            raise CollaboratorUnavailableError("report_storage", f"put s3://{self._bucket}/{key} failed: {exc}", cause=exc) from exc

    def write(self, result: AuditResult, message: DispatchMessage, fetch_time: Optional[str] = None) -> List[str]:
        """Write every report format, then the LHR log; returns the keys written."""
        if not self._bucket:
            raise CollaboratorUnavailableError("report_storage", "REPORT_BUCKET is not configured")
        fetch_time = fetch_time or result.fetch_time
        base = self.base_key(message)
        written: List[str] = []

        for fmt, content in result.reports:
            key = f"{base}/report_{fetch_time}.{fmt}"
            logger.info("%s: Writing %s report to bucket %s", message.identity, fmt, self._bucket)
            self._put(key, content, CONTENT_TYPES.get(fmt, "text/html"))
            written.append(key)

        log_key = f"{base}/log_{fetch_time}.json"
        logger.info("%s: Writing log to bucket %s", message.identity, self._bucket)
        self._put(log_key, json.dumps(result.lhr, indent=1), "application/json")
        written.append(log_key)
        return written
