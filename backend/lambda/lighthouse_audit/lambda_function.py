"""lighthouse_audit/lambda_function.py

Lighthouse audit trigger Lambda.

Invocation sources:
    SNS                 Records[].Sns.Message            one payload per record
    SQS                 Records[].body                   partial batch response
    EventBridge         detail-type "Scheduled Event"    treated as "all"
    Direct              {"message": "<payload>"}

A payload is either ``all`` (fan out one message per target, mode and device
onto DISPATCH_TOPIC_ARN / DISPATCH_QUEUE_URL) or a single job
(``{"id": ..., "mode": ..., "device": ..., "batch": ...}``) which is
debounced, audited and persisted. See trigger_handler for the outcomes.

Components are constructed once per cold start from ``Settings.from_env()``
and reused across warm invocations.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, List, Optional

from analytics_loader import AnalyticsLoader
from audit_runner import LighthouseRunner
from aws_clients import _get_ddb, _get_eb, _get_s3, _get_sns, _get_sqs
from config import ALL_IDENTITY, Settings, logger
from errors import LighthouseAuditError
from event_state import DebounceGate, DynamoEventStateStore, EventStateStore, S3EventStateStore
from fan_out import FanOutDispatcher, MessageSink, SnsMessageSink, SqsMessageSink
from report_storage import ReportStorage
from targets import TargetSource
from trigger_handler import TriggerHandler


_SCHEDULED_DETAIL_TYPE = "Scheduled Event"

_trigger_handler: Optional[TriggerHandler] = None


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def _build_state_store(settings: Settings) -> EventStateStore:
    if settings.state_backend == "dynamodb":
        return DynamoEventStateStore(_get_ddb(settings), settings.state_table)
    return S3EventStateStore(_get_s3(settings), settings.state_bucket, settings.state_key)


def _build_sink(settings: Settings) -> Optional[MessageSink]:
    if settings.dispatch_topic_arn:
        return SnsMessageSink(_get_sns(settings), settings.dispatch_topic_arn)
    if settings.dispatch_queue_url:
        return SqsMessageSink(_get_sqs(settings), settings.dispatch_queue_url)
    logger.warning("[WARNING] No DISPATCH_TOPIC_ARN or DISPATCH_QUEUE_URL; fan-out is disabled")
    return None


def build_trigger_handler(settings: Settings) -> TriggerHandler:
    sink = _build_sink(settings)
    dispatcher = (
        FanOutDispatcher(
            sink,
            blocklist_enabled=settings.blocklist_enabled,
            max_workers=settings.dispatch_max_workers,
        )
        if sink is not None
        else None
    )
    target_source = TargetSource(
        local_source=settings.source,
        source_url=settings.source_url,
        source_auth=settings.source_auth,
        sections=settings.source_sections,
        extra_urls=settings.extra_urls,
        timeout_seconds=settings.source_timeout_seconds,
    )
    runner = LighthouseRunner(
        lighthouse_bin=settings.lighthouse_bin,
        output_formats=settings.lighthouse_output,
        timeout_seconds=settings.lighthouse_timeout_seconds,
        chrome_flags=settings.lighthouse_chrome_flags,
        blocked_url_patterns=settings.thirdparty_to_block,
        default_form_factor=settings.default_form_factor,
        extra_flags=settings.lighthouse_extra_flags,
    )
    storage = ReportStorage(
        _get_s3(settings),
        settings.report_bucket,
        prefix=settings.report_prefix,
        default_device=settings.default_form_factor,
    )
    analytics = AnalyticsLoader(
        _get_s3(settings),
        settings.analytics_bucket,
        prefix=settings.analytics_prefix,
        output_format=settings.analytics_format,
        events=_get_eb(settings) if settings.analytics_event_bus else None,
        event_bus=settings.analytics_event_bus,
        event_source=settings.analytics_event_source,
        event_detail_type=settings.analytics_event_detail_type,
    )
    gate = DebounceGate(
        _build_state_store(settings),
        settings.min_time_between_triggers_ms,
        max_attempts=settings.state_write_max_attempts,
    )
    return TriggerHandler(
        target_source=target_source,
        gate=gate,
        dispatcher=dispatcher,
        runner=runner,
        storage=storage,
        analytics=analytics,
    )


def _get_trigger_handler() -> TriggerHandler:
    global _trigger_handler
    if _trigger_handler is None:
        _trigger_handler = build_trigger_handler(Settings.from_env())
    return _trigger_handler


# ---------------------------------------------------------------------------
# Event parsing
# ---------------------------------------------------------------------------


def _is_sqs_event(event: Dict[str, Any]) -> bool:
    records = event.get("Records")
    if not isinstance(records, list) or not records:
        return False
    first = records[0] if isinstance(records[0], dict) else {}
    return (first.get("eventSource") or "") == "aws:sqs"


def _decode_data_field(raw: Any) -> Any:
    try:
        return base64.b64decode(str(raw), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        # Not base64 (or not text); let the message decoder reject it.
        return raw


def extract_payloads(event: Dict[str, Any]) -> List[Any]:
    """Normalize SNS, EventBridge and direct invocations into raw message payloads."""
    if "Records" in event:
        payloads: List[Any] = []
        for record in event.get("Records") or []:
            sns_env = record.get("Sns") or record.get("sns")
            payloads.append(sns_env.get("Message") if sns_env else record.get("body"))
        return payloads
    if event.get("detail-type") == _SCHEDULED_DETAIL_TYPE:
        return [ALL_IDENTITY]
    if "message" in event:
        return [event.get("message")]
    if "data" in event:
        return [_decode_data_field(event.get("data"))]
    logger.warning("[WARNING] Unrecognised event shape with keys %s", sorted(event.keys()))
    return [None]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _handle_sqs(event: Dict[str, Any], handler: TriggerHandler) -> Dict[str, Any]:
    results: List[Dict[str, Any]] = []
    failures: List[Dict[str, str]] = []
    for record in event.get("Records") or []:
        message_id = str(record.get("messageId") or "unknown")
        try:
            results.append(handler.handle(record.get("body")).as_dict())
        except LighthouseAuditError as exc:
            logger.error("[ERROR] SQS record %s failed (%s): %s", message_id, exc.error_code, exc)
            failures.append({"itemIdentifier": message_id})
    return {"status": "OK", "results": results, "batchItemFailures": failures}


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    handler = _get_trigger_handler()
    if _is_sqs_event(event):
        logger.info("[INFO] SQS batch received (%d records)", len(event.get("Records") or []))
        return _handle_sqs(event, handler)

    results = [handler.handle(payload).as_dict() for payload in extract_payloads(event)]
    return {"status": "OK", "results": results}
