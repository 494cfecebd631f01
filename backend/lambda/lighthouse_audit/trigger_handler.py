"""trigger_handler.py — Decide what one trigger payload does.

    decode ─┬─ malformed ─────────────────────────────► rejected (malformed_message)
            ├─ id == "all" ─► fan-out ───────────────► dispatched
            └─ id ─┬─ not a known target ────────────► rejected (unknown_identity)
                   └─ gate ─┬─ active ───────────────► rejected (debounced)
                            └─ admitted ─► audit ─► storage + analytics ─► admitted

Rejections are terminal and never raised: redelivering them would repeat the
same outcome. Anything that should be redelivered (state write failures,
unavailable collaborators) is raised to the caller after being logged.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from analytics_loader import AnalyticsLoader
from audit_runner import LighthouseRunner
from errors import (
    CollaboratorUnavailableError,
    LighthouseAuditError,
    MalformedMessageError,
    UnknownIdentityError,
)
from event_state import DebounceGate
from fan_out import FanOutDispatcher
from message_codec import DispatchMessage, decode
from report_record import build_report_record
from report_storage import ReportStorage
from serialization import _emit_structured_observability, _now_ms
from targets import TargetSource

__all__ = [
    "OUTCOME_ADMITTED",
    "OUTCOME_DISPATCHED",
    "OUTCOME_REJECTED",
    "REASON_DEBOUNCED",
    "REASON_MALFORMED_MESSAGE",
    "REASON_UNKNOWN_IDENTITY",
    "TriggerHandler",
    "TriggerOutcome",
]

logger = logging.getLogger(__name__)

OUTCOME_DISPATCHED = "dispatched"
OUTCOME_ADMITTED = "admitted"
OUTCOME_REJECTED = "rejected"

REASON_MALFORMED_MESSAGE = "malformed_message"
REASON_UNKNOWN_IDENTITY = "unknown_identity"
REASON_DEBOUNCED = "debounced"

_NO_EXECUTION_ID = "no_execution_id"
_COMPONENT = "trigger_handler"


@dataclass
class TriggerOutcome:
    status: str
    reason: Optional[str] = None
    message: Optional[DispatchMessage] = None
    delta_seconds: Optional[int] = None
    batch_id: Optional[str] = None
    job_id: Optional[str] = None
    dispatched: int = 0
    report_keys: List[str] = field(default_factory=list)
    analytics_uri: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"status": self.status}
        if self.reason:
            out["reason"] = self.reason
        if self.message is not None:
            out.update(self.message.log_fields())
        if self.delta_seconds is not None:
            out["delta_seconds"] = self.delta_seconds
        if self.batch_id:
            out["batch_id"] = self.batch_id
        if self.job_id:
            out["job_id"] = self.job_id
        if self.status == OUTCOME_DISPATCHED:
            out["dispatched"] = self.dispatched
        if self.report_keys:
            out["report_keys"] = list(self.report_keys)
        if self.analytics_uri:
            out["analytics_uri"] = self.analytics_uri
        return out


class TriggerHandler:
    def __init__(
        self,
        *,
        target_source: TargetSource,
        gate: DebounceGate,
        dispatcher: Optional[FanOutDispatcher],
        runner: LighthouseRunner,
        storage: ReportStorage,
        analytics: AnalyticsLoader,
        clock: Callable[[], int] = _now_ms,
        job_id_factory: Callable[[], str] = lambda: str(uuid.uuid1()),
    ):
        self.target_source = target_source
        self.gate = gate
        self.dispatcher = dispatcher
        self.runner = runner
        self.storage = storage
        self.analytics = analytics
        self._clock = clock
        self._job_id_factory = job_id_factory

    def handle(self, payload: Union[str, bytes, None]) -> TriggerOutcome:
        started = time.monotonic()
        try:
            message = decode(payload)
        except MalformedMessageError as exc:
            logger.error("Dropping malformed trigger payload %r: %s", payload, exc)
            self._observe("rejected", None, started, error_code=exc.error_code)
            return TriggerOutcome(status=OUTCOME_REJECTED, reason=REASON_MALFORMED_MESSAGE)

        if message.is_fan_out:
            return self._fan_out(message, started)

        try:
            target = self.target_source.find(message.identity)
        except LighthouseAuditError as exc:
            logger.error("%s: Could not load target list: %s", message.identity, exc)
            self._observe("failed", message, started, error_code=exc.error_code)
            raise

        if target is None:
            unknown = UnknownIdentityError(f"{message.identity} is not a configured target")
            logger.error("%s: Not found in target list, check the source configuration", message.identity)
            self._observe("rejected", message, started, error_code=unknown.error_code)
            return TriggerOutcome(status=OUTCOME_REJECTED, reason=REASON_UNKNOWN_IDENTITY, message=message)

        try:
            state = self.gate.check_event_state(message.debounce_key, self._clock())
        except LighthouseAuditError as exc:
            logger.error("%s: Event state for %s not persisted: %s", message.identity, message.debounce_key, exc)
            self._observe("failed", message, started, error_code=exc.error_code)
            raise

        if state.active:
            logger.warning(
                "%s: Debounced (%s), last run %ss ago, minimum is %ss",
                message.identity,
                message.debounce_key,
                state.delta_seconds,
                self.gate.cooldown_seconds,
            )
            self._observe("rejected", message, started, error_code=REASON_DEBOUNCED,
                          extra={"delta_seconds": state.delta_seconds})
            return TriggerOutcome(
                status=OUTCOME_REJECTED,
                reason=REASON_DEBOUNCED,
                message=message,
                delta_seconds=state.delta_seconds,
            )

        return self._proceed(message, target, started)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _fan_out(self, message: DispatchMessage, started: float) -> TriggerOutcome:
        try:
            if self.dispatcher is None:
                raise CollaboratorUnavailableError(
                    "message_sink", "fan-out requested but neither DISPATCH_TOPIC_ARN nor DISPATCH_QUEUE_URL is set"
                )
            identities = self.target_source.identities()
            logger.info("Fanning out to %d targets", len(identities))
            result = self.dispatcher.dispatch_all(identities)
        except LighthouseAuditError as exc:
            logger.error("Fan-out failed: %s", exc)
            self._observe("failed", message, started, error_code=exc.error_code)
            raise
        self._observe("dispatched", message, started, batch_id=result.batch_id,
                      extra={"dispatched": len(result.messages)})
        return TriggerOutcome(
            status=OUTCOME_DISPATCHED,
            message=message,
            batch_id=result.batch_id,
            dispatched=len(result.messages),
        )

    def _proceed(self, message: DispatchMessage, target, started: float) -> TriggerOutcome:
        job_id = self._job_id_factory()
        logger.info("%s: Admitted %s (job %s)", message.identity, message.debounce_key, job_id)
        try:
            result = self.runner.run(target, message)
        except CollaboratorUnavailableError as exc:
            logger.error("%s: Lighthouse failed for %s: %s", message.identity, target.url, exc)
            self._observe("failed", message, started, job_id=job_id, error_code=exc.error_code,
                          extra={"collaborator": exc.collaborator})
            raise

        record = build_report_record(result.lhr, message.identity)
        record["job_id"] = job_id
        record["execution_id"] = message.batch_id or _NO_EXECUTION_ID
        record["mode"] = message.mode.value
        record["device"] = message.device.value if message.device else self.runner.default_form_factor.value

        errors: List[CollaboratorUnavailableError] = []
        report_keys: List[str] = []
        analytics_uri: Optional[str] = None
        try:
            report_keys = self.storage.write(result, message)
        except CollaboratorUnavailableError as exc:
            logger.error("%s: Failed to store reports: %s", message.identity, exc)
            errors.append(exc)
        try:
            analytics_uri = self.analytics.load(record)
        except CollaboratorUnavailableError as exc:
            logger.error("%s: Failed to load analytics row for job %s: %s", message.identity, job_id, exc)
            errors.append(exc)

        if errors:
            self._observe("failed", message, started, job_id=job_id, error_code=errors[0].error_code,
                          extra={"collaborator": ",".join(err.collaborator for err in errors)})
            if len(errors) == 1:
                raise errors[0]
            raise CollaboratorUnavailableError(
                ",".join(err.collaborator for err in errors),
                "; ".join(str(err) for err in errors),
                cause=errors[0],
            ) from errors[0]

        self._observe("admitted", message, started, job_id=job_id,
                      extra={"report_keys": len(report_keys)})
        return TriggerOutcome(
            status=OUTCOME_ADMITTED,
            message=message,
            batch_id=message.batch_id,
            job_id=job_id,
            report_keys=report_keys,
            analytics_uri=analytics_uri,
        )

    def _observe(
        self,
        event: str,
        message: Optional[DispatchMessage],
        started: float,
        *,
        batch_id: Optional[str] = None,
        job_id: Optional[str] = None,
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        fields = message.log_fields() if message is not None else {}
        _emit_structured_observability(
            component=_COMPONENT,
            event=event,
            identity=fields.get("identity"),
            mode=fields.get("mode"),
            device=fields.get("device"),
            batch_id=batch_id or fields.get("batch_id"),
            job_id=job_id,
            latency_ms=int((time.monotonic() - started) * 1000),
            error_code=error_code,
            extra=extra,
        )
