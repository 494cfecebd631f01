"""fan_out.py — Expand an ``all`` trigger into one dispatch message per target, mode and device.

Every message from one call shares a fresh uuid1 batch id. Sends are issued
concurrently on a thread pool and joined; a failing message never stops the
others from being attempted. The plan order is deterministic: identities in
input order, then Included before Blocked, then Mobile before Desktop.
"""
from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from errors import CollaboratorUnavailableError, DispatchError
from message_codec import AuditMode, DeviceClass, DispatchMessage, encode

__all__ = [
    "FanOutDispatcher",
    "FanOutResult",
    "MessageSink",
    "SnsMessageSink",
    "SqsMessageSink",
]

logger = logging.getLogger(__name__)

_MODE_ORDER: Tuple[AuditMode, ...] = (AuditMode.INCLUDED, AuditMode.BLOCKED)
_DEVICE_ORDER: Tuple[DeviceClass, ...] = (DeviceClass.MOBILE, DeviceClass.DESKTOP)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class MessageSink:
    name = "message_sink"

    def publish(self, payload: str) -> str:
        """Hand one payload to the sink and return its message id."""
        raise NotImplementedError


class SnsMessageSink(MessageSink):
    name = "sns"

    def __init__(self, sns, topic_arn: str):
        self._sns = sns
        self._topic_arn = topic_arn

    def publish(self, payload: str) -> str:
        try:
            resp = self._sns.publish(TopicArn=self._topic_arn, Message=payload)
        except (BotoCoreError, ClientError) as exc:
            raise CollaboratorUnavailableError("sns", f"publish to {self._topic_arn} failed: {exc}", cause=exc) from exc
        return str(resp.get("MessageId") or "")


class SqsMessageSink(MessageSink):
    name = "sqs"

    def __init__(self, sqs, queue_url: str):
        self._sqs = sqs
        self._queue_url = queue_url

    def publish(self, payload: str) -> str:
        try:
            resp = self._sqs.send_message(QueueUrl=self._queue_url, MessageBody=payload)
        except (BotoCoreError, ClientError) as exc:
            raise CollaboratorUnavailableError("sqs", f"send to {self._queue_url} failed: {exc}", cause=exc) from exc
        return str(resp.get("MessageId") or "")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FanOutResult:
    batch_id: str
    messages: Tuple[DispatchMessage, ...]


def _new_batch_id() -> str:
    return str(uuid.uuid1())


class FanOutDispatcher:
    def __init__(
        self,
        sink: MessageSink,
        *,
        blocklist_enabled: bool,
        max_workers: int = 8,
        batch_id_factory: Callable[[], str] = _new_batch_id,
    ):
        self.sink = sink
        self.blocklist_enabled = blocklist_enabled
        self.max_workers = max(1, max_workers)
        self._batch_id_factory = batch_id_factory

    def plan(
        self,
        identities: Sequence[str],
        batch_id: str,
        modes: Optional[Iterable[AuditMode]] = None,
        devices: Optional[Iterable[DeviceClass]] = None,
    ) -> List[DispatchMessage]:
        wanted_modes = set(modes) if modes is not None else set(_MODE_ORDER)
        if not self.blocklist_enabled:
            wanted_modes.discard(AuditMode.BLOCKED)
        wanted_devices = set(devices) if devices is not None else set(_DEVICE_ORDER)

        return [
            DispatchMessage(identity=identity, mode=mode, device=device, batch_id=batch_id)
            for identity in identities
            for mode in _MODE_ORDER
            if mode in wanted_modes
            for device in _DEVICE_ORDER
            if device in wanted_devices
        ]

    def dispatch_all(
        self,
        identities: Sequence[str],
        modes: Optional[Iterable[AuditMode]] = None,
        devices: Optional[Iterable[DeviceClass]] = None,
    ) -> FanOutResult:
        """Publish the full plan; raises DispatchError after every send was attempted."""
        batch_id = self._batch_id_factory()
        messages = self.plan(identities, batch_id, modes, devices)
        if not messages:
            logger.warning("Fan-out %s: nothing to dispatch", batch_id)
            return FanOutResult(batch_id=batch_id, messages=())

        failures: List[Tuple[int, DispatchMessage, BaseException]] = []
        workers = min(len(messages), self.max_workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self._send, message): (idx, message) for idx, message in enumerate(messages)}
            for future in as_completed(futures):
                idx, message = futures[future]
                try:
                    future.result()
                except Exception as exc:
                    logger.error("Fan-out %s: failed to publish %s: %s", batch_id, message.debounce_key, exc)
                    failures.append((idx, message, exc))

        if failures:
            failures.sort(key=lambda f: f[0])
            raise DispatchError([m for _, m, _ in failures], failures[0][2])

        logger.info("Fan-out %s: published %d messages for %d targets", batch_id, len(messages), len(identities))
        return FanOutResult(batch_id=batch_id, messages=tuple(messages))

    def _send(self, message: DispatchMessage) -> str:
        payload = encode(message)
        logger.info("%s sending message: %s", self.sink.name, payload)
        message_id = self.sink.publish(payload)
        logger.info("%s sent: %s (%s)", self.sink.name, payload, message_id)
        return message_id
