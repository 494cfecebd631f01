"""message_codec.py — Dispatch message model and wire codec.

Messages are written as a compact JSON object::

    {"id": "home", "mode": "3PIncluded", "device": "mobile", "batch": "<uuid1>"}

The decoder also accepts the legacy delimited form ``home_3PIncluded_mobile_<batch>``
(1 to 4 tokens split on ``_``) so scheduler rules and hand-published messages
such as ``all`` keep working. Only ``id`` is mandatory in either form.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from config import ALL_IDENTITY
from errors import MalformedMessageError

__all__ = [
    "AuditMode",
    "DeviceClass",
    "DispatchMessage",
    "LEGACY_SEPARATOR",
    "decode",
    "encode",
]

LEGACY_SEPARATOR = "_"
_MAX_LEGACY_TOKENS = 4


class AuditMode(str, Enum):
    INCLUDED = "3PIncluded"
    BLOCKED = "3PBlocked"


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"


@dataclass(frozen=True)
class DispatchMessage:
    identity: str
    mode: AuditMode = AuditMode.INCLUDED
    device: Optional[DeviceClass] = None
    batch_id: Optional[str] = None

    @property
    def is_fan_out(self) -> bool:
        return self.identity == ALL_IDENTITY

    @property
    def debounce_key(self) -> str:
        """Gate key: identity, mode and device; the batch id is deliberately left out."""
        device = self.device.value if self.device else "default"
        return f"{self.identity}|{self.mode.value}|{device}"

    def log_fields(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "mode": self.mode.value,
            "device": self.device.value if self.device else "",
            "batch_id": self.batch_id or "",
        }


def _parse_mode(raw: Any) -> AuditMode:
    if raw is None or raw == "":
        return AuditMode.INCLUDED
    try:
        return AuditMode(raw)
    except ValueError:
        raise MalformedMessageError(f"Unknown audit mode {raw!r}") from None


def _parse_device(raw: Any) -> Optional[DeviceClass]:
    if raw is None or raw == "":
        return None
    try:
        return DeviceClass(str(raw).lower())
    except ValueError:
        raise MalformedMessageError(f"Unknown device class {raw!r}") from None


def _parse_batch(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise MalformedMessageError(f"Batch id must be a string, got {type(raw).__name__}")
    return raw


def encode(message: DispatchMessage) -> str:
    if not isinstance(message.identity, str) or not message.identity.strip():
        raise ValueError("DispatchMessage.identity must be a non-empty string")
    if message.batch_id is not None and not message.batch_id:
        raise ValueError("DispatchMessage.batch_id must be non-empty when set")
    body: Dict[str, Any] = {"id": message.identity, "mode": AuditMode(message.mode).value}
    if message.device is not None:
        body["device"] = DeviceClass(message.device).value
    if message.batch_id is not None:
        body["batch"] = message.batch_id
    return json.dumps(body, separators=(",", ":"))


def _decode_structured(text: str) -> DispatchMessage:
    try:
        body = json.loads(text)
    except (ValueError, RecursionError) as exc:
        raise MalformedMessageError(f"Invalid JSON payload: {exc}") from None
    if not isinstance(body, dict):
        raise MalformedMessageError("JSON payload must be an object")

    identity = body.get("id")
    if not isinstance(identity, str) or not identity.strip():
        raise MalformedMessageError("Payload is missing a non-empty 'id'")
    identity = identity.strip()
    if identity == ALL_IDENTITY:
        return DispatchMessage(identity=ALL_IDENTITY)

    return DispatchMessage(
        identity=identity,
        mode=_parse_mode(body.get("mode")),
        device=_parse_device(body.get("device")),
        batch_id=_parse_batch(body.get("batch")),
    )


def _decode_legacy(text: str) -> DispatchMessage:
    tokens = text.split(LEGACY_SEPARATOR)
    identity = tokens[0].strip()
    if not identity:
        raise MalformedMessageError(f"Payload {text!r} has an empty identity")
    if identity == ALL_IDENTITY:
        return DispatchMessage(identity=ALL_IDENTITY)
    if len(tokens) > _MAX_LEGACY_TOKENS:
        raise MalformedMessageError(
            f"Payload {text!r} has {len(tokens)} tokens; at most {_MAX_LEGACY_TOKENS} allowed"
        )
    tokens += [""] * (_MAX_LEGACY_TOKENS - len(tokens))
    return DispatchMessage(
        identity=identity,
        mode=_parse_mode(tokens[1]),
        device=_parse_device(tokens[2]),
        batch_id=_parse_batch(tokens[3]),
    )


def decode(payload: Union[str, bytes, None]) -> DispatchMessage:
    """Decode a wire payload; any defect raises MalformedMessageError."""
    if payload is None:
        raise MalformedMessageError("Empty payload")
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedMessageError("Payload is not valid UTF-8") from None
    if not isinstance(payload, str):
        raise MalformedMessageError(f"Unsupported payload type: {type(payload).__name__}")

    text = payload.strip()
    if not text:
        raise MalformedMessageError("Empty payload")
    if text.startswith("{"):
        return _decode_structured(text)
    return _decode_legacy(text)
