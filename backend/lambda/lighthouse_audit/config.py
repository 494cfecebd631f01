"""config.py — Central configuration — environment variables, file config, constants, logging.

Settings are read once per cold start (``Settings.from_env``) and handed to
each component by ``lambda_function``; components never read os.environ.

Optional file config (``CONFIG_PATH``, default ``config.json`` next to this
module) may carry:

    {
        "source": [{"id": "home", "url": "https://example.com/"}],
        "minTimeBetweenTriggers": 300000,
        "lighthouseFlags": {"output": ["html", "json"], "emulatedFormFactor": "mobile"}
    }

Environment variables win over the file.
"""
from __future__ import annotations

import json
import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from errors import ConfigError

__all__ = [
    "ALL_IDENTITY",
    "DEFAULT_SOURCE_SECTIONS",
    "SUPPORTED_ANALYTICS_FORMATS",
    "SUPPORTED_FORM_FACTORS",
    "SUPPORTED_REPORT_FORMATS",
    "SUPPORTED_STATE_BACKENDS",
    "Settings",
    "logger",
]

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ALL_IDENTITY = "all"
SUPPORTED_FORM_FACTORS = ("mobile", "desktop")
SUPPORTED_REPORT_FORMATS = ("html", "json", "csv")
SUPPORTED_STATE_BACKENDS = ("s3", "dynamodb")
SUPPORTED_ANALYTICS_FORMATS = ("parquet", "ndjson")
DEFAULT_SOURCE_SECTIONS: Tuple[str, ...] = (
    "help",
    "fmcTariffs",
    "mobileTariffs",
    "mobilePhones",
    "fixedTariffs",
    "prepaidTariffs",
    "other",
    "bussiness",
    "privateZone",
    "fullWeb",
)
_DEFAULT_CONFIG_PATH = pathlib.Path(__file__).with_name("config.json")


def _split_csv(raw: Optional[str]) -> Tuple[str, ...]:
    """Return non-empty, stripped values from a comma-separated string."""
    if not raw:
        return ()
    return tuple(part.strip() for part in str(raw).split(",") if part.strip())


def _int_value(name: str, raw: Any, default: int) -> int:
    if raw is None or str(raw).strip() == "":
        return default
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    return _int_value(name, env.get(name), default)


def _load_file_config(path: pathlib.Path, required: bool) -> Dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigError(f"Config file not found: {path}")
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must hold a JSON object")
    return data


@dataclass(frozen=True)
class Settings:
    region: str = "us-west-2"
    report_bucket: str = ""
    report_prefix: str = ""

    state_backend: str = "s3"
    state_bucket: str = ""
    state_key: str = "state/event_states.json"
    state_table: str = "lighthouse-event-state"
    min_time_between_triggers_ms: int = 300_000
    state_write_max_attempts: int = 3

    dispatch_topic_arn: str = ""
    dispatch_queue_url: str = ""
    dispatch_max_workers: int = 8

    thirdparty_to_block: Tuple[str, ...] = ()
    default_form_factor: str = "mobile"

    lighthouse_bin: str = "lighthouse"
    lighthouse_output: Tuple[str, ...] = ("html",)
    lighthouse_timeout_seconds: int = 180
    lighthouse_chrome_flags: str = "--headless --no-sandbox"

    source: Tuple[Tuple[str, str], ...] = ()
    source_url: str = ""
    source_auth: str = ""
    source_sections: Tuple[str, ...] = DEFAULT_SOURCE_SECTIONS
    extra_urls: str = ""
    source_timeout_seconds: int = 10

    analytics_bucket: str = ""
    analytics_prefix: str = "analytics/reports"
    analytics_format: str = "parquet"
    analytics_event_bus: str = ""
    analytics_event_source: str = "lighthouse.audit"
    analytics_event_detail_type: str = "report-ready"

    aws_connect_timeout_seconds: int = 5
    aws_read_timeout_seconds: int = 30

    lighthouse_extra_flags: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def blocklist_enabled(self) -> bool:
        return bool(self.thirdparty_to_block)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        config_path_raw = env.get("CONFIG_PATH", "")
        config_path = pathlib.Path(config_path_raw) if config_path_raw else _DEFAULT_CONFIG_PATH
        file_cfg = _load_file_config(config_path, required=bool(config_path_raw))
        lh_flags = file_cfg.get("lighthouseFlags") or {}
        if not isinstance(lh_flags, dict):
            raise ConfigError(f"lighthouseFlags must be an object, got {lh_flags!r}")
        form_factor = env.get("DEFAULT_FORM_FACTOR") or lh_flags.get("emulatedFormFactor") or "mobile"
        if not isinstance(form_factor, str):
            raise ConfigError(f"emulatedFormFactor must be a string, got {form_factor!r}")

        source: List[Tuple[str, str]] = []
        for entry in file_cfg.get("source") or []:
            if not isinstance(entry, dict):
                raise ConfigError(f"source entries must be objects, got {entry!r}")
            source.append((str(entry.get("id") or "").strip(), str(entry.get("url") or "").strip()))

        report_bucket = env.get("REPORT_BUCKET", "")
        output = _split_csv(env.get("LIGHTHOUSE_OUTPUT")) or tuple(lh_flags.get("output") or ()) or ("html",)
        default_cooldown = _int_value("minTimeBetweenTriggers", file_cfg.get("minTimeBetweenTriggers"), 300_000)

        settings = cls(
            region=env.get("AWS_REGION_NAME") or env.get("AWS_REGION") or "us-west-2",
            report_bucket=report_bucket,
            report_prefix=env.get("REPORT_PREFIX", "").strip("/"),
            state_backend=(env.get("STATE_BACKEND") or "s3").strip().lower(),
            state_bucket=env.get("STATE_BUCKET") or report_bucket,
            state_key=env.get("STATE_KEY") or "state/event_states.json",
            state_table=env.get("STATE_TABLE") or "lighthouse-event-state",
            min_time_between_triggers_ms=_int_env(env, "MIN_TIME_BETWEEN_TRIGGERS_MS", default_cooldown),
            state_write_max_attempts=_int_env(env, "STATE_WRITE_MAX_ATTEMPTS", 3),
            dispatch_topic_arn=env.get("DISPATCH_TOPIC_ARN", ""),
            dispatch_queue_url=env.get("DISPATCH_QUEUE_URL", ""),
            dispatch_max_workers=_int_env(env, "DISPATCH_MAX_WORKERS", 8),
            thirdparty_to_block=_split_csv(env.get("THIRDPARTY_TO_BLOCK")),
            default_form_factor=form_factor.strip().lower(),
            lighthouse_bin=env.get("LIGHTHOUSE_BIN") or "lighthouse",
            lighthouse_output=tuple(fmt.strip().lower() for fmt in output),
            lighthouse_timeout_seconds=_int_env(env, "LIGHTHOUSE_TIMEOUT_SECONDS", 180),
            lighthouse_chrome_flags=env.get("LIGHTHOUSE_CHROME_FLAGS") or "--headless --no-sandbox",
            source=tuple(source),
            source_url=env.get("SOURCE_URL", ""),
            source_auth=env.get("SOURCE_AUTH", ""),
            source_sections=_split_csv(env.get("SOURCE_SECTIONS")) or DEFAULT_SOURCE_SECTIONS,
            extra_urls=env.get("EXTRA_URLS", ""),
            source_timeout_seconds=_int_env(env, "SOURCE_TIMEOUT_SECONDS", 10),
            analytics_bucket=env.get("ANALYTICS_BUCKET") or report_bucket,
            analytics_prefix=(env.get("ANALYTICS_PREFIX") or "analytics/reports").strip("/"),
            analytics_format=(env.get("ANALYTICS_FORMAT") or "parquet").strip().lower(),
            analytics_event_bus=env.get("ANALYTICS_EVENT_BUS", ""),
            analytics_event_source=env.get("ANALYTICS_EVENT_SOURCE") or "lighthouse.audit",
            analytics_event_detail_type=env.get("ANALYTICS_EVENT_DETAIL_TYPE") or "report-ready",
            aws_connect_timeout_seconds=_int_env(env, "AWS_CONNECT_TIMEOUT_SECONDS", 5),
            aws_read_timeout_seconds=_int_env(env, "AWS_READ_TIMEOUT_SECONDS", 30),
            lighthouse_extra_flags={k: v for k, v in lh_flags.items() if k not in {"output", "emulatedFormFactor"}},
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise ConfigError describing every problem found."""
        problems: List[str] = []
        if self.min_time_between_triggers_ms <= 0:
            problems.append("minimum time between triggers must be positive")
        if self.state_write_max_attempts < 1:
            problems.append("STATE_WRITE_MAX_ATTEMPTS must be >= 1")
        if self.dispatch_max_workers < 1:
            problems.append("DISPATCH_MAX_WORKERS must be >= 1")
        if self.lighthouse_timeout_seconds <= 0:
            problems.append("LIGHTHOUSE_TIMEOUT_SECONDS must be positive")
        if self.state_backend not in SUPPORTED_STATE_BACKENDS:
            problems.append(f"unknown STATE_BACKEND {self.state_backend!r}")
        if self.default_form_factor not in SUPPORTED_FORM_FACTORS:
            problems.append(f"unknown default form factor {self.default_form_factor!r}")
        for fmt in self.lighthouse_output:
            if fmt not in SUPPORTED_REPORT_FORMATS:
                problems.append(f"unknown report format {fmt!r}")
        if self.analytics_format not in SUPPORTED_ANALYTICS_FORMATS:
            problems.append(f"unknown ANALYTICS_FORMAT {self.analytics_format!r}")

        seen: set = set()
        for identity, url in self.source:
            if not identity or not url:
                problems.append(f"source entry needs both id and url: {identity!r} -> {url!r}")
                continue
            if identity == ALL_IDENTITY:
                problems.append(f"source id {ALL_IDENTITY!r} is reserved")
            if identity in seen:
                problems.append(f"duplicate source id {identity!r}")
            seen.add(identity)

        if problems:
            raise ConfigError("Error(s) in configuration: " + "; ".join(problems))
        logger.info("[INFO] Configuration validated successfully")
