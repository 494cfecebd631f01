"""audit_runner.py — Run the Lighthouse CLI against one target in headless Chrome.

The JSON output (the LHR) is always requested because the analytical record
is derived from it; the configured report formats are collected alongside.
A failed run is retried once before CollaboratorUnavailableError is raised.
"""
from __future__ import annotations

import json
import logging
import pathlib
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from errors import CollaboratorUnavailableError
from message_codec import AuditMode, DeviceClass, DispatchMessage
from targets import Target

__all__ = ["AuditResult", "LighthouseRunner"]

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 2
_STDERR_TAIL = 2000


@dataclass
class AuditResult:
    lhr: Dict[str, Any]
    reports: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def fetch_time(self) -> str:
        return str(self.lhr.get("fetchTime") or "")


class LighthouseRunner:
    def __init__(
        self,
        *,
        lighthouse_bin: str = "lighthouse",
        output_formats: Sequence[str] = ("html",),
        timeout_seconds: int = 180,
        chrome_flags: str = "--headless --no-sandbox",
        blocked_url_patterns: Sequence[str] = (),
        default_form_factor: str = "mobile",
        extra_flags: Optional[Mapping[str, Any]] = None,
        run_process: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.lighthouse_bin = lighthouse_bin
        self.output_formats = tuple(output_formats)
        self.timeout_seconds = timeout_seconds
        self.chrome_flags = chrome_flags
        self.blocked_url_patterns = tuple(blocked_url_patterns)
        self.default_form_factor = DeviceClass(default_form_factor)
        self.extra_flags = dict(extra_flags or {})
        self._run_process = run_process

    def _requested_outputs(self) -> List[str]:
        outputs = ["json"]
        outputs.extend(fmt for fmt in self.output_formats if fmt != "json")
        return outputs

    def build_args(self, url: str, mode: AuditMode, device: Optional[DeviceClass], output_path: str) -> List[str]:
        form_factor = device or self.default_form_factor
        args = [self.lighthouse_bin, url, "--quiet", f"--chrome-flags={self.chrome_flags}"]
        for fmt in self._requested_outputs():
            args.append(f"--output={fmt}")
        args.append(f"--output-path={output_path}")

        if form_factor is DeviceClass.DESKTOP:
            args.append("--preset=desktop")
        else:
            args.append("--form-factor=mobile")

        if mode is AuditMode.BLOCKED:
            for pattern in self.blocked_url_patterns:
                args.append(f"--blocked-url-patterns={pattern}")

        for name, value in self.extra_flags.items():
            if value is True:
                args.append(f"--{name}")
            elif value is False or value is None:
                continue
            elif isinstance(value, (list, tuple)):
                args.extend(f"--{name}={item}" for item in value)
            else:
                args.append(f"--{name}={value}")
        return args

    def _output_file(self, output_path: pathlib.Path, fmt: str) -> pathlib.Path:
        if len(self._requested_outputs()) == 1:
            return output_path
        return output_path.with_name(f"{output_path.name}.report.{fmt}")

    def _run_once(self, target: Target, mode: AuditMode, device: Optional[DeviceClass]) -> AuditResult:
        with tempfile.TemporaryDirectory(prefix="lighthouse-") as workdir:
            output_path = pathlib.Path(workdir) / "report"
            args = self.build_args(target.url, mode, device, str(output_path))
            logger.info("%s: Starting lighthouse for %s", target.identity, target.url)
            try:
                proc = self._run_process(args, capture_output=True, text=True, timeout=self.timeout_seconds)
            except subprocess.TimeoutExpired as exc:
                raise CollaboratorUnavailableError(
                    "lighthouse", f"timed out after {self.timeout_seconds}s for {target.url}", cause=exc
                ) from exc
            except OSError as exc:
                raise CollaboratorUnavailableError("lighthouse", f"could not start {self.lighthouse_bin}: {exc}", cause=exc) from exc

            if proc.returncode != 0:
                stderr = (proc.stderr or "")[-_STDERR_TAIL:]
                raise CollaboratorUnavailableError("lighthouse", f"exit code {proc.returncode} for {target.url}: {stderr}")

            try:
                lhr = json.loads(self._output_file(output_path, "json").read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise CollaboratorUnavailableError("lighthouse", f"no readable JSON report for {target.url}: {exc}", cause=exc) from exc
            if not isinstance(lhr, dict):
                raise CollaboratorUnavailableError("lighthouse", f"JSON report for {target.url} is not an object")
            runtime_error = lhr.get("runtimeError")
            if isinstance(runtime_error, dict) and runtime_error.get("code"):
                raise CollaboratorUnavailableError(
                    "lighthouse", f"runtime error {runtime_error.get('code')} for {target.url}: {runtime_error.get('message', '')}"
                )

            reports: List[Tuple[str, str]] = []
            for fmt in self.output_formats:
                try:
                    reports.append((fmt, self._output_file(output_path, fmt).read_text(encoding="utf-8")))
                except OSError as exc:
                    raise CollaboratorUnavailableError("lighthouse", f"missing {fmt} report for {target.url}: {exc}", cause=exc) from exc

        logger.info("%s: Lighthouse done for %s", target.identity, target.url)
        return AuditResult(lhr=lhr, reports=reports)

    def run(self, target: Target, message: DispatchMessage) -> AuditResult:
        for _ in range(_MAX_ATTEMPTS - 1):
            try:
                return self._run_once(target, message.mode, message.device)
            except CollaboratorUnavailableError as exc:
                logger.warning("%s: Retrying lighthouse for %s after: %s", target.identity, target.url, exc)
        return self._run_once(target, message.mode, message.device)
