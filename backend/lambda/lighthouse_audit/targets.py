"""targets.py — Ordered list of auditable targets (identity -> URL).

Targets come either from the bundled config ``source`` list or, when
SOURCE_URL is set, from a remote JSON document whose ``fields.json``
holds named sections::

    {"fields": {"json": {
        "help": {"name": "help", "url": "https://.../help",
                 "list": [{"name": "faq", "url": "https://.../faq",
                           "list": [{"name": "faq-billing", "url": "..."}]}]}
    }}}

Each section contributes itself, then its entries, then each entry's
nested entries. EXTRA_URLS (``id::url,id::url``) is appended to a remote
list. Remote results are cached per warm container.
"""
from __future__ import annotations

import http.client
import json
import logging
import ssl
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import certifi

from config import ALL_IDENTITY
from errors import CollaboratorUnavailableError

__all__ = [
    "Target",
    "TargetSource",
    "flatten_sectioned_source",
    "parse_extra_urls",
]

logger = logging.getLogger(__name__)

_SOURCE_CACHE_TTL = 300.0
_CERT_BUNDLE = certifi.where()


@dataclass(frozen=True)
class Target:
    identity: str
    url: str


def _dedupe(entries: Iterable[Tuple[Any, Any]]) -> List[Target]:
    """Drop entries without id/url, the reserved ``all`` id and repeated ids (first wins)."""
    targets: List[Target] = []
    seen: set = set()
    for raw_id, raw_url in entries:
        identity = str(raw_id or "").strip()
        url = str(raw_url or "").strip()
        if not identity or not url:
            continue
        if identity == ALL_IDENTITY:
            logger.warning("Skipping target with reserved id %r (%s)", identity, url)
            continue
        if identity in seen:
            logger.warning("Skipping duplicate target id %r (%s)", identity, url)
            continue
        seen.add(identity)
        targets.append(Target(identity=identity, url=url))
    return targets


def flatten_sectioned_source(document: Dict[str, Any], sections: Sequence[str]) -> List[Tuple[Any, Any]]:
    fields = document.get("fields") if isinstance(document, dict) else None
    content = (fields or {}).get("json") or {}
    if not isinstance(content, dict):
        return []

    flat: List[Tuple[Any, Any]] = []
    for section in sections:
        node = content.get(section)
        if not isinstance(node, dict):
            continue
        flat.append((node.get("name"), node.get("url")))
        for entry in node.get("list") or []:
            if not isinstance(entry, dict):
                continue
            flat.append((entry.get("name"), entry.get("url")))
            for sub_entry in entry.get("list") or []:
                if isinstance(sub_entry, dict):
                    flat.append((sub_entry.get("name"), sub_entry.get("url")))
    return flat


def parse_extra_urls(raw: str) -> List[Tuple[str, str]]:
    extras: List[Tuple[str, str]] = []
    for part in (raw or "").split(","):
        pieces = part.strip().split("::", 1)
        if len(pieces) == 2 and pieces[0].strip() and pieces[1].strip():
            extras.append((pieces[0].strip(), pieces[1].strip()))
    return extras


class TargetSource:
    def __init__(
        self,
        *,
        local_source: Sequence[Tuple[str, str]] = (),
        source_url: str = "",
        source_auth: str = "",
        sections: Sequence[str] = (),
        extra_urls: str = "",
        timeout_seconds: int = 10,
        opener: Callable[..., Any] = urllib.request.urlopen,
        clock: Callable[[], float] = time.time,
    ):
        self._local = _dedupe(local_source)
        self._source_url = source_url
        self._source_auth = source_auth
        self._sections = tuple(sections)
        self._extra_urls = extra_urls
        self._timeout = timeout_seconds
        self._opener = opener
        self._clock = clock
        self._cache: Optional[List[Target]] = None
        self._cache_at = 0.0
        self._ssl_context = ssl.create_default_context(cafile=_CERT_BUNDLE)

    def targets(self) -> List[Target]:
        if not self._source_url:
            return list(self._local)

        now = self._clock()
        if self._cache is not None and (now - self._cache_at) < _SOURCE_CACHE_TTL:
            return list(self._cache)

        try:
            document = self._fetch_remote()
        except CollaboratorUnavailableError as exc:
            logger.error("Failed to load targets from %s: %s", self._source_url, exc)
            if self._cache is not None:
                logger.warning("Using stale target cache (%d targets)", len(self._cache))
                return list(self._cache)
            raise

        entries = flatten_sectioned_source(document, self._sections)
        entries.extend(parse_extra_urls(self._extra_urls))
        targets = _dedupe(entries)
        self._cache = targets
        self._cache_at = now
        logger.info("Loaded %d targets from %s", len(targets), self._source_url)
        return list(targets)

    def identities(self) -> List[str]:
        return [target.identity for target in self.targets()]

    def find(self, identity: str) -> Optional[Target]:
        for target in self.targets():
            if target.identity == identity:
                return target
        return None

    def _fetch_remote(self) -> Dict[str, Any]:
        headers: Dict[str, str] = {"Accept": "application/json"}
        if self._source_auth:
            headers["Authorization"] = self._source_auth
        request = urllib.request.Request(self._source_url, headers=headers, method="GET")
        try:
            with self._opener(request, timeout=self._timeout, context=self._ssl_context) as resp:
                body = resp.read()
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
            raise CollaboratorUnavailableError("target_source", f"GET {self._source_url} failed: {exc}", cause=exc) from exc
        try:
            document = json.loads(body.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as exc:
            raise CollaboratorUnavailableError("target_source", f"response is not JSON: {exc}", cause=exc) from exc
        if not isinstance(document, dict):
            raise CollaboratorUnavailableError("target_source", "response must be a JSON object")
        return document
