"""report_record.py — Flatten a Lighthouse result (LHR) into one analytical row.

Audits that a given Lighthouse version no longer produces come out as None
rather than failing the whole row.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Sequence, Tuple

__all__ = ["build_report_record"]

_PASS_FAIL_AUDITS: Dict[str, Sequence[Tuple[str, str]]] = {
    "accessibility": (
        ("bypass_repetitive_content", "bypass"),
        ("color_contrast", "color-contrast"),
        ("document_title_found", "document-title"),
        ("no_duplicate_id_attribute", "duplicate-id"),
        ("html_has_lang_attribute", "html-has-lang"),
        ("html_lang_is_valid", "html-lang-valid"),
        ("images_have_alt_attribute", "image-alt"),
        ("form_elements_have_labels", "label"),
        ("links_have_names", "link-name"),
        ("lists_are_well_formed", "list"),
        ("list_items_within_proper_parents", "listitem"),
        ("meta_viewport_allows_zoom", "meta-viewport"),
    ),
    "best-practices": (
        ("avoid_application_cache", "appcache-manifest"),
        ("uses_https", "is-on-https"),
        ("uses_http2", "uses-http2"),
        ("uses_passive_event_listeners", "uses-passive-event-listeners"),
        ("no_document_write", "no-document-write"),
        ("external_anchors_use_rel_noopener", "external-anchors-use-rel-noopener"),
        ("no_geolocation_on_start", "geolocation-on-start"),
        ("doctype_defined", "doctype"),
        ("no_vulnerable_libraries", "no-vulnerable-libraries"),
        ("notification_asked_on_start", "notification-on-start"),
        ("avoid_deprecated_apis", "deprecations"),
        ("allow_paste_to_password_field", "password-inputs-can-be-pasted-into"),
        ("errors_in_console", "errors-in-console"),
        ("images_have_correct_aspect_ratio", "image-aspect-ratio"),
    ),
    "pwa": (
        ("load_fast_enough", "load-fast-enough-for-pwa"),
        ("works_offline", "works-offline"),
        ("installable_manifest", "installable-manifest"),
        ("uses_https", "is-on-https"),
        ("redirects_http_to_https", "redirects-http"),
        ("has_meta_viewport", "viewport"),
        ("uses_service_worker", "service-worker"),
        ("works_without_javascript", "without-javascript"),
        ("splash_screen_found", "splash-screen"),
        ("themed_address_bar", "themed-omnibox"),
    ),
    "seo": (
        ("has_meta_viewport", "viewport"),
        ("document_title_found", "document-title"),
        ("meta_description", "meta-description"),
        ("http_status_code", "http-status-code"),
        ("descriptive_link_text", "link-text"),
        ("is_crawlable", "is-crawlable"),
        ("robots_txt_valid", "robots-txt"),
        ("hreflang_valid", "hreflang"),
        ("font_size_ok", "font-size"),
        ("plugins_ok", "plugins"),
    ),
}

_PERFORMANCE_METRICS: Sequence[Tuple[str, str]] = (
    ("first_contentful_paint", "first-contentful-paint"),
    ("first_meaningful_paint", "first-meaningful-paint"),
    ("largest_contentful_paint", "largest-contentful-paint"),
    ("speed_index", "speed-index"),
    ("page_interactive", "interactive"),
    ("first_cpu_idle", "first-cpu-idle"),
    ("total_blocking_time", "total-blocking-time"),
    ("cumulative_layout_shift", "cumulative-layout-shift"),
)


def _category_score(categories: Dict[str, Any], name: str) -> Optional[float]:
    score = (categories.get(name) or {}).get("score")
    return float(score) if isinstance(score, (int, float)) else None


def _passed(audits: Dict[str, Any], audit_id: str) -> Optional[bool]:
    audit = audits.get(audit_id)
    if not isinstance(audit, dict):
        return None
    return audit.get("score") == 1


def _metric(audits: Dict[str, Any], audit_id: str) -> Dict[str, Any]:
    audit = audits.get(audit_id)
    if not isinstance(audit, dict):
        return {"raw_value": None, "score": None}
    raw = audit.get("numericValue", audit.get("rawValue"))
    return {"raw_value": raw, "score": audit.get("score")}


def build_report_record(lhr: Dict[str, Any], identity: str) -> Dict[str, Any]:
    categories = lhr.get("categories") or {}
    audits = lhr.get("audits") or {}
    settings = lhr.get("configSettings") or {}

    record: Dict[str, Any] = {
        "fetch_time": lhr.get("fetchTime"),
        "site_url": lhr.get("finalUrl") or lhr.get("finalDisplayedUrl") or lhr.get("requestedUrl"),
        "site_id": identity,
        "user_agent": lhr.get("userAgent"),
        "emulated_as": settings.get("formFactor") or settings.get("emulatedFormFactor"),
        "blocked_urls": list(settings.get("blockedUrlPatterns") or []),
        "lighthouse_version": lhr.get("lighthouseVersion"),
    }

    for category, checks in _PASS_FAIL_AUDITS.items():
        column = category.replace("-", "_")
        section: Dict[str, Any] = {"total_score": _category_score(categories, category)}
        for field_name, audit_id in checks:
            section[field_name] = _passed(audits, audit_id)
        record[column] = section
        record[f"{column}_score"] = section["total_score"]

    performance: Dict[str, Any] = {"total_score": _category_score(categories, "performance")}
    for field_name, audit_id in _PERFORMANCE_METRICS:
        performance[field_name] = _metric(audits, audit_id)
    record["performance"] = performance
    record["performance_score"] = performance["total_score"]
    return record
