"""Data-quality validation of extracted results.

A script can exit 0 and still not accomplish its task. This validator looks
for the structured ``{"items": [...]}`` payload in stdout and checks it
against the session's quality thresholds.

Only recognized-but-bad data fails validation. Output with no recognizable
payload (exploratory or partial output, other formats) is accepted.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from .models import QualityThresholds, ValidationOutcome

logger = logging.getLogger(__name__)

PLACEHOLDER_VALUES = {"", "N/A", "n/a", "TBD", "null", "undefined"}

_DECODER = json.JSONDecoder()
_ESCAPED_PAYLOAD_RE = re.compile(r'"(\{[\s\S]*\\?"items\\?"[\s\S]*\})"')


def percent(rate: float) -> int:
    """Whole percentage, rounding halves up."""
    return int(rate * 100 + 0.5)


def _unescape(raw: str) -> str:
    return raw.replace("\\n", "\n").replace('\\"', '"').replace("\\\\", "\\")


def _scan_documents(text: str) -> Optional[Dict[str, Any]]:
    """Last top-level JSON object in ``text`` that has an ``items`` key."""
    found = None
    pos = text.find("{")
    while pos != -1:
        try:
            doc, end = _DECODER.raw_decode(text, pos)
        except json.JSONDecodeError:
            pos = text.find("{", pos + 1)
            continue
        if isinstance(doc, dict) and "items" in doc:
            found = doc
        pos = text.find("{", end)
    return found


def locate_payload(output: str) -> Optional[Dict[str, Any]]:
    """
    Find the JSON result document in script output.

    Log lines may hold JSON of their own (``Sample item: {...}``), so every
    object in the output is decoded and the last one carrying ``items`` wins.
    Tolerates one layer of string encoding: agent-browser eval prints
    ``JSON.stringify`` results as a JSON string literal.

    Args:
        output: Script stdout

    Returns:
        The decoded payload, or None if none is recognizable
    """
    payload = _scan_documents(output)
    if payload is not None:
        return payload

    escaped = _ESCAPED_PAYLOAD_RE.search(output)
    if escaped:
        try:
            inner = json.loads('"' + escaped.group(1) + '"')
        except json.JSONDecodeError:
            inner = _unescape(escaped.group(1))
        if isinstance(inner, str):
            return _scan_documents(inner)

    return None


def _is_present(item: Any, key: str) -> bool:
    if not isinstance(item, dict):
        return False
    value = item.get(key)
    if value is None:
        return False
    text = str(value).strip()
    return bool(text) and text not in PLACEHOLDER_VALUES


def _rate_issue(items: List[Any], key: str, label: str, minimum: float) -> Optional[str]:
    valid = sum(1 for item in items if _is_present(item, key))
    rate = valid / len(items)
    if rate < minimum:
        return (
            f"Only {percent(rate)}% of items have valid {label} "
            f"(need {percent(minimum)}%+)"
        )
    return None


def validate_extracted_data(
    output: str,
    task_description: Optional[str] = None,
    thresholds: Optional[QualityThresholds] = None,
) -> ValidationOutcome:
    """
    Validate extracted data quality.

    Args:
        output: Script stdout
        task_description: Original task (kept for log context)
        thresholds: Acceptance thresholds (defaults to QualityThresholds())

    Returns:
        ValidationOutcome; valid unless a recognized payload is deficient
    """
    thresholds = thresholds or QualityThresholds()

    data = locate_payload(output or "")
    if data is None or not isinstance(data["items"], list):
        logger.debug("[DataQuality] No recognizable payload; skipping validation")
        return ValidationOutcome.ok()

    items = data.get("items") or []
    issues: List[str] = []

    if not items:
        return ValidationOutcome(valid=False, issues=["No items extracted"])

    if len(items) < thresholds.min_item_count:
        issues.append(
            f"Only {len(items)} items extracted (need {thresholds.min_item_count}+). "
            "Check if your selector targets the main product grid (not ads/carousel)."
        )

    if thresholds.require_prices:
        issue = _rate_issue(items, "price", "prices", thresholds.min_price_rate)
        if issue:
            issues.append(issue)

    if thresholds.require_ratings:
        issue = _rate_issue(items, "rating", "ratings", thresholds.min_rating_rate)
        if issue:
            issues.append(issue)

    if issues:
        logger.info(f"[DataQuality] {len(issues)} issue(s) for task: {(task_description or '')[:80]}")
    return ValidationOutcome(valid=not issues, issues=issues)
