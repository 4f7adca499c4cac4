"""
Structured error classification for browser automation scripts.

Maps raw process output to a ranked list of categorized errors. The rules
live in a declarative, ordered table; a single dispatcher evaluates it:

- a rule fires at most once (its first matching pattern wins)
- a timed-out run gets a synthetic TIMEOUT classification at confidence 1.0
- if nothing fired and the exit code is non-zero, UNKNOWN at 0.5
- the result is sorted by descending confidence and deduplicated by
  category, so ``errors[0]`` is the primary error for the next fix request
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Pattern, Sequence

from .data_quality import percent
from .models import ClassifiedError, ErrorCategory

logger = logging.getLogger(__name__)

MessageBuilder = Callable[[Optional["re.Match[str]"], str, str], str]
DetailExtractor = Callable[[Optional["re.Match[str]"], str, str], Dict[str, object]]


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the classification table."""

    category: ErrorCategory
    patterns: Sequence[Pattern[str]]
    confidence: float
    message: MessageBuilder
    suggested_fix: Optional[str] = None
    details: Optional[DetailExtractor] = None

    def first_match(self, text: str) -> Optional["re.Match[str]"]:
        for pattern in self.patterns:
            match = pattern.search(text)
            if match:
                return match
        return None


def _rx(*patterns: str, flags: int = re.IGNORECASE) -> List[Pattern[str]]:
    return [re.compile(p, flags) for p in patterns]


def _incomplete_message(match, stdout: str, stderr: str) -> str:
    count_match = re.search(r"extracted\s+(\d+)", stdout, re.IGNORECASE) or re.search(
        r'"totalExtracted":\s*(\d+)', stdout
    )
    count = count_match.group(1) if count_match else "few"
    return f"Incomplete extraction - only {count} items found"


def _data_quality_message(match, stdout: str, stderr: str) -> str:
    if re.search(r"prices", stdout, re.IGNORECASE):
        return "Low price extraction rate"
    if re.search(r"ratings", stdout, re.IGNORECASE):
        return "Low rating extraction rate"
    return "Data quality issues detected"


def _data_quality_details(match, stdout: str, stderr: str) -> Dict[str, object]:
    price = re.search(r"(\d+)%.*valid prices", stdout)
    rating = re.search(r"(\d+)%.*valid ratings", stdout)
    return {
        "price_rate": int(price.group(1)) if price else None,
        "rating_rate": int(rating.group(1)) if rating else None,
    }


CLASSIFICATION_RULES: List[ClassificationRule] = [
    ClassificationRule(
        category=ErrorCategory.CDP_CONNECTION,
        patterns=_rx(
            r"Resource temporarily unavailable",
            r"os error 35",
            r"WebSocket.*(?:error|closed|failed)",
            r"ECONNREFUSED",
            r"connection closed",
            r"CDP.*(?:stale|unavailable|disconnected)",
        ),
        confidence=0.95,
        message=lambda m, out, err: "Browser CDP connection lost or unavailable",
        suggested_fix="Restart the browser and get a fresh CDP_URL",
    ),
    ClassificationRule(
        category=ErrorCategory.TIMEOUT,
        patterns=_rx(r"timed?\s*out", r"timeout", r"exceeded.*time"),
        confidence=0.9,
        message=lambda m, out, err: "Script execution timed out",
        suggested_fix="Increase timeout or optimize script. Check if page is loading slowly.",
    ),
    ClassificationRule(
        category=ErrorCategory.JSON_PARSING,
        patterns=_rx(
            r"jq:\s*error",
            r"cannot be added",
            r"cannot be subtracted",
            r"Cannot iterate over string",
            r"parse error.*Invalid",
        ),
        confidence=0.95,
        message=lambda m, out, err: (
            "JSON parsing error - agent-browser eval returns double-encoded JSON"
        ),
        suggested_fix='Add unwrap_json() helper and use: DATA=$(unwrap_json "$RAW_OUTPUT")',
    ),
    ClassificationRule(
        category=ErrorCategory.JAVASCRIPT_ERROR,
        patterns=_rx(
            r"SyntaxError:\s*(.+)",
            r"TypeError:\s*(.+)",
            r"ReferenceError:\s*(.+)",
            r"EvalError:\s*(.+)",
        ),
        confidence=0.95,
        message=lambda m, out, err: f"JavaScript error: {m.group(1) if m else 'unknown'}",
        suggested_fix=(
            "Check JavaScript syntax. Use single quotes around JS in bash to avoid escaping issues."
        ),
    ),
    ClassificationRule(
        category=ErrorCategory.BASH_ERROR,
        patterns=_rx(
            r"integer expression expected",
            r"syntax error: operand expected",
            r"unbound variable",
            r"bad substitution",
            r"command not found",
        ),
        confidence=0.9,
        message=lambda m, out, err: f"Bash error: {m.group(0) if m else 'unknown'}",
        suggested_fix="Check bash syntax. Ensure variables are properly quoted.",
    ),
    ClassificationRule(
        category=ErrorCategory.ACCESS_DENIED,
        patterns=_rx(
            r"Access Denied",
            r"403 Forbidden",
            r"401 Unauthorized",
            r"blocked by.*(?:captcha|cloudflare|bot)",
        ),
        confidence=0.9,
        message=lambda m, out, err: "Access denied - page blocked access",
        suggested_fix=(
            "The site may be blocking automated access. Try a different approach "
            "or use the existing browser session."
        ),
    ),
    ClassificationRule(
        category=ErrorCategory.NAVIGATION,
        patterns=_rx(
            r"net::ERR_",
            r"Navigation failed",
            r"page[\s-]?not[\s-]?found",
            r"error[\s:_-]*404",
            r"404[\s:_-]*(?:not[\s-]?found|error)",
        ),
        confidence=0.85,
        message=lambda m, out, err: "Navigation error - page not found or failed to load",
        suggested_fix="Check the URL is correct. Navigate via site menu instead of direct URL.",
    ),
    ClassificationRule(
        category=ErrorCategory.SELECTOR_EMPTY,
        patterns=_rx(
            r"extracted\s*0",
            r'"totalExtracted":\s*0\b',
            r"No items extracted",
            r"returned empty results",
            r"^\s*\[\s*\]\s*$",
            flags=re.IGNORECASE | re.MULTILINE,
        ),
        confidence=0.9,
        message=lambda m, out, err: "Selector returned zero items",
        suggested_fix=(
            "The container selector matches nothing. Test selectors first with: "
            "agent-browser eval 'document.querySelectorAll(\"SELECTOR\").length'"
        ),
    ),
    ClassificationRule(
        category=ErrorCategory.SELECTOR_WRONG,
        patterns=_rx(
            r"WRONG_SELECTOR",
            r"targeting.*(?:carousel|ads|sticky)",
            r"same item.*(?:appears|multiple pages)",
            r"items didn't change between pages",
        ),
        confidence=0.9,
        message=lambda m, out, err: "Selector targeting ads/carousel instead of main product grid",
        suggested_fix=(
            "Find a selector that returns 20-50 items per page. "
            "Use findProductGrid() to discover the main container."
        ),
    ),
    ClassificationRule(
        category=ErrorCategory.EXTRACTION_INCOMPLETE,
        patterns=_rx(
            r"INCOMPLETE",
            r"Only\s+(\d+)\s+items.*(?:need|expected|incomplete)",
            r"Task requested\s+(\d+).*but only extracted\s+(\d+)",
        ),
        confidence=0.85,
        message=_incomplete_message,
        suggested_fix=(
            "Use scroll-and-accumulate pattern. Handle pagination. Ensure selector targets main grid."
        ),
    ),
    ClassificationRule(
        category=ErrorCategory.DATA_QUALITY,
        patterns=_rx(
            r"valid prices.*need",
            r"valid ratings.*need",
            r"DATA QUALITY ISSUES",
            r"N/A.*(?:prices?|ratings?)",
        ),
        confidence=0.85,
        message=_data_quality_message,
        suggested_fix=(
            "Use universal helper functions (getPrice, getRating) that try multiple discovery methods."
        ),
        details=_data_quality_details,
    ),
]


def classify_errors(
    stdout: str,
    stderr: str,
    exit_code: Optional[int],
    timed_out: bool,
    rules: Sequence[ClassificationRule] = CLASSIFICATION_RULES,
) -> List[ClassifiedError]:
    """
    Classify a run's output.

    Args:
        stdout: Captured standard output
        stderr: Captured standard error
        exit_code: Process exit code (None if the process never started)
        timed_out: Whether the executor killed the run on timeout
        rules: Rule table to evaluate (defaults to CLASSIFICATION_RULES)

    Returns:
        Classified errors sorted by descending confidence, one per category
    """
    stdout = stdout or ""
    stderr = stderr or ""
    combined = f"{stdout}\n{stderr}"
    errors: List[ClassifiedError] = []

    if timed_out:
        errors.append(
            ClassifiedError(
                category=ErrorCategory.TIMEOUT,
                message="Script execution timed out",
                confidence=1.0,
                suggested_fix="Increase timeout or optimize script",
            )
        )

    for rule in rules:
        match = rule.first_match(combined)
        if match is None:
            continue
        errors.append(
            ClassifiedError(
                category=rule.category,
                message=rule.message(match, stdout, stderr),
                confidence=rule.confidence,
                suggested_fix=rule.suggested_fix,
                details=rule.details(match, stdout, stderr) if rule.details else None,
            )
        )

    if not errors and exit_code is not None and exit_code != 0:
        errors.append(
            ClassifiedError(
                category=ErrorCategory.UNKNOWN,
                message=f"Script exited with code {exit_code}",
                confidence=0.5,
            )
        )

    # sorted() is stable: equal confidences keep table order
    ranked = sorted(errors, key=lambda e: e.confidence, reverse=True)
    seen = set()
    result: List[ClassifiedError] = []
    for error in ranked:
        if error.category in seen:
            continue
        seen.add(error.category)
        result.append(error)

    logger.debug(f"[Classifier] {[e.category.value for e in result]}")
    return result


def primary_error(
    stdout: str, stderr: str, exit_code: Optional[int], timed_out: bool
) -> Optional[ClassifiedError]:
    """Return the highest-confidence classification, if any."""
    errors = classify_errors(stdout, stderr, exit_code, timed_out)
    return errors[0] if errors else None


def format_classified_errors(errors: Sequence[ClassifiedError]) -> str:
    """Format classified errors as a markdown section for prompts and logs."""
    if not errors:
        return ""

    output = "## Classified Errors\n\n"
    for error in errors:
        output += f"### {error.category.value}\n"
        output += f"**Issue:** {error.message}\n"
        if error.suggested_fix:
            output += f"**Fix:** {error.suggested_fix}\n"
        if error.details:
            output += f"**Details:** {json.dumps(error.details)}\n"
        output += f"**Confidence:** {percent(error.confidence)}%\n\n"
    return output


_GUIDANCE: Dict[ErrorCategory, str] = {
    ErrorCategory.CDP_CONNECTION: """
## CDP CONNECTION LOST
The browser CDP session is no longer available. This typically happens when:
- The browser was closed
- The CDP session timed out
- Network issues interrupted the connection

**Action Required:** Get a fresh CDP_URL and restart the script.
""",
    ErrorCategory.JSON_PARSING: """
## JSON PARSING ERROR (Double-Encoded JSON)

agent-browser eval returns DOUBLE-ENCODED JSON. The output is a string containing JSON, not raw JSON.

**Required Fix:**
1. Add this helper at the TOP of your script:
```bash
unwrap_json() {
  echo "$1" | jq -r 'if type == "string" then fromjson else . end' 2>/dev/null || echo "$1"
}
```

2. Use it after EVERY agent-browser eval that returns JSON:
```bash
RAW_DATA=$(agent-browser --cdp "$CDP" eval '...JSON.stringify...')
DATA=$(unwrap_json "$RAW_DATA")
```
""",
    ErrorCategory.SELECTOR_EMPTY: """
## NO ITEMS EXTRACTED

The container selector doesn't match any elements. Common causes:
1. Wrong selector - test with: agent-browser eval 'document.querySelectorAll("SELECTOR").length'
2. Page not fully loaded - add more sleep time
3. JavaScript syntax error - check for escaping issues

**Fix:** Use single quotes around JavaScript to avoid bash escaping:
```bash
agent-browser --cdp "$CDP" eval '(function() { ... })();'
```
""",
    ErrorCategory.SELECTOR_WRONG: """
## WRONG SELECTOR (Targeting Ads/Carousel)

Your selector finds items from sponsored/ads section, NOT the main product grid.

**How to find the MAIN grid:**
1. Use findProductGrid() to discover the container with most repeated children
2. Test candidate selectors and pick the one with 20-50 items per page
3. Verify items CHANGE after pagination - if same items appear, wrong selector
""",
    ErrorCategory.DATA_QUALITY: """
## DATA QUALITY ISSUES

Price or rating extraction is failing for many items.

**Use universal helper functions that try multiple discovery methods:**
- getPrice(el) - tries schema.org, data attributes, ARIA, class patterns, text patterns
- getRating(el) - tries schema.org, data attributes, ARIA labels, text patterns

**NEVER return "N/A"** - return empty string if no data found.
""",
    ErrorCategory.EXTRACTION_INCOMPLETE: """
## INCOMPLETE EXTRACTION

Only a portion of items were extracted. This often happens with:
1. Lazy-loaded content that requires scrolling
2. Pagination that wasn't fully handled
3. Selector targeting a subset (ads/carousel) instead of main grid

**Fix:** Use scroll-and-accumulate pattern and handle all pages.
""",
}


def guidance_for_error(error: ClassifiedError) -> str:
    """Targeted repair guidance for a classification."""
    guidance = _GUIDANCE.get(error.category)
    if guidance is not None:
        return guidance
    return f"\n**Suggested fix:** {error.suggested_fix}\n" if error.suggested_fix else ""
