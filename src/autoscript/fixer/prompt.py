"""Fix prompt construction and fixed-script extraction.

``build_fix_prompt`` assembles the task, the failing script, the error text,
classifier guidance for the primary error, heuristic guidance and the
iteration history. ``parse_fixed_script`` pulls the best bash script out of a
free-form model response.
"""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

from ..error_classifier import classify_errors, guidance_for_error
from ..history import format_history
from .base import FixRequest

SCRIPT_PREAMBLE = '#!/bin/bash\nset -e\n\nCDP="${CDP_URL:?Required}"\n\n'

HELPER_REFERENCE = """Use the universal helper functions (getPrice, getRating, getName, findProductGrid) that try:
- Schema.org: [itemprop="price"], [itemprop="ratingValue"], [itemprop="name"]
- Data attributes: [data-price], [data-rating], [data-value]
- ARIA labels: [aria-label*="price"], [aria-label*="stars"]
- Text patterns: Currency symbols, "X out of 5" patterns
- Structural: Heading elements (h2, h3), class patterns (*title*, *name*)"""

_JQ_GUIDANCE = """
## CRITICAL: JSON PARSING ERROR (jq cannot process output)

agent-browser eval returns DOUBLE-ENCODED JSON (a string containing JSON, not raw JSON).
Add this helper at the TOP of your script and use it after EVERY eval that returns JSON:

```bash
unwrap_json() {
  echo "$1" | jq -r 'if type == "string" then fromjson else . end' 2>/dev/null || echo "$1"
}
RAW_DATA=$(agent-browser --cdp "$CDP" eval '...JSON.stringify...')
DATA=$(unwrap_json "$RAW_DATA")
```
"""

_WRONG_SELECTOR_GUIDANCE = """
## CRITICAL: WRONG SELECTOR (Targeting Ads/Carousel Instead of Main Grid)

Evidence: same item appearing on multiple pages, or very few items (< 10) per page.
1. Use findProductGrid() to find the container with the most repeated children
2. Try semantic selectors ([itemtype*="Product"], [role="listitem"], [data-testid*="product"])
   and pick the one returning 20-50 items
3. After pagination, verify items CHANGED
"""

_FRAGILE_SELECTOR_GUIDANCE = """
## WARNING: FRAGILE SITE-SPECIFIC SELECTORS DETECTED

Auto-generated class names (like `.w_V_DM`, `.a-offscreen`) break when sites update.
Prefer schema.org, ARIA and data attributes, or text patterns.
"""

_ZERO_ITEMS_GUIDANCE = """
## CRITICAL: NO ITEMS EXTRACTED

1. Wrong selector - check with:
   agent-browser --cdp "$CDP" eval 'document.querySelectorAll("[data-component-type]").length'
2. JavaScript error in the extraction code
3. Page not fully loaded - wait for elements
4. Double quotes around JavaScript cause bash escaping issues - use SINGLE quotes
"""

_EMPTY_PRICES_GUIDANCE = """
## DATA QUALITY ISSUE: MANY PRICES ARE EMPTY, N/A OR MISSING

Use a getPrice(el) helper that tries [itemprop=price], [data-price], [aria-label*=price],
[class*=price] and finally a currency text pattern. NEVER return "N/A"; return "" if nothing is found.
"""

_EMPTY_RATINGS_GUIDANCE = """
## DATA QUALITY ISSUE: MANY RATINGS ARE N/A OR MISSING

Use a getRating(el) helper that tries [itemprop=ratingValue], [data-rating]/[data-value],
aria-labels like "4.5 out of 5 stars" and "X out of 5" text. NEVER return "N/A".
"""

_NOT_FOUND_GUIDANCE = """
## 404 ERROR DETECTED

The URL doesn't exist. Navigate via the site menu, use a different URL pattern, or search from the homepage.
"""

_PAGE_COUNT_RE = re.compile(r"Found (\d+) items on page")
_FRAGILE_RE = re.compile(r"\.\w{1,3}_[A-Za-z0-9]{2,}|\.a-offscreen|span\.a-icon-alt")
_PLACEHOLDER_FIELD = r'(?:\\?"{field}\\?":\s*\\?"(?:N/A|n/a|TBD|)\\?")'


def _count(pattern: str, text: str) -> int:
    return len(re.findall(pattern, text))


def heuristic_guidance(script: str, error_text: str) -> str:
    """Guidance sections triggered by recognizable symptoms in the error text."""
    guidance: List[str] = []
    lowered = error_text.lower()

    if any(
        marker in error_text
        for marker in ("jq: error", "cannot be added", "cannot be subtracted", "Cannot iterate over string")
    ):
        guidance.append(_JQ_GUIDANCE)

    wrong_selector = any(
        marker in error_text
        for marker in ("WRONG_SELECTOR", "same item", "targeting a carousel", "targeting a sticky element")
    ) or ("Only" in error_text and "items" in error_text and "incomplete" in error_text)
    low_pages = any(int(count) < 10 for count in _PAGE_COUNT_RE.findall(error_text))
    if wrong_selector or low_pages:
        guidance.append(_WRONG_SELECTOR_GUIDANCE)

    if _FRAGILE_RE.search(script):
        guidance.append(_FRAGILE_SELECTOR_GUIDANCE)

    if any(
        marker in error_text
        for marker in ("extracted 0", '"totalExtracted": 0', "No items extracted")
    ):
        guidance.append(_ZERO_ITEMS_GUIDANCE)

    if _count(_PLACEHOLDER_FIELD.format(field="price"), error_text) > 5 or "valid prices" in error_text:
        guidance.append(_EMPTY_PRICES_GUIDANCE)

    if _count(_PLACEHOLDER_FIELD.format(field="rating"), error_text) > 5 or "valid ratings" in error_text:
        guidance.append(_EMPTY_RATINGS_GUIDANCE)

    if "page not found" in lowered or "404" in lowered:
        guidance.append(_NOT_FOUND_GUIDANCE)

    return "".join(guidance)


def build_fix_prompt(request: FixRequest) -> str:
    """
    Build the prompt asking for a fixed script.

    Args:
        request: Fix request with task, script, error text and history

    Returns:
        Prompt text
    """
    endpoint_info = (
        f"\nCDP_URL is available: {request.endpoint}\n"
        "You can run agent-browser commands to inspect the live DOM.\n"
        if request.endpoint
        else ""
    )
    failed_line_info = (
        f"\nThe script failed at approximately line {request.failed_line_number}."
        if request.failed_line_number
        else ""
    )

    classified = classify_errors(request.error_text, "", None, False)
    classified_guidance = guidance_for_error(classified[0]) if classified else ""

    return f"""Fix this browser automation script.
{endpoint_info}
## Original Task
{request.task}
{format_history(request.history)}
## Script That Failed
```bash
{request.current_script}
```

## Error Output
```
{request.error_text}
```
{failed_line_info}
{classified_guidance}
{heuristic_guidance(request.current_script, request.error_text)}

## Key Fix Tips

1. **Use SINGLE quotes around JavaScript** (not double quotes):
   Good: agent-browser --cdp "$CDP" eval '(function() {{ ... }})();'
   Bad:  agent-browser --cdp "$CDP" eval "(function() {{ ... }})();"

2. **Avoid dollar signs in regex** - use CSS selectors instead

3. **Test selectors first**:
   agent-browser --cdp "$CDP" eval 'document.querySelectorAll("SELECTOR").length'

4. {HELPER_REFERENCE}

5. **Avoid fragile site-specific selectors** like .a-offscreen, .w_V_DM - they break when sites update

IMPORTANT: You MUST output a complete, working bash script in a code block. Do not just explain - output the actual fixed script.

```bash
#!/bin/bash
set -e
CDP="${{CDP_URL:?Required}}"

# Your complete fixed script here - include ALL code, not just the changed parts
```

After outputting the script, do not add any more text."""


def _score(content: str) -> float:
    score = 0.0
    if "#!/bin/bash" in content:
        score += 100
    if "CDP=" in content:
        score += 50
    if "agent-browser --cdp" in content:
        score += 30
    if 'open "http' in content:
        score += 20
    if "eval " in content:
        score += 20
    if 'echo "' in content:
        score += 10
    if "DATA=$(" in content or "RAW_DATA=$(" in content:
        score += 20
    if "totalExtracted" in content:
        score += 15
    if "unwrap_json" in content:
        score += 25
    return score + min(len(content) / 100, 50)


def _ensure_shebang(content: str) -> str:
    return content if content.startswith("#!/") else SCRIPT_PREAMBLE + content


_FENCED_BLOCK_RES = [
    re.compile(r"```(?:bash|sh|shell)\s*\n([\s\S]*?)```", re.IGNORECASE),
    re.compile(r"```\n([\s\S]*?)```"),
]
_FRAGMENT_RE = re.compile(r"agent-browser\s+--cdp\s+[^\n]+")
_PROSE_LINE_RE = re.compile(r"^[A-Z][a-z].*:$")


def parse_fixed_script(response: str) -> Optional[str]:
    """
    Extract the fixed script from a model response.

    Args:
        response: Raw response text

    Returns:
        Best-scoring script, or None if no script can be recovered
    """
    if not response:
        return None

    candidates: List[Tuple[float, str]] = []
    for pattern in _FENCED_BLOCK_RES:
        for match in pattern.finditer(response):
            content = match.group(1).strip()
            if "agent-browser" in content:
                candidates.append((_score(content), content))

    if candidates:
        best = max(candidates, key=lambda c: c[0])
        return _ensure_shebang(best[1])

    stripped = response.strip()
    if stripped.startswith("#!/bin/bash"):
        end = stripped.find("\n```")
        return (stripped[:end] if end != -1 else stripped).strip()

    shebang = response.find("#!/bin/bash")
    if shebang != -1:
        script = response[shebang:]
        ends = [i for i in (script.find(m) for m in ("\n```", "\n\n---", "\n## ")) if i != -1]
        script = script[: min(ends)] if ends else script
        if "agent-browser" in script:
            return script.strip()

    if len(_FRAGMENT_RE.findall(response)) >= 2:
        lines: List[str] = []
        in_script = False
        for line in response.split("\n"):
            if "#!/bin/bash" in line or "set -e" in line:
                in_script = True
            if in_script:
                if _PROSE_LINE_RE.match(line) or line.startswith(("Note:", "This ")):
                    break
                lines.append(line)
        if len(lines) > 5 and any("agent-browser" in line for line in lines):
            return _ensure_shebang("\n".join(lines).strip())

    return None
