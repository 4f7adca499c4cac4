"""Pytest configuration and fixtures for Autoscript tests"""

import json
import shutil
import sys
from pathlib import Path

import pytest

# Ensure src directory is in Python path before any imports
project_root = Path(__file__).resolve().parent.parent
src_path = project_root / "src"

if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from autoscript.models import RepairPolicy  # noqa: E402

TEST_ENDPOINT = "ws://127.0.0.1:9222/devtools/browser/test-session"

requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")


def make_payload(count: int, priced: int = None, rated: int = None) -> str:
    """Build extraction output with ``priced``/``rated`` of ``count`` items filled in."""
    priced = count if priced is None else priced
    rated = count if rated is None else rated
    items = [
        {
            "name": f"Product {i}",
            "price": f"${i}.99" if i < priced else "",
            "rating": "4.5" if i < rated else "N/A",
        }
        for i in range(count)
    ]
    return json.dumps({"totalExtracted": count, "items": items})


@pytest.fixture
def endpoint():
    return TEST_ENDPOINT


@pytest.fixture
def policy():
    """Small policy for fast orchestrator tests."""
    return RepairPolicy(endpoint=TEST_ENDPOINT, max_iterations=3, max_syntax_retries=2)
