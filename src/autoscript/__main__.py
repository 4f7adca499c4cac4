"""Main entry point for Autoscript.

Usage:
    python -m autoscript repair script.sh --task "..."
    python -m autoscript --help
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main() or 0)
