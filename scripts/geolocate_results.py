#!/usr/bin/env python3
"""
Geolocate crime news into a safety-news-*.json incident file.

Usage:
    python3 scripts/geolocate_results.py "robbery in Sandton" --output-dir data/results
    python3 scripts/geolocate_results.py "robbery in Sandton" --results-file search.json
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.geo_agent import main  # noqa: E402


if __name__ == "__main__":
    raise SystemExit(main())
