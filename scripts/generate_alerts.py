#!/usr/bin/env python3
"""
Generate grounded safety alerts for one location and store them as incidents.

Usage:
    python3 scripts/generate_alerts.py "12 Main Rd, Sea Point, Cape Town, South Africa" \
        --lat -33.918 --lng 18.3817 --radius 5
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.alert_pipeline import main  # noqa: E402


if __name__ == "__main__":
    raise SystemExit(main())
