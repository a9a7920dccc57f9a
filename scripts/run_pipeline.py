#!/usr/bin/env python3
"""
Entry point used by cron to turn freshly collected articles into incident reports.

Usage:
    python3 scripts/run_pipeline.py --input datasets/raw/articles.jsonl --output-dir datasets/incidents
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.pipeline import main


if __name__ == "__main__":
    raise SystemExit(main())
