#!/usr/bin/env python
"""
Stats Pipeline Entry Point

Usage:
    Today:      python run_stats.py
    One day:    python run_stats.py --date 2024-03-01
    Backfill:   python run_stats.py --days 30

    Or on a schedule with Prefect:
    python workflows/daily_stats.py
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from pathstats.cli import main


if __name__ == "__main__":
    sys.exit(main())
