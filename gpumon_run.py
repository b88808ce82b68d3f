#!/usr/bin/env python3
"""gpumon CLI entrypoint for a source checkout, no pip install needed.

Usage:
    python gpumon_run.py deploy
    python gpumon_run.py delete --force
    python gpumon_run.py --help

The dependencies in pyproject.toml must still be importable.
"""

import sys
from pathlib import Path

# src/ layout: make the gpumon package importable from the checkout
sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from gpumon.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
