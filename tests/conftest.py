"""Pytest configuration for waypoint tests."""

import sys
from pathlib import Path

# Ensure src/waypoint is importable without an install
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)
