from __future__ import annotations

import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    """Add the repository's `src` tree and this directory to `sys.path`."""
    tests_dir = Path(__file__).resolve().parent
    src_dir = tests_dir.parent / "src"
    for path in (src_dir, tests_dir):
        if path.is_dir():
            path_str = str(path)
            if path_str not in sys.path:
                sys.path.insert(0, path_str)


_ensure_src_on_path()
