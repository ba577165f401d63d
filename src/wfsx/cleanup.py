"""Removal of partial extraction directories left by failed or interrupted runs."""

from __future__ import annotations

import logging
import shutil
import signal
import sys
from pathlib import Path
from typing import Optional


def remove_partial_extraction(path: Optional[Path]) -> bool:
    """
    Delete an extraction directory whose run did not complete.

    Args:
        path: Extraction directory (ignored when None or missing)

    Returns:
        True if the directory was removed
    """
    if path is None or not path.exists():
        return False
    try:
        shutil.rmtree(path)
        logging.info(f"Removed partial extraction directory: {path}")
        return True
    except OSError as e:
        logging.warning(f"Could not remove partial extraction directory {path}: {e}")
        return False


def register_cleanup_handlers(path: Path) -> None:
    """Remove ``path`` when the process is interrupted (SIGINT/SIGTERM)."""
    def signal_handler(signum: int, frame) -> None:
        logging.info(f"Received signal {signum}, removing partial extraction...")
        remove_partial_extraction(path)
        sys.exit(1)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
