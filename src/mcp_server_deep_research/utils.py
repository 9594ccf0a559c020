"""Utilities for saving research reports."""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import settings

logger = logging.getLogger(__name__)


def save_report(
    content: str,
    prefix: str = "research",
    metadata: dict[str, Any] | None = None,
    directory: Path | None = None,
) -> Path:
    """Save a Markdown report, with an optional JSON metadata sidecar.

    Args:
        content: Markdown content to save.
        prefix: Filename prefix, usually derived from the question.
        metadata: Optional metadata saved next to the report as a .json file.
        directory: Target directory. Defaults to the configured results directory.

    Returns:
        Path to the saved report.
    """
    results_dir = directory or settings.get_results_dir()
    results_dir.mkdir(parents=True, exist_ok=True)
    # Microseconds keep names unique when several reports finish in the same second
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")

    safe_prefix = re.sub(r"[^\w\-]", "_", prefix)[:30]
    base = f"{timestamp}_{safe_prefix}"
    file_path = results_dir / f"{base}.md"
    if file_path.exists():
        for i in range(1, 10_000):
            candidate = results_dir / f"{base}_{i}.md"
            if not candidate.exists():
                file_path = candidate
                break
        else:
            raise RuntimeError("Failed to allocate a unique report filename after 10,000 attempts")

    file_path.write_text(content, encoding="utf-8")

    if metadata:
        meta_path = file_path.with_suffix(".json")
        meta_full = {
            "timestamp": datetime.now().isoformat(),
            "file": file_path.name,
            **metadata,
        }
        meta_path.write_text(json.dumps(meta_full, indent=2, default=str), encoding="utf-8")

    logger.info(f"Saved report to {file_path}")
    return file_path
