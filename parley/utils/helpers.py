"""Small shared helpers."""

from __future__ import annotations

import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if missing, then return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Active data directory, overridable via PARLEY_DATA_DIR."""
    override = os.environ.get("PARLEY_DATA_DIR", "").strip()
    if override:
        return ensure_dir(Path(override).expanduser())
    return ensure_dir(Path.home() / ".parley")


def safe_filename(key: str) -> str:
    """Map an arbitrary conversation key onto a filesystem-safe name."""
    cleaned = re.sub(r"[^A-Za-z0-9_.-]+", "_", (key or "").strip())
    return cleaned.strip("._") or "_"


def ms_to_iso(value: int) -> str:
    """Render epoch milliseconds as an ISO 8601 UTC string."""
    return (
        datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def parse_iso_to_ms(value: str) -> int | None:
    """Parse an ISO 8601 timestamp into epoch ms. Naive values are treated as UTC."""
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def compact_preview(text: str, limit: int = 80) -> str:
    """Whitespace-collapsed preview clipped to ``limit`` characters."""
    compact = " ".join((text or "").split())
    if len(compact) <= limit:
        return compact
    return compact[: max(0, limit - 3)] + "..."
