"""Append finished-run records to the ops JSONL history."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from layout_uploader.settings import get_settings


def build_run_record(
    *,
    run_id: str,
    layout_key: str,
    layout_path: str | None,
    image_path: str,
    status: str,
    max_zoom: int | None,
    tiles_uploaded: int,
    total_tiles: int,
    message: str | None,
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
        "layout_key": layout_key,
        "layout_path": layout_path,
        "image_path": image_path,
        "status": status,
        "tiles_uploaded": tiles_uploaded,
        "total_tiles": total_tiles,
    }
    if max_zoom is not None:
        record["max_zoom"] = max_zoom
    if message:
        record["message"] = message
    return record


def append_run_log(record: Mapping[str, Any], *, log_path: Path | None = None) -> Path | None:
    """Append ``record`` as one JSON line.

    Falls back to ``RUN_LOG_PATH`` from settings; returns ``None`` without
    writing when no path is configured.
    """

    target = log_path if log_path is not None else get_settings().logging.run_log_path
    if target is None:
        return None
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(dict(record)))
        handle.write("\n")
    return target


def read_run_log(log_path: Path, *, limit: int = 20) -> list[dict[str, Any]]:
    """Return up to ``limit`` most recent records, skipping malformed lines."""

    if limit <= 0 or not log_path.exists():
        return []
    records: list[dict[str, Any]] = []
    with log_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                records.append(payload)
    return records[-limit:]
