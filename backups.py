"""
Snapshots of the active deals file.

Every tool that overwrites data/deals.json first copies it into the backup
directory as deals_<label>_<timestamp>.json. deals_current.json mirrors
the most recent sync.
"""

import contextlib
import json
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Tuple

CURRENT_SNAPSHOT = "deals_current.json"
_STAMP = re.compile(r"_(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2})\.json$")


def timestamp() -> str:
    """Filesystem-safe UTC stamp, e.g. 2025-01-03T10-15-00."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")


def write_json_atomic(path: str, data: Any) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".deals-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def read_records(path: str) -> List[Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} must hold a JSON array")
    return data


def snapshot_file(data_path: str, backup_dir: str, label: str, stamp: str) -> Optional[Path]:
    """Copy the active file aside. Returns None when there is nothing to copy."""
    source = Path(data_path)
    if not source.exists():
        return None
    target = Path(backup_dir) / f"deals_{label}_{stamp}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, target)
    return target


def save_sync(records: List[Any], data_path: str, backup_dir: str, label: str, stamp: str) -> Path:
    write_json_atomic(data_path, records)
    snapshot = Path(backup_dir) / f"deals_{label}_{stamp}.json"
    write_json_atomic(str(snapshot), records)
    write_json_atomic(str(Path(backup_dir) / CURRENT_SNAPSHOT), records)
    return snapshot


def _stamp_of(path: Path) -> str:
    match = _STAMP.search(path.name)
    if match:
        return match.group(1)
    return datetime.fromtimestamp(path.stat().st_mtime, timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")


def list_snapshots(backup_dir: str) -> List[Path]:
    """Timestamped snapshots, newest first. deals_current.json is not included."""
    directory = Path(backup_dir)
    if not directory.is_dir():
        return []
    files = [
        p for p in directory.glob("deals_*.json")
        if p.is_file() and p.name != CURRENT_SNAPSHOT
    ]
    return sorted(files, key=_stamp_of, reverse=True)


def latest_snapshot(backup_dir: str, exclude_labels: Tuple[str, ...] = ("before_restore",)) -> Optional[Path]:
    for path in list_snapshots(backup_dir):
        if not any(f"_{label}_" in path.name for label in exclude_labels):
            return path
    return None


def plan_cleanup(backup_dir: str, keep: int) -> Tuple[List[Path], List[Path]]:
    """(kept, removable): current snapshot plus the `keep` newest timestamped ones survive."""
    snapshots = list_snapshots(backup_dir)
    kept = snapshots[:keep]
    current = Path(backup_dir) / CURRENT_SNAPSHOT
    if current.exists():
        kept = [current] + kept
    return kept, snapshots[keep:]
