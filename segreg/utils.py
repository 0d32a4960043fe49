from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# -------------------------
# Path utilities
# -------------------------
def normalize_abs_posix(path: str | Path) -> str:
    """
    Return an absolute POSIX-style path string for the given input.
    Ensures deterministic representation across platforms.
    """
    return Path(path).resolve().as_posix()


def normalize_source(source: str | Path) -> str:
    """URLs are kept verbatim; local paths become absolute POSIX strings."""
    if isinstance(source, str) and source.lower().startswith(("http://", "https://")):
        return source
    return normalize_abs_posix(source)


# -------------------------
# Hashing utilities
# -------------------------
def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """
    Deterministic JSON string for hashing and storage:
    - separators=(',', ':')
    - sort_keys=True
    - ensure_ascii=False
    """
    return json.dumps(
        payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True
    )


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """
    Return (short_hash8, full_hash_hex) computed over canonical JSON bytes (UTF-8).
    """
    h = hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()
    return h[:8], h


# -------------------------
# Manifest helpers
# -------------------------
def sanitize_for_json(obj: Any) -> Any:
    """
    Recursively convert parameter objects and fit outputs into JSON primitives.

    Conversions performed:
    - pathlib.Path -> normalized POSIX string
    - Enum -> .name
    - dataclasses -> dict, sanitized recursively
    - numpy scalars/arrays -> Python numbers/lists (non-finite floats -> None)
    - pandas Series -> dict, DataFrame -> list of records
    - dicts/lists/tuples/sets -> sanitized containers with string keys
    - datetime -> ISO-8601 string
    """
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, float):
        return obj if np.isfinite(obj) else None
    if isinstance(obj, Path):
        return normalize_abs_posix(obj)
    if isinstance(obj, Enum):
        return obj.name
    if isinstance(obj, _dt.datetime):
        return obj.isoformat()
    if isinstance(obj, np.generic):
        return sanitize_for_json(obj.item())
    if isinstance(obj, np.ndarray):
        return [sanitize_for_json(x) for x in obj.tolist()]
    if isinstance(obj, pd.DataFrame):
        return [sanitize_for_json(r) for r in obj.to_dict(orient="records")]
    if isinstance(obj, pd.Series):
        return sanitize_for_json(obj.to_dict())
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return sanitize_for_json(
            {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
        )
    if isinstance(obj, dict):
        return {str(k): sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [sanitize_for_json(x) for x in obj]
    return str(obj)


def build_effective_parameters(load: Any, fit: Any) -> dict[str, Any]:
    """
    JSON-serializable mapping of the effective LoadParams and FitParams,
    shaped as {"load": {...}, "fit": {...}}. New dataclass fields are picked
    up automatically.
    """
    return {"load": sanitize_for_json(load), "fit": sanitize_for_json(fit)}


def write_manifest(path: str | Path, manifest: Dict[str, Any]) -> None:
    """
    Write manifest JSON with UTF-8 encoding and stable formatting (indent=2 for readability).
    """
    Path(path).write_text(
        json.dumps(manifest, ensure_ascii=False, indent=2), encoding="utf-8"
    )


def utc_timestamp_seconds() -> str:
    """
    ISO-8601 UTC timestamp with seconds precision and Z suffix.
    """
    now = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)
    return now.isoformat(timespec="seconds") + "Z"


# -------------------------
# Run directory and artifacts
# -------------------------
def ensure_run_dir(base: Path | str = ".", prefix: str = "output") -> Path:
    """
    Ensure and return a per-run directory under `base`/`prefix`/<timestamp>.
    """
    run_ts = time.strftime("%Y%m%dT%H%M%S", time.localtime())
    run_dir = Path(base) / prefix / run_ts
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Ensured run_dir=%s", str(run_dir))
    return run_dir


def write_text_report(report_text: str, run_dir: Path, short_hash: str) -> Path:
    """
    Write the textual report into run_dir/report-<short_hash>.txt using UTF-8.

    This is best-effort: on IO failures the error is logged and the function returns
    the intended Path (which may not exist if the write failed).
    """
    target = Path(run_dir) / f"report-{short_hash}.txt"
    try:
        target.write_text(report_text, encoding="utf-8")
        logger.debug("Wrote textual report to %s", str(target))
    except OSError as e:
        logger.warning("Failed to write textual report to %s: %s", str(target), e)
    return target
