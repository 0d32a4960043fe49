"""
Compact per-column summary statistics for a DataFrame.

skim() mirrors the familiar "skim" layout: one row per column with
completeness counts, and either numeric moments/quantiles with an inline
histogram or, for non-numeric columns, cardinality and string lengths.
skim_minimal() drops the statistics that are rarely looked at.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

SPARK_BARS = "▁▂▃▅▇"
COMPLETENESS_COLUMNS = ["n_missing", "complete_rate"]
NUMERIC_COLUMNS = ["mean", "sd", "p0", "p25", "p50", "p75", "p100", "hist"]
TEXT_COLUMNS = ["n_unique", "min_length", "max_length"]


def spark_histogram(values, bins: int = 8) -> str:
    """Inline unicode histogram of the finite values (empty string if none)."""
    arr = np.asarray(values, dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size == 0:
        return ""
    counts, _ = np.histogram(arr, bins=bins)
    top = counts.max()
    levels = np.round(counts / top * (len(SPARK_BARS) - 1)).astype(int)
    return "".join(SPARK_BARS[i] for i in levels)


def _skim_numeric(name: str, s: pd.Series) -> dict:
    vals = pd.to_numeric(s, errors="coerce").dropna()
    row = {"skim_type": "numeric", "skim_variable": name}
    if vals.empty:
        row.update({c: np.nan for c in NUMERIC_COLUMNS if c != "hist"})
        row["hist"] = ""
        return row
    q = vals.quantile([0.0, 0.25, 0.5, 0.75, 1.0]).to_numpy()
    row.update(
        {
            "mean": float(vals.mean()),
            "sd": float(vals.std(ddof=1)) if len(vals) > 1 else np.nan,
            "p0": float(q[0]),
            "p25": float(q[1]),
            "p50": float(q[2]),
            "p75": float(q[3]),
            "p100": float(q[4]),
            "hist": spark_histogram(vals.to_numpy()),
        }
    )
    return row


def _skim_text(name: str, s: pd.Series) -> dict:
    vals = s.dropna().astype(str)
    lengths = vals.str.len()
    return {
        "skim_type": "character",
        "skim_variable": name,
        "n_unique": int(vals.nunique()),
        "min_length": int(lengths.min()) if not vals.empty else np.nan,
        "max_length": int(lengths.max()) if not vals.empty else np.nan,
    }


def skim(df: pd.DataFrame, *columns: str) -> pd.DataFrame:
    """
    Full summary table, one row per column (all columns when none are named).

    Numeric columns report mean, sd, p0/p25/p50/p75/p100 and an inline hist;
    other columns report n_unique and min/max string length. Every row carries
    n_missing and complete_rate. Unknown column names raise KeyError.
    """
    selected = df[list(columns)] if columns else df
    rows = []
    for name in selected.columns:
        s = selected[name]
        if pd.api.types.is_numeric_dtype(s) and not pd.api.types.is_bool_dtype(s):
            row = _skim_numeric(str(name), s)
        else:
            row = _skim_text(str(name), s)
        n_missing = int(s.isna().sum())
        row["n_missing"] = n_missing
        row["complete_rate"] = 1.0 - n_missing / len(s) if len(s) else np.nan
        rows.append(row)

    ordered = ["skim_type", "skim_variable"] + COMPLETENESS_COLUMNS
    present_stats = [
        c for c in TEXT_COLUMNS + NUMERIC_COLUMNS if any(c in r for r in rows)
    ]
    out = pd.DataFrame(rows, columns=ordered + present_stats)
    # Group by type; column order is kept within a type
    return out.sort_values("skim_type", kind="mergesort").reset_index(drop=True)


def skim_minimal(
    df: pd.DataFrame,
    *columns: str,
    show_data_completeness: bool = True,
) -> pd.DataFrame:
    """
    skim() without the quartiles p25/p75. With show_data_completeness=False the
    n_missing and complete_rate columns are dropped as well.
    """
    res = skim(df, *columns).drop(columns=["p25", "p75"], errors="ignore")
    if not show_data_completeness:
        res = res.drop(columns=COMPLETENESS_COLUMNS)
    return res


def format_skim(res: pd.DataFrame, float_digits: Optional[int] = 4) -> str:
    """Plain-text rendering of a skim table for reports."""
    if res.empty:
        return "(no columns)"
    out = res.copy()
    if float_digits is not None:
        for col in out.columns:
            if pd.api.types.is_float_dtype(out[col]):
                out[col] = out[col].map(
                    lambda v: "" if pd.isna(v) else f"{v:.{float_digits}g}"
                )
    return out.fillna("").to_string(index=False)
