#!/usr/bin/env python3
"""
segreg - segmented (piecewise) regression of an outcome on a transformed predictor.

This module exposes the pipeline as pure functional units:
- load_dataset()
- prepare_observations()
- run_analysis()
- render_outputs()

Each function takes explicit inputs and returns explicit outputs, avoiding prints and
global state mutation. The CLI (main) wires them together and writes run artifacts.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

# Select a non-interactive Matplotlib backend before pyplot is imported so that
# headless runs never try to open a GUI backend.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .segmentation import (
    SEGMENT_COLUMN,
    X_COLUMN,
    Y_COLUMN,
    BreakpointEstimate,
    InsufficientDataError,
    PiecewiseModel,
    SchemaError,
    SegmentedRegressionError,
    coef_uncertainty_intervals,
    estimate_breakpoints,
    fit_piecewise,
    validate_breakpoints,
)
from .summary import format_skim, skim_minimal
from .table_reader import (
    DelimitedRangeReader,
    TableReadError,
    is_url,
    read_remote_table,
)
from .utils import (
    build_effective_parameters,
    canonical_json_hash,
    ensure_run_dir,
    normalize_source,
    utc_timestamp_seconds,
    write_manifest,
    write_text_report,
)

# Configure logging for debugging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

LABEL_COLUMN = "label"


class FitMethod(Enum):
    """
    How each segment's line is estimated.

    - OLS:   statsmodels ordinary least squares; classical R².
    - BAYES: scikit-learn BayesianRidge with Gaussian posterior draws; R² is the
             median of the per-draw Bayesian R², model comparison uses WAIC.
    """

    OLS = "ols"
    BAYES = "bayes"


class Transform(Enum):
    """Transform applied to the predictor before fitting y ~ t(x)."""

    LOG = "log"
    IDENTITY = "identity"


class FilterResult:
    """Container for row-filtering results and diagnostics."""

    def __init__(self, label: Optional[str] = None) -> None:
        self.label: Optional[str] = label

        # Row counters
        self.original_rows: int = 0
        self.filtered_rows: int = 0
        self.excluded_rows: int = 0

        # Diagnostics
        self.warnings: list[str] = []
        self.events: list[str] = []
        self.metrics: dict[str, int | float | str] = {}

        # Timing
        self.started_at: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    def start(self) -> None:
        import time

        self.started_at = time.perf_counter()

    def stop(self) -> None:
        import time

        if self.started_at is not None:
            self.elapsed_ms = (time.perf_counter() - self.started_at) * 1000.0

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)
        logger.warning(message)

    def add_event(self, message: str) -> None:
        """Add an info-level event message."""
        self.events.append(message)
        logger.info(message)

    def add_metric(self, name: str, value: int | float | str) -> None:
        """Attach a named metric."""
        self.metrics[name] = value

    def summarize(self) -> str:
        """Produce a concise summary string for diagnostics."""
        lbl = f"{self.label} " if self.label else ""
        parts = [f"{lbl}result: {self.original_rows} → {self.filtered_rows}"]
        if self.excluded_rows:
            parts.append(f"excluded_rows={self.excluded_rows}")
        if self.elapsed_ms is not None:
            parts.append(f"elapsed_ms={self.elapsed_ms:.1f}")
        if self.metrics:
            parts.append(f"metrics={self.metrics}")
        return " | ".join(parts)


@dataclass
class LoadParams:
    """
    Parameters used when loading the input table.

    Attributes:
        source: Path to a delimited file, or an http(s) URL.
        x_column: Name of the predictor column (after header mapping).
        y_column: Name of the outcome column (after header mapping).
        label_column: Optional row label (e.g. country or course), carried through.
        start_line: 1-based inclusive start line (data rows, header excluded) or None.
        end_line: 1-based inclusive end line (data rows) or None to read to the end.
        header_map: Optional mapping of input header name -> new name.
            - Matching is case-insensitive and whitespace-trimmed.
            - Conflicting targets or rename-induced duplicate columns raise ValueError.
    """

    source: Optional[Union[str, Path]]
    x_column: str
    y_column: str
    label_column: Optional[str] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    header_map: dict[str, str] = field(default_factory=dict)


@dataclass
class FitParams:
    # Initial breakpoint guesses in x units; empty means the unsegmented fit only
    breakpoint_guesses: List[float]
    transform: Transform
    method: FitMethod
    # Refine the guesses with estimate_breakpoints(); False uses them as final breakpoints
    estimate: bool
    min_segment_size: int
    max_iter: int
    n_draws: int
    random_seed: Optional[int]
    interval: float
    n_grid_points: int
    verbose_filtering: bool


@dataclass
class PlotParams:
    x_log_scale: bool = True
    show_interval: bool = True
    x_min: Optional[float] = None
    x_max: Optional[float] = None
    y_min: Optional[float] = None
    y_max: Optional[float] = None


@dataclass
class AnalysisOutputs:
    observations: pd.DataFrame
    estimate: Optional[BreakpointEstimate]
    model: PiecewiseModel
    baseline: PiecewiseModel
    diagnostics: pd.DataFrame
    coordinates: pd.DataFrame
    intervals: pd.DataFrame
    comparison: pd.DataFrame


# -------------------------
# Loading
# -------------------------
def apply_header_map(df: pd.DataFrame, header_map: dict[str, str]) -> pd.DataFrame:
    """
    Rename columns via a case-insensitive OLD -> NEW mapping with collision detection.
    Keys that match no column are reported with a warning.
    """
    if not header_map:
        return df

    value_to_keys: dict[str, list[str]] = {}
    for k, v in header_map.items():
        value_to_keys.setdefault(v.strip(), []).append(k)
    duplicate_targets = {t: ks for t, ks in value_to_keys.items() if len(ks) > 1}
    if duplicate_targets:
        parts = [f"target '{t}' specified by keys {ks}" for t, ks in duplicate_targets.items()]
        raise ValueError(
            "Conflicting header-map targets specified (multiple OLD map to same NEW): "
            + "; ".join(parts)
        )

    lower_map = {k.strip().lower(): v.strip() for k, v in header_map.items()}
    original_columns = [str(c) for c in df.columns]
    remap = {
        col: lower_map[col.strip().lower()]
        for col in original_columns
        if col.strip().lower() in lower_map
    }

    new_names = [remap.get(col, col) for col in original_columns]
    dup_targets = {name for name in new_names if new_names.count(name) > 1}
    if dup_targets:
        conflicts: dict[str, list[str]] = {}
        for col in original_columns:
            target = remap.get(col, col)
            if target in dup_targets:
                conflicts.setdefault(target, []).append(col)
        msg_parts = [f"'{t}' <= columns {cols}" for t, cols in conflicts.items()]
        raise ValueError(
            "Header mapping would produce duplicate column names after rename: "
            + "; ".join(msg_parts)
        )

    if remap:
        df = df.rename(columns=remap)
        logger.info(f"Applied header mappings: {remap}")

    found_lower = {c.strip().lower() for c in original_columns}
    missing = [k for k in header_map if k.strip().lower() not in found_lower]
    if missing:
        logger.warning(f"Header map keys not found in input columns: {missing}")
    return df


def load_dataset(params: LoadParams) -> pd.DataFrame:
    """
    Load the input table (local delimited file or http(s) URL), apply the
    header map and validate that the configured columns exist.
    No prints; raises exceptions on error.
    """
    if params.source is None:
        raise ValueError("No data source given (expected a file path or URL)")

    if is_url(params.source):
        df = read_remote_table(str(params.source), params.start_line, params.end_line)
    else:
        path = Path(params.source)
        if not path.exists():
            raise FileNotFoundError(f"Data file not found at {path}")
        with DelimitedRangeReader(path) as reader:
            df = reader.read_range(start_line=params.start_line, end_line=params.end_line)

    df = apply_header_map(df, params.header_map)

    required = [params.x_column, params.y_column]
    if params.label_column:
        required.append(params.label_column)
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise SchemaError(
            f"Missing required columns: {', '.join(missing)}. Found columns: {list(df.columns)}"
        )
    if df.empty:
        raise ValueError("No data found in the specified range")
    return df


def prepare_observations(
    df: pd.DataFrame,
    params: LoadParams,
    transform: Transform = Transform.LOG,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Build the canonical observation table (columns x, y and optionally label).

    Missing-data policy (row-drop):
    - x and y are coerced to numbers; unparseable and non-finite values become missing.
    - Rows with a missing x or y are dropped before any segmentation.
    - Under the log transform rows with x <= 0 are dropped as well.
    Every drop is counted in a FilterResult; counts are kept in the frame's attrs.
    The result is sorted by x with a fresh index.
    """
    result = FilterResult(label="prepare_observations")
    result.start()
    result.original_rows = len(df)

    work = pd.DataFrame(
        {
            X_COLUMN: pd.to_numeric(df[params.x_column], errors="coerce"),
            Y_COLUMN: pd.to_numeric(df[params.y_column], errors="coerce"),
        },
        index=df.index,
    )
    if params.label_column:
        work[LABEL_COLUMN] = df[params.label_column].astype("string")
    work = work.replace([np.inf, -np.inf], np.nan)

    mask_missing = work[X_COLUMN].isna() | work[Y_COLUMN].isna()
    dropped_missing = int(mask_missing.sum())
    work = work.loc[~mask_missing]
    result.add_metric("dropped_missing", dropped_missing)
    if dropped_missing:
        result.add_warning(
            f"Dropped {dropped_missing} row(s) with missing '{params.x_column}' or '{params.y_column}'"
        )

    dropped_domain = 0
    if transform is Transform.LOG:
        mask_domain = work[X_COLUMN] <= 0
        dropped_domain = int(mask_domain.sum())
        work = work.loc[~mask_domain]
        if dropped_domain:
            result.add_warning(
                f"Dropped {dropped_domain} row(s) with non-positive '{params.x_column}' (log transform)"
            )
    result.add_metric("dropped_non_positive_x", dropped_domain)

    work = work.sort_values(X_COLUMN, kind="mergesort").reset_index(drop=True)

    result.filtered_rows = len(work)
    result.excluded_rows = result.original_rows - result.filtered_rows
    result.stop()
    if verbose:
        result.add_event(result.summarize())
    if work.empty:
        raise InsufficientDataError(
            f"No usable observations remain after filtering {result.original_rows} row(s)"
        )

    work.attrs["total_input_rows"] = result.original_rows
    work.attrs["dropped_missing"] = dropped_missing
    work.attrs["dropped_non_positive_x"] = dropped_domain
    return work


# -------------------------
# Analysis
# -------------------------
def run_analysis(observations: pd.DataFrame, params: FitParams) -> AnalysisOutputs:
    """
    Run the computation once for a fixed observation table and configuration:
    estimate (or accept) breakpoints, fit every segment, fit the unsegmented
    baseline and compare the two.
    """
    method = params.method.value
    transform = params.transform.value

    estimate: Optional[BreakpointEstimate] = None
    if params.estimate and params.breakpoint_guesses:
        estimate = estimate_breakpoints(
            observations[X_COLUMN].to_numpy(),
            observations[Y_COLUMN].to_numpy(),
            params.breakpoint_guesses,
            transform=transform,
            min_segment_size=params.min_segment_size,
            max_iter=params.max_iter,
        )
        breakpoints = estimate.breakpoints
    else:
        breakpoints = validate_breakpoints(
            params.breakpoint_guesses, observations[X_COLUMN].to_numpy()
        )

    fit_kwargs = dict(
        method=method,
        transform=transform,
        n_draws=params.n_draws,
        random_seed=params.random_seed,
    )
    model = fit_piecewise(observations, breakpoints, **fit_kwargs)
    baseline = (
        fit_piecewise(observations, [], **fit_kwargs) if len(breakpoints) else model
    )

    models: Dict[str, PiecewiseModel] = {"Unsegmented": baseline}
    if len(breakpoints):
        models[f"Segmented (k={len(breakpoints)})"] = model

    return AnalysisOutputs(
        observations=observations,
        estimate=estimate,
        model=model,
        baseline=baseline,
        diagnostics=model.diagnostics(),
        coordinates=model.plot_coordinates(
            n_points=params.n_grid_points, interval=params.interval
        ),
        intervals=coef_uncertainty_intervals(model),
        comparison=compare_models(models),
    )


def compare_models(models: Dict[str, PiecewiseModel]) -> pd.DataFrame:
    """
    One row per labelled model with segments, parameter count, RSS, pooled R²,
    AIC and BIC; Bayesian models also carry WAIC and p_waic.
    """
    rows = []
    for label, model in models.items():
        ic = model.information_criteria()
        row = {
            "model": label,
            "segments": model.n_segments,
            "n_params": model.n_params,
            "rss": model.total_rss,
            "r_squared": model.r_squared(),
            "aic": ic["aic"],
            "bic": ic["bic"],
        }
        if "waic" in ic:
            row["waic"] = ic["waic"]
            row["p_waic"] = ic["p_waic"]
        rows.append(row)
    return pd.DataFrame(rows)


def select_best_model(comparison: pd.DataFrame) -> str:
    """
    Selection policy: lowest WAIC when present, then BIC, then AIC, then fewer
    parameters. Missing (NaN) criteria sort last.
    """

    def pos_inf_if_missing(x) -> float:
        try:
            xv = float(x)
        except (TypeError, ValueError):
            return float("inf")
        return float("inf") if np.isnan(xv) else xv

    records = comparison.to_dict(orient="records")
    if not records:
        raise ValueError("No models to compare")
    best = sorted(
        records,
        key=lambda r: (
            pos_inf_if_missing(r.get("waic")),
            pos_inf_if_missing(r.get("bic")),
            pos_inf_if_missing(r.get("aic")),
            int(r["n_params"]),
            str(r["model"]),
        ),
    )[0]
    return str(best["model"])


def build_model_comparison(comparison: pd.DataFrame) -> tuple[str, str]:
    """
    Build the model-comparison table and return (best_label, table_text).

    Formatting:
      - Headers: [Model, Params, BIC, AIC, RSS, R²] plus WAIC for Bayesian fits
      - Fixed notation; numeric columns right-aligned
      - Missing/non-finite rendered as "-" centered in the field
    """
    import math

    def _fmt_fixed(x, width: int, decimals: int) -> str:
        s = "-"
        if x is not None:
            try:
                xf = float(x)
                if math.isfinite(xf):
                    s = f"{xf:.{decimals}f}"
            except (TypeError, ValueError):
                pass
        return s.center(width) if s == "-" else s.rjust(width)

    best_label = select_best_model(comparison)

    columns = [("n_params", "Params", 6, 0), ("bic", "BIC", 12, 2), ("aic", "AIC", 12, 2)]
    if "waic" in comparison.columns:
        columns.append(("waic", "WAIC", 12, 2))
    columns += [("rss", "RSS", 14, 5), ("r_squared", "R²", 8, 4)]

    labels = [str(m) for m in comparison["model"]]
    col0_width = max([len("Model")] + [len(lbl) for lbl in labels])
    header_line = f"{'Model':<{col0_width}}" + "".join(
        f"  {title:>{width}}" for _, title, width, _ in columns
    )
    lines = [
        "Model Comparison (unsegmented vs segmented)",
        header_line,
        "-" * len(header_line),
    ]
    for label, (_, row) in zip(labels, comparison.iterrows()):
        cells = "".join(
            f"  {_fmt_fixed(row.get(key), width, dec)}" for key, _, width, dec in columns
        )
        lines.append(f"{label:<{col0_width}}{cells}")
    lines.append("")
    lines.append(f"Selected model (by policy): {best_label}")
    lines.append("")
    return best_label, "\n".join(lines)


# -------------------------
# Rendering
# -------------------------
SEGMENT_COLORS = ["#00FFFF", "#FFD60A", "#FF2DFF", "#7FFFD4", "#FF9F0A", "#BF5AF2"]


def _segment_color(i: int) -> str:
    return SEGMENT_COLORS[i % len(SEGMENT_COLORS)]


def render_outputs(
    model: PiecewiseModel,
    coordinates: pd.DataFrame,
    output_svg: str = "plot.svg",
    plot_params: Optional[PlotParams] = None,
) -> str:
    """
    Pure renderer: observations coloured by segment, each segment's fitted line
    over its own training range, the interval band, and dashed breakpoints.
    Returns the output path.
    """
    if plot_params is None:
        plot_params = PlotParams()

    plt.style.use("dark_background")
    fig, ax = plt.subplots(figsize=(10, 6))

    obs = model.observations
    for f in model.fits:
        color = _segment_color(f.segment)
        pts = obs.loc[obs[SEGMENT_COLUMN] == f.segment]
        ax.scatter(
            pts[X_COLUMN],
            pts[Y_COLUMN],
            s=20,
            color=color,
            edgecolors="#003A3A",
            linewidths=0.3,
            alpha=0.6,
        )
        coords = coordinates.loc[coordinates[SEGMENT_COLUMN] == f.segment]
        ax.plot(
            coords[X_COLUMN],
            coords["y_hat"],
            color=color,
            linewidth=2.2,
            label=f"Segment {f.segment}: y = {f.intercept:.3g} + {f.slope:.3g}·t(x), R²={f.r_squared:.3f}",
        )
        if plot_params.show_interval and coords["lower"].notna().any():
            ax.fill_between(
                coords[X_COLUMN], coords["lower"], coords["upper"], color=color, alpha=0.18
            )

    for bp in model.breakpoints:
        ax.axvline(bp, color="#8E8E93", linestyle="--", linewidth=1.0)

    if plot_params.x_log_scale and model.transform == Transform.LOG.value:
        ax.set_xscale("log")
    ax.set_xlim(left=plot_params.x_min, right=plot_params.x_max)
    ax.set_ylim(bottom=plot_params.y_min, top=plot_params.y_max)
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    ax.set_title(f"Piecewise fit ({model.method}, {model.n_segments} segment(s))")
    ax.grid(True, alpha=0.2)
    ax.legend(loc="best", fontsize=8)

    fig.savefig(output_svg, format="svg", bbox_inches="tight")
    plt.close(fig)
    return output_svg


def plot_coef_uncertainty_int(
    intervals: pd.DataFrame, output_svg: str = "intervals.svg"
) -> str:
    """
    Interval plot of segment parameters: thick inner interval, thin outer
    interval and a point at the median. One panel per parameter.
    """
    params = list(dict.fromkeys(intervals["parameter"]))
    plt.style.use("dark_background")
    fig, axes = plt.subplots(1, len(params), figsize=(5 * len(params), 0.6 * len(intervals) + 2))
    axes = np.atleast_1d(axes)

    for ax, name in zip(axes, params):
        sub = intervals.loc[intervals["parameter"] == name].reset_index(drop=True)
        ypos = np.arange(len(sub))[::-1]
        for y, (_, row) in zip(ypos, sub.iterrows()):
            color = _segment_color(int(row[SEGMENT_COLUMN]))
            ax.hlines(y, row["outer_low"], row["outer_high"], color=color, linewidth=1.0)
            ax.hlines(y, row["inner_low"], row["inner_high"], color=color, linewidth=4.0)
            ax.plot(row["median"], y, "o", color=color, markersize=6)
        ax.set_yticks(ypos)
        ax.set_yticklabels([f"segment {int(s)}" for s in sub[SEGMENT_COLUMN]])
        ax.set_title(name)
        ax.grid(True, axis="x", alpha=0.2)

    fig.savefig(output_svg, format="svg", bbox_inches="tight")
    plt.close(fig)
    return output_svg


# -------------------------
# Defaults, identity, report
# -------------------------
def get_default_params() -> tuple[LoadParams, FitParams, PlotParams]:
    """Build default LoadParams, FitParams and PlotParams (policy-level defaults)."""
    load = LoadParams(
        source=None,
        x_column="x",
        y_column="y",
        label_column=None,
        start_line=None,
        end_line=None,
        header_map={},
    )
    fit = FitParams(
        breakpoint_guesses=[],
        transform=Transform.LOG,
        method=FitMethod.OLS,
        estimate=True,
        min_segment_size=3,
        max_iter=100,
        n_draws=2000,
        random_seed=20240229,
        interval=0.9,
        n_grid_points=100,
        verbose_filtering=False,
    )
    plot = PlotParams()
    return load, fit, plot


def build_run_identity(load: LoadParams, fit: FitParams) -> tuple[str, str, str, dict]:
    """
    Returns (abs_source, short_hash, full_hash, effective_params)
    """
    abs_source = normalize_source(load.source)
    effective_params = build_effective_parameters(load, fit)
    canonical_payload = {
        "absolute_input_path": abs_source,
        "effective_parameters": effective_params,
    }
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return abs_source, short_hash, full_hash, effective_params


def build_manifest_dict(
    abs_source: str,
    counts: dict,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: dict[str, str],
    breakpoints: Optional[List[float]] = None,
) -> dict:
    short_hash, full_hash = hashes
    exclusion_reasons = (
        f"missing_x_or_y={counts.get('dropped_missing', 0)}; "
        f"non_positive_x={counts.get('dropped_non_positive_x', 0)}"
    )
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_path": abs_source,
        "total_input_rows": int(counts.get("total_input_rows", 0)),
        "processed_row_count": int(counts.get("processed_row_count", 0)),
        "excluded_row_count": int(counts.get("excluded_row_count", 0)),
        "exclusion_reasons": exclusion_reasons,
        "breakpoints": [float(b) for b in (breakpoints or [])],
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": artifact_paths,
    }


def assemble_text_report(
    input_df: pd.DataFrame,
    load: LoadParams,
    outputs: AnalysisOutputs,
    table_text: str,
) -> str:
    """
    Create a concise, readable report: input summary, data policy counts,
    breakpoints, per-segment diagnostics and the model comparison.
    """
    obs = outputs.observations
    lines: list[str] = []
    lines.append("Input summary (skim)")
    lines.append(format_skim(skim_minimal(input_df, load.x_column, load.y_column)))
    lines.append("")

    lines.append("Observations")
    lines.append(f"  input rows:            {obs.attrs.get('total_input_rows', len(obs))}")
    lines.append(f"  dropped (missing x/y): {obs.attrs.get('dropped_missing', 0)}")
    lines.append(f"  dropped (x <= 0):      {obs.attrs.get('dropped_non_positive_x', 0)}")
    lines.append(f"  fitted rows:           {len(obs)}")
    lines.append("")

    model = outputs.model
    lines.append(f"Breakpoints ({model.transform} transform, {model.method})")
    if outputs.estimate is not None:
        est = outputs.estimate
        lines.append(f"  initial guesses: {np.array2string(est.initial_guesses, precision=6)}")
        lines.append(f"  estimated:       {np.array2string(est.breakpoints, precision=6)}")
        lines.append(
            f"  rss unsegmented={est.rss_unsegmented:.6g} segmented={est.rss_segmented:.6g} "
            f"iterations={est.iterations} converged={est.converged}"
        )
    elif model.breakpoints.size:
        lines.append(f"  fixed: {np.array2string(model.breakpoints, precision=6)}")
    else:
        lines.append("  none (single segment)")
    lines.append("")

    lines.append("Segment diagnostics")
    shown = outputs.diagnostics.drop(columns=["method"], errors="ignore")
    with pd.option_context("display.width", 200, "display.max_columns", 50):
        lines.append(shown.to_string(index=False, float_format=lambda v: f"{v:.5g}"))
    lines.append("")

    lines.append(table_text)
    return "\n".join(lines)


def _orchestrate(
    params_load: LoadParams,
    params_fit: FitParams,
    params_plot: PlotParams,
    output_base: Union[str, Path] = ".",
) -> Path:
    """
    Orchestrate the full pipeline given explicit parameter objects and write the
    run artifacts. Split from main() so the CLI stays thin and tests can call it.
    Returns the run output directory.
    """
    df_input = load_dataset(params_load)
    abs_source, short_hash, full_hash, effective_params = build_run_identity(
        params_load, params_fit
    )
    run_output_dir = ensure_run_dir(output_base, prefix="output")

    observations = prepare_observations(
        df_input,
        params_load,
        transform=params_fit.transform,
        verbose=params_fit.verbose_filtering,
    )
    outputs = run_analysis(observations, params_fit)
    best_label, table_text = build_model_comparison(outputs.comparison)

    segments_csv = run_output_dir / f"segments-{short_hash}.csv"
    coords_csv = run_output_dir / f"coordinates-{short_hash}.csv"
    outputs.diagnostics.to_csv(segments_csv, index=False)
    outputs.coordinates.to_csv(coords_csv, index=False)

    plot_svg = render_outputs(
        outputs.model,
        outputs.coordinates,
        output_svg=str(run_output_dir / f"plot-{short_hash}.svg"),
        plot_params=params_plot,
    )
    intervals_svg = plot_coef_uncertainty_int(
        outputs.intervals, output_svg=str(run_output_dir / f"intervals-{short_hash}.svg")
    )

    counts = {
        "total_input_rows": int(len(df_input)),
        "processed_row_count": int(len(observations)),
        "excluded_row_count": int(len(df_input) - len(observations)),
        "dropped_missing": observations.attrs.get("dropped_missing", 0),
        "dropped_non_positive_x": observations.attrs.get("dropped_non_positive_x", 0),
    }
    manifest = build_manifest_dict(
        abs_source=abs_source,
        counts=counts,
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths={
            "segments_csv": segments_csv.name,
            "coordinates_csv": coords_csv.name,
            "plot_svg": Path(plot_svg).name,
            "intervals_svg": Path(intervals_svg).name,
        },
        breakpoints=outputs.model.breakpoints.tolist(),
    )
    write_manifest(run_output_dir / f"manifest-{short_hash}.json", manifest)

    report = assemble_text_report(df_input, params_load, outputs, table_text)
    write_text_report(report, run_output_dir, short_hash)
    logger.info("Selected model: %s; artifacts in %s", best_label, run_output_dir)

    print(report)
    return run_output_dir


# -------------------------
# CLI
# -------------------------
def _parse_breakpoints(text: str) -> List[float]:
    """Parse a comma-separated list of breakpoint guesses, e.g. '1500,12000'."""
    values = []
    for tok in text.split(","):
        tok = tok.strip()
        if not tok:
            continue
        try:
            values.append(float(tok))
        except ValueError:
            raise ValueError(f"Invalid breakpoint value {tok!r} in {text!r}")
    return values


def _parse_header_map(items: Optional[List[str]]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for item in items or []:
        if ":" not in item:
            raise ValueError(f"Invalid --header-map entry {item!r}; expected OLD:NEW")
        old, new = item.split(":", 1)
        if not old.strip() or not new.strip():
            raise ValueError(f"Invalid --header-map entry {item!r}; expected OLD:NEW")
        mapping[old.strip()] = new.strip()
    return mapping


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="segreg",
        description="Segmented regression (load -> prepare -> estimate -> fit -> compare -> plot).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also SEGREG_DEBUG=1).",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=".",
        help="Base directory; artifacts go to <output-dir>/output/<timestamp>/.",
    )

    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument(
        "--source", type=str, required=True, help="Path or http(s) URL of the input table (required)."
    )
    g_load.add_argument("--x", dest="x_column", type=str, help="Predictor column name.")
    g_load.add_argument("--y", dest="y_column", type=str, help="Outcome column name.")
    g_load.add_argument("--label", dest="label_column", type=str, help="Optional row label column.")
    g_load.add_argument("--start-line", type=int, help="1-based inclusive start line.")
    g_load.add_argument("--end-line", type=int, help="1-based inclusive end line.")
    g_load.add_argument(
        "--header-map",
        action="append",
        metavar="OLD:NEW",
        help="Rename input header OLD to NEW. Repeatable.",
    )

    g_fit = parser.add_argument_group("FitParams")
    g_fit.add_argument(
        "--breakpoints",
        type=str,
        help="Comma-separated breakpoint guesses in x units, e.g. 1500,12000.",
    )
    g_fit.add_argument("--transform", choices=[t.name for t in Transform], help="Predictor transform.")
    g_fit.add_argument("--method", choices=[m.name for m in FitMethod], help="Per-segment fitter.")
    g_fit.add_argument(
        "--no-estimate",
        dest="estimate",
        action="store_false",
        default=None,
        help="Use the breakpoints as given instead of refining them.",
    )
    g_fit.add_argument("--min-segment-size", type=int, help="Smallest segment the estimator may create.")
    g_fit.add_argument("--max-iter", type=int, help="Maximum breakpoint refinement sweeps.")
    g_fit.add_argument("--draws", dest="n_draws", type=int, help="Posterior draws per segment (BAYES).")
    g_fit.add_argument("--seed", dest="random_seed", type=int, help="Random seed for posterior draws.")
    g_fit.add_argument("--interval", type=float, help="Interval mass for plot bands, e.g. 0.9.")
    g_fit.add_argument("--grid-points", dest="n_grid_points", type=int, help="Plot grid points per segment.")
    g_fit.add_argument(
        "--verbose-filtering",
        action="store_true",
        default=None,
        help="Log a summary of the missing-data filtering step.",
    )

    g_plot = parser.add_argument_group("PlotParams")
    g_plot.add_argument(
        "--linear-x-axis",
        dest="x_log_scale",
        action="store_false",
        default=None,
        help="Draw the x axis linearly even under the log transform.",
    )
    g_plot.add_argument(
        "--no-interval",
        dest="show_interval",
        action="store_false",
        default=None,
        help="Do not draw interval bands.",
    )
    g_plot.add_argument("--x-min", type=float, help="Lower x-axis limit.")
    g_plot.add_argument("--x-max", type=float, help="Upper x-axis limit.")
    g_plot.add_argument("--y-min", type=float, help="Lower y-axis limit.")
    g_plot.add_argument("--y-max", type=float, help="Upper y-axis limit.")
    return parser


def _args_to_params(args) -> tuple[LoadParams, FitParams, PlotParams]:
    """
    Merge CLI args over defaults to build parameter objects.
    Only override values explicitly provided by user; otherwise keep defaults.
    """
    d_load, d_fit, d_plot = get_default_params()

    def get_arg_or_default(arg_name, default):
        val = getattr(args, arg_name, None)
        return default if val is None else val

    source = getattr(args, "source", None)
    if source is not None and not is_url(source):
        source = Path(source).resolve()

    load = LoadParams(
        source=source,
        x_column=get_arg_or_default("x_column", d_load.x_column),
        y_column=get_arg_or_default("y_column", d_load.y_column),
        label_column=get_arg_or_default("label_column", d_load.label_column),
        start_line=get_arg_or_default("start_line", d_load.start_line),
        end_line=get_arg_or_default("end_line", d_load.end_line),
        header_map=_parse_header_map(getattr(args, "header_map", None)) or d_load.header_map,
    )

    breakpoints_arg = getattr(args, "breakpoints", None)
    transform_name = getattr(args, "transform", None)
    method_name = getattr(args, "method", None)
    fit = FitParams(
        breakpoint_guesses=(
            _parse_breakpoints(breakpoints_arg)
            if breakpoints_arg is not None
            else list(d_fit.breakpoint_guesses)
        ),
        transform=Transform[transform_name] if transform_name else d_fit.transform,
        method=FitMethod[method_name] if method_name else d_fit.method,
        estimate=get_arg_or_default("estimate", d_fit.estimate),
        min_segment_size=get_arg_or_default("min_segment_size", d_fit.min_segment_size),
        max_iter=get_arg_or_default("max_iter", d_fit.max_iter),
        n_draws=get_arg_or_default("n_draws", d_fit.n_draws),
        random_seed=get_arg_or_default("random_seed", d_fit.random_seed),
        interval=get_arg_or_default("interval", d_fit.interval),
        n_grid_points=get_arg_or_default("n_grid_points", d_fit.n_grid_points),
        verbose_filtering=get_arg_or_default("verbose_filtering", d_fit.verbose_filtering),
    )
    if not (0.0 < fit.interval < 1.0):
        raise ValueError(f"--interval must be in (0, 1), got: {fit.interval}")

    plot = PlotParams(
        x_log_scale=get_arg_or_default("x_log_scale", d_plot.x_log_scale),
        show_interval=get_arg_or_default("show_interval", d_plot.show_interval),
        x_min=get_arg_or_default("x_min", d_plot.x_min),
        x_max=get_arg_or_default("x_max", d_plot.x_max),
        y_min=get_arg_or_default("y_min", d_plot.y_min),
        y_max=get_arg_or_default("y_max", d_plot.y_max),
    )
    return load, fit, plot


def _defaults_payload() -> dict:
    d_load, d_fit, d_plot = get_default_params()
    return build_effective_parameters(d_load, d_fit) | {
        "plot": {
            "x_log_scale": d_plot.x_log_scale,
            "show_interval": d_plot.show_interval,
            "x_min": d_plot.x_min,
            "x_max": d_plot.x_max,
            "y_min": d_plot.y_min,
            "y_max": d_plot.y_max,
        }
    }


def main(argv: Optional[List[str]] = None) -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    argv = sys.argv[1:] if argv is None else list(argv)

    # --print-defaults does not require --source
    if "--print-defaults" in argv:
        import json

        print(json.dumps(_defaults_payload(), indent=2))
        return

    parser = _build_cli_parser()
    args = parser.parse_args(argv)
    debug_mode = bool(args.debug or os.getenv("SEGREG_DEBUG", "") == "1")
    if debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        params_load, params_fit, params_plot = _args_to_params(args)
        _orchestrate(params_load, params_fit, params_plot, output_base=args.output_dir)
    except (
        FileNotFoundError,
        ValueError,
        TypeError,
        SegmentedRegressionError,
        TableReadError,
    ) as e:
        # Concise, user-facing errors for user-correctable problems.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set SEGREG_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
