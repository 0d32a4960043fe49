"""
Segmented (piecewise) regression of y on a transformed predictor t(x).

The workflow is four plain functions over explicit inputs:
- estimate_breakpoints(): refine k breakpoint guesses by minimizing total RSS
- partition_segments():   half-open assignment of observations to segments
- fit_segment():          independent y ~ t(x) fit for one segment (OLS or Bayes)
- fit_piecewise():        partition + fit, combined into a PiecewiseModel

Observations are a DataFrame with canonical numeric columns 'x' and 'y'.
Breakpoints are always expressed in x units; t(x) is only used internally.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from sklearn.linear_model import BayesianRidge

from .bayes import (
    bayes_r2,
    normal_intervals,
    pointwise_log_likelihood,
    posterior_intervals,
    sample_linear_posterior,
    waic,
)

logger = logging.getLogger(__name__)

X_COLUMN = "x"
Y_COLUMN = "y"
SEGMENT_COLUMN = "segment"

TRANSFORMS = ("log", "identity")
METHODS = ("ols", "bayes")
COEF_NAMES = ("intercept", "slope")


class SegmentedRegressionError(Exception):
    """Base exception for segmented regression errors."""

    pass


class InsufficientDataError(SegmentedRegressionError):
    """Raised when a segment has too few observations to fit a line."""

    pass


class InvalidBreakpointError(SegmentedRegressionError):
    """Raised when breakpoints are not strictly increasing or leave the data range."""

    pass


class ExtrapolationError(SegmentedRegressionError):
    """Raised when a piecewise model is evaluated outside its training range."""

    pass


class SchemaError(SegmentedRegressionError):
    """Raised when an input table lacks the required columns."""

    pass


# -------------------------
# Transforms
# -------------------------
def transform_values(values, transform: str) -> np.ndarray:
    """Apply the predictor transform t(x). Non-positive x under 'log' yields nan/-inf."""
    arr = np.asarray(values, dtype=float)
    if transform == "log":
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.log(arr)
    if transform == "identity":
        return arr
    raise ValueError(f"Unsupported transform {transform!r}; expected one of {TRANSFORMS}")


def inverse_transform_values(values, transform: str) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if transform == "log":
        return np.exp(arr)
    if transform == "identity":
        return arr
    raise ValueError(f"Unsupported transform {transform!r}; expected one of {TRANSFORMS}")


def _line_fit(z: np.ndarray, y: np.ndarray) -> tuple[float, float, float]:
    """Closed-form least squares line. Returns (intercept, slope, rss)."""
    z_mean = z.mean()
    y_mean = y.mean()
    zc = z - z_mean
    yc = y - y_mean
    szz = float(np.dot(zc, zc))
    slope = float(np.dot(zc, yc)) / szz if szz > 0 else 0.0
    intercept = float(y_mean - slope * z_mean)
    resid = yc - slope * zc
    return intercept, slope, float(np.dot(resid, resid))


# -------------------------
# Breakpoints and partitioning
# -------------------------
def validate_breakpoints(breakpoints: Sequence[float], x) -> np.ndarray:
    """
    Return breakpoints as a float array after checking they are finite, strictly
    increasing and strictly inside [min(x), max(x)]. Never clamps.

    An empty sequence is valid and means "one segment" (the unsegmented fit).
    """
    bp = np.asarray(list(breakpoints), dtype=float).ravel()
    if bp.size == 0:
        return bp
    if not np.isfinite(bp).all():
        raise InvalidBreakpointError(f"Breakpoints must be finite, got: {bp.tolist()}")
    if np.any(np.diff(bp) <= 0):
        raise InvalidBreakpointError(
            f"Breakpoints must be strictly increasing, got: {bp.tolist()}"
        )

    x_arr = np.asarray(x, dtype=float)
    x_arr = x_arr[np.isfinite(x_arr)]
    if x_arr.size == 0:
        raise InsufficientDataError("Cannot validate breakpoints against empty data")
    lo, hi = float(x_arr.min()), float(x_arr.max())
    outside = bp[(bp <= lo) | (bp >= hi)]
    if outside.size:
        raise InvalidBreakpointError(
            f"Breakpoints {outside.tolist()} lie outside the data range ({lo:g}, {hi:g})"
        )
    return bp


def assign_segments(x, breakpoints: Sequence[float]) -> np.ndarray:
    """
    Segment index for each x using half-open membership:
    segment i = [breakpoints[i-1], breakpoints[i]), first open to -inf, last to +inf.
    """
    bp = np.asarray(list(breakpoints), dtype=float).ravel()
    if bp.size and np.any(np.diff(bp) <= 0):
        raise InvalidBreakpointError(
            f"Breakpoints must be strictly increasing, got: {bp.tolist()}"
        )
    x_arr = np.asarray(x, dtype=float)
    if not np.isfinite(x_arr).all():
        raise ValueError("Cannot assign non-finite x values to segments")
    return np.searchsorted(bp, x_arr, side="right")


@dataclass
class Segment:
    """A contiguous range [lower, upper) of x and the observations inside it."""

    index: int
    lower: float
    upper: float
    data: pd.DataFrame

    @property
    def n_obs(self) -> int:
        return int(len(self.data))

    @property
    def x_min(self) -> float:
        return float(self.data[X_COLUMN].min()) if self.n_obs else float("nan")

    @property
    def x_max(self) -> float:
        return float(self.data[X_COLUMN].max()) if self.n_obs else float("nan")


def _require_xy(observations: pd.DataFrame) -> None:
    missing = [c for c in (X_COLUMN, Y_COLUMN) if c not in observations.columns]
    if missing:
        raise SchemaError(
            f"Missing required columns: {', '.join(missing)}. "
            f"Found columns: {list(observations.columns)}"
        )


def partition_segments(
    observations: pd.DataFrame, breakpoints: Sequence[float]
) -> List[Segment]:
    """
    Split observations into len(breakpoints) + 1 segments.

    Every row lands in exactly one segment; empty segments are returned as
    empty frames so the caller decides whether to merge or abort.
    """
    _require_xy(observations)
    bp = np.asarray(list(breakpoints), dtype=float).ravel()
    seg_idx = assign_segments(observations[X_COLUMN].to_numpy(), bp)
    bounds = np.concatenate(([-np.inf], bp, [np.inf]))

    segments = [
        Segment(
            index=i,
            lower=float(bounds[i]),
            upper=float(bounds[i + 1]),
            data=observations.loc[seg_idx == i],
        )
        for i in range(bp.size + 1)
    ]

    # Partition invariant: no row lost, none duplicated
    assert sum(s.n_obs for s in segments) == len(observations)
    return segments


# -------------------------
# Breakpoint estimation
# -------------------------
@dataclass
class BreakpointEstimate:
    breakpoints: np.ndarray
    transformed: np.ndarray
    initial_guesses: np.ndarray
    rss_unsegmented: float
    rss_segmented: float
    iterations: int
    converged: bool


def estimate_breakpoints(
    x,
    y,
    guesses: Sequence[float],
    transform: str = "log",
    min_segment_size: int = 3,
    max_iter: int = 100,
) -> BreakpointEstimate:
    """
    Refine k breakpoint guesses to a local minimum of the total residual sum of
    squares of independent per-segment fits of y ~ t(x).

    Behavior:
    - Fits the unsegmented model y ~ t(x) first (statsmodels OLS) as the baseline.
    - Each breakpoint lives in a "gap" between consecutive distinct sorted t(x)
      values. Coordinate descent moves one breakpoint at a time to the best gap
      between its neighbours; a move is accepted only if total RSS decreases.
      Stops after a sweep without moves or after max_iter sweeps.
    - Gaps that would leave a segment with fewer than min_segment_size rows (or
      fewer than 2 distinct x values) are never visited.
    - Within the final gap the breakpoint is placed at the intersection of the
      two adjacent fitted lines when that intersection falls in the gap (exact
      for a continuous kink); otherwise at the guess if it lies in the gap,
      otherwise at the gap midpoint.

    Guesses and results are in x units. Raises InvalidBreakpointError for guesses
    outside the data range and InsufficientDataError when the initial guesses
    already leave a segment too small.
    """
    if min_segment_size < 2:
        raise ValueError(f"min_segment_size must be >= 2, got: {min_segment_size}")

    x_arr = np.asarray(x, dtype=float)
    y_arr = np.asarray(y, dtype=float)
    if x_arr.shape != y_arr.shape:
        raise ValueError("x and y must have equal length")
    z_all = transform_values(x_arr, transform)
    mask = np.isfinite(z_all) & np.isfinite(y_arr)
    if not mask.all():
        logger.warning(
            "estimate_breakpoints: dropping %d row(s) with missing or untransformable values",
            int((~mask).sum()),
        )
    x_arr, y_arr, z_all = x_arr[mask], y_arr[mask], z_all[mask]

    guesses_arr = validate_breakpoints(guesses, x_arr)
    k = guesses_arr.size

    order = np.argsort(z_all, kind="mergesort")
    z = z_all[order]
    yv = y_arr[order]
    n = z.size
    if n < 2 or np.unique(z).size < 2:
        raise InsufficientDataError(
            f"Need at least 2 distinct x values to fit a line, got {np.unique(z).size}"
        )

    base = sm.OLS(yv, sm.add_constant(z, has_constant="add")).fit()
    rss_unsegmented = float(base.ssr)
    logger.info(
        "Unsegmented fit: intercept=%.6g slope=%.6g rss=%.6g",
        base.params[0],
        base.params[1],
        rss_unsegmented,
    )

    if k == 0:
        return BreakpointEstimate(
            breakpoints=guesses_arr,
            transformed=guesses_arr.copy(),
            initial_guesses=guesses_arr,
            rss_unsegmented=rss_unsegmented,
            rss_segmented=rss_unsegmented,
            iterations=0,
            converged=True,
        )

    uniq, counts = np.unique(z, return_counts=True)
    m = uniq.size
    # cum[j] = number of rows with z <= uniq[j]
    cum = np.cumsum(counts)
    z_guess = transform_values(guesses_arr, transform)
    gaps = [int(np.searchsorted(uniq, zg, side="left")) - 1 for zg in z_guess]

    def _feasible(gs: list[int]) -> bool:
        edges = [-1] + gs + [m - 1]
        for a, b in zip(edges[:-1], edges[1:]):
            if b <= a:
                return False
            distinct = b - a
            rows = int(cum[b] - (cum[a] if a >= 0 else 0))
            if distinct < 2 or rows < min_segment_size:
                return False
        return True

    rss_cache: Dict[tuple[int, int], float] = {}

    def _total_rss(gs: list[int]) -> float:
        total = 0.0
        edges = [-1] + gs + [m - 1]
        for a, b in zip(edges[:-1], edges[1:]):
            key = (a, b)
            if key not in rss_cache:
                lo = int(cum[a]) if a >= 0 else 0
                hi = int(cum[b])
                rss_cache[key] = _line_fit(z[lo:hi], yv[lo:hi])[2]
            total += rss_cache[key]
        return total

    if not _feasible(gaps):
        raise InsufficientDataError(
            f"Initial breakpoint guesses {guesses_arr.tolist()} leave a segment with fewer "
            f"than {min_segment_size} observations (or fewer than 2 distinct x values)"
        )

    current = _total_rss(gaps)
    tol = 1e-12 * max(1.0, float(np.sum((yv - yv.mean()) ** 2)))
    converged = False
    iterations = 0
    for iterations in range(1, max_iter + 1):
        moved = False
        for i in range(k):
            lo_gap = gaps[i - 1] + 1 if i > 0 else 0
            hi_gap = gaps[i + 1] - 1 if i < k - 1 else m - 2
            best_gap, best_rss = gaps[i], current
            for g in range(lo_gap, hi_gap + 1):
                if g == gaps[i]:
                    continue
                trial = gaps[:i] + [g] + gaps[i + 1 :]
                if not _feasible(trial):
                    continue
                rss = _total_rss(trial)
                if rss < best_rss - tol:
                    best_gap, best_rss = g, rss
            if best_gap != gaps[i]:
                logger.debug(
                    "Breakpoint %d moved from gap %d to gap %d (rss %.6g -> %.6g)",
                    i,
                    gaps[i],
                    best_gap,
                    current,
                    best_rss,
                )
                gaps[i] = best_gap
                current = best_rss
                moved = True
        if not moved:
            converged = True
            break

    if not converged:
        logger.warning(
            "Breakpoint search did not converge within %d iterations", max_iter
        )

    # Place each breakpoint inside its gap
    edges = [-1] + gaps + [m - 1]
    lines = []
    for a, b in zip(edges[:-1], edges[1:]):
        lo = int(cum[a]) if a >= 0 else 0
        hi = int(cum[b])
        lines.append(_line_fit(z[lo:hi], yv[lo:hi]))

    bp_z = np.empty(k)
    bp_x = np.empty(k)
    for i, g in enumerate(gaps):
        left, right = uniq[g], uniq[g + 1]
        a1, b1, _ = lines[i]
        a2, b2, _ = lines[i + 1]
        crossing = (a2 - a1) / (b1 - b2) if b1 != b2 else np.nan
        if np.isfinite(crossing) and left < crossing <= right:
            bp_z[i] = crossing
            bp_x[i] = float(inverse_transform_values(crossing, transform))
        elif left < z_guess[i] <= right:
            bp_z[i] = z_guess[i]
            bp_x[i] = guesses_arr[i]
        else:
            bp_z[i] = 0.5 * (left + right)
            bp_x[i] = float(inverse_transform_values(bp_z[i], transform))

    bp_x = validate_breakpoints(bp_x, x_arr)
    logger.info(
        "Estimated breakpoints %s (rss %.6g -> %.6g, %d iteration(s))",
        np.array2string(bp_x, precision=6),
        rss_unsegmented,
        current,
        iterations,
    )
    return BreakpointEstimate(
        breakpoints=bp_x,
        transformed=bp_z,
        initial_guesses=guesses_arr,
        rss_unsegmented=rss_unsegmented,
        rss_segmented=float(current),
        iterations=iterations,
        converged=converged,
    )


# -------------------------
# Per-segment fitting
# -------------------------
@dataclass
class SegmentFit:
    """One independent fit y = intercept + slope * t(x) for one segment."""

    segment: int
    lower: float
    upper: float
    method: str
    transform: str
    n_obs: int
    x_min: float
    x_max: float
    intercept: float
    slope: float
    r_squared: float
    rss: float
    y_sd: float
    mean_abs_residual: float
    residuals: np.ndarray
    fitted: np.ndarray
    stats: Dict[str, Any] = field(default_factory=dict)
    # Bayesian method only
    coef_draws: Optional[np.ndarray] = None
    sigma_draws: Optional[np.ndarray] = None
    # statsmodels results for the OLS method
    result: Any = None

    def predict(self, x) -> np.ndarray:
        z = transform_values(x, self.transform)
        return self.intercept + self.slope * z

    def interval_band(self, x, interval: float = 0.9) -> pd.DataFrame:
        """
        Mean prediction with an interval at x.
        OLS: confidence interval of the mean. Bayes: central credible interval.
        """
        z = transform_values(x, self.transform)
        if self.coef_draws is not None:
            draws = self.coef_draws[:, 0][:, None] + self.coef_draws[:, 1][:, None] * z[None, :]
            tail = (1.0 - interval) / 2.0
            lower = np.quantile(draws, tail, axis=0)
            upper = np.quantile(draws, 1.0 - tail, axis=0)
        elif self.result is not None:
            X = sm.add_constant(pd.DataFrame({"t_x": z}), has_constant="add")
            with np.errstate(divide="ignore", invalid="ignore"):
                frame = self.result.get_prediction(X).summary_frame(alpha=1.0 - interval)
            lower = frame["mean_ci_lower"].to_numpy()
            upper = frame["mean_ci_upper"].to_numpy()
        else:
            lower = upper = np.full(z.shape, np.nan)
        return pd.DataFrame(
            {"y_hat": self.intercept + self.slope * z, "lower": lower, "upper": upper}
        )


def _bounded_r_squared(y: np.ndarray, resid: np.ndarray) -> float:
    """Classical R² clipped into [0, 1]; an exactly fitted constant outcome is 1."""
    tss = float(np.sum((y - y.mean()) ** 2))
    rss = float(np.sum(resid**2))
    scale = max(float(np.max(np.abs(y))), 1.0)
    tiny = y.size * (1e-12 * scale) ** 2
    if tss <= tiny:
        return 1.0 if rss <= tiny else 0.0
    return float(np.clip(1.0 - rss / tss, 0.0, 1.0))


def _fit_ols(z: np.ndarray, y: np.ndarray) -> Dict[str, Any]:
    X = sm.add_constant(pd.DataFrame({"t_x": z}), has_constant="add")
    with np.errstate(divide="ignore", invalid="ignore"):
        res = sm.OLS(y, X).fit()
        resid = np.asarray(res.resid, dtype=float)
        stats = {
            "Adj. R-squared": float(res.rsquared_adj) if res.df_resid > 0 else float("nan"),
            "Standard Errors": res.bse,
            "Confidence Intervals": res.conf_int(),
            "aic": float(res.aic),
            "bic": float(res.bic),
            "llf": float(res.llf),
        }
    return {
        "intercept": float(res.params["const"]),
        "slope": float(res.params["t_x"]),
        "fitted": np.asarray(res.fittedvalues, dtype=float),
        "residuals": resid,
        "r_squared": _bounded_r_squared(y, resid),
        "stats": stats,
        "result": res,
    }


def _fit_bayes(
    z: np.ndarray, y: np.ndarray, n_draws: int, random_seed: Optional[int]
) -> Dict[str, Any]:
    # Design carries its own intercept column so the posterior covariance covers both terms
    Z = np.column_stack([np.ones_like(z), z])
    br = BayesianRidge(max_iter=1000, tol=1e-8, fit_intercept=False)
    br.fit(Z, y)

    coef_draws, sigma_draws = sample_linear_posterior(
        br.coef_, br.sigma_, br.alpha_, n_obs=y.size, n_draws=n_draws, random_seed=random_seed
    )
    fit_draws = coef_draws @ Z.T
    r2_draws = bayes_r2(fit_draws, y)

    fitted = Z @ br.coef_
    resid = y - fitted
    return {
        "intercept": float(br.coef_[0]),
        "slope": float(br.coef_[1]),
        "fitted": fitted,
        "residuals": resid,
        "r_squared": float(np.median(r2_draws)),
        "stats": {
            "Bayes R-squared draws": r2_draws,
            "Bayes R-squared interval": (
                float(np.quantile(r2_draws, 0.05)),
                float(np.quantile(r2_draws, 0.95)),
            ),
            "Classical R-squared": _bounded_r_squared(y, resid),
            "noise_precision": float(br.alpha_),
            "weights_precision": float(br.lambda_),
            "Posterior covariance": br.sigma_,
            "log_likelihood": pointwise_log_likelihood(fit_draws, sigma_draws, y),
        },
        "coef_draws": coef_draws,
        "sigma_draws": sigma_draws,
    }


def fit_segment(
    segment: Segment,
    method: str = "ols",
    transform: str = "log",
    n_draws: int = 2000,
    random_seed: Optional[int] = None,
) -> SegmentFit:
    """
    Fit y ~ t(x) for one segment, independently of every other segment.

    Raises InsufficientDataError when the segment holds fewer than 2 rows or
    fewer than 2 distinct x values.
    """
    if method not in METHODS:
        raise ValueError(f"Unsupported method {method!r}; expected one of {METHODS}")
    _require_xy(segment.data)
    n = segment.n_obs
    if n < 2:
        raise InsufficientDataError(
            f"Segment {segment.index} [{segment.lower:g}, {segment.upper:g}) has {n} "
            "observation(s); at least 2 are required to fit a line"
        )

    x = segment.data[X_COLUMN].to_numpy(dtype=float)
    y = segment.data[Y_COLUMN].to_numpy(dtype=float)
    z = transform_values(x, transform)
    if not (np.isfinite(z).all() and np.isfinite(y).all()):
        raise ValueError(
            f"Segment {segment.index} contains missing values or x outside the domain "
            f"of the {transform!r} transform"
        )
    if np.unique(z).size < 2:
        raise InsufficientDataError(
            f"Segment {segment.index} has fewer than 2 distinct x values; slope is not identified"
        )

    if method == "ols":
        parts = _fit_ols(z, y)
    else:
        parts = _fit_bayes(z, y, n_draws=n_draws, random_seed=random_seed)

    resid = parts["residuals"]
    return SegmentFit(
        segment=segment.index,
        lower=segment.lower,
        upper=segment.upper,
        method=method,
        transform=transform,
        n_obs=n,
        x_min=float(x.min()),
        x_max=float(x.max()),
        intercept=parts["intercept"],
        slope=parts["slope"],
        r_squared=parts["r_squared"],
        rss=float(np.sum(resid**2)),
        y_sd=float(np.std(y, ddof=1)),
        mean_abs_residual=float(np.mean(np.abs(resid))),
        residuals=resid,
        fitted=parts["fitted"],
        stats=parts["stats"],
        coef_draws=parts.get("coef_draws"),
        sigma_draws=parts.get("sigma_draws"),
        result=parts.get("result"),
    )


# -------------------------
# Aggregation
# -------------------------
@dataclass
class PiecewiseModel:
    """
    Independent per-segment fits combined into y = a_i + b_i * t(x) for x in segment i.
    """

    breakpoints: np.ndarray
    fits: List[SegmentFit]
    transform: str
    method: str
    x_min: float
    x_max: float
    observations: pd.DataFrame

    @property
    def n_segments(self) -> int:
        return len(self.fits)

    @property
    def n_obs(self) -> int:
        return int(sum(f.n_obs for f in self.fits))

    @property
    def n_params(self) -> int:
        # Intercept + slope per segment, plus one location per breakpoint
        return 2 * self.n_segments + int(self.breakpoints.size)

    @property
    def total_rss(self) -> float:
        return float(sum(f.rss for f in self.fits))

    def segment_for(self, x) -> np.ndarray:
        return assign_segments(x, self.breakpoints)

    def predict(self, x, strict: bool = True) -> pd.DataFrame:
        """
        Evaluate the piecewise function.

        Points outside [x_min, x_max] of the training data belong to no fitted
        segment. With strict=True they raise ExtrapolationError; with
        strict=False they are returned with extrapolated=True and y_hat=NaN.

        Returns a frame with columns x, segment, y_hat, extrapolated.
        """
        x_arr = np.atleast_1d(np.asarray(x, dtype=float))
        finite = np.isfinite(x_arr)
        extrapolated = ~finite | (x_arr < self.x_min) | (x_arr > self.x_max)
        if strict and extrapolated.any():
            bad = x_arr[extrapolated]
            raise ExtrapolationError(
                f"{bad.size} point(s) outside the training range "
                f"[{self.x_min:g}, {self.x_max:g}]: {bad[:5].tolist()}"
            )

        seg = np.full(x_arr.shape, -1, dtype=int)
        seg[finite] = assign_segments(x_arr[finite], self.breakpoints)
        intercepts = np.array([f.intercept for f in self.fits])
        slopes = np.array([f.slope for f in self.fits])
        y_hat = np.full(x_arr.shape, np.nan)
        ok = ~extrapolated
        y_hat[ok] = intercepts[seg[ok]] + slopes[seg[ok]] * transform_values(
            x_arr[ok], self.transform
        )
        return pd.DataFrame(
            {
                X_COLUMN: x_arr,
                SEGMENT_COLUMN: np.where(ok, seg, -1),
                "y_hat": y_hat,
                "extrapolated": extrapolated,
            }
        )

    def diagnostics(self) -> pd.DataFrame:
        """Side-by-side per-segment diagnostics."""
        rows = []
        for f in self.fits:
            row = {
                SEGMENT_COLUMN: f.segment,
                "x_lower": f.lower,
                "x_upper": f.upper,
                "x_min": f.x_min,
                "x_max": f.x_max,
                "n_obs": f.n_obs,
                "intercept": f.intercept,
                "slope": f.slope,
                "r_squared": f.r_squared,
                "mean_abs_residual": f.mean_abs_residual,
                "y_sd": f.y_sd,
                "rss": f.rss,
                "method": f.method,
            }
            if f.method == "bayes":
                low, high = f.stats["Bayes R-squared interval"]
                row["r_squared_low"] = low
                row["r_squared_high"] = high
            rows.append(row)
        return pd.DataFrame(rows)

    def plot_coordinates(self, n_points: int = 100, interval: float = 0.9) -> pd.DataFrame:
        """
        Per-segment grid over each segment's own training range (evenly spaced
        on the transformed scale) with predicted y and an interval band.

        Columns: segment, x, y_hat, lower, upper
        """
        if n_points < 2:
            raise ValueError(f"n_points must be >= 2, got: {n_points}")
        frames = []
        for f in self.fits:
            z_lo, z_hi = transform_values([f.x_min, f.x_max], self.transform)
            grid = inverse_transform_values(np.linspace(z_lo, z_hi, n_points), self.transform)
            grid[0], grid[-1] = f.x_min, f.x_max
            band = f.interval_band(grid, interval=interval)
            band.insert(0, X_COLUMN, grid)
            band.insert(0, SEGMENT_COLUMN, f.segment)
            frames.append(band)
        return pd.concat(frames, ignore_index=True)

    def r_squared(self) -> float:
        """Pooled R² of the whole piecewise fit."""
        resid = np.concatenate([f.residuals for f in self.fits])
        y = np.concatenate([f.fitted + f.residuals for f in self.fits])
        return _bounded_r_squared(y, resid)

    def information_criteria(self) -> Dict[str, float]:
        """
        Gaussian AIC/BIC of the pooled fit (statsmodels convention: the noise
        scale is not counted), plus WAIC for the Bayesian method.
        """
        n = self.n_obs
        p = self.n_params
        rss = self.total_rss
        with np.errstate(divide="ignore"):
            llf = -0.5 * n * (np.log(2 * np.pi) + np.log(rss / n) + 1.0)
        out = {
            "llf": float(llf),
            "aic": float(-2.0 * llf + 2.0 * p),
            "bic": float(-2.0 * llf + np.log(n) * p),
        }
        if self.method == "bayes":
            log_lik = np.hstack([f.stats["log_likelihood"] for f in self.fits])
            w = waic(log_lik)
            out["waic"] = w["waic"]
            out["p_waic"] = w["p_waic"]
            out["waic_se"] = w["se"]
        return out


def fit_piecewise(
    observations: pd.DataFrame,
    breakpoints: Sequence[float],
    method: str = "ols",
    transform: str = "log",
    n_draws: int = 2000,
    random_seed: Optional[int] = None,
) -> PiecewiseModel:
    """
    Partition observations at the given breakpoints and fit every segment
    independently. Empty or one-row segments raise InsufficientDataError.
    Rows with a missing y, or an x that is missing or outside the domain of the
    transform, are dropped with a warning, as in estimate_breakpoints().
    """
    _require_xy(observations)
    z = transform_values(observations[X_COLUMN].to_numpy(dtype=float), transform)
    y = observations[Y_COLUMN].to_numpy(dtype=float)
    usable = np.isfinite(z) & np.isfinite(y)
    if not usable.all():
        logger.warning(
            "fit_piecewise: dropping %d row(s) with missing or untransformable values",
            int((~usable).sum()),
        )
        observations = observations.loc[usable]
    if observations.empty:
        raise InsufficientDataError("No usable observations to fit")
    bp = validate_breakpoints(breakpoints, observations[X_COLUMN].to_numpy())
    segments = partition_segments(observations, bp)

    fits = []
    for seg in segments:
        seed = None if random_seed is None else random_seed + seg.index
        fits.append(
            fit_segment(
                seg, method=method, transform=transform, n_draws=n_draws, random_seed=seed
            )
        )
        logger.debug(
            "Segment %d: n=%d intercept=%.6g slope=%.6g r2=%.4f",
            seg.index,
            seg.n_obs,
            fits[-1].intercept,
            fits[-1].slope,
            fits[-1].r_squared,
        )

    labelled = observations.assign(
        **{SEGMENT_COLUMN: assign_segments(observations[X_COLUMN].to_numpy(), bp)}
    )
    return PiecewiseModel(
        breakpoints=bp,
        fits=fits,
        transform=transform,
        method=method,
        x_min=float(observations[X_COLUMN].min()),
        x_max=float(observations[X_COLUMN].max()),
        observations=labelled,
    )


def coef_uncertainty_intervals(
    model: PiecewiseModel, prob_inner: float = 0.5, prob_outer: float = 0.9
) -> pd.DataFrame:
    """
    Per-segment parameter uncertainty in interval-plot layout.

    Bayesian fits summarise their posterior draws; OLS fits use a normal
    approximation around the estimates with their standard errors.
    """
    frames = []
    for f in model.fits:
        if f.coef_draws is not None:
            frame = posterior_intervals(f.coef_draws, COEF_NAMES, prob_inner, prob_outer)
        else:
            bse = f.stats.get("Standard Errors")
            se = (
                [float(bse["const"]), float(bse["t_x"])]
                if bse is not None
                else [np.nan, np.nan]
            )
            frame = normal_intervals(
                [f.intercept, f.slope], se, COEF_NAMES, prob_inner, prob_outer
            )
        frame.insert(0, SEGMENT_COLUMN, f.segment)
        frames.append(frame)
    return pd.concat(frames, ignore_index=True)
