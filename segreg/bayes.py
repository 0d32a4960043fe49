"""
Posterior helpers for the Bayesian segment fitter.

Everything here works on plain numpy draw matrices so the fitter and the
model-comparison code can share it without importing each other:
- sample_linear_posterior(): Gaussian posterior draws for a BayesianRidge fit
- bayes_r2():                per-draw explained/total variance ratio
- pointwise_log_likelihood(): Gaussian log density of y under each draw
- waic():                    widely applicable information criterion
- posterior_intervals():     median + inner/outer central intervals per parameter
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import logsumexp

logger = logging.getLogger(__name__)


def sample_linear_posterior(
    coef_mean: np.ndarray,
    coef_cov: np.ndarray,
    noise_precision: float,
    n_obs: int,
    n_draws: int,
    random_seed: Optional[int] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Draw (coefficients, noise scale) pairs from the approximate posterior of a
    Bayesian linear model.

    Coefficients come from N(coef_mean, coef_cov). The noise precision is drawn
    from a Gamma with shape n_obs/2 whose mean is the evidence-maximising
    precision, then converted to a standard deviation.

    Returns:
        (coef_draws, sigma_draws) with shapes (n_draws, n_coef) and (n_draws,)
    """
    if n_draws < 1:
        raise ValueError(f"n_draws must be a positive integer, got: {n_draws}")
    rng = np.random.default_rng(random_seed)

    coef_mean = np.asarray(coef_mean, dtype=float)
    coef_cov = np.asarray(coef_cov, dtype=float)
    # Symmetrize to absorb round-off from the posterior covariance inversion
    coef_cov = 0.5 * (coef_cov + coef_cov.T)
    coef_draws = rng.multivariate_normal(
        coef_mean, coef_cov, size=n_draws, check_valid="ignore", method="eigh"
    )

    shape = max(n_obs, 1) / 2.0
    precision_draws = rng.gamma(shape, scale=noise_precision / shape, size=n_draws)
    with np.errstate(divide="ignore"):
        sigma_draws = 1.0 / np.sqrt(precision_draws)
    return coef_draws, sigma_draws


def bayes_r2(fit_draws: np.ndarray, y: np.ndarray) -> np.ndarray:
    """
    Bayesian R² per posterior draw (residual-based definition):

        R²_s = var(fit_s) / (var(fit_s) + var(y - fit_s))

    Draws where both variances vanish (a perfectly fitted constant outcome)
    are reported as 1.0. Values are always in [0, 1].
    """
    fit_draws = np.atleast_2d(np.asarray(fit_draws, dtype=float))
    y = np.asarray(y, dtype=float)
    var_fit = np.var(fit_draws, axis=1)
    var_res = np.var(y[None, :] - fit_draws, axis=1)
    denom = var_fit + var_res
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.where(denom > 0, var_fit / denom, 1.0)
    return np.clip(ratio, 0.0, 1.0)


def pointwise_log_likelihood(
    fit_draws: np.ndarray, sigma_draws: np.ndarray, y: np.ndarray
) -> np.ndarray:
    """Gaussian log density of each observation under each draw, shape (n_draws, n_obs)."""
    fit_draws = np.atleast_2d(np.asarray(fit_draws, dtype=float))
    sigma = np.asarray(sigma_draws, dtype=float)[:, None]
    return stats.norm.logpdf(np.asarray(y, dtype=float)[None, :], loc=fit_draws, scale=sigma)


def waic(log_lik: np.ndarray) -> dict[str, float]:
    """
    Widely applicable information criterion from a (n_draws, n_obs) matrix of
    pointwise log-likelihood draws.

    Returns a dict with:
      - elpd_waic: lppd - p_waic
      - p_waic:    effective number of parameters (sum of per-point variances)
      - waic:      -2 * elpd_waic (lower is better)
      - se:        standard error of waic across observations
    """
    log_lik = np.atleast_2d(np.asarray(log_lik, dtype=float))
    n_draws, n_obs = log_lik.shape
    if n_draws < 2 or n_obs == 0:
        raise ValueError(
            f"WAIC needs at least 2 draws and 1 observation, got shape {log_lik.shape}"
        )

    lppd_i = logsumexp(log_lik, axis=0) - np.log(n_draws)
    p_waic_i = np.var(log_lik, axis=0, ddof=1)
    elpd_i = lppd_i - p_waic_i
    waic_i = -2.0 * elpd_i

    p_waic = float(np.sum(p_waic_i))
    if np.any(p_waic_i > 0.4):
        logger.debug(
            "WAIC: %d point(s) with p_waic > 0.4; estimate may be unreliable",
            int(np.sum(p_waic_i > 0.4)),
        )
    return {
        "elpd_waic": float(np.sum(elpd_i)),
        "p_waic": p_waic,
        "waic": float(np.sum(waic_i)),
        "se": float(np.sqrt(n_obs * np.var(waic_i))),
    }


def posterior_intervals(
    draws: np.ndarray,
    names: Sequence[str],
    prob_inner: float = 0.5,
    prob_outer: float = 0.9,
) -> pd.DataFrame:
    """
    Summarise parameter draws as median plus inner/outer central intervals,
    the same layout an interval plot consumes.

    Columns: parameter, median, inner_low, inner_high, outer_low, outer_high
    """
    if not (0.0 < prob_inner < prob_outer < 1.0):
        raise ValueError(
            f"Expected 0 < prob_inner < prob_outer < 1, got {prob_inner}, {prob_outer}"
        )
    draws = np.atleast_2d(np.asarray(draws, dtype=float))
    if draws.shape[1] != len(names):
        raise ValueError(
            f"Got {draws.shape[1]} parameter columns but {len(names)} names"
        )

    def _q(p: float) -> np.ndarray:
        return np.quantile(draws, p, axis=0)

    return pd.DataFrame(
        {
            "parameter": list(names),
            "median": _q(0.5),
            "inner_low": _q(0.5 - prob_inner / 2),
            "inner_high": _q(0.5 + prob_inner / 2),
            "outer_low": _q(0.5 - prob_outer / 2),
            "outer_high": _q(0.5 + prob_outer / 2),
        }
    )


def normal_intervals(
    estimates: Sequence[float],
    std_errors: Sequence[float],
    names: Sequence[str],
    prob_inner: float = 0.5,
    prob_outer: float = 0.9,
) -> pd.DataFrame:
    """Same layout as posterior_intervals() from point estimates and standard errors."""
    est = np.asarray(estimates, dtype=float)
    se = np.asarray(std_errors, dtype=float)
    z_in = stats.norm.ppf(0.5 + prob_inner / 2)
    z_out = stats.norm.ppf(0.5 + prob_outer / 2)
    return pd.DataFrame(
        {
            "parameter": list(names),
            "median": est,
            "inner_low": est - z_in * se,
            "inner_high": est + z_in * se,
            "outer_low": est - z_out * se,
            "outer_high": est + z_out * se,
        }
    )
