import numpy as np
import pandas as pd
import pytest

from segreg.segmentation import (
    ExtrapolationError,
    InsufficientDataError,
    coef_uncertainty_intervals,
    fit_piecewise,
)


@pytest.fixture
def two_regime_obs() -> pd.DataFrame:
    return pd.DataFrame(
        {"x": [1.0, 2.0, 3.0, 10.0, 20.0, 30.0], "y": [1.0, 2.0, 3.0, 5.0, 10.0, 15.0]}
    )


@pytest.fixture
def noisy_obs() -> pd.DataFrame:
    rng = np.random.default_rng(42)
    z = np.sort(rng.uniform(0.0, 6.0, size=90))
    y = np.where(z < 3.0, 1.0 + 1.2 * z, 4.6 + 0.2 * (z - 3.0)) + rng.normal(0, 0.1, z.size)
    return pd.DataFrame({"x": np.exp(z), "y": y})


def test_two_regime_fit_matches_each_line(two_regime_obs):
    model = fit_piecewise(two_regime_obs, [5.0], method="ols", transform="identity")

    assert model.n_segments == 2
    assert model.fits[0].slope == pytest.approx(1.0)
    assert model.fits[1].slope == pytest.approx(0.5)
    assert model.fits[0].intercept == pytest.approx(0.0, abs=1e-9)
    assert model.fits[1].intercept == pytest.approx(0.0, abs=1e-9)
    for f in model.fits:
        assert f.r_squared == pytest.approx(1.0)
    assert model.r_squared() == pytest.approx(1.0)
    assert model.total_rss == pytest.approx(0.0, abs=1e-12)
    assert model.n_params == 5


def test_predict_switches_segment_at_breakpoint(two_regime_obs):
    model = fit_piecewise(two_regime_obs, [5.0], transform="identity")
    pred = model.predict([2.0, 4.999, 5.0, 25.0])

    assert pred["segment"].tolist() == [0, 0, 1, 1]
    assert pred["y_hat"].tolist() == pytest.approx([2.0, 4.999, 2.5, 12.5])
    assert not pred["extrapolated"].any()


def test_predict_outside_training_range_raises(two_regime_obs):
    model = fit_piecewise(two_regime_obs, [5.0], transform="identity")
    with pytest.raises(ExtrapolationError):
        model.predict([0.5])
    with pytest.raises(ExtrapolationError):
        model.predict([31.0])


def test_predict_non_strict_flags_extrapolation(two_regime_obs):
    model = fit_piecewise(two_regime_obs, [5.0], transform="identity")
    pred = model.predict([0.5, 2.0, 40.0], strict=False)

    assert pred["extrapolated"].tolist() == [True, False, True]
    assert pred["segment"].tolist() == [-1, 0, -1]
    assert np.isnan(pred.loc[0, "y_hat"])
    assert pred.loc[1, "y_hat"] == pytest.approx(2.0)


def test_observations_carry_segment_labels(two_regime_obs):
    model = fit_piecewise(two_regime_obs, [5.0], transform="identity")
    assert model.observations["segment"].tolist() == [0, 0, 0, 1, 1, 1]


def test_diagnostics_table(noisy_obs):
    model = fit_piecewise(noisy_obs, [np.exp(3.0)], method="ols", transform="log")
    diag = model.diagnostics()

    assert len(diag) == 2
    for col in ["segment", "n_obs", "intercept", "slope", "r_squared", "mean_abs_residual", "y_sd"]:
        assert col in diag.columns
    assert diag["n_obs"].sum() == len(noisy_obs)
    assert diag["slope"].iloc[0] == pytest.approx(1.2, abs=0.1)
    assert diag["slope"].iloc[1] == pytest.approx(0.2, abs=0.1)
    assert diag["r_squared"].between(0.0, 1.0).all()


def test_bayes_diagnostics_include_r_squared_interval(noisy_obs):
    model = fit_piecewise(
        noisy_obs, [np.exp(3.0)], method="bayes", n_draws=300, random_seed=9
    )
    diag = model.diagnostics()
    assert {"r_squared_low", "r_squared_high"} <= set(diag.columns)
    assert (diag["r_squared_low"] <= diag["r_squared_high"]).all()

    ic = model.information_criteria()
    assert {"aic", "bic", "waic", "p_waic", "waic_se"} <= set(ic)
    assert np.isfinite(ic["waic"])


def test_plot_coordinates_stay_within_each_segment(noisy_obs):
    model = fit_piecewise(noisy_obs, [np.exp(3.0)], transform="log")
    coords = model.plot_coordinates(n_points=25, interval=0.9)

    assert list(coords.columns) == ["segment", "x", "y_hat", "lower", "upper"]
    for f in model.fits:
        part = coords.loc[coords["segment"] == f.segment]
        assert len(part) == 25
        assert part["x"].iloc[0] == f.x_min
        assert part["x"].iloc[-1] == f.x_max
        np.testing.assert_allclose(part["y_hat"], f.predict(part["x"].to_numpy()))
        assert (part["lower"] <= part["upper"]).all()


def test_plot_coordinates_rejects_tiny_grid(two_regime_obs):
    model = fit_piecewise(two_regime_obs, [5.0], transform="identity")
    with pytest.raises(ValueError):
        model.plot_coordinates(n_points=1)


def test_empty_segment_raises(two_regime_obs):
    with pytest.raises(InsufficientDataError):
        fit_piecewise(two_regime_obs, [4.0, 5.0], transform="identity")


def test_segmented_model_beats_unsegmented_on_ic(noisy_obs):
    seg = fit_piecewise(noisy_obs, [np.exp(3.0)])
    flat = fit_piecewise(noisy_obs, [])
    assert seg.information_criteria()["bic"] < flat.information_criteria()["bic"]
    assert seg.r_squared() > flat.r_squared()


def test_coef_uncertainty_intervals_layout(noisy_obs):
    model = fit_piecewise(noisy_obs, [np.exp(3.0)])
    iv = coef_uncertainty_intervals(model)

    assert len(iv) == 4
    assert iv["parameter"].tolist() == ["intercept", "slope", "intercept", "slope"]
    assert iv["segment"].tolist() == [0, 0, 1, 1]
    assert (iv["outer_low"] <= iv["inner_low"]).all()
    assert (iv["inner_low"] <= iv["median"]).all()
    assert (iv["median"] <= iv["inner_high"]).all()
    assert (iv["inner_high"] <= iv["outer_high"]).all()


def test_predict_at_training_points_reproduces_each_segment_fit(noisy_obs):
    model = fit_piecewise(noisy_obs, [np.exp(2.0), np.exp(4.0)])
    obs = model.observations

    for f in model.fits:
        seg_x = obs.loc[obs["segment"] == f.segment, "x"].to_numpy()
        pred = model.predict(seg_x)
        assert (pred["segment"] == f.segment).all()
        np.testing.assert_allclose(pred["y_hat"].to_numpy(), f.fitted, rtol=1e-10, atol=1e-12)


def test_single_row_segment_raises(two_regime_obs):
    with pytest.raises(InsufficientDataError):
        fit_piecewise(two_regime_obs, [25.0], transform="identity")


def test_rows_with_missing_values_are_dropped(caplog):
    obs = pd.DataFrame(
        {
            "x": [1.0, 2.0, 3.0, np.nan, 10.0, 20.0, 30.0, 40.0],
            "y": [1.0, 2.0, 3.0, 4.0, 5.0, 10.0, 15.0, np.nan],
        }
    )
    with caplog.at_level("WARNING"):
        model = fit_piecewise(obs, [5.0], transform="identity")

    assert "dropping 2 row(s)" in caplog.text
    assert model.n_obs == 6
    assert model.observations["x"].tolist() == [1.0, 2.0, 3.0, 10.0, 20.0, 30.0]
    assert model.x_max == 30.0
    assert model.fits[0].slope == pytest.approx(1.0)
    assert model.fits[1].slope == pytest.approx(0.5)


def test_non_positive_x_dropped_under_log():
    obs = pd.DataFrame({"x": [0.0, 1.0, np.e, np.e**2], "y": [9.0, 0.0, 1.0, 2.0]})
    model = fit_piecewise(obs, [])
    assert model.n_obs == 3
    assert model.fits[0].slope == pytest.approx(1.0)


def test_no_usable_rows_raises():
    obs = pd.DataFrame({"x": [np.nan, np.nan], "y": [1.0, 2.0]})
    with pytest.raises(InsufficientDataError):
        fit_piecewise(obs, [])
