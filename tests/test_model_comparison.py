import numpy as np
import pandas as pd
import pytest

from segreg.main import (
    build_model_comparison,
    compare_models,
    select_best_model,
)
from segreg.segmentation import fit_piecewise


def make_kinked_obs(seed: int = 0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    z = np.sort(rng.uniform(0.0, 6.0, size=80))
    y = np.where(z < 3.0, 1.0 + 1.5 * z, 5.5) + rng.normal(0.0, 0.1, size=z.size)
    return pd.DataFrame({"x": np.exp(z), "y": y})


def test_compare_models_ols_columns_and_selection():
    obs = make_kinked_obs()
    models = {
        "Unsegmented": fit_piecewise(obs, []),
        "Segmented (k=1)": fit_piecewise(obs, [np.exp(3.0)]),
    }
    table = compare_models(models)

    assert table["model"].tolist() == ["Unsegmented", "Segmented (k=1)"]
    assert table["n_params"].tolist() == [2, 5]
    assert table["segments"].tolist() == [1, 2]
    assert "waic" not in table.columns
    assert table.loc[1, "rss"] < table.loc[0, "rss"]
    assert select_best_model(table) == "Segmented (k=1)"


def test_compare_models_bayes_reports_waic():
    obs = make_kinked_obs(1)
    kwargs = dict(method="bayes", n_draws=300, random_seed=4)
    models = {
        "Unsegmented": fit_piecewise(obs, [], **kwargs),
        "Segmented (k=1)": fit_piecewise(obs, [np.exp(3.0)], **kwargs),
    }
    table = compare_models(models)

    assert {"waic", "p_waic"} <= set(table.columns)
    assert table.loc[1, "waic"] < table.loc[0, "waic"]
    assert select_best_model(table) == "Segmented (k=1)"


def test_selection_prefers_fewer_parameters_on_ties():
    table = pd.DataFrame(
        {
            "model": ["B", "A"],
            "n_params": [5, 2],
            "bic": [10.0, 10.0],
            "aic": [8.0, 8.0],
        }
    )
    assert select_best_model(table) == "A"


def test_selection_treats_missing_criteria_as_worst():
    table = pd.DataFrame(
        {
            "model": ["nan-bic", "ok"],
            "n_params": [2, 5],
            "bic": [np.nan, 50.0],
            "aic": [1.0, 40.0],
        }
    )
    assert select_best_model(table) == "ok"


def test_selection_on_empty_table_raises():
    with pytest.raises(ValueError):
        select_best_model(pd.DataFrame(columns=["model", "n_params", "bic", "aic"]))


def test_build_model_comparison_text():
    table = pd.DataFrame(
        {
            "model": ["Unsegmented", "Segmented (k=1)"],
            "segments": [1, 2],
            "n_params": [2, 5],
            "rss": [12.5, 0.75],
            "r_squared": [0.61, 0.98],
            "aic": [120.0, 30.5],
            "bic": [125.0, np.nan],
        }
    )
    best, text = build_model_comparison(table)
    lines = text.splitlines()

    assert best == "Unsegmented"
    assert lines[0] == "Model Comparison (unsegmented vs segmented)"
    header = lines[1]
    for title in ["Model", "Params", "BIC", "AIC", "RSS", "R²"]:
        assert title in header
    assert "WAIC" not in header
    assert set(lines[2]) == {"-"}
    assert lines[3].startswith("Unsegmented")
    assert "125.00" in lines[3]
    assert "0.6100" in lines[3]
    # Non-finite values render as a centered dash
    assert " - " in lines[4]
    assert "Selected model (by policy): Unsegmented" in text
