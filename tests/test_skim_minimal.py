import numpy as np
import pandas as pd
import pytest

from segreg.summary import format_skim, skim, skim_minimal, spark_histogram


@pytest.fixture
def frame() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "gdp": [1000.0, 2000.0, np.nan, 8000.0],
            "life_exp": [50.0, 55.0, 60.0, 65.0],
            "country": ["Chad", "Peru", None, "Japan"],
        }
    )


def test_skim_reports_numeric_and_character_rows(frame):
    res = skim(frame)

    assert res["skim_variable"].tolist() == ["country", "gdp", "life_exp"]
    assert res["skim_type"].tolist() == ["character", "numeric", "numeric"]
    gdp = res.set_index("skim_variable").loc["gdp"]
    assert gdp["n_missing"] == 1
    assert gdp["complete_rate"] == pytest.approx(0.75)
    assert gdp["mean"] == pytest.approx(11000.0 / 3)
    assert gdp["p0"] == 1000.0 and gdp["p100"] == 8000.0
    assert {"p25", "p75"} <= set(res.columns)

    country = res.set_index("skim_variable").loc["country"]
    assert country["n_unique"] == 3
    assert country["min_length"] == 4
    assert country["max_length"] == 5


def test_skim_minimal_drops_quartiles(frame):
    res = skim_minimal(frame)
    assert "p25" not in res.columns
    assert "p75" not in res.columns
    for col in ["skim_type", "skim_variable", "n_missing", "complete_rate", "mean", "sd", "p0", "p50", "p100", "hist"]:
        assert col in res.columns


def test_skim_minimal_without_completeness(frame):
    res = skim_minimal(frame, "gdp", "life_exp", show_data_completeness=False)
    assert "n_missing" not in res.columns
    assert "complete_rate" not in res.columns
    assert res["skim_variable"].tolist() == ["gdp", "life_exp"]


def test_skim_unknown_column_raises(frame):
    with pytest.raises(KeyError):
        skim_minimal(frame, "nope")


def test_spark_histogram():
    hist = spark_histogram([1, 1, 1, 2])
    assert len(hist) == 8
    assert hist[0] == "▇"
    assert spark_histogram([np.nan]) == ""


def test_format_skim_renders_text(frame):
    text = format_skim(skim_minimal(frame, "life_exp"))
    assert "life_exp" in text
    assert "numeric" in text
    assert format_skim(pd.DataFrame()) == "(no columns)"
