from pathlib import Path

import numpy as np

from segreg.main import (
    FitMethod,
    LoadParams,
    Transform,
    build_manifest_dict,
    build_run_identity,
    get_default_params,
)
from segreg.utils import (
    canonical_json_dumps,
    canonical_json_hash,
    sanitize_for_json,
    utc_timestamp_seconds,
)


def _effective_params():
    return {
        "load": {
            "source": "/test/path/data.csv",
            "x_column": "gdp",
            "y_column": "life_exp",
            "start_line": None,
            "end_line": None,
        },
        "fit": {
            "breakpoint_guesses": [1500.0, 12000.0],
            "transform": "LOG",
            "method": "OLS",
            "min_segment_size": 3,
        },
    }


def test_build_manifest_dict():
    """Test manifest generation for a segmented run."""
    abs_input_posix = "/test/path/data.csv"
    counts = {
        "total_input_rows": 100,
        "processed_row_count": 90,
        "excluded_row_count": 10,
        "dropped_missing": 7,
        "dropped_non_positive_x": 3,
    }
    effective_params = _effective_params()
    hashes = ("testhash", "fulltesthash")
    artifact_paths = {
        "segments_csv": "segments-testhash.csv",
        "plot_svg": "plot-testhash.svg",
    }

    manifest = build_manifest_dict(
        abs_input_posix,
        counts,
        effective_params,
        hashes,
        artifact_paths,
        breakpoints=[np.float64(1480.5), 11950.0],
    )

    assert manifest["version"] == "1"
    assert "timestamp_utc" in manifest
    assert manifest["absolute_input_path"] == abs_input_posix
    assert manifest["total_input_rows"] == 100
    assert manifest["processed_row_count"] == 90
    assert manifest["excluded_row_count"] == 10
    assert manifest["exclusion_reasons"] == "missing_x_or_y=7; non_positive_x=3"
    assert manifest["effective_parameters"] == effective_params
    assert manifest["canonical_hash"] == "fulltesthash"
    assert manifest["canonical_hash_short"] == "testhash"
    assert manifest["artifacts"] == artifact_paths
    assert manifest["breakpoints"] == [1480.5, 11950.0]
    assert all(type(b) is float for b in manifest["breakpoints"])


def test_manifest_timestamp_format():
    """Test that manifest timestamp is in correct format."""
    timestamp = utc_timestamp_seconds()
    # Should be ISO-8601 UTC timestamp with seconds precision and Z suffix
    assert timestamp.endswith("Z")
    assert "T" in timestamp
    # Should be parseable
    import datetime

    datetime.datetime.fromisoformat(timestamp[:-1])  # Remove Z for parsing


def test_canonical_hash_ignores_key_order():
    a = {"b": 1, "a": [1, 2, {"y": 1, "x": 2}]}
    b = {"a": [1, 2, {"x": 2, "y": 1}], "b": 1}
    assert canonical_json_dumps(a) == canonical_json_dumps(b)
    short, full = canonical_json_hash(a)
    assert len(full) == 64
    assert short == full[:8]
    assert canonical_json_hash(b) == (short, full)


def test_sanitize_for_json_handles_params_and_numpy():
    load = LoadParams(source=Path("data.csv"), x_column="x", y_column="y")
    out = sanitize_for_json(
        {
            "load": load,
            "method": FitMethod.BAYES,
            "values": np.array([1.0, np.nan, np.inf]),
            "count": np.int64(3),
        }
    )
    assert out["load"]["source"] == Path("data.csv").resolve().as_posix()
    assert out["load"]["header_map"] == {}
    assert out["method"] == "BAYES"
    assert out["values"] == [1.0, None, None]
    assert out["count"] == 3 and type(out["count"]) is int


def test_run_identity_changes_with_parameters(tmp_path: Path):
    load, fit, _ = get_default_params()
    load.source = tmp_path / "data.csv"
    fit.breakpoint_guesses = [10.0]

    abs_source, short1, full1, effective = build_run_identity(load, fit)
    assert abs_source == (tmp_path / "data.csv").resolve().as_posix()
    assert effective["fit"]["transform"] == Transform.LOG.name
    assert effective["fit"]["breakpoint_guesses"] == [10.0]

    # Same inputs hash identically
    assert build_run_identity(load, fit)[2] == full1

    fit.breakpoint_guesses = [20.0]
    _, short2, full2, _ = build_run_identity(load, fit)
    assert full2 != full1


def test_run_identity_keeps_urls_verbatim():
    load, fit, _ = get_default_params()
    load.source = "https://example.org/data.csv"
    abs_source, _, _, effective = build_run_identity(load, fit)
    assert abs_source == "https://example.org/data.csv"
    assert effective["load"]["source"] == "https://example.org/data.csv"
