import numpy as np
import pytest

from mtcars_report.dataset import EmptyGroupError, load_dataset
from mtcars_report.main import (
    annotate_types,
    boxplot_summary,
    transmission_groups,
    welch_t_test,
)


def _annotated():
    return annotate_types(load_dataset())


def _keep_automatic(df, n):
    """Drop all but the first n automatic cars."""
    auto_idx = df.index[df["am"] == "Automatic"]
    return df.drop(index=auto_idx[n:])


def test_groups_follow_lookup_order():
    groups = transmission_groups(_annotated())
    assert list(groups) == ["Automatic", "Manual"]
    assert len(groups["Automatic"]) == 19
    assert len(groups["Manual"]) == 13


def test_groups_accept_raw_encoding():
    raw_groups = transmission_groups(load_dataset())
    ann_groups = transmission_groups(_annotated())
    for label in ("Automatic", "Manual"):
        assert raw_groups[label].tolist() == ann_groups[label].tolist()


def test_welch_t_test_matches_reference_values():
    result = welch_t_test(_annotated())

    assert result.group_a == "Manual"
    assert result.group_b == "Automatic"
    assert result.mean_a > result.mean_b
    assert result.mean_a == pytest.approx(24.392308, abs=1e-5)
    assert result.mean_b == pytest.approx(17.147368, abs=1e-5)
    assert result.mean_difference == pytest.approx(7.244939, abs=1e-5)
    assert result.t_statistic == pytest.approx(3.7671, abs=1e-3)
    assert result.df == pytest.approx(18.332, abs=1e-2)
    assert result.p_value == pytest.approx(0.0014, abs=1e-4)
    lo, hi = result.conf_int
    assert lo == pytest.approx(3.209684, abs=1e-3)
    assert hi == pytest.approx(11.280194, abs=1e-3)
    assert result.conf_level == pytest.approx(0.95)


def test_welch_degrees_of_freedom_below_pooled():
    # Welch df is fractional and never exceeds the pooled n_a + n_b - 2
    result = welch_t_test(_annotated())
    assert result.df < result.n_a + result.n_b - 2
    assert not float(result.df).is_integer()


def test_welch_alpha_controls_interval_width():
    narrow = welch_t_test(_annotated(), alpha=0.10)
    wide = welch_t_test(_annotated(), alpha=0.01)
    assert (narrow.conf_int[1] - narrow.conf_int[0]) < (wide.conf_int[1] - wide.conf_int[0])
    assert narrow.p_value == wide.p_value


def test_two_observations_per_group_still_computes():
    df = _keep_automatic(_annotated(), 2)
    result = welch_t_test(df)
    assert result.n_b == 2
    assert result.df >= 1
    assert np.isfinite(result.p_value)


@pytest.mark.parametrize("kept", [0, 1])
def test_too_small_group_raises(kept):
    df = _keep_automatic(_annotated(), kept)
    with pytest.raises(EmptyGroupError, match="Automatic"):
        welch_t_test(df)


def test_boxplot_summary_values():
    summary = boxplot_summary(_annotated())
    assert list(summary.index) == ["Automatic", "Manual"]

    auto = summary.loc["Automatic"]
    assert auto["n"] == 19
    assert auto["min"] == pytest.approx(10.4)
    assert auto["median"] == pytest.approx(17.3)
    assert auto["max"] == pytest.approx(24.4)

    manual = summary.loc["Manual"]
    assert manual["n"] == 13
    assert manual["min"] == pytest.approx(15.0)
    assert manual["median"] == pytest.approx(22.8)
    assert manual["max"] == pytest.approx(33.9)

    for _, row in summary.iterrows():
        assert row["whisker_low"] <= row["q1"] <= row["median"] <= row["q3"] <= row["whisker_high"]


def test_boxplot_summary_rejects_empty_group():
    df = _keep_automatic(_annotated(), 0)
    with pytest.raises(EmptyGroupError):
        boxplot_summary(df)
