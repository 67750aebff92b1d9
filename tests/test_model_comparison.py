import pytest

from mtcars_report.dataset import ModelSelectionError, load_dataset
from mtcars_report.main import (
    ModelStats,
    ReportParams,
    annotate_types,
    build_narrative,
    comparison_table,
    fit_candidates,
    format_comparison_table,
    select_best_model,
    welch_t_test,
)


@pytest.fixture(scope="module")
def compared():
    modeling = fit_candidates(annotate_types(load_dataset()), ReportParams())
    return modeling, modeling.comparison_candidates()


def test_select_prefers_highest_adj_r2_among_significant():
    stats = [
        ModelStats("a", adj_r_squared=0.80, transmission_pvalue=0.01),
        ModelStats("b", adj_r_squared=0.90, transmission_pvalue=0.20),
        ModelStats("c", adj_r_squared=0.85, transmission_pvalue=0.04),
    ]
    # 'b' fits best but its transmission coefficient is not significant
    assert select_best_model(stats) == 2


def test_select_ties_keep_earliest():
    stats = [
        ModelStats("a", adj_r_squared=0.85, transmission_pvalue=0.01),
        ModelStats("b", adj_r_squared=0.85, transmission_pvalue=0.001),
    ]
    assert select_best_model(stats) == 0


def test_select_threshold_is_strict():
    stats = [ModelStats("a", adj_r_squared=0.9, transmission_pvalue=0.05)]
    with pytest.raises(ModelSelectionError):
        select_best_model(stats, alpha=0.05)
    assert select_best_model(stats, alpha=0.10) == 0


def test_select_with_no_candidates_raises():
    with pytest.raises(ModelSelectionError):
        select_best_model([])


def test_comparison_table_columns_and_rounding(compared):
    _, candidates = compared
    table = comparison_table(candidates)
    assert list(table.columns) == ["model", "formula", "adj_r_squared", "transmission_pvalue"]
    assert len(table) == len(candidates)
    for col in ("adj_r_squared", "transmission_pvalue"):
        assert all(round(v, 4) == v for v in table[col])


def test_three_regressor_model_is_selected_and_unique(compared):
    _, candidates = compared
    best_idx = select_best_model(candidates)
    assert candidates[best_idx].formula == "mpg ~ wt + qsec + am"

    significant = [c for c in candidates if c.transmission_pvalue < 0.05]
    assert [c.name for c in significant] == ["best_subset_cp"]


def test_format_comparison_table_marks_selection(compared):
    _, candidates = compared
    table = comparison_table(candidates)
    text = format_comparison_table(table, select_best_model(candidates))
    assert "Model Comparison" in text
    assert "mpg ~ wt + qsec + am" in text
    assert text.rstrip().endswith("Selected model (by policy): Best subset (Cp/BIC)")


def test_narrative_reports_effect_and_fit(compared):
    modeling, candidates = compared
    best = candidates[select_best_model(candidates)]
    ttest = welch_t_test(annotate_types(load_dataset()))
    text = build_narrative(best, ttest, modeling.candidates["baseline"])
    assert "holding weight and quarter-mile time constant" in text
    assert "2.936 more mpg" in text
    assert "p = 0.0467" in text
    assert "p = 0.0014" in text
    assert "36.0%" in text
