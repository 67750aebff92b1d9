import pandas as pd
import pytest

from mtcars_report.dataset import ModelSelectionError, load_dataset
from mtcars_report.main import (
    MODEL_ORDER,
    TRANSMISSION_COEF,
    ReportParams,
    annotate_types,
    fit_candidate,
    fit_candidates,
)
from mtcars_report.selection import DesignMatrix


@pytest.fixture(scope="module")
def modeling():
    return fit_candidates(annotate_types(load_dataset()), ReportParams())


def test_all_candidates_fitted_in_order(modeling):
    assert list(modeling.candidates) == MODEL_ORDER
    names = [c.name for c in modeling.comparison_candidates()]
    assert names == [n for n in MODEL_ORDER if n != "baseline"]


def test_every_candidate_carries_transmission_coefficient(modeling):
    for cand in modeling.candidates.values():
        assert cand.response == "mpg"
        assert cand.formula.startswith("mpg ~ ")
        assert "am" in cand.terms
        assert TRANSMISSION_COEF in cand.coefficients.index
        assert 0.0 <= cand.transmission_pvalue <= 1.0


def test_baseline_model(modeling):
    baseline = modeling.candidates["baseline"]
    assert baseline.formula == "mpg ~ am"
    assert baseline.r_squared == pytest.approx(0.36, abs=0.005)
    assert baseline.transmission_effect == pytest.approx(7.244939, abs=1e-5)
    # Intercept is the automatic-group mean
    assert baseline.coefficients.loc["const", "estimate"] == pytest.approx(17.147368, abs=1e-5)


def test_full_model_uses_every_regressor(modeling):
    full = modeling.candidates["full"]
    assert len(full.terms) == 10
    assert len(full.coefficients) == 17
    assert int(full.results.df_resid) == 15
    assert full.transmission_pvalue > 0.05


def test_three_regressor_model(modeling):
    cand = modeling.candidates["best_subset_cp"]
    assert cand.formula == "mpg ~ wt + qsec + am"
    assert cand.transmission_effect == pytest.approx(2.9358, abs=1e-3)
    assert cand.transmission_pvalue == pytest.approx(0.0467, abs=1e-3)
    assert cand.adj_r_squared == pytest.approx(0.8336, abs=1e-3)
    assert cand.r_squared == pytest.approx(0.8497, abs=1e-3)


def test_stepwise_candidate_matches_search(modeling):
    assert modeling.candidates["stepwise"].terms == modeling.stepwise.terms


def test_candidate_vectors_have_one_entry_per_observation(modeling):
    for cand in modeling.candidates.values():
        assert len(cand.residuals) == 32
        assert len(cand.fitted_values) == 32
        pd.testing.assert_series_equal(
            cand.fitted_values + cand.residuals,
            modeling.design.y,
            check_names=False,
        )


def test_manual_terms_must_include_transmission():
    params = ReportParams(manual_terms=("wt", "qsec"))
    with pytest.raises(ValueError, match="manual_terms"):
        fit_candidates(annotate_types(load_dataset()), params)


def test_candidate_without_transmission_has_no_pvalue():
    design = DesignMatrix.from_frame(annotate_types(load_dataset()))
    cand = fit_candidate(design, "weight_only", ["wt"])
    with pytest.raises(ModelSelectionError, match="am_Manual"):
        cand.transmission_pvalue


def test_refitting_is_bit_identical(modeling):
    again = fit_candidates(annotate_types(load_dataset()), ReportParams())
    for name, cand in modeling.candidates.items():
        pd.testing.assert_frame_equal(
            cand.coefficients, again.candidates[name].coefficients, check_exact=True
        )
