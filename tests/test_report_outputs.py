import json
from pathlib import Path

import pytest

from mtcars_report.dataset import load_dataset
from mtcars_report.main import (
    ReportParams,
    _orchestrate,
    annotate_types,
    fit_candidates,
    render_boxplot,
    render_diagnostics,
)


def _is_svg(path: Path) -> bool:
    head = path.read_text(encoding="utf-8")[:500]
    return "<svg" in head


def test_render_boxplot_writes_svg(tmp_path: Path):
    out = tmp_path / "box.svg"
    returned = render_boxplot(annotate_types(load_dataset()), str(out))
    assert returned == str(out)
    assert out.exists() and _is_svg(out)


def test_render_diagnostics_writes_svg(tmp_path: Path):
    modeling = fit_candidates(annotate_types(load_dataset()), ReportParams())
    out = tmp_path / "diag.svg"
    returned = render_diagnostics(modeling.candidates["best_subset_cp"], str(out))
    assert returned == str(out)
    assert out.exists() and _is_svg(out)


@pytest.fixture(scope="module")
def report_run(tmp_path_factory):
    out_dir = tmp_path_factory.mktemp("reports")
    return _orchestrate(ReportParams(output_dir=out_dir))


def test_orchestrate_writes_all_artifacts(report_run):
    assert report_run.run_dir.is_dir()
    assert report_run.report_path.exists()
    assert report_run.manifest_path.exists()
    assert len(report_run.artifact_paths) == 2
    for p in report_run.artifact_paths:
        assert Path(p).exists()
    names = sorted(Path(p).name.split("-")[0] for p in report_run.artifact_paths)
    assert names == ["boxplot", "diagnostics"]


def test_report_text_sections(report_run):
    text = report_run.report_path.read_text(encoding="utf-8")
    assert text == report_run.report_text
    for heading in (
        "Input data (head/tail):",
        "Fuel efficiency by transmission (boxplot summary):",
        "Welch two-sample t-test (mpg by transmission):",
        "Best subsets by size (am forced in):",
        "Stepwise AIC path (from the full model):",
        "Model Comparison (transmission coefficient)",
        "Selected model: mpg ~ wt + qsec + am",
        "OLS Regression Results",
        "Conclusions:",
    ):
        assert heading in text, heading


def test_manifest_records_selection(report_run):
    manifest = json.loads(report_run.manifest_path.read_text(encoding="utf-8"))
    assert manifest["version"] == "1"
    assert manifest["row_count"] == 32
    assert manifest["selected_model"]["name"] == "best_subset_cp"
    assert manifest["selected_model"]["formula"] == "mpg ~ wt + qsec + am"
    assert manifest["selected_model"]["transmission_pvalue"] < 0.05
    assert manifest["artifacts"]["plot_svgs"] == report_run.artifact_paths
    assert report_run.manifest_path.name == f"manifest-{manifest['canonical_hash_short']}.json"
    assert report_run.best_model == "best_subset_cp"
