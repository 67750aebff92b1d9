#!/usr/bin/env python3
"""
Transmission vs. fuel efficiency report - pipeline of pure functional units.

Stages:
- load_dataset()       (dataset.py) raw 32 x 11 numeric table
- annotate_types()     categorical re-typing, 0/1 -> Automatic/Manual
- boxplot_summary() / welch_t_test()  descriptive summaries
- fit_candidates()     baseline, full, stepwise, best-subset and manual OLS fits
- comparison_table() / select_best_model() / render_*() / assemble_text_report()

Each function takes explicit inputs and returns explicit outputs. Data flows
strictly forward; no stage mutates another stage's output in place.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

# Select a non-interactive Matplotlib backend before pyplot is imported so the
# report renders in headless environments.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import statsmodels.api as sm
from matplotlib import cbook
from scipy import stats
from statsmodels.nonparametric.smoothers_lowess import lowess

# Support both package and script execution modes
try:
    # When run as a package: python -m mtcars_report.main
    from .dataset import (
        COLUMN_DESCRIPTIONS,
        DEFAULT_DATASET_PATH,
        RESPONSE,
        TRANSMISSION,
        AnalysisError,
        DataLoadError,
        EmptyGroupError,
        ModelSelectionError,
        load_dataset,
    )
    from .selection import (
        DesignMatrix,
        SelectionResult,
        StepwiseResult,
        best_subsets,
        dummy_column_name,
        fit_ols,
        format_formula,
        stepwise_aic,
    )
    from .utils import (
        build_effective_parameters,
        canonical_json_hash,
        normalize_abs_posix,
        sanitize_for_json,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )
except ImportError:
    # When run directly: python mtcars_report/main.py
    from dataset import (
        COLUMN_DESCRIPTIONS,
        DEFAULT_DATASET_PATH,
        RESPONSE,
        TRANSMISSION,
        AnalysisError,
        DataLoadError,
        EmptyGroupError,
        ModelSelectionError,
        load_dataset,
    )
    from selection import (
        DesignMatrix,
        SelectionResult,
        StepwiseResult,
        best_subsets,
        dummy_column_name,
        fit_ols,
        format_formula,
        stepwise_aic,
    )
    from utils import (
        build_effective_parameters,
        canonical_json_hash,
        normalize_abs_posix,
        sanitize_for_json,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )

# Configure logging for debugging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Fixed lookup for the transmission indicator. Order matters: the first label is
# the reference level, so the fitted coefficient is always named 'am_Manual'.
TRANSMISSION_LABELS: Dict[int, str] = {0: "Automatic", 1: "Manual"}
TRANSMISSION_CODES: Dict[str, int] = {v: k for k, v in TRANSMISSION_LABELS.items()}
TRANSMISSION_COEF = dummy_column_name(TRANSMISSION, TRANSMISSION_LABELS[1])

CATEGORICAL_COLUMNS = ("cyl", "vs", "am", "gear", "carb")

# Lower-case names used in the narrative.
TERM_LABELS = {
    "cyl": "cylinder count",
    "disp": "displacement",
    "hp": "horsepower",
    "drat": "rear axle ratio",
    "wt": "weight",
    "qsec": "quarter-mile time",
    "vs": "engine shape",
    "am": "transmission type",
    "gear": "gear count",
    "carb": "carburetor count",
}

BASELINE = "baseline"
MODEL_ORDER = [
    BASELINE,
    "full",
    "stepwise",
    "best_subset_adjr2",
    "best_subset_cp",
    "manual",
]

model_label_map = {
    "baseline": "Baseline (transmission only)",
    "full": "Full (all regressors)",
    "stepwise": "Stepwise AIC",
    "best_subset_adjr2": "Best subset (adj. R²)",
    "best_subset_cp": "Best subset (Cp/BIC)",
    "manual": "Manual choice",
}


@dataclass
class ReportParams:
    """
    Tunables for one report run.

    Attributes:
        alpha: significance level for the t-test confidence interval and for the
            transmission-coefficient threshold in model selection.
        best_subset_max_size: largest subset (in terms, transmission included)
            enumerated by the best-subset search.
        manual_terms: regressor terms of the hand-picked candidate; must include 'am'.
        output_dir: base directory; each run writes into output_dir/<timestamp>/.
        dataset_path: alternate CSV with the same schema, or None for the bundled copy.
    """

    alpha: float = 0.05
    best_subset_max_size: int = 10
    manual_terms: Tuple[str, ...] = ("am", "wt", "hp", "cyl", "gear")
    output_dir: Path = Path("output")
    dataset_path: Optional[Path] = None


@dataclass(frozen=True)
class TwoSampleTestResult:
    """Welch (unequal-variance) two-sample t-test of efficiency, group_a minus group_b."""

    group_a: str
    group_b: str
    n_a: int
    n_b: int
    mean_a: float
    mean_b: float
    mean_difference: float
    conf_int: Tuple[float, float]
    conf_level: float
    t_statistic: float
    df: float
    p_value: float


@dataclass(frozen=True, eq=False)
class CandidateModel:
    """
    A fitted linear regression of efficiency on an ordered set of regressor terms.

    Wraps the statsmodels results object; every statistic is read from it so the
    record stays immutable after fitting.
    """

    name: str
    terms: Tuple[str, ...]
    results: Any = field(repr=False)
    response: str = RESPONSE

    @property
    def label(self) -> str:
        return model_label_map.get(self.name, self.name)

    @property
    def formula(self) -> str:
        return format_formula(self.response, self.terms)

    @property
    def coefficients(self) -> pd.DataFrame:
        res = self.results
        return pd.DataFrame(
            {
                "estimate": res.params,
                "std_error": res.bse,
                "t_value": res.tvalues,
                "p_value": res.pvalues,
            }
        )

    @property
    def r_squared(self) -> float:
        return float(self.results.rsquared)

    @property
    def adj_r_squared(self) -> float:
        return float(self.results.rsquared_adj)

    @property
    def f_statistic(self) -> float:
        return float(self.results.fvalue)

    @property
    def f_pvalue(self) -> float:
        return float(self.results.f_pvalue)

    @property
    def aic(self) -> float:
        return float(self.results.aic)

    @property
    def bic(self) -> float:
        return float(self.results.bic)

    @property
    def residuals(self) -> pd.Series:
        return self.results.resid

    @property
    def fitted_values(self) -> pd.Series:
        return self.results.fittedvalues

    @property
    def transmission_effect(self) -> float:
        return float(self._transmission_row()["estimate"])

    @property
    def transmission_pvalue(self) -> float:
        return float(self._transmission_row()["p_value"])

    def _transmission_row(self) -> pd.Series:
        coefs = self.coefficients
        if TRANSMISSION_COEF not in coefs.index:
            raise ModelSelectionError(
                f"Candidate '{self.name}' ({self.formula}) has no '{TRANSMISSION_COEF}' coefficient"
            )
        return coefs.loc[TRANSMISSION_COEF]


class ModelStats(NamedTuple):
    """Minimal per-candidate inputs of the selection rule."""

    name: str
    adj_r_squared: float
    transmission_pvalue: float


@dataclass
class ModelingOutputs:
    design: DesignMatrix
    candidates: Dict[str, CandidateModel]
    stepwise: StepwiseResult
    selection: SelectionResult

    def comparison_candidates(self) -> List[CandidateModel]:
        """All fitted candidates except the baseline, in MODEL_ORDER."""
        return [
            self.candidates[name]
            for name in MODEL_ORDER
            if name != BASELINE and name in self.candidates
        ]


@dataclass
class ReportOutputs:
    run_dir: Path
    report_path: Path
    manifest_path: Path
    artifact_paths: List[str]
    best_model: str
    report_text: str


# -------------------------
# Type annotation
# -------------------------
def annotate_types(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Return a copy of the raw table with cyl, vs, am, gear and carb recast as
    categoricals.

    Transmission codes go through TRANSMISSION_LABELS (0 -> Automatic,
    1 -> Manual); the category order comes from the lookup, never from the data.
    The other categoricals use their sorted observed integer levels. The raw
    table is left untouched.

    Raises:
        DataLoadError: On a missing column, a transmission code outside the
            lookup, or a non-integral categorical value.
    """
    missing = [c for c in CATEGORICAL_COLUMNS if c not in raw.columns]
    if missing:
        raise DataLoadError(f"Cannot annotate types; missing columns: {missing}")

    df = raw.copy()
    for col in CATEGORICAL_COLUMNS:
        values = pd.to_numeric(raw[col], errors="coerce")
        if values.isna().any() or not np.all(np.equal(np.mod(values, 1), 0)):
            raise DataLoadError(f"Column '{col}' has non-integral values")
        codes = values.astype(int)

        if col == TRANSMISSION:
            unknown = sorted(set(codes.unique().tolist()) - set(TRANSMISSION_LABELS))
            if unknown:
                raise DataLoadError(
                    f"Unknown transmission codes {unknown}; expected {sorted(TRANSMISSION_LABELS)}"
                )
            df[col] = pd.Categorical(
                codes.map(TRANSMISSION_LABELS),
                categories=list(TRANSMISSION_LABELS.values()),
            )
        else:
            df[col] = pd.Categorical(codes, categories=sorted(codes.unique().tolist()))
    return df


def restore_numeric_encoding(annotated: pd.DataFrame) -> pd.DataFrame:
    """Inverse of annotate_types(): categoricals back to float codes."""
    df = annotated.copy()
    for col in CATEGORICAL_COLUMNS:
        if col not in df.columns:
            continue
        if col == TRANSMISSION:
            df[col] = annotated[col].astype(object).map(TRANSMISSION_CODES).astype(float)
        else:
            df[col] = annotated[col].astype(float)
    return df


# -------------------------
# Descriptive summaries
# -------------------------
def transmission_groups(df: pd.DataFrame) -> Dict[str, pd.Series]:
    """
    Efficiency values per transmission label, in lookup order.

    Accepts either the annotated table or the raw 0/1 encoding.
    """
    am = df[TRANSMISSION]
    if not isinstance(am.dtype, pd.CategoricalDtype):
        am = am.astype(int).map(TRANSMISSION_LABELS)
    return {
        label: df.loc[(am == label).to_numpy(), RESPONSE].astype(float)
        for label in TRANSMISSION_LABELS.values()
    }


def boxplot_summary(df: pd.DataFrame, whis: float = 1.5) -> pd.DataFrame:
    """
    Five-number summary plus Tukey whiskers and outliers per transmission group.

    Raises:
        EmptyGroupError: If a group has no observations.
    """
    rows = []
    for label, values in transmission_groups(df).items():
        if values.empty:
            raise EmptyGroupError(f"Transmission group '{label}' has no observations")
        st = cbook.boxplot_stats(values.to_numpy(), whis=whis)[0]
        rows.append(
            {
                "transmission": label,
                "n": int(len(values)),
                "min": float(values.min()),
                "q1": float(st["q1"]),
                "median": float(st["med"]),
                "q3": float(st["q3"]),
                "max": float(values.max()),
                "whisker_low": float(st["whislo"]),
                "whisker_high": float(st["whishi"]),
                "outliers": [float(x) for x in st["fliers"]],
            }
        )
    return pd.DataFrame(rows).set_index("transmission")


def welch_t_test(df: pd.DataFrame, alpha: float = 0.05) -> TwoSampleTestResult:
    """
    Unpaired unequal-variance t-test of efficiency, Manual minus Automatic.

    Degrees of freedom follow Welch-Satterthwaite:
        df = (s_a²/n_a + s_b²/n_b)² / ((s_a²/n_a)²/(n_a-1) + (s_b²/n_b)²/(n_b-1))
    and the (1 - alpha) interval is diff ± t_{1-alpha/2, df} * SE.

    Raises:
        EmptyGroupError: If either group has fewer than two observations.
    """
    groups = transmission_groups(df)
    for label, values in groups.items():
        if len(values) < 2:
            raise EmptyGroupError(
                f"Transmission group '{label}' has {len(values)} observation(s); "
                "at least 2 are required"
            )

    label_a, label_b = TRANSMISSION_LABELS[1], TRANSMISSION_LABELS[0]
    a = groups[label_a].to_numpy()
    b = groups[label_b].to_numpy()
    n_a, n_b = len(a), len(b)

    res = stats.ttest_ind(a, b, equal_var=False)

    va = a.var(ddof=1) / n_a
    vb = b.var(ddof=1) / n_b
    dof = (va + vb) ** 2 / (va**2 / (n_a - 1) + vb**2 / (n_b - 1))
    se = np.sqrt(va + vb)
    diff = float(a.mean() - b.mean())
    q = stats.t.ppf(1.0 - alpha / 2.0, dof)

    return TwoSampleTestResult(
        group_a=label_a,
        group_b=label_b,
        n_a=n_a,
        n_b=n_b,
        mean_a=float(a.mean()),
        mean_b=float(b.mean()),
        mean_difference=diff,
        conf_int=(float(diff - q * se), float(diff + q * se)),
        conf_level=1.0 - alpha,
        t_statistic=float(res.statistic),
        df=float(dof),
        p_value=float(res.pvalue),
    )


# -------------------------
# Model fitting
# -------------------------
def fit_candidate(
    design: DesignMatrix, name: str, terms: Sequence[str]
) -> CandidateModel:
    """Fit one named candidate. Raises RankDeficiencyError on a singular design."""
    ordered = design.ordered(terms)
    results = fit_ols(design, ordered)
    return CandidateModel(name=name, terms=ordered, results=results, response=design.response)


def fit_candidates(annotated: pd.DataFrame, params: ReportParams) -> ModelingOutputs:
    """
    Fit every candidate model on the annotated table.

    Candidates, in MODEL_ORDER:
      - baseline:           mpg ~ am
      - full:               mpg ~ all ten regressors
      - stepwise:           bidirectional AIC search from the full model, am kept
      - best_subset_adjr2:  best subset at the adjusted-R²-optimal size
      - best_subset_cp:     best subset at the Cp-optimal size
      - manual:             params.manual_terms

    The transmission term is forced into every search so that each candidate
    carries the 'am_Manual' coefficient the comparison keys off.
    """
    if TRANSMISSION not in params.manual_terms:
        raise ValueError(
            f"manual_terms must include '{TRANSMISSION}'; got {list(params.manual_terms)}"
        )

    design = DesignMatrix.from_frame(annotated)
    candidates: Dict[str, CandidateModel] = {}

    candidates[BASELINE] = fit_candidate(design, BASELINE, (TRANSMISSION,))
    candidates["full"] = fit_candidate(design, "full", design.terms)

    stepwise = stepwise_aic(design, design.terms, keep=(TRANSMISSION,))
    candidates["stepwise"] = fit_candidate(design, "stepwise", stepwise.terms)

    selection = best_subsets(
        design, forced=(TRANSMISSION,), max_size=params.best_subset_max_size
    )
    if selection.optimal_size["cp"] != selection.optimal_size["bic"]:
        logger.warning(
            "Cp-optimal size (%d) and BIC-optimal size (%d) disagree; using Cp",
            selection.optimal_size["cp"],
            selection.optimal_size["bic"],
        )
    candidates["best_subset_adjr2"] = fit_candidate(
        design, "best_subset_adjr2", selection.best_terms("adj_r2")
    )
    candidates["best_subset_cp"] = fit_candidate(
        design, "best_subset_cp", selection.best_terms("cp")
    )
    candidates["manual"] = fit_candidate(design, "manual", params.manual_terms)

    logger.info(
        "Fitted %d candidate models (stepwise took %d step(s); %d subsets evaluated)",
        len(candidates),
        stepwise.n_steps,
        len(selection.scores),
    )
    return ModelingOutputs(
        design=design,
        candidates=candidates,
        stepwise=stepwise,
        selection=selection,
    )


# -------------------------
# Comparison and selection
# -------------------------
def comparison_table(candidates: Sequence[CandidateModel]) -> pd.DataFrame:
    """Formula, adjusted R² and transmission p-value per candidate, rounded to 4 dp."""
    return pd.DataFrame(
        [
            {
                "model": c.name,
                "formula": c.formula,
                "adj_r_squared": round(c.adj_r_squared, 4),
                "transmission_pvalue": round(c.transmission_pvalue, 4),
            }
            for c in candidates
        ]
    )


def select_best_model(candidates: Sequence[Any], alpha: float = 0.05) -> int:
    """
    Return the index of the selected candidate.

    Rule: the candidate's transmission p-value is below ``alpha`` and no other
    candidate that also passes has a strictly higher adjusted R². The earliest
    candidate wins ties. Items need ``adj_r_squared`` and
    ``transmission_pvalue`` attributes (ModelStats or CandidateModel).

    Raises:
        ModelSelectionError: If no candidate passes the threshold.
    """
    best: Optional[int] = None
    for idx, cand in enumerate(candidates):
        if not cand.transmission_pvalue < alpha:
            continue
        if best is None or cand.adj_r_squared > candidates[best].adj_r_squared:
            best = idx
    if best is None:
        raise ModelSelectionError(
            f"No candidate has a transmission coefficient p-value below {alpha}"
        )
    return best


def format_comparison_table(table: pd.DataFrame, best_idx: int) -> str:
    """
    Fixed-width rendering of comparison_table() output.

    Formatting:
      - Headers: [Model, Formula, Adj R², p(am)]
      - Adj R² and p(am) right-aligned with 4 decimals
      - Missing/non-finite rendered as "-" centered in the field
    """

    def _fmt_fixed(x: Optional[float], width: int, decimals: int) -> str:
        if x is None or not np.isfinite(x):
            return "-".center(width)
        return f"{float(x):.{decimals}f}".rjust(width)

    headers = ("Model", "Formula", "Adj R²", "p(am)")
    width_adj, width_p = 8, 8
    labels = [model_label_map.get(m, m) for m in table["model"]]
    col0 = max([len(headers[0]), *(len(s) for s in labels)])
    col1 = max([len(headers[1]), *(len(s) for s in table["formula"])])

    header_line = (
        f"{headers[0]:<{col0}}  {headers[1]:<{col1}}  "
        f"{headers[2]:>{width_adj}}  {headers[3]:>{width_p}}"
    )
    lines = ["Model Comparison (transmission coefficient)", header_line]
    lines.append("-" * len(header_line))
    for label, (_, row) in zip(labels, table.iterrows()):
        lines.append(
            f"{label:<{col0}}  {row['formula']:<{col1}}  "
            f"{_fmt_fixed(row['adj_r_squared'], width_adj, 4)}  "
            f"{_fmt_fixed(row['transmission_pvalue'], width_p, 4)}"
        )
    lines.append("")
    lines.append(f"Selected model (by policy): {labels[best_idx]}")
    return "\n".join(lines)


# -------------------------
# Rendering
# -------------------------
def render_boxplot(df: pd.DataFrame, output_svg: str = "boxplot.svg") -> str:
    """Box-and-whisker plot of efficiency by transmission type. Returns the output path."""
    groups = transmission_groups(df)

    plt.style.use("dark_background")
    fig, ax = plt.subplots(figsize=(8, 6))
    bp = ax.boxplot(
        [values.to_numpy() for values in groups.values()],
        patch_artist=True,
        widths=0.5,
        medianprops={"color": "#FFD60A", "linewidth": 2.0},  # bright yellow
        flierprops={"marker": "o", "markerfacecolor": "#FF3B30", "alpha": 0.9},
    )
    for patch, color in zip(bp["boxes"], ("#00B3FF", "#00FFA2")):  # azure, neon mint
        patch.set_facecolor(color)
        patch.set_alpha(0.55)

    ax.set_xticks(range(1, len(groups) + 1), labels=list(groups))
    ax.set_xlabel(COLUMN_DESCRIPTIONS[TRANSMISSION])
    ax.set_ylabel(COLUMN_DESCRIPTIONS[RESPONSE])
    ax.set_title("Fuel efficiency by transmission type")

    fig.savefig(output_svg, format="svg")
    plt.close(fig)
    return output_svg


def _label_extremes(ax, x, y, names, key=None, k: int = 3) -> None:
    """Annotate by name the k points with the largest |key| (default: |y|)."""
    key = y if key is None else key
    order = np.argsort(-np.abs(np.asarray(key)))[:k]
    for i in order:
        ax.annotate(str(names[i]), (x[i], y[i]), fontsize=8, xytext=(4, 2), textcoords="offset points")


def render_diagnostics(candidate: CandidateModel, output_svg: str = "diagnostics.svg") -> str:
    """
    2x2 residual diagnostics grid for a fitted candidate:
      - Residuals vs fitted (with lowess smoother)
      - Normal Q-Q of standardized residuals
      - Scale-location: sqrt(|standardized residuals|) vs fitted
      - Standardized residuals vs leverage with Cook's distance contours (0.5, 1)
    """
    res = candidate.results
    influence = res.get_influence()
    std_resid = np.asarray(influence.resid_studentized_internal)
    leverage = np.asarray(influence.hat_matrix_diag)
    cooks = np.asarray(influence.cooks_distance[0])
    fitted = np.asarray(res.fittedvalues)
    resid = np.asarray(res.resid)
    names = list(res.fittedvalues.index)
    n_params = int(res.df_model) + 1

    plt.style.use("dark_background")
    fig, axes = plt.subplots(2, 2, figsize=(12, 10))
    point_kw = {"s": 20, "color": "#00FFFF", "edgecolors": "#003A3A", "linewidths": 0.3}
    smooth_kw = {"color": "#FF2DFF", "linewidth": 1.8}

    ax = axes[0, 0]
    ax.scatter(fitted, resid, **point_kw)
    smooth = lowess(resid, fitted)
    ax.plot(smooth[:, 0], smooth[:, 1], **smooth_kw)
    ax.axhline(0.0, color="grey", linestyle=":", linewidth=1.0)
    _label_extremes(ax, fitted, resid, names)
    ax.set_title("Residuals vs Fitted")
    ax.set_xlabel("Fitted values")
    ax.set_ylabel("Residuals")

    ax = axes[0, 1]
    sm.qqplot(std_resid, line="45", ax=ax)
    ax.set_title("Normal Q-Q")
    ax.set_ylabel("Standardized residuals")

    ax = axes[1, 0]
    root_abs = np.sqrt(np.abs(std_resid))
    ax.scatter(fitted, root_abs, **point_kw)
    smooth = lowess(root_abs, fitted)
    ax.plot(smooth[:, 0], smooth[:, 1], **smooth_kw)
    ax.set_title("Scale-Location")
    ax.set_xlabel("Fitted values")
    ax.set_ylabel("sqrt(|standardized residuals|)")

    ax = axes[1, 1]
    ax.scatter(leverage, std_resid, **point_kw)
    ax.axhline(0.0, color="grey", linestyle=":", linewidth=1.0)
    h = np.linspace(max(leverage.min() * 0.9, 1e-3), min(leverage.max() * 1.1, 0.999), 100)
    for level in (0.5, 1.0):
        bound = np.sqrt(level * n_params * (1 - h) / h)
        ax.plot(h, bound, linestyle="--", color="#FF3B30", linewidth=1)
        ax.plot(h, -bound, linestyle="--", color="#FF3B30", linewidth=1)
        ax.annotate(f"Cook's D {level}", xy=(h[-1], bound[-1]), fontsize=8, ha="right")
    _label_extremes(ax, leverage, std_resid, names, key=cooks)
    y_lim = float(np.max(np.abs(std_resid))) * 1.4
    ax.set_ylim(-y_lim, y_lim)
    ax.set_title("Residuals vs Leverage")
    ax.set_xlabel("Leverage")
    ax.set_ylabel("Standardized residuals")

    fig.suptitle(candidate.formula)
    fig.tight_layout()
    fig.savefig(output_svg, format="svg")
    plt.close(fig)
    return output_svg


# -------------------------
# Report text
# -------------------------
def build_narrative(
    best: CandidateModel, ttest: TwoSampleTestResult, baseline: CandidateModel
) -> str:
    """Plain-language conclusions about the transmission effect."""
    lo, hi = ttest.conf_int
    parts = [
        f"{ttest.group_a} cars average {ttest.mean_a:.2f} mpg against "
        f"{ttest.mean_b:.2f} mpg for {ttest.group_b.lower()} cars, a difference of "
        f"{ttest.mean_difference:.2f} mpg ({ttest.conf_level:.0%} CI {lo:.2f} to {hi:.2f}; "
        f"Welch t = {ttest.t_statistic:.3f}, df = {ttest.df:.2f}, p = {ttest.p_value:.4f}).",
        f"Transmission type alone explains {baseline.r_squared:.1%} of the variance in mpg.",
    ]

    effect = best.transmission_effect
    direction = "more" if effect >= 0 else "fewer"
    held = [TERM_LABELS.get(t, t) for t in best.terms if t != TRANSMISSION]
    held_clause = f"holding {' and '.join(held)} constant, " if held else ""
    parts.append(
        f"In the selected model ({best.formula}), {held_clause}a manual transmission "
        f"yields {abs(effect):.3f} {direction} mpg than an automatic "
        f"(p = {best.transmission_pvalue:.4f})."
    )
    parts.append(
        f"The model explains {best.r_squared:.1%} of the variance "
        f"(adjusted R² {best.adj_r_squared:.4f}; F = {best.f_statistic:.2f}, "
        f"p = {best.f_pvalue:.3g})."
    )
    return "\n".join(parts)


def assemble_text_report(
    raw: pd.DataFrame,
    box_summary: pd.DataFrame,
    ttest: TwoSampleTestResult,
    modeling: ModelingOutputs,
    table_text: str,
    best: CandidateModel,
    narrative: str,
) -> str:
    """
    Create the readable report: data preview, descriptive statistics, model
    search output, comparison table, the selected model's full regression
    summary and the conclusions.
    """
    parts: list[str] = ["\n"]

    def _fmt_head_tail(df: pd.DataFrame, n: int = 5) -> str:
        """
        Render head and tail with original headers.
        If rows <= 2n, show only head to avoid duplication.
        """
        if df.empty:
            return "(no rows)"
        head_txt = df.head(n).to_string()
        if len(df) <= 2 * n:
            return head_txt
        return f"{head_txt}\n...\n{df.tail(n).to_string(header=False)}"

    parts.append(f"Input data (head/tail):\n{_fmt_head_tail(raw)}")
    parts.append("\n")

    parts.append("Fuel efficiency by transmission (boxplot summary):")
    parts.append(box_summary.to_string(float_format=lambda v: f"{v:.2f}"))
    parts.append("\n")

    lo, hi = ttest.conf_int
    parts.append("Welch two-sample t-test (mpg by transmission):")
    parts.append(
        f"  t = {ttest.t_statistic:.4f}, df = {ttest.df:.3f}, p-value = {ttest.p_value:.6f}"
    )
    parts.append(
        f"  {ttest.conf_level:.0%} confidence interval ({ttest.group_a} - {ttest.group_b}): "
        f"{lo:.4f} to {hi:.4f}"
    )
    parts.append(
        f"  mean in group {ttest.group_a} = {ttest.mean_a:.4f} (n={ttest.n_a}), "
        f"mean in group {ttest.group_b} = {ttest.mean_b:.4f} (n={ttest.n_b})"
    )
    parts.append("\n")

    sel = modeling.selection
    parts.append(f"Best subsets by size ({TRANSMISSION} forced in):")
    with pd.option_context("display.max_colwidth", None, "display.width", 200):
        parts.append(sel.summary_table().to_string(index=False, float_format=lambda v: f"{v:.4f}"))
    parts.append(
        "Optimal size: "
        + ", ".join(f"{crit}={size}" for crit, size in sel.optimal_size.items())
    )
    parts.append("\n")

    parts.append("Stepwise AIC path (from the full model):")
    for rec in modeling.stepwise.path:
        move = "start" if rec.term is None else f"{rec.action} {rec.term}"
        parts.append(f"  ({rec.step}) {move:<14} AIC={rec.aic:.3f}  {' + '.join(rec.terms)}")
    parts.append("\n")

    parts.append(table_text)
    parts.append("\n")

    parts.append(f"Selected model: {best.formula}")
    parts.append(str(best.results.summary()))
    parts.append("\n")

    parts.append("Conclusions:")
    parts.append(narrative)

    return "\n".join(parts)


# -------------------------
# Run identity and manifest
# -------------------------
def build_run_identity(params: ReportParams) -> tuple[str, str, str, dict]:
    """
    Returns (abs_input_posix, short_hash, full_hash, effective_params)
    """
    abs_input_posix = normalize_abs_posix(params.dataset_path or DEFAULT_DATASET_PATH)
    effective_params = build_effective_parameters(params)
    canonical_payload = {
        "absolute_input_path": abs_input_posix,
        "effective_parameters": effective_params,
    }
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return abs_input_posix, short_hash, full_hash, effective_params


def build_manifest_dict(
    abs_input_posix: str,
    row_count: int,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: list[str],
    best_model: CandidateModel,
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_path": abs_input_posix,
        "row_count": int(row_count),
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "selected_model": {
            "name": best_model.name,
            "formula": best_model.formula,
            "adj_r_squared": best_model.adj_r_squared,
            "transmission_pvalue": best_model.transmission_pvalue,
        },
        "artifacts": {"plot_svgs": artifact_paths},
    }


def get_default_params() -> ReportParams:
    """Policy-level defaults for a report run."""
    return ReportParams(
        alpha=0.05,
        best_subset_max_size=10,
        manual_terms=("am", "wt", "hp", "cyl", "gear"),
        output_dir=Path("output"),
        dataset_path=None,
    )


def _orchestrate(params: ReportParams) -> ReportOutputs:
    """
    Orchestrate the full pipeline given an explicit parameter object.
    Split from main() so the CLI can remain thin and tests can call this directly.
    """
    global_run_timestamp = datetime.now().strftime("%Y%m%dT%H%M%S")
    run_output_dir = Path(params.output_dir) / global_run_timestamp
    run_output_dir.mkdir(parents=True, exist_ok=True)

    abs_input_posix, short_hash, full_hash, effective_params = build_run_identity(params)

    raw = load_dataset(params.dataset_path)
    annotated = annotate_types(raw)

    box_summary = boxplot_summary(annotated)
    ttest = welch_t_test(annotated, alpha=params.alpha)
    logger.info(
        "Welch t-test: diff=%.4f t=%.4f df=%.3f p=%.6f",
        ttest.mean_difference,
        ttest.t_statistic,
        ttest.df,
        ttest.p_value,
    )

    modeling = fit_candidates(annotated, params)
    compared = modeling.comparison_candidates()
    table = comparison_table(compared)
    best_idx = select_best_model(compared, alpha=params.alpha)
    best = compared[best_idx]
    logger.info("Selected model: %s (%s)", best.name, best.formula)

    artifact_paths = [
        render_boxplot(annotated, str(run_output_dir / f"boxplot-{short_hash}.svg")),
        render_diagnostics(best, str(run_output_dir / f"diagnostics-{short_hash}.svg")),
    ]

    table_text = format_comparison_table(table, best_idx)
    narrative = build_narrative(best, ttest, modeling.candidates[BASELINE])
    report = assemble_text_report(
        raw, box_summary, ttest, modeling, table_text, best, narrative
    )
    report_path = write_text_report(report, run_output_dir, short_hash)

    manifest = build_manifest_dict(
        abs_input_posix=abs_input_posix,
        row_count=len(raw),
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths=artifact_paths,
        best_model=best,
    )
    manifest_path = run_output_dir / f"manifest-{short_hash}.json"
    write_manifest(str(manifest_path), manifest)
    logger.info("Wrote report artifacts to %s", str(run_output_dir))

    print(report)

    return ReportOutputs(
        run_dir=run_output_dir,
        report_path=report_path,
        manifest_path=manifest_path,
        artifact_paths=artifact_paths,
        best_model=best.name,
        report_text=report,
    )


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="mtcars-report",
        description="Transmission vs. fuel efficiency report (load -> annotate -> summarize -> model -> report).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    defaults = get_default_params()
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=defaults.output_dir,
        help="Base directory for run outputs; each run writes into a timestamped subdirectory.",
    )
    parser.add_argument(
        "--dataset",
        type=Path,
        default=None,
        help="Alternate CSV with the bundled dataset's schema (defaults to the bundled copy).",
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also MTCARS_REPORT_DEBUG=1).",
    )
    return parser


def _args_to_params(args) -> ReportParams:
    params = get_default_params()
    params.output_dir = Path(args.output_dir)
    params.dataset_path = Path(args.dataset) if args.dataset else None
    return params


def main(argv: Optional[List[str]] = None) -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import sys

    parser = _build_cli_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    if args.print_defaults:
        import json

        print(json.dumps(sanitize_for_json(get_default_params()), indent=2))
        return

    debug_mode = bool(args.debug or os.getenv("MTCARS_REPORT_DEBUG", "") == "1")
    if debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)

    params = _args_to_params(args)
    try:
        _orchestrate(params)
    except (AnalysisError, FileNotFoundError, ValueError) as e:
        # Concise, user-facing errors for data and fitting failures.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set MTCARS_REPORT_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
