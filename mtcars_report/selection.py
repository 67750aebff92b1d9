"""
Model-space search over an explicit design-matrix abstraction.

Terms are the unit of selection: a continuous column contributes one design
column, a categorical column contributes one indicator column per non-reference
level, and both are added or removed as a whole. Two searches are provided:

- stepwise_aic(): greedy bidirectional search on AIC.
- best_subsets(): exhaustive enumeration scored by adjusted R², Mallows's Cp
  and BIC.

Both call fit_ols(), which refuses rank-deficient designs so that coefficient
lookups by name stay valid downstream.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm

try:
    from .dataset import RESPONSE, TRANSMISSION, RankDeficiencyError
except ImportError:
    from dataset import RESPONSE, TRANSMISSION, RankDeficiencyError

logger = logging.getLogger(__name__)

CONST = "const"

# Criterion keys used by SelectionResult; value is True when larger is better.
CRITERIA: Dict[str, bool] = {
    "adj_r2": True,
    "cp": False,
    "bic": False,
}


def dummy_column_name(term: str, level) -> str:
    """Indicator column name for one level of a categorical term, e.g. 'am_Manual'."""
    return f"{term}_{level}"


@dataclass(frozen=True)
class DesignMatrix:
    """
    Response vector plus one column block per regressor term.

    Attributes:
        y: response values indexed like the source table.
        terms: regressor terms in canonical (source column) order.
        blocks: term -> DataFrame of the design columns it contributes.
        response: response column name.
    """

    y: pd.Series
    terms: Tuple[str, ...]
    blocks: Dict[str, pd.DataFrame] = field(repr=False)
    response: str = RESPONSE

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        response: str = RESPONSE,
        terms: Optional[Sequence[str]] = None,
    ) -> "DesignMatrix":
        """
        Build blocks from a type-annotated table.

        Categorical columns are treatment coded against their first category.
        Every category gets a column, including levels with no observations,
        so an empty level surfaces later as a rank deficiency instead of being
        dropped silently.
        """
        if terms is None:
            terms = [c for c in df.columns if c != response]
        blocks: Dict[str, pd.DataFrame] = {}
        for term in terms:
            col = df[term]
            if isinstance(col.dtype, pd.CategoricalDtype):
                levels = list(col.cat.categories)
                block = pd.DataFrame(
                    {
                        dummy_column_name(term, level): (col == level).astype(float)
                        for level in levels[1:]
                    },
                    index=df.index,
                )
            else:
                block = pd.DataFrame({term: col.astype(float)}, index=df.index)
            blocks[term] = block
        y = df[response].astype(float)
        return cls(y=y, terms=tuple(terms), blocks=blocks, response=response)

    @property
    def n_obs(self) -> int:
        return int(len(self.y))

    def ordered(self, terms: Iterable[str]) -> Tuple[str, ...]:
        """Return terms in canonical order; unknown names raise KeyError."""
        wanted = set(terms)
        unknown = wanted - set(self.terms)
        if unknown:
            raise KeyError(f"Unknown regressor terms: {sorted(unknown)}")
        return tuple(t for t in self.terms if t in wanted)

    def columns_for(self, terms: Iterable[str]) -> pd.DataFrame:
        """Design block for the given terms with a leading intercept column named 'const'."""
        ordered = self.ordered(terms)
        parts = [pd.DataFrame({CONST: np.ones(self.n_obs)}, index=self.y.index)]
        parts.extend(self.blocks[t] for t in ordered)
        return pd.concat(parts, axis=1)

    def n_params(self, terms: Iterable[str]) -> int:
        """Parameter count (intercept included) of the model over these terms."""
        return 1 + sum(self.blocks[t].shape[1] for t in self.ordered(terms))


def format_formula(response: str, terms: Sequence[str]) -> str:
    rhs = " + ".join(terms) if terms else "1"
    return f"{response} ~ {rhs}"


def fit_ols(design: DesignMatrix, terms: Iterable[str]):
    """
    Fit OLS by QR decomposition on the design block for ``terms``.

    Raises:
        RankDeficiencyError: If the block is not full column rank.
    """
    X = design.columns_for(terms)
    rank = int(np.linalg.matrix_rank(X.to_numpy()))
    if rank < X.shape[1]:
        raise RankDeficiencyError(
            f"Design matrix for '{format_formula(design.response, design.ordered(terms))}' "
            f"has rank {rank} < {X.shape[1]} columns"
        )
    return sm.OLS(design.y, X).fit(method="qr")


# -------------------------
# Stepwise AIC
# -------------------------
@dataclass(frozen=True)
class StepRecord:
    """One accepted move of the stepwise search ('start', 'drop' or 'add')."""

    step: int
    action: str
    term: Optional[str]
    aic: float
    terms: Tuple[str, ...]


@dataclass
class StepwiseResult:
    terms: Tuple[str, ...]
    aic: float
    path: List[StepRecord] = field(default_factory=list)

    @property
    def n_steps(self) -> int:
        """Number of accepted moves, excluding the starting model."""
        return max(len(self.path) - 1, 0)


def stepwise_aic(
    design: DesignMatrix,
    start_terms: Optional[Sequence[str]] = None,
    keep: Sequence[str] = (TRANSMISSION,),
) -> StepwiseResult:
    """
    Bidirectional stepwise search on AIC starting from ``start_terms``.

    At every step each single-term removal (terms in ``keep`` are never
    removed) and each single-term addition from the design's full term set is
    scored. The lowest-AIC move is applied when it strictly improves on the
    current model; otherwise the search stops. Ties keep the first move
    scored, removals before additions, in canonical term order.

    AIC is statsmodels' -2 log L + 2k. For a fixed sample this differs from
    n log(RSS/n) + 2k only by a constant, so the path is the same either way.
    """
    current = design.ordered(design.terms if start_terms is None else start_terms)
    missing_keep = [t for t in keep if t not in current]
    if missing_keep:
        raise ValueError(f"Terms to keep are not in the starting model: {missing_keep}")

    current_aic = float(fit_ols(design, current).aic)
    path = [StepRecord(0, "start", None, current_aic, current)]
    logger.debug("stepwise start: %s AIC=%.4f", current, current_aic)

    while True:
        moves: List[Tuple[str, str, Tuple[str, ...]]] = []
        for term in current:
            if term in keep:
                continue
            moves.append(("drop", term, tuple(t for t in current if t != term)))
        for term in design.terms:
            if term not in current:
                moves.append(("add", term, design.ordered([*current, term])))
        if not moves:
            break

        best_aic = None
        best_move = None
        for action, term, candidate in moves:
            aic = float(fit_ols(design, candidate).aic)
            logger.debug("  %s %s -> AIC=%.4f", action, term, aic)
            if best_aic is None or aic < best_aic:
                best_aic = aic
                best_move = (action, term, candidate)

        if best_aic is None or not best_aic < current_aic:
            break

        action, term, candidate = best_move
        current = candidate
        current_aic = best_aic
        path.append(StepRecord(len(path), action, term, current_aic, current))
        logger.debug("stepwise %s %s: AIC=%.4f", action, term, current_aic)

    return StepwiseResult(terms=current, aic=current_aic, path=path)


# -------------------------
# Best subsets
# -------------------------
@dataclass
class SelectionResult:
    """
    Exhaustive subset search outcome.

    Attributes:
        scores: one row per evaluated subset with columns
            terms, size, n_params, sse, r_squared, adj_r2, cp, bic.
        best_by_size: criterion -> {size: row label in ``scores``}.
        optimal_size: criterion -> size at which that criterion's extremum occurs.
        sigma2_full: residual variance of the full model (Cp scale).
    """

    scores: pd.DataFrame
    best_by_size: Dict[str, Dict[int, int]]
    optimal_size: Dict[str, int]
    sigma2_full: float

    def best_terms(self, criterion: str, size: Optional[int] = None) -> Tuple[str, ...]:
        """Best subset for ``criterion`` at ``size`` (default: the criterion's optimal size)."""
        if criterion not in CRITERIA:
            raise KeyError(f"Unknown selection criterion: {criterion}")
        if size is None:
            size = self.optimal_size[criterion]
        label = self.best_by_size[criterion][size]
        return tuple(self.scores.loc[label, "terms"])

    def summary_table(self) -> pd.DataFrame:
        """Per-size table of the best subsets and their criterion values."""
        rows = []
        for size in sorted(self.best_by_size["adj_r2"]):
            row = {"size": size}
            for criterion in CRITERIA:
                label = self.best_by_size[criterion][size]
                row[f"{criterion}_terms"] = " + ".join(self.scores.loc[label, "terms"])
                row[criterion] = float(self.scores.loc[label, criterion])
            rows.append(row)
        return pd.DataFrame(rows)


def best_subsets(
    design: DesignMatrix,
    forced: Sequence[str] = (TRANSMISSION,),
    max_size: int = 10,
) -> SelectionResult:
    """
    Enumerate every term subset that contains ``forced`` and has at most
    ``max_size`` terms, scoring each fit.

    Mallows's Cp uses the full model's residual variance:
        Cp = SSE_p / sigma2_full - n + 2p
    with p the parameter count including the intercept.
    """
    forced = design.ordered(forced)
    if max_size < max(len(forced), 1):
        raise ValueError(
            f"max_size={max_size} is smaller than the number of forced terms ({len(forced)})"
        )
    free = [t for t in design.terms if t not in forced]
    n = design.n_obs

    full = fit_ols(design, design.terms)
    sigma2_full = float(full.ssr / full.df_resid)

    records = []
    for r in range(0, min(max_size - len(forced), len(free)) + 1):
        for combo in itertools.combinations(free, r):
            terms = design.ordered([*forced, *combo])
            if not terms:
                continue
            res = fit_ols(design, terms)
            p = design.n_params(terms)
            sse = float(res.ssr)
            records.append(
                {
                    "terms": terms,
                    "size": len(terms),
                    "n_params": p,
                    "sse": sse,
                    "r_squared": float(res.rsquared),
                    "adj_r2": float(res.rsquared_adj),
                    "cp": sse / sigma2_full - n + 2 * p,
                    "bic": float(res.bic),
                }
            )
    scores = pd.DataFrame(records)
    logger.debug("best_subsets evaluated %d subsets", len(scores))

    best_by_size: Dict[str, Dict[int, int]] = {}
    optimal_size: Dict[str, int] = {}
    for criterion, larger_is_better in CRITERIA.items():
        per_size: Dict[int, int] = {}
        for size, group in scores.groupby("size", sort=True):
            values = group[criterion]
            label = values.idxmax() if larger_is_better else values.idxmin()
            per_size[int(size)] = int(label)
        best_by_size[criterion] = per_size

        overall = scores.loc[list(per_size.values()), criterion]
        best_label = overall.idxmax() if larger_is_better else overall.idxmin()
        optimal_size[criterion] = int(scores.loc[best_label, "size"])

    return SelectionResult(
        scores=scores,
        best_by_size=best_by_size,
        optimal_size=optimal_size,
        sigma2_full=sigma2_full,
    )
