from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import polars as pl
from pygam import LinearGAM
from sklearn.metrics import mean_squared_error, r2_score

from formula_functions import build_terms, design_matrix, parse_formula, term_label

# ---- Config ----
LAM_GRID = np.logspace(-3, 3, 11)
GRID_POINTS = 100
CI_WIDTH = 0.95

SIGNIFICANCE_CODES = [
    (0.001, "***"),
    (0.01, "**"),
    (0.05, "*"),
    (0.1, "."),
]


@dataclass
class FittedGam:
    """
    A fitted pyGAM model together with everything needed to interpret it:
    the formula, the column behind every feature index and the factor codes.
    """
    gam: LinearGAM
    formula: str
    response: str
    term_specs: List[Dict[str, Any]]
    feature_columns: List[str]
    factor_levels: Dict[str, List[str]]
    data: pl.DataFrame
    X: np.ndarray = field(repr=False)
    y: np.ndarray = field(repr=False)
    name: str = ""


def fit_gam(
    df: pl.DataFrame,
    formula: str,
    lam: Optional[float] = None,
    gridsearch: bool = False,
    lam_grid: Optional[np.ndarray] = None,
    name: Optional[str] = None,
) -> FittedGam:
    """
    Fits a gaussian GAM (pyGAM LinearGAM) described by an R style formula.

    Args:
        df: data, rows with nulls in the used columns are dropped.
        formula: e.g. "accel ~ s(times)".
        lam: smoothing parameter for every term without its own lam option.
        gridsearch: select the smoothing parameters by GCV over lam_grid.
        lam_grid: candidate smoothing parameters, LAM_GRID when None.
        name: label used in comparisons, defaults to the formula.
    """
    dm = design_matrix(df, formula)
    term_specs = dm.term_specs
    if lam is not None:
        term_specs = [
            {**spec, "options": {"lam": lam, **spec["options"]}}
            for spec in term_specs
        ]
    gam = LinearGAM(build_terms(term_specs, dm.feature_columns))
    if gridsearch:
        gam.gridsearch(
            dm.X, dm.y,
            lam=LAM_GRID if lam_grid is None else lam_grid,
            objective="GCV",
            progress=False,
        )
    else:
        gam.fit(dm.X, dm.y)

    response, _ = parse_formula(formula)
    return FittedGam(
        gam=gam,
        formula=formula,
        response=response,
        term_specs=term_specs,
        feature_columns=dm.feature_columns,
        factor_levels=dm.factor_levels,
        data=dm.data,
        X=dm.X,
        y=dm.y,
        name=name or formula,
    )


def term_labels(fit: FittedGam) -> List[str]:
    return [term_label(spec) for spec in fit.term_specs]


def term_index(fit: FittedGam, term: Union[int, str]) -> int:
    labels = term_labels(fit)
    if isinstance(term, str):
        if term not in labels:
            raise KeyError(f"no term '{term}' in {labels}")
        return labels.index(term)
    if not 0 <= term < len(labels):
        raise IndexError(f"term index {term} out of range for {labels}")
    return term


def _significance(p_value: float) -> str:
    for cutoff, code in SIGNIFICANCE_CODES:
        if p_value < cutoff:
            return code
    return ""


def _lam_text(term) -> str:
    return ", ".join(f"{v:.3g}" for v in np.ravel(np.asarray(term.lam, dtype=float)))


def term_summary(fit: FittedGam) -> pl.DataFrame:
    """edf, basis size, smoothing parameter and p-value per term (intercept left out)"""
    gam = fit.gam
    edof_per_coef = gam.statistics_["edof_per_coef"]
    p_values = gam.statistics_["p_values"]
    rows = []
    for i, label in enumerate(term_labels(fit)):
        term = gam.terms[i]
        coef_idxs = gam.terms.get_coef_indices(i)
        rows.append({
            "term": label,
            "edf": float(np.sum(edof_per_coef[coef_idxs])),
            "n_coefs": int(term.n_coefs),
            "lam": _lam_text(term),
            "p_value": float(p_values[i]),
            "significance": _significance(float(p_values[i])),
        })
    return pl.DataFrame(rows)


def model_statistics(fit: FittedGam) -> Dict[str, float]:
    stats = fit.gam.statistics_
    y_pred = fit.gam.predict(fit.X)
    return {
        "n": int(stats["n_samples"]),
        "edf": float(stats["edof"]),
        "AIC": float(stats["AIC"]),
        "AICc": float(stats["AICc"]),
        "GCV": float(stats["GCV"]) if stats.get("GCV") is not None else float("nan"),
        "UBRE": float(stats["UBRE"]) if stats.get("UBRE") is not None else float("nan"),
        "scale": float(stats["scale"]),
        "deviance": float(stats["deviance"]),
        "loglikelihood": float(stats["loglikelihood"]),
        "explained_deviance": float(stats["pseudo_r2"]["explained_deviance"]),
        "r2": float(r2_score(fit.y, y_pred)),
        "rmse": float(np.sqrt(mean_squared_error(fit.y, y_pred))),
    }


def term_grid(fit: FittedGam, i: int, n: int, meshgrid: bool = False):
    """grid over a term's features with its by variable switched on"""
    term = fit.gam.terms[i]
    if fit.term_specs[i]["kind"] == "f":
        # one point per factor level
        XX = np.zeros((term.n_coefs, fit.X.shape[1]))
        XX[:, term.feature] = np.arange(term.n_coefs)
        return XX
    XX = fit.gam.generate_X_grid(term=i, n=n, meshgrid=meshgrid)
    by = getattr(term, "by", None)
    if by is not None and not meshgrid:
        XX[:, by] = 1.0
    return XX


def smooth_effect(fit: FittedGam, term: Union[int, str], n: int = GRID_POINTS, width: float = CI_WIDTH) -> pl.DataFrame:
    """
    Partial dependence of a one dimensional term with its confidence band.

    Returns:
        Frame with columns x, effect, lower, upper.
    """
    i = term_index(fit, term)
    gam_term = fit.gam.terms[i]
    if gam_term.istensor:
        raise ValueError(f"{term_labels(fit)[i]} is a tensor term, use plot_te_surface")
    XX = term_grid(fit, i, n)
    effect, confi = fit.gam.partial_dependence(term=i, X=XX, width=width)
    return pl.DataFrame({
        "x": XX[:, gam_term.feature],
        "effect": effect,
        "lower": confi[:, 0],
        "upper": confi[:, 1],
    })


def basis_functions(fit: FittedGam, term: Union[int, str], n: int = GRID_POINTS) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    The basis functions behind a one dimensional smooth.

    Returns:
        Tuple of (x grid, basis matrix (n x n_coefs), basis scaled by the fitted
        coefficients). The rows of the scaled basis sum to the smooth.
    """
    i = term_index(fit, term)
    gam_term = fit.gam.terms[i]
    if gam_term.istensor:
        raise ValueError(f"{term_labels(fit)[i]} is a tensor term")
    XX = term_grid(fit, i, n)
    B = fit.gam._modelmat(XX, term=i).toarray()
    coefs = fit.gam.coef_[fit.gam.terms.get_coef_indices(i)]
    return XX[:, gam_term.feature], B, B * coefs[None, :]


def coefficients(fit: FittedGam) -> pl.DataFrame:
    labels = term_labels(fit) + ["intercept"]
    rows = []
    for i, label in enumerate(labels):
        for j, coef_idx in enumerate(fit.gam.terms.get_coef_indices(i)):
            rows.append({"term": label, "basis": j, "coef": float(fit.gam.coef_[coef_idx])})
    return pl.DataFrame(rows)


def predict(fit: FittedGam, df: pl.DataFrame) -> np.ndarray:
    """predictions for new rows, factor columns are coded like in the fitted data"""
    dm = design_matrix(df, fit.formula, factor_levels=fit.factor_levels, require_response=False)
    if dm.feature_columns != fit.feature_columns:
        raise ValueError(f"new data gives features {dm.feature_columns}, model has {fit.feature_columns}")
    return fit.gam.predict(dm.X)
