from typing import Dict, List, Optional, Union

import numpy as np
import polars as pl
from scipy.spatial import cKDTree
from scipy.stats import shapiro, skew

from gam_functions import FittedGam, term_index, term_labels

# ---- Config ----
N_PERMUTATIONS = 200
RANK_TOL = 1e-8
CONCURVITY_MEASURES = ["worst", "observed", "estimate"]


def residuals(fit: FittedGam) -> np.ndarray:
    return fit.y - fit.gam.predict(fit.X)


def residual_summary(fit: FittedGam) -> Dict[str, float]:
    """moments and a normality test of the response residuals"""
    e = residuals(fit)
    # shapiro is only defined for 3 <= n <= 5000
    normality_p = float(shapiro(e[:5000]).pvalue) if len(e) >= 3 else float("nan")
    return {
        "n": len(e),
        "mean": float(np.mean(e)),
        "sd": float(np.std(e, ddof=1)),
        "skew": float(skew(e)),
        "normality_p_value": normality_p,
        "iterations": len(fit.gam.logs_["deviance"]),
    }


def _nearest_neighbours(Z: np.ndarray) -> np.ndarray:
    """index of the closest other row for every row of Z"""
    _, idx = cKDTree(Z).query(Z, k=2)
    own = np.arange(len(Z))
    # with duplicated rows the point itself is not always returned first
    return np.where(idx[:, 0] != own, idx[:, 0], idx[:, 1])


def _by_rows(fit: FittedGam, i: int) -> np.ndarray:
    """rows where term i is switched on, every row for a term without `by`"""
    by = getattr(fit.gam.terms[i], "by", None)
    if by is None:
        return np.ones(len(fit.y), dtype=bool)
    return fit.X[:, by] != 0


def _is_indicator(column: np.ndarray) -> bool:
    return bool(np.isin(column, [0.0, 1.0]).all())


def _neighbour_variance(e: np.ndarray, neighbours: np.ndarray) -> float:
    return float(np.mean((e - e[neighbours]) ** 2) / 2)


def k_index(
    fit: FittedGam,
    term: Union[int, str],
    n_permutations: int = N_PERMUTATIONS,
    seed: Optional[int] = None
) -> Dict[str, float]:
    """
    Basis dimension check for one smooth, the way mgcv's gam.check does it.

    Residuals of neighbouring points (in the term's covariates) should not be
    more alike than residuals in general. The k-index compares the two variances;
    clearly below 1, with a small permutation p-value, means there is pattern
    left in the residuals and the basis (n_splines) might be too small.
    A smooth with a `by` variable is only checked on the rows where it is
    switched on.
    """
    i = term_index(fit, term)
    features = np.atleast_1d(fit.gam.terms[i].feature)
    rows = _by_rows(fit, i)
    Z = fit.X[rows][:, features]
    sd = Z.std(axis=0)
    Z = (Z - Z.mean(axis=0)) / np.where(sd > 0, sd, 1.0)

    e = residuals(fit)[rows]
    neighbours = _nearest_neighbours(Z)
    total_variance = float(np.var(e))
    observed = _neighbour_variance(e, neighbours) / total_variance

    rng = np.random.default_rng(seed)
    permuted = np.array([
        _neighbour_variance(rng.permutation(e), neighbours) / total_variance
        for _ in range(n_permutations)
    ])
    return {
        "k_index": observed,
        "p_value": float(np.mean(permuted <= observed)),
    }


def check_gam(fit: FittedGam, n_permutations: int = N_PERMUTATIONS, seed: Optional[int] = None) -> Dict:
    """
    Python version of mgcv's gam.check().

    Returns:
        Dict with "basis" (one row per smooth: k', edf, k-index, p-value) and
        "residuals" (see residual_summary).
    """
    edof_per_coef = fit.gam.statistics_["edof_per_coef"]
    rows = []
    for i, label in enumerate(term_labels(fit)):
        if fit.term_specs[i]["kind"] not in {"s", "te"}:
            continue
        k_check = k_index(fit, i, n_permutations=n_permutations, seed=seed)
        rows.append({
            "term": label,
            "k'": int(fit.gam.terms[i].n_coefs),
            "edf": float(np.sum(edof_per_coef[fit.gam.terms.get_coef_indices(i)])),
            "k_index": k_check["k_index"],
            "p_value": k_check["p_value"],
        })
    basis = pl.DataFrame(rows) if rows else pl.DataFrame(
        schema={"term": pl.Utf8, "k'": pl.Int64, "edf": pl.Float64, "k_index": pl.Float64, "p_value": pl.Float64}
    )
    return {"basis": basis, "residuals": residual_summary(fit)}


def _orthonormal_basis(A: np.ndarray) -> np.ndarray:
    """orthonormal columns spanning the column space of A"""
    if A.shape[1] == 0:
        return A
    U, sv, _ = np.linalg.svd(A, full_matrices=False)
    if sv.max() == 0:
        return U[:, :0]
    return U[:, sv > RANK_TOL * sv.max()]


def _term_blocks(fit: FittedGam) -> List[np.ndarray]:
    """
    Centered model matrix columns per term. Centering takes out the constant
    that spline and factor bases share with the intercept. A smooth switched
    on by one factor level is centered within that level's rows, its level
    intercept belongs to the f() term.
    """
    M = fit.gam._modelmat(fit.X).toarray()
    blocks = []
    for i in range(len(fit.term_specs)):
        block = M[:, fit.gam.terms.get_coef_indices(i)]
        by = getattr(fit.gam.terms[i], "by", None)
        if by is not None and _is_indicator(fit.X[:, by]):
            rows = fit.X[:, by] != 0
            block = np.where(rows[:, None], block - block[rows].mean(axis=0), 0.0)
        else:
            block = block - block.mean(axis=0)
        blocks.append(block)
    return blocks


def _concurvity_measures(X_j: np.ndarray, coef_j: np.ndarray, X_other: np.ndarray) -> Dict[str, float]:
    Q_other = _orthonormal_basis(X_other)
    U_j = _orthonormal_basis(X_j)
    if Q_other.shape[1] == 0 or U_j.shape[1] == 0:
        return {m: 0.0 for m in CONCURVITY_MEASURES}

    # cosines of the principal angles between the two spaces
    cosines = np.linalg.svd(Q_other.T @ U_j, compute_uv=False)
    g = X_j @ coef_j
    g_norm = float(g @ g)
    observed = float(np.sum((Q_other.T @ g) ** 2) / g_norm) if g_norm > 0 else 0.0
    return {
        "worst": float(min(cosines.max() ** 2, 1.0)),
        "observed": min(observed, 1.0),
        "estimate": float(min(np.sum(cosines ** 2) / U_j.shape[1], 1.0)),
    }


def concurvity(fit: FittedGam, full: bool = True, measure: str = "worst") -> pl.DataFrame:
    """
    How well each term can be reproduced by the other terms (0 = not at all,
    1 = completely), the nonlinear version of collinearity.

    worst: the term's least favourable direction.
    observed: the fitted smooth itself.
    estimate: the average over the directions the term can take.

    Args:
        full: compare every term with all other terms together. When False a
            term x term matrix of the chosen measure is returned instead.
    """
    if measure not in CONCURVITY_MEASURES:
        raise ValueError(f"unknown concurvity measure '{measure}', use one of {CONCURVITY_MEASURES}")
    labels = term_labels(fit)
    blocks = _term_blocks(fit)
    coefs = [fit.gam.coef_[fit.gam.terms.get_coef_indices(i)] for i in range(len(labels))]

    if full:
        rows = []
        for j, label in enumerate(labels):
            others = [blocks[k] for k in range(len(labels)) if k != j]
            X_other = np.hstack(others) if others else np.empty((blocks[j].shape[0], 0))
            rows.append({"term": label, **_concurvity_measures(blocks[j], coefs[j], X_other)})
        return pl.DataFrame(rows)

    matrix = {"term": labels}
    for k, other_label in enumerate(labels):
        matrix[other_label] = [
            1.0 if j == k else _concurvity_measures(blocks[j], coefs[j], blocks[k])[measure]
            for j in range(len(labels))
        ]
    return pl.DataFrame(matrix)
