from typing import Dict, Sequence, Union

import polars as pl
from scipy.stats import f as f_distribution

from gam_functions import FittedGam, fit_gam, model_statistics

# ---- Config ----
LAMBDA_PATH = (1e-3, 1e-2, 0.1, 0.6, 10, 1e2, 1e3, 1e4)
LOWER_IS_BETTER = {"AIC", "AICc", "GCV", "UBRE", "rmse"}
HIGHER_IS_BETTER = {"r2", "explained_deviance"}


def compare_models(fits: Union[Sequence[FittedGam], Dict[str, FittedGam]]) -> pl.DataFrame:
    """
    Side by side fit statistics, best AIC first.

    Args:
        fits: fitted models, a dict gives them names, otherwise fit.name is used.
    """
    named = fits.items() if isinstance(fits, dict) else [(fit.name, fit) for fit in fits]
    rows = []
    for name, fit in named:
        stats = model_statistics(fit)
        rows.append({
            "model": name,
            "edf": stats["edf"],
            "AIC": stats["AIC"],
            "GCV": stats["GCV"],
            "r2": stats["r2"],
            "explained_deviance": stats["explained_deviance"],
            "rmse": stats["rmse"],
        })
    if not rows:
        raise ValueError("no models to compare")
    comparison = pl.DataFrame(rows).sort("AIC")
    return comparison.with_columns(
        (pl.col("AIC") - pl.col("AIC").min()).alias("delta_AIC")
    )


def best_by(comparison: pl.DataFrame, metric: str = "AIC") -> str:
    if metric in LOWER_IS_BETTER:
        return comparison.sort(metric)["model"][0]
    if metric in HIGHER_IS_BETTER:
        return comparison.sort(metric, descending=True)["model"][0]
    raise ValueError(f"don't know which direction is better for '{metric}'")


def anova_test(reduced: FittedGam, full: FittedGam) -> Dict[str, float]:
    """
    Approximate F-test for nested gaussian GAMs: does the extra flexibility of
    `full` reduce the deviance more than the edf it costs?

    Returns:
        Dict with deviance drop, edf difference, F statistic and p-value.
    """
    if reduced.response != full.response:
        raise ValueError(f"models explain different responses: {reduced.response} vs {full.response}")
    if len(reduced.y) != len(full.y):
        raise ValueError(f"models are fitted on different rows: {len(reduced.y)} vs {len(full.y)}")

    stats_reduced = model_statistics(reduced)
    stats_full = model_statistics(full)
    deviance_drop = stats_reduced["deviance"] - stats_full["deviance"]
    df_diff = stats_full["edf"] - stats_reduced["edf"]
    df_residual = stats_full["n"] - stats_full["edf"]
    if df_diff <= 0:
        # full is not more flexible than reduced, nothing to test
        return {"deviance_drop": deviance_drop, "df": df_diff, "F": float("nan"), "p_value": float("nan")}

    F = (deviance_drop / df_diff) / stats_full["scale"]
    p_value = float(f_distribution.sf(F, df_diff, df_residual))
    return {"deviance_drop": deviance_drop, "df": df_diff, "F": float(F), "p_value": p_value}


def linear_vs_smooth(df: pl.DataFrame, response: str, column: str, gridsearch: bool = False) -> Dict:
    """
    The first lesson of every GAM tutorial: fit y ~ x and y ~ s(x) and see
    which one the data prefers.
    """
    linear = fit_gam(df, f"{response} ~ l({column})", name="linear")
    smooth = fit_gam(df, f"{response} ~ s({column})", gridsearch=gridsearch, name="smooth")
    comparison = compare_models([linear, smooth])
    return {
        "linear": linear,
        "smooth": smooth,
        "comparison": comparison,
        "anova": anova_test(linear, smooth),
        "preferred": best_by(comparison, "AIC"),
    }


def lambda_path(df: pl.DataFrame, formula: str, lams: Sequence[float] = LAMBDA_PATH) -> pl.DataFrame:
    """refits the same formula with a fixed smoothing parameter per run"""
    rows = []
    for lam in lams:
        stats = model_statistics(fit_gam(df, formula, lam=lam))
        rows.append({
            "lam": float(lam),
            "edf": stats["edf"],
            "GCV": stats["GCV"],
            "AIC": stats["AIC"],
            "r2": stats["r2"],
        })
    return pl.DataFrame(rows)
