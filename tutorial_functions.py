from dataclasses import dataclass, field
from pathlib import Path
from pprint import pprint
from typing import Any, Callable, Dict, List, Optional

import matplotlib.pyplot as plt
import polars as pl

from data_loading_functions import DatasetMissingError, load_dataset
from diagnostics_functions import check_gam, concurvity
from gam_functions import FittedGam, fit_gam, model_statistics, term_summary
from model_selection_functions import (
    anova_test, best_by, compare_models, lambda_path, linear_vs_smooth
)
from plot_functions import (
    plot_basis_functions, plot_check, plot_lambda_path, plot_smooths, plot_te_surface
)

# ---- Config ----
CHECK_SEED = 1


@dataclass
class TutorialReport:
    name: str
    status: str = "not started"
    steps_done: List[str] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""


def _dataset(context: dict, name: str) -> pl.DataFrame:
    """loads a dataset once per tutorial run"""
    if name not in context["datasets"]:
        context["datasets"][name] = load_dataset(name, context["data_dir"])
        print(f"✅ loaded {name}: {context['datasets'][name].height} rows")
    return context["datasets"][name]


def _fitted(context: dict, fit: FittedGam) -> FittedGam:
    print(f"\n--- {fit.name} ---")
    print(term_summary(fit))
    if context["tracking"]:
        from tracking_functions import log_fit
        log_fit(fit, run_name=f"{context['tutorial']}: {fit.name}")
    return fit


def _plot(context: dict, plot: Callable, *args, **kwargs) -> None:
    if context["plots"]:
        fig = plot(*args, show=True, **kwargs)
        plt.close(fig)


def _checked(context: dict, fit: FittedGam) -> Dict:
    check = check_gam(fit, seed=CHECK_SEED)
    print(check["basis"])
    pprint(check["residuals"])
    _plot(context, plot_check, fit)
    return check


# ---- gam_intro: motorcycle crash test, car fuel economy, soil pollution ----

def mcycle_linear_vs_smooth(context: dict) -> Dict:
    """A straight line can't follow the head acceleration after impact, a smooth can."""
    mcycle = _dataset(context, "mcycle")
    result = linear_vs_smooth(mcycle, "accel", "times")
    print(result["comparison"])
    print(f"preferred: {result['preferred']}, anova: {result['anova']}")
    _plot(context, plot_smooths, result["smooth"])
    return result


def mcycle_basis_functions(context: dict) -> Dict:
    """The smooth is a weighted sum of basis functions, one coefficient per basis function."""
    mcycle = _dataset(context, "mcycle")
    fits = {
        n_splines: _fitted(context, fit_gam(mcycle, f"accel ~ s(times, n_splines={n_splines})", name=f"{n_splines} basis functions"))
        for n_splines in (5, 20)
    }
    for fit in fits.values():
        _plot(context, plot_basis_functions, fit, 0)
    return {"fits": fits, "comparison": compare_models(list(fits.values()))}


def mcycle_smoothing_parameter(context: dict) -> Dict:
    """
    lam trades closeness to the data against wiggliness: small lam gives a
    wiggly curve with many edf, huge lam flattens it to almost a straight line.
    """
    mcycle = _dataset(context, "mcycle")
    path = lambda_path(mcycle, "accel ~ s(times)")
    print(path)
    _plot(context, plot_lambda_path, path, title="mcycle: s(times)")
    return {"path": path}


def mcycle_gridsearch(context: dict) -> Dict:
    """let GCV pick lam instead of guessing, then check the basis was big enough"""
    mcycle = _dataset(context, "mcycle")
    fit = _fitted(context, fit_gam(mcycle, "accel ~ s(times, n_splines=25)", gridsearch=True, name="mcycle GCV"))
    return {"fit": fit, "statistics": model_statistics(fit), "check": _checked(context, fit)}


def mpg_multiple_smooths(context: dict) -> Dict:
    mpg = _dataset(context, "mpg")
    fit = _fitted(context, fit_gam(mpg, "hw.mpg ~ s(weight) + s(length) + s(price)", gridsearch=True, name="smooths"))
    _plot(context, plot_smooths, fit)
    return {"fit": fit}


def mpg_linear_and_factor_terms(context: dict) -> Dict:
    """price looks linear enough, fuel type is categorical"""
    mpg = _dataset(context, "mpg")
    fit = _fitted(context, fit_gam(mpg, "hw.mpg ~ s(weight) + s(length) + l(price) + f(fuel)", gridsearch=True, name="smooths + linear + factor"))
    return {"fit": fit}


def mpg_factor_smooths(context: dict) -> Dict:
    """a separate weight smooth for diesel and gas cars (s(weight, by=fuel))"""
    mpg = _dataset(context, "mpg")
    fit = _fitted(context, fit_gam(mpg, "hw.mpg ~ s(weight, by=fuel) + s(length) + f(fuel)", gridsearch=True, name="smooth by fuel"))
    previous = [context["results"][step]["fit"] for step in ("mpg_multiple_smooths", "mpg_linear_and_factor_terms")]
    comparison = compare_models(previous + [fit])
    print(comparison)
    return {"fit": fit, "comparison": comparison, "best": best_by(comparison, "AIC")}


def meuse_spatial_smooth(context: dict) -> Dict:
    """cadmium over the floodplain: x and y share a scale, a tensor smooth doesn't need that"""
    meuse = _dataset(context, "meuse")
    fit = _fitted(context, fit_gam(meuse, "cadmium ~ te(x, y) + s(elev)", gridsearch=True, name="te(x, y) + s(elev)"))
    _plot(context, plot_te_surface, fit, "te(x, y)")
    return {"fit": fit}


def meuse_more_smooths(context: dict) -> Dict:
    """distance to the river is correlated with location, watch the concurvity"""
    meuse = _dataset(context, "meuse")
    fit = _fitted(context, fit_gam(meuse, "cadmium ~ te(x, y) + s(elev) + s(dist)", gridsearch=True, name="te(x, y) + s(elev) + s(dist)"))
    reduced = context["results"]["meuse_spatial_smooth"]["fit"]
    comparison = compare_models([reduced, fit])
    print(comparison)
    concurvity_full = concurvity(fit)
    print(concurvity_full)
    print(concurvity(fit, full=False))
    return {
        "fit": fit,
        "comparison": comparison,
        "anova": anova_test(reduced, fit),
        "check": _checked(context, fit),
        "concurvity": concurvity_full,
    }


# ---- pisa_gam: PISA 2006 science scores ----

def pisa_single_smooth(context: dict) -> Dict:
    pisa = _dataset(context, "pisa")
    result = linear_vs_smooth(pisa, "Overall", "Income", gridsearch=True)
    print(result["comparison"])
    _plot(context, plot_smooths, result["smooth"])
    return result


def pisa_multiple_smooths(context: dict) -> Dict:
    pisa = _dataset(context, "pisa")
    fit = _fitted(context, fit_gam(pisa, "Overall ~ s(Income, n_splines=10) + s(Edu, n_splines=10) + s(Health, n_splines=10)", gridsearch=True, name="pisa smooths"))
    _plot(context, plot_smooths, fit)
    return {"fit": fit}


def pisa_diagnostics(context: dict) -> Dict:
    """income, education and health indices move together across countries"""
    fit = context["results"]["pisa_multiple_smooths"]["fit"]
    concurvity_full = concurvity(fit)
    print(concurvity_full)
    return {"check": _checked(context, fit), "concurvity": concurvity_full}


def pisa_against_linear(context: dict) -> Dict:
    pisa = _dataset(context, "pisa")
    linear = _fitted(context, fit_gam(pisa, "Overall ~ Income + Edu + Health", name="pisa linear"))
    smooth = context["results"]["pisa_multiple_smooths"]["fit"]
    comparison = compare_models([linear, smooth])
    print(comparison)
    return {"comparison": comparison, "anova": anova_test(linear, smooth)}


TUTORIALS: Dict[str, List[Callable[[dict], Any]]] = {
    "gam_intro": [
        mcycle_linear_vs_smooth,
        mcycle_basis_functions,
        mcycle_smoothing_parameter,
        mcycle_gridsearch,
        mpg_multiple_smooths,
        mpg_linear_and_factor_terms,
        mpg_factor_smooths,
        meuse_spatial_smooth,
        meuse_more_smooths,
    ],
    "pisa_gam": [
        pisa_single_smooth,
        pisa_multiple_smooths,
        pisa_diagnostics,
        pisa_against_linear,
    ],
}


def run_tutorial(
    name: str,
    data_dir: Optional[Path] = None,
    plots: bool = False,
    tracking: bool = False
) -> TutorialReport:
    """
    Runs the steps of one tutorial in order.

    A missing data file abandons the tutorial (status "abandoned", the steps
    done so far are kept), any other error is raised.
    """
    if name not in TUTORIALS:
        raise KeyError(f"unknown tutorial '{name}', choose from {sorted(TUTORIALS)}")

    report = TutorialReport(name=name, status="running")
    context = {
        "tutorial": name,
        "data_dir": data_dir,
        "plots": plots,
        "tracking": tracking,
        "datasets": {},
        "results": report.results,
    }
    for step in TUTORIALS[name]:
        print(f"\n==== {name}: {step.__name__} ====")
        try:
            report.results[step.__name__] = step(context)
        except DatasetMissingError as e:
            print(f"⚠️ abandoning {name}: {e}")
            report.status = "abandoned"
            report.reason = str(e)
            return report
        report.steps_done.append(step.__name__)

    report.status = "completed"
    return report
