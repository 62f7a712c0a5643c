import numpy as np
import polars as pl
import pytest

from diagnostics_functions import (
    _nearest_neighbours,
    check_gam,
    concurvity,
    k_index,
    residual_summary,
)
from gam_functions import fit_gam


def test_nearest_neighbour_is_never_the_point_itself():
    Z = np.array([[0.0], [0.0], [1.0], [1.1]])
    neighbours = _nearest_neighbours(Z)
    assert neighbours.tolist() == [1, 0, 3, 2]


def test_too_small_basis_is_flagged(mcycle):
    small = fit_gam(mcycle, "accel ~ s(times, n_splines=5)")
    big = fit_gam(mcycle, "accel ~ s(times, n_splines=25)", gridsearch=True)
    small_check = k_index(small, 0, seed=0)
    big_check = k_index(big, 0, seed=0)
    assert small_check["k_index"] < big_check["k_index"]
    assert small_check["p_value"] < 0.05


def test_k_index_is_reproducible(mcycle):
    fit = fit_gam(mcycle, "accel ~ s(times)")
    assert k_index(fit, "s(times)", seed=3) == k_index(fit, "s(times)", seed=3)


def test_check_gam_only_lists_smooths(mpg):
    fit = fit_gam(mpg, "hw.mpg ~ s(weight) + l(price) + f(fuel)")
    check = check_gam(fit, n_permutations=50, seed=0)
    assert check["basis"]["term"].to_list() == ["s(weight)"]
    assert check["basis"]["k'"][0] == 20
    assert 0 <= check["basis"]["p_value"][0] <= 1

    residuals = check["residuals"]
    assert residuals["n"] == fit.X.shape[0]
    assert abs(residuals["mean"]) < 1e-3 * residuals["sd"]
    assert 0 <= residuals["normality_p_value"] <= 1


def test_check_gam_without_smooths(mpg):
    fit = fit_gam(mpg, "hw.mpg ~ l(weight) + f(fuel)")
    check = check_gam(fit, n_permutations=10)
    assert check["basis"].height == 0


def test_tensor_check(meuse):
    fit = fit_gam(meuse, "cadmium ~ te(x, y, n_splines=5) + s(elev)")
    check = check_gam(fit, n_permutations=20, seed=0)
    assert check["basis"]["term"].to_list() == ["te(x, y)", "s(elev)"]
    assert check["basis"]["k'"].to_list() == [25, 20]


def _wiggly_and_straight_levels(n: int = 200) -> pl.DataFrame:
    rng = np.random.default_rng(11)
    x = rng.uniform(0, 1, 2 * n)
    g = np.repeat(["a", "b"], n)
    y = np.where(g == "a", np.sin(40 * x), 2 * x) + rng.normal(0, 0.1, 2 * n)
    return pl.DataFrame({"y": y, "x": x, "g": g.tolist()})


def test_k_index_per_factor_level():
    fit = fit_gam(_wiggly_and_straight_levels(), "y ~ s(x, n_splines=5, by=g) + f(g)")
    check = check_gam(fit, n_permutations=100, seed=0)
    assert check["basis"]["term"].to_list() == ["s(x, by=g[a])", "s(x, by=g[b])"]

    wiggly, straight = check["basis"].iter_rows(named=True)
    assert wiggly["k_index"] < 0.5
    assert wiggly["p_value"] < 0.05
    assert straight["k_index"] > 0.7
    assert wiggly["k_index"] != straight["k_index"]


def test_concurvity_of_factor_by_smooths(mpg):
    fit = fit_gam(mpg, "hw.mpg ~ s(weight, by=fuel) + f(fuel)")
    result = concurvity(fit)
    assert result["term"].to_list() == ["s(weight, by=fuel[diesel])", "s(weight, by=fuel[gas])", "f(fuel)"]
    # level smooths live on disjoint rows and carry no level intercept
    assert (result["worst"] < 1e-6).all()
    assert (result["observed"] < 1e-6).all()


def _two_predictors(related: bool, n: int = 400) -> pl.DataFrame:
    rng = np.random.default_rng(7)
    x1 = rng.uniform(0, 1, n)
    x2 = x1 ** 2 + rng.normal(0, 0.01, n) if related else rng.uniform(0, 1, n)
    y = np.sin(3 * x1) + np.cos(3 * x2) + rng.normal(0, 0.1, n)
    return pl.DataFrame({"y": y, "x1": x1, "x2": x2})


def test_concurvity_of_related_predictors():
    fit = fit_gam(_two_predictors(related=True), "y ~ s(x1, n_splines=8) + s(x2, n_splines=8)")
    result = concurvity(fit)
    assert result["term"].to_list() == ["s(x1)", "s(x2)"]
    assert (result["worst"] > 0.9).all()


def test_concurvity_of_unrelated_predictors():
    fit = fit_gam(_two_predictors(related=False), "y ~ s(x1, n_splines=8) + s(x2, n_splines=8)")
    result = concurvity(fit)
    assert (result["worst"] < 0.5).all()
    for row in result.iter_rows(named=True):
        assert 0 <= row["observed"] <= row["worst"] + 1e-9
        assert 0 <= row["estimate"] <= row["worst"] + 1e-9


def test_concurvity_single_term(mcycle):
    result = concurvity(fit_gam(mcycle, "accel ~ s(times)"))
    assert result.row(0, named=True) == {"term": "s(times)", "worst": 0.0, "observed": 0.0, "estimate": 0.0}


def test_pairwise_concurvity():
    fit = fit_gam(_two_predictors(related=True), "y ~ s(x1, n_splines=8) + s(x2, n_splines=8)")
    matrix = concurvity(fit, full=False, measure="worst")
    assert matrix.columns == ["term", "s(x1)", "s(x2)"]
    assert matrix["s(x1)"][0] == 1.0
    assert matrix["s(x2)"][0] > 0.9
    with pytest.raises(ValueError):
        concurvity(fit, measure="best")


def test_residual_summary_counts_iterations(mcycle):
    summary = residual_summary(fit_gam(mcycle, "accel ~ s(times)"))
    assert summary["iterations"] >= 1
