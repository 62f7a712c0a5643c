import numpy as np
import polars as pl
import pytest

from gam_functions import (
    LAM_GRID,
    basis_functions,
    coefficients,
    fit_gam,
    model_statistics,
    predict,
    smooth_effect,
    term_index,
    term_summary,
)


@pytest.fixture(scope="module")
def mcycle_smooth(mcycle):
    return fit_gam(mcycle, "accel ~ s(times)")


def test_smooth_beats_straight_line(mcycle, mcycle_smooth):
    linear = fit_gam(mcycle, "accel ~ l(times)")
    assert model_statistics(mcycle_smooth)["r2"] > model_statistics(linear)["r2"] + 0.3
    assert model_statistics(mcycle_smooth)["AIC"] < model_statistics(linear)["AIC"]


def test_model_statistics(mcycle_smooth):
    stats = model_statistics(mcycle_smooth)
    assert stats["n"] == 133
    assert 1 < stats["edf"] < 21
    assert 0 < stats["explained_deviance"] <= 1
    assert stats["rmse"] > 0
    assert not np.isnan(stats["GCV"])


def test_term_summary(mcycle_smooth):
    summary = term_summary(mcycle_smooth)
    assert summary.columns == ["term", "edf", "n_coefs", "lam", "p_value", "significance"]
    row = summary.row(0, named=True)
    assert row["term"] == "s(times)"
    assert row["n_coefs"] == 20
    assert row["edf"] > 2
    assert row["p_value"] < 0.001
    assert row["significance"] == "***"


def test_fixed_lam_is_applied(mcycle):
    fit = fit_gam(mcycle, "accel ~ s(times)", lam=1000)
    assert term_summary(fit)["lam"][0] == "1e+03"
    # own lam option wins over the shared one
    fit = fit_gam(mcycle, "accel ~ s(times, lam=0.01)", lam=1000)
    assert term_summary(fit)["lam"][0] == "0.01"


def test_gridsearch_picks_lam_from_grid(mcycle):
    fit = fit_gam(mcycle, "accel ~ s(times)", gridsearch=True)
    lam = float(term_summary(fit)["lam"][0])
    assert np.isclose(LAM_GRID, lam, rtol=1e-2).any()


def test_smooth_effect_band(mcycle_smooth):
    effect = smooth_effect(mcycle_smooth, "s(times)", n=50)
    assert effect.height == 50
    assert (effect["lower"] <= effect["effect"]).all()
    assert (effect["effect"] <= effect["upper"]).all()
    assert effect["x"].min() == pytest.approx(mcycle_smooth.X[:, 0].min())


def test_basis_functions_sum_to_smooth(mcycle_smooth):
    x, B, weighted = basis_functions(mcycle_smooth, 0)
    assert B.shape == (100, 20)
    effect = smooth_effect(mcycle_smooth, 0)
    assert np.allclose(x, effect["x"].to_numpy())
    assert np.allclose(weighted.sum(axis=1), effect["effect"].to_numpy())


def test_coefficients_cover_every_term(mpg):
    fit = fit_gam(mpg, "hw.mpg ~ s(weight, n_splines=8) + f(fuel)")
    coefs = coefficients(fit)
    assert coefs.filter(pl.col("term") == "s(weight)").height == 8
    assert coefs.filter(pl.col("term") == "f(fuel)").height == 2
    assert coefs.filter(pl.col("term") == "intercept").height == 1


def test_term_index(mcycle_smooth):
    assert term_index(mcycle_smooth, "s(times)") == 0
    with pytest.raises(KeyError):
        term_index(mcycle_smooth, "s(speed)")
    with pytest.raises(IndexError):
        term_index(mcycle_smooth, 3)


def test_tensor_terms_have_no_1d_effect(meuse):
    fit = fit_gam(meuse, "cadmium ~ te(x, y, n_splines=5) + s(elev)")
    with pytest.raises(ValueError):
        smooth_effect(fit, "te(x, y)")
    assert smooth_effect(fit, "s(elev)").height == 100


def test_predict_reuses_factor_codes(mpg):
    fit = fit_gam(mpg, "hw.mpg ~ s(weight, by=fuel) + f(fuel)")
    assert np.allclose(predict(fit, fit.data), fit.gam.predict(fit.X))

    new_cars = pl.DataFrame({"weight": [2000.0, 3000.0], "fuel": ["diesel", "diesel"]})
    assert predict(fit, new_cars).shape == (2,)

    electric = pl.DataFrame({"weight": [2000.0], "fuel": ["electric"]})
    with pytest.raises(ValueError):
        predict(fit, electric)


def test_diesel_cars_get_their_own_smooth(mpg):
    fit = fit_gam(mpg, "hw.mpg ~ s(weight, by=fuel) + f(fuel)")
    assert [row["term"] for row in term_summary(fit).iter_rows(named=True)] == [
        "s(weight, by=fuel[diesel])",
        "s(weight, by=fuel[gas])",
        "f(fuel)",
    ]
