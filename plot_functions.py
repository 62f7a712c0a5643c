from typing import Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import polars as pl
from scipy.stats import probplot

from diagnostics_functions import residuals
from gam_functions import (
    FittedGam, basis_functions, smooth_effect, term_index, term_labels, term_grid
)

# ---- Config ----
FIGSIZE = (12, 8)
CONTOUR_LEVELS = 15


def _finish(fig, show: bool):
    fig.tight_layout()
    if show:
        plt.show()
    return fig


def plot_smooths(fit: FittedGam, show: bool = True, rug: bool = True):
    """one panel per one dimensional term: the smooth with a 95% band (like plot.gam)"""
    idxs = [i for i in range(len(fit.term_specs)) if not fit.gam.terms[i].istensor]
    if not idxs:
        raise ValueError(f"no one dimensional terms in '{fit.formula}'")
    labels = term_labels(fit)

    fig, axs = plt.subplots(1, len(idxs), figsize=(5 * len(idxs), 4), squeeze=False)
    for ax, i in zip(axs[0], idxs):
        effect = smooth_effect(fit, i)
        ax.plot(effect["x"], effect["effect"])
        ax.plot(effect["x"], effect["lower"], c="r", ls="--")
        ax.plot(effect["x"], effect["upper"], c="r", ls="--")
        if rug:
            ax.plot(fit.X[:, fit.gam.terms[i].feature], np.full(len(fit.X), effect["lower"].min()), "|", c="k", alpha=0.3)
        ax.set_xlabel(fit.feature_columns[fit.gam.terms[i].feature])
        ax.set_title(labels[i])
    return _finish(fig, show)


def plot_basis_functions(fit: FittedGam, term: Union[int, str] = 0, show: bool = True):
    """the weighted basis functions of a smooth and their sum on top of the partial residuals"""
    i = term_index(fit, term)
    x, _, weighted = basis_functions(fit, i)
    feature = fit.gam.terms[i].feature

    fig, ax = plt.subplots(figsize=FIGSIZE)
    partial_residuals = residuals(fit) + fit.gam.partial_dependence(term=i, X=fit.X)
    ax.scatter(fit.X[:, feature], partial_residuals, s=8, c="grey", alpha=0.5, label="partial residuals")
    for k in range(weighted.shape[1]):
        ax.plot(x, weighted[:, k], lw=0.8)
    ax.plot(x, weighted.sum(axis=1), c="k", lw=2, label="sum of basis functions")
    ax.set_xlabel(fit.feature_columns[feature])
    ax.set_title(f"{term_labels(fit)[i]}: {weighted.shape[1]} basis functions")
    ax.legend()
    return _finish(fig, show)


def plot_check(fit: FittedGam, show: bool = True):
    """the four residual plots of gam.check"""
    e = residuals(fit)
    fitted = fit.gam.predict(fit.X)

    fig, axs = plt.subplots(2, 2, figsize=FIGSIZE)
    probplot(e, dist="norm", plot=axs[0, 0])
    axs[0, 0].set_title("Q-Q plot of residuals")

    axs[0, 1].scatter(fitted, e, s=8)
    axs[0, 1].axhline(0, c="r", ls="--")
    axs[0, 1].set_xlabel("linear predictor")
    axs[0, 1].set_ylabel("residuals")
    axs[0, 1].set_title("Residuals vs linear predictor")

    axs[1, 0].hist(e, bins=20)
    axs[1, 0].set_xlabel("residuals")
    axs[1, 0].set_title("Histogram of residuals")

    axs[1, 1].scatter(fitted, fit.y, s=8)
    lims = [min(fitted.min(), fit.y.min()), max(fitted.max(), fit.y.max())]
    axs[1, 1].plot(lims, lims, c="r", ls="--")
    axs[1, 1].set_xlabel("fitted values")
    axs[1, 1].set_ylabel(fit.response)
    axs[1, 1].set_title("Response vs fitted values")
    return _finish(fig, show)


def plot_te_surface(fit: FittedGam, term: Union[int, str], show: bool = True, n: int = 50):
    """contour plot of a two dimensional tensor smooth with the data locations on top"""
    i = term_index(fit, term)
    gam_term = fit.gam.terms[i]
    if not gam_term.istensor or len(gam_term.feature) != 2:
        raise ValueError(f"{term_labels(fit)[i]} is not a two dimensional tensor term")
    XX = term_grid(fit, i, n, meshgrid=True)
    Z = fit.gam.partial_dependence(term=i, X=XX, meshgrid=True)
    x_feature, y_feature = gam_term.feature

    fig, ax = plt.subplots(figsize=FIGSIZE)
    contour = ax.contourf(XX[0], XX[1], Z, levels=CONTOUR_LEVELS, cmap="viridis")
    ax.contour(XX[0], XX[1], Z, levels=CONTOUR_LEVELS, colors="k", linewidths=0.5)
    ax.scatter(fit.X[:, x_feature], fit.X[:, y_feature], s=6, c="w", edgecolors="k", linewidths=0.3)
    fig.colorbar(contour, ax=ax)
    ax.set_xlabel(fit.feature_columns[x_feature])
    ax.set_ylabel(fit.feature_columns[y_feature])
    ax.set_title(term_labels(fit)[i])
    return _finish(fig, show)


def plot_lambda_path(path: pl.DataFrame, show: bool = True, title: Optional[str] = None):
    """edf and GCV of refits with a fixed smoothing parameter"""
    fig, ax_edf = plt.subplots(figsize=(10, 6))
    ax_edf.plot(path["lam"], path["edf"], marker="o", color="blue", label="edf")
    ax_edf.set_xscale("log")
    ax_edf.set_xlabel("smoothing parameter (lam)")
    ax_edf.set_ylabel("edf", color="blue")

    ax_gcv = ax_edf.twinx()
    ax_gcv.plot(path["lam"], path["GCV"], marker="s", color="orange", label="GCV")
    ax_gcv.set_ylabel("GCV", color="orange")
    ax_edf.set_title(title or "Wiggliness against smoothing parameter")
    return _finish(fig, show)
