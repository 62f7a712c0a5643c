import math
import re
from typing import Optional

import mlflow

from gam_functions import FittedGam, model_statistics, term_summary

# ---- Config ----
EXPERIMENT_NAME = "gam-study-notes"


def mlflow_key(text: str) -> str:
    """mlflow keys only take letters, digits, _ - . and /, so s(times) becomes s_times"""
    return re.sub(r"[^\w\-./]+", "_", text).strip("_")


def log_fit(fit: FittedGam, run_name: Optional[str] = None, experiment: str = EXPERIMENT_NAME) -> None:
    """logs formula, smoothing parameters and fit statistics of one model as an mlflow run"""
    mlflow.set_experiment(experiment)
    with mlflow.start_run(run_name=run_name or fit.name):
        mlflow.log_param("formula", fit.formula)
        mlflow.log_param("n_rows", len(fit.y))
        for row in term_summary(fit).iter_rows(named=True):
            mlflow.log_param(f"lam_{mlflow_key(row['term'])}", row["lam"])
            mlflow.log_metric(f"edf_{mlflow_key(row['term'])}", row["edf"])

        for key, value in model_statistics(fit).items():
            if not math.isnan(value):
                mlflow.log_metric(key, value)
