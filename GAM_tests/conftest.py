from contextlib import contextmanager

import matplotlib
matplotlib.use("Agg")

import numpy as np
import polars as pl
import pytest

from data_loading_functions import MEUSE_FILE, MPG_FILE, PISA_FILE, load_mcycle


def make_mpg(n: int = 150, seed: int = 0) -> pl.DataFrame:
    """fake car data with the gamair mpg columns the tutorial uses"""
    rng = np.random.default_rng(seed)
    weight = rng.uniform(1500, 4000, n)
    length = rng.uniform(140, 210, n)
    price = rng.uniform(5000, 40000, n)
    fuel = rng.choice(["gas", "diesel"], size=n, p=[0.8, 0.2])
    hw_mpg = (
        60 - 0.012 * weight + 4e-7 * (weight - 2500) ** 2
        - 0.03 * (length - 170)
        + np.where(fuel == "diesel", 5.0, 0.0)
        + rng.normal(0, 1.5, n)
    )
    price_with_gaps = [None if i % 25 == 0 else float(p) for i, p in enumerate(price)]
    return pl.DataFrame({
        "hw.mpg": hw_mpg,
        "city.mpg": hw_mpg - 6,
        "weight": weight,
        "length": length,
        "price": price_with_gaps,
        "fuel": fuel.tolist(),
    })


def make_meuse(n: int = 200, seed: int = 1) -> pl.DataFrame:
    rng = np.random.default_rng(seed)
    x = rng.uniform(178600, 181400, n)
    y = rng.uniform(329700, 333600, n)
    # the river runs along the west side, closer means more cadmium
    dist = np.clip((x - 178600) / 2800 + rng.normal(0, 0.05, n), 0, 1)
    elev = rng.uniform(5, 10, n)
    cadmium = np.exp(2.5 - 2.5 * dist - 0.15 * (elev - 5) + np.sin((y - 329700) / 800) * 0.3 + rng.normal(0, 0.2, n))
    return pl.DataFrame({"x": x, "y": y, "cadmium": cadmium, "elev": elev, "dist": dist})


def make_pisa(n: int = 65, seed: int = 2) -> pl.DataFrame:
    rng = np.random.default_rng(seed)
    income = rng.uniform(0.4, 0.95, n)
    edu = np.clip(income + rng.normal(0, 0.08, n), 0.3, 1.0)
    health = np.clip(income + rng.normal(0, 0.08, n), 0.3, 1.0)
    overall = 300 + 250 * income - 80 * (income - 0.7) ** 2 + 40 * edu + rng.normal(0, 12, n)
    return pl.DataFrame({
        "Country": [f"Country {i}" for i in range(n)],
        "Overall": overall,
        "Income": [None if i % 13 == 0 else float(v) for i, v in enumerate(income)],
        "Edu": edu,
        "Health": health,
    })


@pytest.fixture(scope="session")
def mcycle() -> pl.DataFrame:
    return load_mcycle()


@pytest.fixture
def mpg() -> pl.DataFrame:
    return make_mpg()


@pytest.fixture
def meuse() -> pl.DataFrame:
    return make_meuse()


@pytest.fixture
def pisa() -> pl.DataFrame:
    return make_pisa()


@pytest.fixture
def data_dir(tmp_path, mpg, meuse, pisa):
    """a data folder with all csv files the tutorials read"""
    mpg.write_csv(tmp_path / MPG_FILE)
    meuse.write_csv(tmp_path / MEUSE_FILE)
    pisa.write_csv(tmp_path / PISA_FILE)
    return tmp_path


class FakeMlflow:
    """records what would have been sent to mlflow"""

    def __init__(self):
        self.experiment = None
        self.runs = []
        self.params = {}
        self.metrics = {}

    def set_experiment(self, name):
        self.experiment = name

    @contextmanager
    def start_run(self, run_name=None):
        self.runs.append(run_name)
        yield

    def log_param(self, key, value):
        self.params[key] = value

    def log_metric(self, key, value):
        self.metrics[key] = value


@pytest.fixture
def fake_mlflow(monkeypatch):
    import tracking_functions
    fake = FakeMlflow()
    monkeypatch.setattr(tracking_functions, "mlflow", fake)
    return fake
