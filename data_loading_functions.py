import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import polars as pl
from pygam.datasets import mcycle

# ---- Config ----
DATA_DIR = Path(os.environ.get("GAM_NOTES_DATA_DIR", "data"))
NULL_VALUES = ["NA", "?", ""]

MPG_FILE = "mpg.csv"
MEUSE_FILE = "meuse.csv"
PISA_FILE = "pisasci2006.csv"

MPG_COLUMNS = ["hw.mpg", "weight", "length", "price", "fuel"]
MEUSE_COLUMNS = ["x", "y", "cadmium", "elev", "dist"]
PISA_COLUMNS = ["Country", "Overall", "Income", "Edu", "Health"]


class DatasetMissingError(FileNotFoundError):
    """The csv for a tutorial dataset is not in the data folder."""

    def __init__(self, dataset: str, path: Path):
        self.dataset = dataset
        self.path = Path(path)
        super().__init__(f"dataset '{dataset}' not found at {self.path}")


def _data_path(file_name: str, data_dir: Optional[Path]) -> Path:
    return Path(data_dir if data_dir is not None else DATA_DIR) / file_name


def _read_csv(dataset: str, file_name: str, data_dir: Optional[Path]) -> pl.DataFrame:
    path = _data_path(file_name, data_dir)
    if not path.exists():
        raise DatasetMissingError(dataset, path)
    return pl.read_csv(path, null_values=NULL_VALUES, infer_schema_length=None)


def check_required_columns(df: pl.DataFrame, columns: List[str], dataset: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"dataset '{dataset}' is missing columns: {missing}")


def load_mcycle(data_dir: Optional[Path] = None) -> pl.DataFrame:
    """
    Motorcycle crash test data (head acceleration in g against time in ms).
    Ships with pyGAM so it is always available, data_dir is ignored.
    """
    X, y = mcycle(return_X_y=True)
    return pl.DataFrame({
        "times": np.asarray(X, dtype=float).ravel(),
        "accel": np.asarray(y, dtype=float).ravel(),
    })


def load_mpg(data_dir: Optional[Path] = None) -> pl.DataFrame:
    """car specifications and fuel economy (gamair mpg data)"""
    df = _read_csv("mpg", MPG_FILE, data_dir)
    check_required_columns(df, MPG_COLUMNS, "mpg")
    return df


def load_meuse(data_dir: Optional[Path] = None) -> pl.DataFrame:
    """heavy metal concentrations in the Meuse river floodplain"""
    df = _read_csv("meuse", MEUSE_FILE, data_dir)
    check_required_columns(df, MEUSE_COLUMNS, "meuse")
    return df


def load_pisa(data_dir: Optional[Path] = None) -> pl.DataFrame:
    """country level PISA 2006 science scores with income, education and health indices"""
    df = _read_csv("pisa", PISA_FILE, data_dir)
    check_required_columns(df, PISA_COLUMNS, "pisa")
    return df


DATASET_LOADERS: Dict[str, Callable[..., pl.DataFrame]] = {
    "mcycle": load_mcycle,
    "mpg": load_mpg,
    "meuse": load_meuse,
    "pisa": load_pisa,
}


def load_dataset(name: str, data_dir: Optional[Path] = None) -> pl.DataFrame:
    if name not in DATASET_LOADERS:
        raise KeyError(f"unknown dataset '{name}', choose from {sorted(DATASET_LOADERS)}")
    return DATASET_LOADERS[name](data_dir)


def factor_values(df: pl.DataFrame, column: str) -> pl.Series:
    """factor values as strings, whatever the stored dtype"""
    return df[column].cast(pl.Utf8)


def encode_factor(df: pl.DataFrame, column: str, levels: Optional[List[str]] = None) -> Tuple[pl.DataFrame, List[str]]:
    """
    Replaces a factor column by integer codes so it can go into an f() term.

    Args:
        df: frame holding the column, nulls should already be dropped.
        column: name of the factor column.
        levels: known levels (e.g. from a fitted model), learned from df when None.

    Returns:
        Tuple of (encoded frame, levels), code i belongs to levels[i].
    """
    values = factor_values(df, column)
    if levels is None:
        levels = sorted(values.drop_nulls().unique().to_list())
    else:
        unknown = sorted(set(values.drop_nulls().unique().to_list()) - set(levels))
        if unknown:
            raise ValueError(f"unknown levels {unknown} for factor '{column}', known: {levels}")
    encoded = df.with_columns(
        pl.col(column).cast(pl.Utf8).replace_strict(
            levels, list(range(len(levels))), return_dtype=pl.Int64
        ).alias(column)
    )
    return encoded, levels
