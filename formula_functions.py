import ast
import re
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import numpy as np
import polars as pl
from pygam import f, l, s, te
from pygam.terms import TermList

from data_loading_functions import encode_factor, factor_values

# ---- Config ----
TERM_KINDS = {"s", "l", "f", "te"}
SPLINE_OPTIONS = {"n_splines", "lam", "spline_order", "basis", "by", "constraints"}
OPTIONS_PER_KIND = {
    "s": SPLINE_OPTIONS,
    "te": SPLINE_OPTIONS,
    "l": {"lam"},
    "f": {"lam"},
}
# mgcv spellings used in the tutorials
OPTION_ALIASES = {"k": "n_splines", "sp": "lam", "bs": "basis"}

TERM_PATTERN = re.compile(r"^(?P<kind>[A-Za-z_]+)\((?P<args>.*)\)$", re.DOTALL)
COLUMN_PATTERN = re.compile(r"^[A-Za-z_][\w.]*$")


class FormulaError(ValueError):
    pass


class DesignMatrix(NamedTuple):
    X: np.ndarray
    y: Optional[np.ndarray]
    feature_columns: List[str]
    term_specs: List[Dict[str, Any]]
    factor_levels: Dict[str, List[str]]
    data: pl.DataFrame


def _split_top_level(text: str, sep: str) -> List[str]:
    """splits on sep, ignoring separators inside brackets"""
    parts = []
    depth = 0
    current = ""
    for char in text:
        if char in "([":
            depth += 1
        elif char in ")]":
            depth -= 1
            if depth < 0:
                raise FormulaError(f"unbalanced brackets in '{text}'")
        if char == sep and depth == 0:
            parts.append(current.strip())
            current = ""
        else:
            current += char
    if depth != 0:
        raise FormulaError(f"unbalanced brackets in '{text}'")
    parts.append(current.strip())
    return parts


def _parse_value(raw: str) -> Any:
    try:
        return ast.literal_eval(raw)
    except (ValueError, SyntaxError):
        # bare words like by=fuel or basis=cp
        return raw.strip("'\"")


def _check_column(name: str, formula: str) -> str:
    if not COLUMN_PATTERN.match(name):
        raise FormulaError(f"'{name}' is not a column name in '{formula}'")
    return name


def _parse_term(text: str, formula: str) -> Dict[str, Any]:
    if text == "":
        raise FormulaError(f"empty term in '{formula}'")

    match = TERM_PATTERN.match(text)
    if match is None:
        # a bare column is a linear term, like in R formulas
        return {"kind": "l", "columns": [_check_column(text, formula)], "options": {}}

    kind = match.group("kind")
    if kind not in TERM_KINDS:
        raise FormulaError(f"unknown term type '{kind}' in '{formula}', use one of {sorted(TERM_KINDS)}")

    columns = []
    options = {}
    for arg in _split_top_level(match.group("args"), ","):
        if arg == "":
            raise FormulaError(f"empty argument in '{text}'")
        if "=" in arg:
            key, raw_value = (part.strip() for part in arg.split("=", 1))
            key = OPTION_ALIASES.get(key, key)
            if key not in OPTIONS_PER_KIND[kind]:
                raise FormulaError(f"option '{key}' not allowed for {kind}() in '{formula}'")
            options[key] = _parse_value(raw_value)
        else:
            if options:
                raise FormulaError(f"column '{arg}' after keyword options in '{text}'")
            columns.append(_check_column(arg, formula))

    if kind == "te" and len(columns) < 2:
        raise FormulaError(f"te() needs at least two columns, got {columns}")
    if kind != "te" and len(columns) != 1:
        raise FormulaError(f"{kind}() takes exactly one column, got {columns}")
    if "by" in options:
        options["by"] = _check_column(str(options["by"]), formula)
    return {"kind": kind, "columns": columns, "options": options}


def parse_formula(formula: str) -> Tuple[str, List[Dict[str, Any]]]:
    """
    Parses an R style model formula, e.g. "accel ~ s(times, k=20)".

    Returns:
        Tuple of (response column, list of term specs).
    """
    sides = formula.split("~")
    if len(sides) != 2:
        raise FormulaError(f"formula needs exactly one '~': '{formula}'")
    response = _check_column(sides[0].strip(), formula)
    if sides[1].strip() == "":
        raise FormulaError(f"no terms on the right hand side of '{formula}'")
    term_specs = [_parse_term(t, formula) for t in _split_top_level(sides[1].strip(), "+")]
    return response, term_specs


def formula_columns(term_specs: List[Dict[str, Any]]) -> List[str]:
    columns = []
    for spec in term_specs:
        for c in spec["columns"] + ([spec["options"]["by"]] if "by" in spec["options"] else []):
            if c not in columns:
                columns.append(c)
    return columns


def term_label(spec: Dict[str, Any]) -> str:
    label = f"{spec['kind']}({', '.join(spec['columns'])}"
    if "by" in spec["options"]:
        label += f", by={spec['options']['by']}"
    return label + ")"


def build_terms(term_specs: List[Dict[str, Any]], feature_columns: List[str]) -> TermList:
    """Translates term specs to a pyGAM TermList indexed on feature_columns."""
    builders = {"s": s, "l": l, "f": f}
    terms = []
    for spec in term_specs:
        options = dict(spec["options"])
        if "by" in options:
            options["by"] = feature_columns.index(options["by"])
        features = [feature_columns.index(c) for c in spec["columns"]]
        if spec["kind"] == "te":
            terms.append(te(*features, **options))
        else:
            terms.append(builders[spec["kind"]](features[0], **options))
    return TermList(*terms)


def _is_factor_column(df: pl.DataFrame, column: str) -> bool:
    dtype = df.schema[column]
    return dtype == pl.String or dtype == pl.Categorical or dtype == pl.Boolean or isinstance(dtype, pl.Enum)


def _expand_factor_by(df: pl.DataFrame, term_specs: List[Dict[str, Any]], factor_levels: Dict[str, List[str]]) -> Tuple[pl.DataFrame, List[Dict[str, Any]]]:
    """
    A smooth "by" a factor becomes one smooth per level, each switched on by an
    indicator column named like "fuel[gas]".
    """
    expanded = []
    for spec in term_specs:
        by = spec["options"].get("by")
        if by is None or not _is_factor_column(df, by):
            expanded.append(spec)
            continue
        _, levels = encode_factor(df, by, factor_levels.get(by))
        factor_levels[by] = levels
        values = factor_values(df, by)
        for level in levels:
            indicator = f"{by}[{level}]"
            df = df.with_columns((values == level).cast(pl.Float64).alias(indicator))
            expanded.append({**spec, "options": {**spec["options"], "by": indicator}})
    return df, expanded


def design_matrix(
    df: pl.DataFrame,
    formula: str,
    factor_levels: Optional[Dict[str, List[str]]] = None,
    require_response: bool = True
) -> DesignMatrix:
    """
    Turns a frame and a formula into the numpy arrays pyGAM wants.

    Rows with nulls in any used column are dropped. Factor columns (strings or
    anything used in f()) are integer coded. When factor_levels is given (from a
    fitted model) those codes are reused, otherwise they are learned from df.
    """
    response, term_specs = parse_formula(formula)
    used = formula_columns(term_specs)
    needed = used + ([response] if require_response else [])
    missing = [c for c in needed if c not in df.columns]
    if missing:
        raise FormulaError(f"columns {missing} of '{formula}' not in data")

    factor_levels = {} if factor_levels is None else dict(factor_levels)
    clean = df.select(list(dict.fromkeys(needed))).drop_nulls()
    if clean.height == 0:
        raise ValueError(f"no complete rows left for '{formula}'")

    expanded, term_specs = _expand_factor_by(clean, term_specs, factor_levels)

    factor_columns = [
        c for c in formula_columns(term_specs)
        if c in used and (
            _is_factor_column(expanded, c)
            or any(spec["kind"] == "f" and c in spec["columns"] for spec in term_specs)
        )
    ]
    encoded = expanded
    for c in factor_columns:
        encoded, levels = encode_factor(encoded, c, factor_levels.get(c))
        factor_levels[c] = levels

    feature_columns = formula_columns(term_specs)
    X = encoded.select(feature_columns).to_numpy().astype(float)
    y = encoded[response].to_numpy().astype(float) if require_response else None
    return DesignMatrix(X, y, feature_columns, term_specs, factor_levels, clean)
