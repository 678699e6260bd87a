# matrix.py
from __future__ import annotations

import itertools
import re
from typing import Iterable, List, Mapping, Optional

from .model import MatrixCombination, MatrixValue, Strategy

_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")


def generate_matrix_combinations(strategy: Strategy | None) -> List[MatrixCombination]:
    """
    Cartesian product of the matrix dimensions, keys in declaration order.

    No strategy / empty matrix -> a single empty combination, so callers can
    always iterate.
    """
    if strategy is None or not strategy.matrix:
        return [{}]

    keys = list(strategy.matrix)
    dimensions = [strategy.matrix[k] for k in keys]
    return [dict(zip(keys, values)) for values in itertools.product(*dimensions)]


def _parse_scalar(raw: str) -> MatrixValue:
    if raw == "true":
        return True
    if raw == "false":
        return False
    if _NUMBER_RE.match(raw):
        return float(raw) if "." in raw else int(raw)
    return raw


def parse_matrix_spec(spec: str) -> MatrixCombination:
    """
    Parse a `--matrix` argument: "os=macos,node=18,debug=true".

    Raises:
        ValueError: a pair without "=" or with an empty key
    """
    result: MatrixCombination = {}
    for pair in spec.split(","):
        if not pair.strip():
            continue
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"Invalid matrix spec: {pair}. Expected format: key=value")
        result[key] = _parse_scalar(value.strip())
    return result


def _same(a: MatrixValue, b: MatrixValue) -> bool:
    # bool is an int subclass; keep true != 1
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return str(a) == str(b)


def find_matching_combination(
    combinations: Iterable[MatrixCombination],
    spec: Mapping[str, MatrixValue],
) -> Optional[MatrixCombination]:
    """First combination agreeing with every key of `spec`, or None."""
    for combo in combinations:
        if all(k in combo and _same(combo[k], v) for k, v in spec.items()):
            return combo
    return None


def format_combination(combo: Mapping[str, MatrixValue]) -> str:
    def show(v: MatrixValue) -> str:
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)

    return ", ".join(f"{k}={show(v)}" for k, v in combo.items())
