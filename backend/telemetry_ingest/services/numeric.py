"""
Numeric coercion helpers matching the legacy wire semantics

Devices in the field send numbers as loosely formatted text ("100", " 2.5",
"1e3"). These helpers keep the acceptance rules identical to the legacy
endpoint: ASCII digits only, no hex, no "inf"/"nan" words, surrounding
whitespace allowed.
"""
import math
import re
from typing import Any

NUMERIC_RE = re.compile(r"\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*", re.ASCII)
LEADING_NUMBER_RE = re.compile(r"\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?", re.ASCII)


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        return NUMERIC_RE.fullmatch(value) is not None
    return False


def to_float(value: Any) -> float:
    """Lenient cast: leading numeric prefix of a string, 0.0 for anything unusable"""
    if value is None:
        return 0.0
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        match = LEADING_NUMBER_RE.match(value)
        return float(match.group(0)) if match else 0.0
    return 0.0


def to_int(value: Any) -> int:
    """Lenient cast truncating toward zero"""
    number = to_float(value)
    if math.isnan(number) or math.isinf(number):
        return 0
    return int(number)


def to_value(value: Any):
    """Sample value as stored: float, or None for null / non-numeric"""
    if value is None:
        return None
    if is_numeric(value):
        return float(value)
    return None
