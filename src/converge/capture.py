# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Output capture - typed extraction of job output variables.

Remote scripts return loosely typed values (scalar, sequence or mapping).
This module is the single place where they are coerced into the types the
engine works with, so everything past this point can trust its inputs.
"""

from typing import Any, Dict, Iterable, List, Mapping

from converge.errors import MissingOutput, TypeMismatch
from converge.schemas.job import JobResult, OutValue

TRUE_TOKENS = {"true"}
FALSE_TOKENS = {"false"}


def as_bool(value: OutValue, name: str = "value") -> bool:
    """Coerce a value to bool.

    Only real booleans and the tokens true/false (any case) are accepted;
    anything else is a TypeMismatch rather than a silent False.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        token = value.strip().lower()
        if token in TRUE_TOKENS:
            return True
        if token in FALSE_TOKENS:
            return False
    raise TypeMismatch(f"output '{name}' is not a boolean: {value!r}")


def as_str(value: OutValue, name: str = "value") -> str:
    if isinstance(value, (list, dict)):
        raise TypeMismatch(f"output '{name}' is not a scalar: {value!r}")
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def as_int(value: OutValue, name: str = "value") -> int:
    if isinstance(value, bool):
        raise TypeMismatch(f"output '{name}' is not an integer: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise TypeMismatch(f"output '{name}' is not an integer: {value!r}")


def as_list(value: OutValue, name: str = "value") -> List[Any]:
    """Coerce a value to a list.

    PowerShell unwraps single-element arrays when serializing, so a lone
    scalar becomes a one-item list and None becomes an empty one.
    """
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        raise TypeMismatch(f"output '{name}' is a mapping, expected a sequence")
    return [value]


def as_mapping(value: OutValue, name: str = "value") -> Dict[str, Any]:
    """Coerce a value to a string-keyed mapping.

    Accepts a list of mappings, which is what `$results += @{...}` produces,
    and merges them in order.
    """
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items()}
    if isinstance(value, list) and all(isinstance(item, dict) for item in value):
        merged: Dict[str, Any] = {}
        for item in value:
            merged.update({str(k): v for k, v in item.items()})
        return merged
    raise TypeMismatch(f"output '{name}' is not a mapping: {value!r}")


COERCERS = {
    bool: as_bool,
    str: as_str,
    int: as_int,
    list: as_list,
    dict: as_mapping,
}


def extract(
    result: JobResult,
    names: Mapping[str, type],
    optional: Iterable[str] = (),
) -> Dict[str, Any]:
    """Extract typed values from a job result.

    Args:
        result: Result returned by JobChannel.submit.
        names: Output variable name → expected type (bool, str, int, list, dict).
        optional: Names that may be absent; they are omitted from the result.

    Returns:
        Dict of name → coerced value.

    Raises:
        MissingOutput: If a required name is absent.
        TypeMismatch: If a value cannot be coerced to its expected type.
    """
    optional = set(optional)
    values: Dict[str, Any] = {}
    for name, expected in names.items():
        if name not in result.out_variables:
            if name in optional:
                continue
            raise MissingOutput(f"job did not produce output variable '{name}'", result.log_lines)
        coerce = COERCERS.get(expected)
        if coerce is None:
            raise ValueError(f"unsupported output type for '{name}': {expected!r}")
        values[name] = coerce(result.out_variables[name], name)
    return values


def bool_mapping(value: OutValue, name: str = "value") -> Dict[str, bool]:
    """Coerce a mapping of name → boolean token."""
    return {k: as_bool(v, f"{name}.{k}") for k, v in as_mapping(value, name).items()}
