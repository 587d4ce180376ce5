"""Structural validation of parameter values against a parameter schema."""

from typing import Any, Mapping

from govcore.catalog.models import ParameterSpec, ParameterType
from govcore.exceptions import ValidationError


def _matches_type(value: Any, expected: ParameterType) -> bool:
    if expected == ParameterType.STRING:
        return isinstance(value, str)
    if expected == ParameterType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == ParameterType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == ParameterType.BOOLEAN:
        return isinstance(value, bool)
    if expected == ParameterType.ARRAY:
        return isinstance(value, list)
    if expected == ParameterType.OBJECT:
        return isinstance(value, dict)
    return False


def validate_parameters(
    schema: Mapping[str, ParameterSpec],
    values: Mapping[str, Any],
    owner: str = "policy",
) -> dict[str, Any]:
    """Check *values* against *schema* and return them merged with defaults.

    Raises:
        ValidationError: on unknown names, missing required values, type
            mismatches, or values outside ``allowed_values``.
    """
    unknown = sorted(set(values) - set(schema))
    if unknown:
        raise ValidationError(f"Unknown parameters for {owner}: {', '.join(unknown)}")

    problems = []
    effective: dict[str, Any] = {}
    for name, param in schema.items():
        if name in values and values[name] is not None:
            value = values[name]
        elif param.default is not None:
            value = param.default
        else:
            problems.append(f"'{name}' is required")
            continue
        if not _matches_type(value, param.type):
            problems.append(f"'{name}' must be of type {param.type.value}")
            continue
        if param.allowed_values is not None and value not in param.allowed_values:
            problems.append(f"'{name}' must be one of {param.allowed_values}")
            continue
        effective[name] = value

    if problems:
        raise ValidationError(f"Invalid parameters for {owner}: {'; '.join(problems)}")
    return effective
