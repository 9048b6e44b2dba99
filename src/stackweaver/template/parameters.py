"""Parameter value resolution, constraint checks and parameter files."""

import json
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import yaml

from stackweaver.template.loader import ParameterDefinition
from stackweaver.utils.errors import ValidationError

NO_ECHO_MASK = "****"

SCALAR_TYPES = ("String", "Number")
LIST_TYPES = ("CommaDelimitedList", "List<Number>")


def _is_number(value: str) -> bool:
    try:
        float(value)
        return True
    except (TypeError, ValueError):
        return False


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_as_text(item) for item in value)
    return str(value)


def _fail(name: str, definition: ParameterDefinition, message: str) -> ValidationError:
    if definition.constraint_description:
        message = definition.constraint_description
    return ValidationError(message, path=f"Parameters.{name}")


def _check_string(name: str, definition: ParameterDefinition, value: str) -> None:
    if definition.min_length is not None and len(value) < definition.min_length:
        raise _fail(name, definition, f"must be at least {definition.min_length} characters")
    if definition.max_length is not None and len(value) > definition.max_length:
        raise _fail(name, definition, f"must be at most {definition.max_length} characters")
    if definition.allowed_pattern is not None and not re.fullmatch(definition.allowed_pattern, value):
        raise _fail(name, definition, f"must match pattern {definition.allowed_pattern}")


def _check_number(name: str, definition: ParameterDefinition, value: str) -> None:
    if not _is_number(value):
        raise ValidationError(f"'{value}' is not a number", path=f"Parameters.{name}")
    number = float(value)
    if definition.min_value is not None and number < definition.min_value:
        raise _fail(name, definition, f"must be at least {definition.min_value:g}")
    if definition.max_value is not None and number > definition.max_value:
        raise _fail(name, definition, f"must be at most {definition.max_value:g}")


def _check_allowed(name: str, definition: ParameterDefinition, value: str) -> None:
    if definition.allowed_values is None:
        return
    allowed = [_as_text(item) for item in definition.allowed_values]
    if value not in allowed:
        raise _fail(name, definition, f"must be one of: {', '.join(allowed)}")


def resolve_parameter(name: str, definition: ParameterDefinition, value: Any) -> Union[str, List[str]]:
    """Validate one parameter value and convert it to its evaluated form.

    Scalar parameters evaluate to strings; list parameters to lists of strings.
    """
    param_type = definition.type
    if param_type.startswith("AWS::") or param_type.startswith("List<AWS::"):
        param_type = "CommaDelimitedList" if param_type.startswith("List<") else "String"

    if param_type not in SCALAR_TYPES + LIST_TYPES:
        raise ValidationError(f"Unsupported parameter type '{definition.type}'",
                              path=f"Parameters.{name}")

    if param_type in LIST_TYPES:
        items = value if isinstance(value, (list, tuple)) else _as_text(value).split(",")
        items = [_as_text(item).strip() for item in items]
        for item in items:
            if param_type == "List<Number>":
                _check_number(name, definition, item)
            _check_allowed(name, definition, item)
        return items

    text = _as_text(value)
    if param_type == "Number":
        _check_number(name, definition, text)
    else:
        _check_string(name, definition, text)
    _check_allowed(name, definition, text)
    return text


def resolve_parameters(
    definitions: Mapping[str, ParameterDefinition],
    supplied: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """Merge supplied values with defaults and validate every parameter.

    Args:
        definitions: Parameter declarations from the template
        supplied: Caller-provided values keyed by parameter name

    Returns:
        Evaluated values for every declared parameter

    Raises:
        ValidationError: On an unknown parameter, a missing value or a failed constraint
    """
    supplied = dict(supplied or {})

    unknown = sorted(set(supplied) - set(definitions))
    if unknown:
        raise ValidationError(f"Unknown parameters supplied: {', '.join(unknown)}")

    values = {}
    for name, definition in definitions.items():
        if name in supplied and supplied[name] is not None:
            value = supplied[name]
        elif definition.default is not None:
            value = definition.default
        else:
            raise ValidationError("no value supplied and no default declared",
                                  path=f"Parameters.{name}")
        values[name] = resolve_parameter(name, definition, value)
    return values


def masked_parameters(
    definitions: Mapping[str, ParameterDefinition],
    values: Mapping[str, Any]
) -> Dict[str, Any]:
    """Copy of the values with NoEcho parameters masked."""
    masked = {}
    for name, value in values.items():
        definition = definitions.get(name)
        masked[name] = NO_ECHO_MASK if definition is not None and definition.no_echo else value
    return masked


def load_parameter_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read parameter values from a YAML or JSON file.

    Accepts either a plain mapping or a list of
    ``{"ParameterKey": ..., "ParameterValue": ...}`` entries.

    Raises:
        ValidationError: If the file is unreadable or has another layout
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except OSError as e:
        raise ValidationError(f"Cannot read parameter file: {e}", path=str(path), cause=e)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValidationError(f"Failed to parse parameter file: {e}", path=str(path), cause=e)

    if data is None:
        return {}
    if isinstance(data, dict):
        return dict(data)
    if isinstance(data, list):
        values = {}
        for index, item in enumerate(data):
            if not isinstance(item, dict) or "ParameterKey" not in item:
                raise ValidationError("entries must have ParameterKey and ParameterValue",
                                      path=f"{path}[{index}]")
            values[item["ParameterKey"]] = item.get("ParameterValue")
        return values
    raise ValidationError("Parameter file must be a mapping or a list", path=str(path))


def parse_parameter_overrides(pairs: Iterable[str]) -> Dict[str, str]:
    """Parse KEY=VALUE strings from the command line."""
    values = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"Invalid parameter '{pair}', expected KEY=VALUE")
        values[key.strip()] = value
    return values
