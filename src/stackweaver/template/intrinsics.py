"""Intrinsic function evaluation ahead of graph construction.

Parameter and pseudo-parameter references, mapping lookups and conditions
are folded into literals here. References to other resources survive as
``Reference`` and ``Interpolation`` values for the executor to resolve once
the referenced resources exist.
"""

import base64
import copy
import re
from typing import Any, Dict, List, Mapping, Optional

from stackweaver.orchestrator.models import Interpolation, Reference
from stackweaver.utils.errors import ValidationError


class _NoValue:
    """Marker for ``Ref: AWS::NoValue``; the enclosing key or item is dropped."""

    def __repr__(self) -> str:
        return "NO_VALUE"


NO_VALUE = _NoValue()

PSEUDO_NO_VALUE = "AWS::NoValue"

_PLACEHOLDER = re.compile(r"\$\{([^}]*)\}")


class MappingLookup:
    """Read-only view of the template's Mappings section."""

    def __init__(self, mappings: Optional[Mapping[str, Mapping[str, Mapping[str, Any]]]] = None):
        self._mappings = copy.deepcopy(dict(mappings or {}))

    def find(self, map_name: str, top_key: str, second_key: str) -> Any:
        """Look up a value.

        Raises:
            ValidationError: If any key is missing
        """
        table = self._mappings.get(map_name)
        if table is None:
            raise ValidationError(f"Mapping '{map_name}' is not declared", path="Fn::FindInMap")
        row = table.get(top_key)
        if row is None:
            raise ValidationError(f"Mapping '{map_name}' has no key '{top_key}'", path="Fn::FindInMap")
        if second_key not in row:
            raise ValidationError(
                f"Mapping '{map_name}.{top_key}' has no key '{second_key}'", path="Fn::FindInMap"
            )
        return copy.deepcopy(row[second_key])

    def names(self) -> List[str]:
        return sorted(self._mappings)


def partition_for_region(region: str) -> str:
    if region.startswith("cn-"):
        return "aws-cn"
    if region.startswith("us-gov-"):
        return "aws-us-gov"
    return "aws"


def pseudo_parameters(
    stack_name: str,
    region: Optional[str] = None,
    account_id: Optional[str] = None
) -> Dict[str, Any]:
    """Pseudo parameter values for a stack."""
    region = region or "us-east-1"
    partition = partition_for_region(region)
    return {
        "AWS::StackName": stack_name,
        "AWS::Region": region,
        "AWS::AccountId": account_id or "000000000000",
        "AWS::Partition": partition,
        "AWS::URLSuffix": "amazonaws.com.cn" if partition == "aws-cn" else "amazonaws.com",
        PSEUDO_NO_VALUE: NO_VALUE,
    }


def is_literal(value: Any) -> bool:
    """True when the value contains no resource references."""
    if isinstance(value, (Reference, Interpolation)):
        return False
    if isinstance(value, dict):
        return all(is_literal(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return all(is_literal(item) for item in value)
    return True


def _join_parts(parts: List[Any]) -> Any:
    """Collapse adjacent literal parts; a fully literal result is a plain string."""
    merged: List[Any] = []
    for part in parts:
        if isinstance(part, Interpolation):
            pieces = list(part.parts)
        else:
            pieces = [part]
        for piece in pieces:
            if isinstance(piece, Reference):
                merged.append(piece)
            elif merged and isinstance(merged[-1], str):
                merged[-1] += piece
            else:
                merged.append(piece)
    if all(isinstance(part, str) for part in merged):
        return "".join(merged)
    return Interpolation(tuple(part for part in merged if part != ""))


def _scalar_text(value: Any, path: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ValidationError(f"expected a scalar value, got {type(value).__name__}", path=path)


class IntrinsicEvaluator:
    """Evaluates intrinsic functions against one parameter environment."""

    def __init__(
        self,
        parameters: Mapping[str, Any],
        pseudo: Mapping[str, Any],
        mappings: Optional[MappingLookup] = None,
        conditions: Optional[Mapping[str, Any]] = None
    ):
        """
        Args:
            parameters: Evaluated parameter values
            pseudo: Pseudo parameter values (see pseudo_parameters)
            mappings: Mapping table lookup
            conditions: Raw condition expressions by name
        """
        self.parameters = dict(parameters)
        self.pseudo = dict(pseudo)
        self.mappings = mappings or MappingLookup()
        self.conditions = dict(conditions or {})
        self._condition_values: Dict[str, bool] = {}
        self._evaluating: List[str] = []

    # Conditions

    def condition(self, name: str) -> bool:
        """Evaluate a named condition once and remember the result."""
        if name in self._condition_values:
            return self._condition_values[name]
        if name not in self.conditions:
            raise ValidationError(f"Condition '{name}' is not declared", path="Conditions")
        if name in self._evaluating:
            chain = self._evaluating[self._evaluating.index(name):] + [name]
            raise ValidationError(
                f"Conditions reference each other in a cycle: {' -> '.join(chain)}",
                path=f"Conditions.{name}"
            )

        self._evaluating.append(name)
        try:
            result = self._boolean(self.conditions[name], f"Conditions.{name}")
        finally:
            self._evaluating.pop()
        self._condition_values[name] = result
        return result

    def evaluate_conditions(self) -> Dict[str, bool]:
        return {name: self.condition(name) for name in self.conditions}

    def _boolean(self, expr: Any, path: str) -> bool:
        if isinstance(expr, dict) and len(expr) == 1 and "Condition" in expr:
            name = expr["Condition"]
            if not isinstance(name, str):
                raise ValidationError("Condition expects a condition name", path=path)
            return self.condition(name)
        if isinstance(expr, dict) and len(expr) == 1:
            key = next(iter(expr))
            args = expr[key]
            if key == "Fn::Equals":
                return self._equals(args, path)
            if key == "Fn::Not":
                operands = self._operands(args, 1, 1, key, path)
                return not self._boolean(operands[0], f"{path}.Fn::Not")
            if key == "Fn::And":
                operands = self._operands(args, 2, 10, key, path)
                return all(self._boolean(item, f"{path}.Fn::And") for item in operands)
            if key == "Fn::Or":
                operands = self._operands(args, 2, 10, key, path)
                return any(self._boolean(item, f"{path}.Fn::Or") for item in operands)
        value = self.evaluate(expr, path)
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise ValidationError("condition expression must evaluate to a boolean", path=path)

    def _operands(self, args: Any, low: int, high: int, fn: str, path: str) -> List[Any]:
        if not isinstance(args, list) or not low <= len(args) <= high:
            expected = str(low) if low == high else f"{low} to {high}"
            raise ValidationError(f"{fn} expects a list of {expected} conditions", path=path)
        return args

    def _equals(self, args: Any, path: str) -> bool:
        if not isinstance(args, list) or len(args) != 2:
            raise ValidationError("Fn::Equals expects two values", path=path)
        left = self._literal(args[0], path, "Fn::Equals")
        right = self._literal(args[1], path, "Fn::Equals")
        if isinstance(left, (str, int, float, bool)) and isinstance(right, (str, int, float, bool)):
            return _scalar_text(left, path) == _scalar_text(right, path)
        return left == right

    # Values

    def evaluate(self, value: Any, path: str = "") -> Any:
        """Evaluate every intrinsic function inside a value.

        Returns:
            The evaluated value; NO_VALUE when the whole value is AWS::NoValue
        """
        if isinstance(value, dict):
            if len(value) == 1:
                key = next(iter(value))
                if key == "Ref" or key.startswith("Fn::"):
                    return self._intrinsic(key, value[key], f"{path}.{key}" if path else key)
            result = {}
            for key, item in value.items():
                evaluated = self.evaluate(item, f"{path}.{key}" if path else key)
                if evaluated is not NO_VALUE:
                    result[key] = evaluated
            return result
        if isinstance(value, list):
            result = []
            for index, item in enumerate(value):
                evaluated = self.evaluate(item, f"{path}[{index}]")
                if evaluated is not NO_VALUE:
                    result.append(evaluated)
            return result
        return value

    def _literal(self, value: Any, path: str, fn: str) -> Any:
        evaluated = self.evaluate(value, path)
        if not is_literal(evaluated):
            raise ValidationError(
                f"{fn} requires literal operands; a resource reference cannot be used here",
                path=path
            )
        return evaluated

    def _intrinsic(self, key: str, args: Any, path: str) -> Any:
        handler = {
            "Ref": self._ref,
            "Fn::GetAtt": self._get_att,
            "Fn::Sub": self._sub,
            "Fn::Join": self._join,
            "Fn::FindInMap": self._find_in_map,
            "Fn::Select": self._select,
            "Fn::Split": self._split,
            "Fn::Base64": self._base64,
            "Fn::If": self._if,
            "Fn::Equals": self._equals,
            "Fn::Not": lambda a, p: self._boolean({"Fn::Not": a}, p),
            "Fn::And": lambda a, p: self._boolean({"Fn::And": a}, p),
            "Fn::Or": lambda a, p: self._boolean({"Fn::Or": a}, p),
        }.get(key)
        if handler is None:
            raise ValidationError(f"Unsupported intrinsic function {key}", path=path)
        return handler(args, path)

    def _ref(self, name: Any, path: str) -> Any:
        if not isinstance(name, str):
            raise ValidationError("Ref expects a name", path=path)
        if name in self.parameters:
            return copy.deepcopy(self.parameters[name])
        if name in self.pseudo:
            return self.pseudo[name]
        if name.startswith("AWS::"):
            raise ValidationError(f"Unknown pseudo parameter {name}", path=path)
        return Reference(name)

    def _get_att(self, args: Any, path: str) -> Reference:
        if isinstance(args, str):
            name, sep, attribute = args.partition(".")
            if not sep:
                raise ValidationError("Fn::GetAtt expects 'Name.Attribute'", path=path)
        elif isinstance(args, list) and len(args) == 2:
            name = args[0]
            attribute = self._literal(args[1], path, "Fn::GetAtt")
        else:
            raise ValidationError("Fn::GetAtt expects [Name, Attribute]", path=path)
        if not isinstance(name, str) or not isinstance(attribute, str) or not name or not attribute:
            raise ValidationError("Fn::GetAtt expects string names", path=path)
        if name in self.parameters:
            raise ValidationError(f"Fn::GetAtt cannot target parameter '{name}'", path=path)
        return Reference(name, attribute)

    def _sub(self, args: Any, path: str) -> Any:
        variables: Dict[str, Any] = {}
        if isinstance(args, list):
            if len(args) != 2 or not isinstance(args[0], str) or not isinstance(args[1], dict):
                raise ValidationError("Fn::Sub expects a string or [string, variables]", path=path)
            text = args[0]
            for var_name, var_value in args[1].items():
                variables[var_name] = self.evaluate(var_value, f"{path}.{var_name}")
        elif isinstance(args, str):
            text = args
        else:
            raise ValidationError("Fn::Sub expects a string or [string, variables]", path=path)

        parts: List[Any] = []
        position = 0
        for match in _PLACEHOLDER.finditer(text):
            parts.append(text[position:match.start()])
            position = match.end()
            name = match.group(1).strip()
            if name.startswith("!"):
                parts.append("${" + name[1:] + "}")
                continue
            parts.append(self._sub_variable(name, variables, path))
        parts.append(text[position:])
        return _join_parts(parts)

    def _sub_variable(self, name: str, variables: Dict[str, Any], path: str) -> Any:
        if not name:
            raise ValidationError("Fn::Sub has an empty placeholder", path=path)
        if name in variables:
            value = variables[name]
        elif name in self.parameters or name in self.pseudo:
            value = self._ref(name, path)
        elif "." in name:
            resource, _, attribute = name.partition(".")
            value = Reference(resource, attribute)
        elif name.startswith("AWS::"):
            raise ValidationError(f"Unknown pseudo parameter {name}", path=path)
        else:
            value = Reference(name)

        if value is NO_VALUE:
            return ""
        if isinstance(value, (Reference, Interpolation)):
            return value
        if isinstance(value, list):
            return ",".join(_scalar_text(item, path) for item in value)
        return _scalar_text(value, path)

    def _join(self, args: Any, path: str) -> Any:
        if not isinstance(args, list) or len(args) != 2:
            raise ValidationError("Fn::Join expects [delimiter, list]", path=path)
        delimiter = self._literal(args[0], path, "Fn::Join")
        if not isinstance(delimiter, str):
            raise ValidationError("Fn::Join delimiter must be a string", path=path)
        items = self.evaluate(args[1], path)
        if not isinstance(items, list):
            raise ValidationError("Fn::Join expects a list of values", path=path)

        parts: List[Any] = []
        for index, item in enumerate(items):
            if index:
                parts.append(delimiter)
            if isinstance(item, (Reference, Interpolation)):
                parts.append(item)
            else:
                parts.append(_scalar_text(item, path))
        return _join_parts(parts)

    def _find_in_map(self, args: Any, path: str) -> Any:
        if not isinstance(args, list) or len(args) != 3:
            raise ValidationError("Fn::FindInMap expects [MapName, TopKey, SecondKey]", path=path)
        keys = [self._literal(item, path, "Fn::FindInMap") for item in args]
        for key in keys:
            if not isinstance(key, str):
                raise ValidationError("Fn::FindInMap keys must be strings", path=path)
        return self.mappings.find(*keys)

    def _select(self, args: Any, path: str) -> Any:
        if not isinstance(args, list) or len(args) != 2:
            raise ValidationError("Fn::Select expects [index, list]", path=path)
        index = self._literal(args[0], path, "Fn::Select")
        items = self._literal(args[1], path, "Fn::Select")
        try:
            index = int(index)
        except (TypeError, ValueError):
            raise ValidationError(f"Fn::Select index '{index}' is not an integer", path=path)
        if not isinstance(items, list):
            raise ValidationError("Fn::Select expects a list", path=path)
        if not 0 <= index < len(items):
            raise ValidationError(f"Fn::Select index {index} is out of range", path=path)
        return items[index]

    def _split(self, args: Any, path: str) -> List[str]:
        if not isinstance(args, list) or len(args) != 2:
            raise ValidationError("Fn::Split expects [delimiter, string]", path=path)
        delimiter = self._literal(args[0], path, "Fn::Split")
        source = self._literal(args[1], path, "Fn::Split")
        if not isinstance(delimiter, str) or not delimiter or not isinstance(source, str):
            raise ValidationError("Fn::Split expects a delimiter and a string", path=path)
        return source.split(delimiter)

    def _base64(self, args: Any, path: str) -> str:
        value = self._literal(args, path, "Fn::Base64")
        if not isinstance(value, str):
            raise ValidationError("Fn::Base64 expects a string", path=path)
        return base64.b64encode(value.encode("utf-8")).decode("ascii")

    def _if(self, args: Any, path: str) -> Any:
        if not isinstance(args, list) or len(args) != 3 or not isinstance(args[0], str):
            raise ValidationError("Fn::If expects [ConditionName, ValueIfTrue, ValueIfFalse]",
                                  path=path)
        if self.condition(args[0]):
            return self.evaluate(args[1], f"{path}[1]")
        return self.evaluate(args[2], f"{path}[2]")

