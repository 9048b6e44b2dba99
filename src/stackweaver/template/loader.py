"""Template loading: YAML/JSON documents with CloudFormation short-form tags."""

import datetime
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from stackweaver.utils.errors import ValidationError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)

_LOGICAL_NAME = re.compile(r"^[A-Za-z0-9]+$")

# Short-form tag -> long-form key
SHORT_FORM_TAGS = {
    "!Ref": "Ref",
    "!Condition": "Condition",
    "!GetAtt": "Fn::GetAtt",
    "!Sub": "Fn::Sub",
    "!FindInMap": "Fn::FindInMap",
    "!Join": "Fn::Join",
    "!Select": "Fn::Select",
    "!Split": "Fn::Split",
    "!If": "Fn::If",
    "!Equals": "Fn::Equals",
    "!Not": "Fn::Not",
    "!And": "Fn::And",
    "!Or": "Fn::Or",
    "!Base64": "Fn::Base64",
}


class TemplateLoader(yaml.SafeLoader):
    """SafeLoader that understands CloudFormation short-form intrinsic tags."""


def _construct_intrinsic(key: str):
    def constructor(loader: yaml.SafeLoader, node: yaml.Node) -> Dict[str, Any]:
        if isinstance(node, yaml.ScalarNode):
            value = loader.construct_scalar(node)
        elif isinstance(node, yaml.SequenceNode):
            value = loader.construct_sequence(node, deep=True)
        else:
            value = loader.construct_mapping(node, deep=True)
        return {key: value}
    return constructor


for _tag, _key in SHORT_FORM_TAGS.items():
    TemplateLoader.add_constructor(_tag, _construct_intrinsic(_key))


def _normalize(value: Any) -> Any:
    """Unquoted dates such as 2010-09-09 are strings to CloudFormation."""
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    return value


class ParameterDefinition(BaseModel):
    """Template parameter declaration."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: str = Field(..., alias="Type")
    default: Optional[Any] = Field(None, alias="Default")
    description: Optional[str] = Field(None, alias="Description")
    allowed_pattern: Optional[str] = Field(None, alias="AllowedPattern")
    allowed_values: Optional[List[Any]] = Field(None, alias="AllowedValues")
    min_length: Optional[int] = Field(None, ge=0, alias="MinLength")
    max_length: Optional[int] = Field(None, ge=0, alias="MaxLength")
    min_value: Optional[float] = Field(None, alias="MinValue")
    max_value: Optional[float] = Field(None, alias="MaxValue")
    constraint_description: Optional[str] = Field(None, alias="ConstraintDescription")
    no_echo: bool = Field(False, alias="NoEcho")

    @field_validator("allowed_pattern")
    @classmethod
    def validate_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"AllowedPattern is not a valid regular expression: {e}")
        return v


class ResourceDefinition(BaseModel):
    """Template resource declaration, before intrinsic evaluation."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: str = Field(..., min_length=1, alias="Type")
    properties: Dict[str, Any] = Field(default_factory=dict, alias="Properties")
    depends_on: List[str] = Field(default_factory=list, alias="DependsOn")
    deletion_policy: str = Field("Delete", pattern="^(Delete|Retain)$", alias="DeletionPolicy")
    update_replace_policy: Optional[str] = Field(
        None, pattern="^(Delete|Retain)$", alias="UpdateReplacePolicy"
    )
    condition: Optional[str] = Field(None, alias="Condition")
    metadata: Optional[Dict[str, Any]] = Field(None, alias="Metadata")

    @field_validator("depends_on", mode="before")
    @classmethod
    def normalize_depends_on(cls, v: Union[str, List[str], None]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("properties", mode="before")
    @classmethod
    def normalize_properties(cls, v):
        return {} if v is None else v


class OutputDefinition(BaseModel):
    """Template output declaration."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    value: Any = Field(..., alias="Value")
    description: Optional[str] = Field(None, alias="Description")
    condition: Optional[str] = Field(None, alias="Condition")
    export: Optional[Dict[str, Any]] = Field(None, alias="Export")


class Template(BaseModel):
    """A parsed template document."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    format_version: Optional[str] = Field(None, alias="AWSTemplateFormatVersion")
    description: Optional[str] = Field(None, alias="Description")
    metadata: Dict[str, Any] = Field(default_factory=dict, alias="Metadata")
    parameters: Dict[str, ParameterDefinition] = Field(default_factory=dict, alias="Parameters")
    mappings: Dict[str, Dict[str, Dict[str, Any]]] = Field(default_factory=dict, alias="Mappings")
    conditions: Dict[str, Any] = Field(default_factory=dict, alias="Conditions")
    resources: Dict[str, ResourceDefinition] = Field(..., alias="Resources")
    outputs: Dict[str, OutputDefinition] = Field(default_factory=dict, alias="Outputs")

    @model_validator(mode="after")
    def validate_names(self):
        """Logical names are alphanumeric and unique across sections."""
        if not self.resources:
            raise ValueError("Resources must declare at least one resource")

        for section, names in (
            ("Parameters", self.parameters),
            ("Resources", self.resources),
            ("Outputs", self.outputs),
            ("Conditions", self.conditions),
        ):
            for name in names:
                if not _LOGICAL_NAME.match(name):
                    raise ValueError(f"{section}.{name}: logical names must be alphanumeric")

        clashes = set(self.parameters) & set(self.resources)
        if clashes:
            raise ValueError(
                f"Names used as both parameter and resource: {', '.join(sorted(clashes))}"
            )

        for name, resource in self.resources.items():
            if resource.condition and resource.condition not in self.conditions:
                raise ValueError(
                    f"Resources.{name}: condition '{resource.condition}' is not declared"
                )
        for name, output in self.outputs.items():
            if output.condition and output.condition not in self.conditions:
                raise ValueError(
                    f"Outputs.{name}: condition '{output.condition}' is not declared"
                )
        return self

    def resource_names(self) -> List[str]:
        """Logical names in declaration order."""
        return list(self.resources)


def _format_location(loc) -> str:
    parts = []
    for item in loc:
        if isinstance(item, int):
            parts.append(f"[{item}]")
        else:
            parts.append(("." if parts else "") + str(item))
    return "".join(parts)


def parse_template(text: str, source: str = "<template>", fmt: Optional[str] = None) -> Template:
    """Parse a template document.

    Args:
        text: Document body
        source: Name used in error messages
        fmt: 'json' or 'yaml'; YAML is assumed when not given

    Returns:
        Validated Template

    Raises:
        ValidationError: If the document cannot be parsed or is structurally invalid
    """
    try:
        if fmt == "json":
            data = json.loads(text)
        else:
            data = yaml.load(text, Loader=TemplateLoader)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValidationError(f"Failed to parse template: {e}", path=source, cause=e)

    if not isinstance(data, dict):
        raise ValidationError("Template must be a mapping at the top level", path=source)

    try:
        template = Template.model_validate(_normalize(data))
    except PydanticValidationError as e:
        error = e.errors()[0]
        location = _format_location(error.get("loc", ()))
        raise ValidationError(
            error.get("msg", "invalid value"),
            path=f"{source}:{location}" if location else source,
            cause=e
        )

    logger.debug(
        f"Parsed template {source}: {len(template.resources)} resources, "
        f"{len(template.parameters)} parameters"
    )
    return template


def load_template(template_path: Union[str, Path]) -> Template:
    """Load a template file (.yaml, .yml, .json or .template).

    Raises:
        ValidationError: If the file cannot be read or parsed
    """
    path = Path(template_path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Cannot read template: {e}", path=str(path), cause=e)

    fmt = "json" if path.suffix.lower() == ".json" else "yaml"
    return parse_template(text, source=str(path), fmt=fmt)
