"""Template documents, parameters and intrinsic functions."""

from .loader import (
    OutputDefinition,
    ParameterDefinition,
    ResourceDefinition,
    Template,
    load_template,
    parse_template,
)
from .parameters import (
    NO_ECHO_MASK,
    load_parameter_file,
    masked_parameters,
    parse_parameter_overrides,
    resolve_parameters,
)
from .intrinsics import NO_VALUE, IntrinsicEvaluator, MappingLookup, pseudo_parameters

__all__ = [
    "OutputDefinition",
    "ParameterDefinition",
    "ResourceDefinition",
    "Template",
    "load_template",
    "parse_template",
    "NO_ECHO_MASK",
    "load_parameter_file",
    "masked_parameters",
    "parse_parameter_overrides",
    "resolve_parameters",
    "NO_VALUE",
    "IntrinsicEvaluator",
    "MappingLookup",
    "pseudo_parameters",
]
