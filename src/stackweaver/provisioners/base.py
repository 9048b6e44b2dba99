"""Provider contract and registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import boto3

from stackweaver.utils.errors import ErrorContext, ValidationError


@dataclass(frozen=True)
class ProviderSpec:
    """Fully resolved desired state handed to a provider call."""
    logical_name: str
    type_name: str
    properties: Dict[str, Any]
    tags: List[Dict[str, Any]] = field(default_factory=list)
    stack: Optional[str] = None

    def tag_dict(self) -> Dict[str, str]:
        return {tag["Key"]: str(tag["Value"]) for tag in self.tags}

    def error_context(self, operation: str) -> ErrorContext:
        return ErrorContext(
            stack_name=self.stack,
            resource_id=self.logical_name,
            resource_type=self.type_name,
            operation=operation,
        )


class ResourceProvider(ABC):
    """Lifecycle operations for one resource type.

    Providers are stateless between calls; every call receives what it needs.
    All failures are raised as ProviderError (NotFoundError for absent resources).
    """

    type_name: str = ""

    @abstractmethod
    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        """Create the resource.

        Returns:
            (physical_id, attributes)
        """

    @abstractmethod
    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        """Update the resource in place.

        Returns:
            Current attributes
        """

    @abstractmethod
    def delete(self, physical_id: str) -> None:
        """Delete the resource."""

    @abstractmethod
    def read(self, physical_id: str) -> Dict[str, Any]:
        """Read current attributes.

        Raises:
            NotFoundError: If the resource does not exist
        """


class AWSResourceProvider(ResourceProvider):
    """Base class for providers backed by boto3 clients."""

    service_name: str = ""

    def __init__(self, boto_session: boto3.Session, client=None):
        """Initialize provider with boto3 session.

        Args:
            boto_session: Configured boto3 session for AWS API calls
            client: Preconfigured client (tests pass a stubbed one)
        """
        self.session = boto_session
        self.client = client if client is not None else boto_session.client(self.service_name)


class ProviderRegistry:
    """Maps resource type names to providers."""

    def __init__(self, providers: Optional[Dict[str, ResourceProvider]] = None):
        self._providers: Dict[str, ResourceProvider] = dict(providers or {})

    def register(self, type_name: str, provider: ResourceProvider) -> None:
        self._providers[type_name] = provider

    def get(self, type_name: str) -> ResourceProvider:
        """Provider for a type.

        Raises:
            ValidationError: If no provider handles the type
        """
        provider = self._providers.get(type_name)
        if provider is None:
            raise ValidationError(f"No provider registered for resource type {type_name}")
        return provider

    def has(self, type_name: str) -> bool:
        return type_name in self._providers

    def type_names(self) -> List[str]:
        return sorted(self._providers)

    def missing(self, type_names) -> List[str]:
        """Type names without a registered provider."""
        return sorted({name for name in type_names if name not in self._providers})
