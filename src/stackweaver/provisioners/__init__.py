"""Providers that carry out create, update, delete and read for resource types."""

from .base import AWSResourceProvider, ProviderRegistry, ProviderSpec, ResourceProvider
from .memory import InMemoryProvider, simulated_providers
from .acm import CertificateProvider
from .cloudfront import DistributionProvider, OriginAccessIdentityProvider
from .codebuild import ProjectProvider, SourceCredentialProvider
from .iam import RoleProvider
from .route53 import HostedZoneProvider, RecordSetGroupProvider
from .s3 import BucketPolicyProvider, BucketProvider

AWS_PROVIDER_CLASSES = (
    CertificateProvider,
    OriginAccessIdentityProvider,
    DistributionProvider,
    ProjectProvider,
    SourceCredentialProvider,
    RoleProvider,
    HostedZoneProvider,
    RecordSetGroupProvider,
    BucketProvider,
    BucketPolicyProvider,
)


def aws_providers(client_manager) -> ProviderRegistry:
    """Registry of boto3-backed providers sharing one session and client cache.

    Args:
        client_manager: AWSClientManager supplying the session and clients
    """
    registry = ProviderRegistry()
    for provider_class in AWS_PROVIDER_CLASSES:
        registry.register(
            provider_class.type_name,
            provider_class(
                client_manager.session,
                client=client_manager.get_client(provider_class.service_name)
            )
        )
    return registry


__all__ = [
    'AWSResourceProvider',
    'ProviderRegistry',
    'ProviderSpec',
    'ResourceProvider',
    'InMemoryProvider',
    'simulated_providers',
    'CertificateProvider',
    'OriginAccessIdentityProvider',
    'DistributionProvider',
    'ProjectProvider',
    'SourceCredentialProvider',
    'RoleProvider',
    'HostedZoneProvider',
    'RecordSetGroupProvider',
    'BucketProvider',
    'BucketPolicyProvider',
    'AWS_PROVIDER_CLASSES',
    'aws_providers',
]
