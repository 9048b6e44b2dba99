"""CloudFront origin access identity and distribution providers."""

import copy
import uuid
from typing import Any, Dict, List, Tuple

from .base import AWSResourceProvider, ProviderSpec
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)

# Template keys whose API names differ only in capitalisation
_RENAMED_KEYS = {
    'AcmCertificateArn': 'ACMCertificateArn',
    'IamCertificateId': 'IAMCertificateId',
}

# Template list properties that the API wraps as {Quantity, Items}
_QUANTITY_LISTS = {
    'Aliases', 'Origins', 'CustomErrorResponses', 'CacheBehaviors', 'AllowedMethods',
    'CachedMethods', 'Headers', 'QueryStringCacheKeys', 'WhitelistedNames',
    'LambdaFunctionAssociations', 'FunctionAssociations', 'OriginSslProtocols',
    'Locations', 'TrustedSigners', 'TrustedKeyGroups', 'Members', 'StatusCodes',
}


def _quantity(items: List[Any]) -> Dict[str, Any]:
    return {'Quantity': len(items), 'Items': items}


def _convert(value: Any) -> Any:
    if isinstance(value, dict):
        converted = {}
        for key, item in value.items():
            key = _RENAMED_KEYS.get(key, key)
            item = _convert(item)
            if key in _QUANTITY_LISTS and isinstance(item, list):
                item = _quantity(item)
            converted[key] = item
        return converted
    if isinstance(value, list):
        return [_convert(item) for item in value]
    return value


def _cache_behavior(behavior: Dict[str, Any]) -> Dict[str, Any]:
    # CachedMethods is nested inside AllowedMethods by the API
    cached = behavior.pop('CachedMethods', None)
    if cached is not None and 'AllowedMethods' in behavior:
        behavior['AllowedMethods']['CachedMethods'] = cached
    return behavior


def distribution_config(properties: Dict[str, Any], caller_reference: str) -> Dict[str, Any]:
    """Translate a template DistributionConfig into the CloudFront API shape.

    Args:
        properties: Resolved DistributionConfig
        caller_reference: Unique reference required by the API

    Returns:
        DistributionConfig for create_distribution / update_distribution
    """
    config = _convert(copy.deepcopy(properties))
    config['CallerReference'] = caller_reference
    config.setdefault('Comment', '')
    config.setdefault('Enabled', True)
    if 'DefaultCacheBehavior' in config:
        config['DefaultCacheBehavior'] = _cache_behavior(config['DefaultCacheBehavior'])
    behaviors = config.get('CacheBehaviors')
    if behaviors:
        behaviors['Items'] = [_cache_behavior(item) for item in behaviors['Items']]
    for origin in config.get('Origins', {}).get('Items', []):
        if 'S3OriginConfig' in origin:
            origin['S3OriginConfig'].setdefault('OriginAccessIdentity', '')
    certificate = config.get('ViewerCertificate')
    if certificate and 'SslSupportMethod' in certificate:
        certificate['SSLSupportMethod'] = certificate.pop('SslSupportMethod')
    return config


def _caller_reference(spec: ProviderSpec) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{spec.stack}/{spec.logical_name}"))


class OriginAccessIdentityProvider(AWSResourceProvider):
    """Physical ID is the identity ID."""

    type_name = "AWS::CloudFront::CloudFrontOriginAccessIdentity"
    service_name = "cloudfront"

    def _config(self, spec: ProviderSpec) -> Dict[str, Any]:
        config = dict(spec.properties['CloudFrontOriginAccessIdentityConfig'])
        config.setdefault('Comment', '')
        config['CallerReference'] = _caller_reference(spec)
        return config

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        response = self.client.create_cloud_front_origin_access_identity(
            CloudFrontOriginAccessIdentityConfig=self._config(spec)
        )
        identity = response['CloudFrontOriginAccessIdentity']
        return identity['Id'], {
            'Id': identity['Id'],
            'S3CanonicalUserId': identity['S3CanonicalUserId'],
        }

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        current = self.client.get_cloud_front_origin_access_identity_config(Id=physical_id)
        config = self._config(spec)
        # CallerReference cannot change after creation
        config['CallerReference'] = current['CloudFrontOriginAccessIdentityConfig']['CallerReference']
        response = self.client.update_cloud_front_origin_access_identity(
            Id=physical_id,
            IfMatch=current['ETag'],
            CloudFrontOriginAccessIdentityConfig=config
        )
        identity = response['CloudFrontOriginAccessIdentity']
        return {'Id': identity['Id'], 'S3CanonicalUserId': identity['S3CanonicalUserId']}

    def delete(self, physical_id: str) -> None:
        current = self.client.get_cloud_front_origin_access_identity(Id=physical_id)
        self.client.delete_cloud_front_origin_access_identity(Id=physical_id, IfMatch=current['ETag'])

    def read(self, physical_id: str) -> Dict[str, Any]:
        identity = self.client.get_cloud_front_origin_access_identity(
            Id=physical_id
        )['CloudFrontOriginAccessIdentity']
        return {'Id': identity['Id'], 'S3CanonicalUserId': identity['S3CanonicalUserId']}


class DistributionProvider(AWSResourceProvider):
    """Physical ID is the distribution ID."""

    type_name = "AWS::CloudFront::Distribution"
    service_name = "cloudfront"

    @staticmethod
    def _attributes(distribution: Dict[str, Any]) -> Dict[str, Any]:
        return {'Id': distribution['Id'], 'DomainName': distribution['DomainName']}

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        config = distribution_config(spec.properties['DistributionConfig'], _caller_reference(spec))
        if spec.tags:
            response = self.client.create_distribution_with_tags(
                DistributionConfigWithTags={
                    'DistributionConfig': config,
                    'Tags': {'Items': [
                        {'Key': k, 'Value': v} for k, v in spec.tag_dict().items()
                    ]},
                }
            )
        else:
            response = self.client.create_distribution(DistributionConfig=config)
        distribution = response['Distribution']
        logger.info(f"Created CloudFront distribution {distribution['Id']} "
                    f"({distribution['DomainName']})")
        return distribution['Id'], self._attributes(distribution)

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        current = self.client.get_distribution_config(Id=physical_id)
        reference = current['DistributionConfig']['CallerReference']
        config = distribution_config(spec.properties['DistributionConfig'], reference)
        response = self.client.update_distribution(
            Id=physical_id, IfMatch=current['ETag'], DistributionConfig=config
        )
        distribution = response['Distribution']

        arn = distribution['ARN']
        desired = spec.tag_dict()
        existing = self.client.list_tags_for_resource(Resource=arn)['Tags'].get('Items', [])
        stale = [tag['Key'] for tag in existing if tag['Key'] not in desired]
        if stale:
            self.client.untag_resource(Resource=arn, TagKeys={'Items': stale})
        if desired:
            self.client.tag_resource(
                Resource=arn,
                Tags={'Items': [{'Key': k, 'Value': v} for k, v in desired.items()]}
            )
        return self._attributes(distribution)

    def delete(self, physical_id: str) -> None:
        current = self.client.get_distribution_config(Id=physical_id)
        etag = current['ETag']
        config = current['DistributionConfig']
        if config.get('Enabled'):
            # Distributions must be disabled and deployed before they can be deleted
            config['Enabled'] = False
            etag = self.client.update_distribution(
                Id=physical_id, IfMatch=etag, DistributionConfig=config
            )['ETag']
            logger.info(f"Disabled CloudFront distribution {physical_id}, waiting for deployment...")
            self.client.get_waiter('distribution_deployed').wait(Id=physical_id)
        self.client.delete_distribution(Id=physical_id, IfMatch=etag)

    def read(self, physical_id: str) -> Dict[str, Any]:
        distribution = self.client.get_distribution(Id=physical_id)['Distribution']
        return self._attributes(distribution)
