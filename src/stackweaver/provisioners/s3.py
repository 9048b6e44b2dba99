"""S3 bucket and bucket policy providers."""

import json
from typing import Any, Dict, Tuple

from botocore.exceptions import ClientError

from .base import AWSResourceProvider, ProviderSpec
from stackweaver.utils.errors import NotFoundError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)


class BucketProvider(AWSResourceProvider):
    """Provider for S3 buckets. Physical ID is the bucket name.

    Buckets are never emptied before deletion; deleting a non-empty bucket fails.
    """

    type_name = "AWS::S3::Bucket"
    service_name = "s3"

    def _region(self) -> str:
        return self.client.meta.region_name or 'us-east-1'

    def _attributes(self, bucket: str) -> Dict[str, Any]:
        region = self._region()
        return {
            'Arn': f"arn:aws:s3:::{bucket}",
            'DomainName': f"{bucket}.s3.amazonaws.com",
            'DualStackDomainName': f"{bucket}.s3.dualstack.{region}.amazonaws.com",
            'RegionalDomainName': f"{bucket}.s3.{region}.amazonaws.com",
            'WebsiteURL': f"http://{bucket}.s3-website-{region}.amazonaws.com",
        }

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        properties = spec.properties
        bucket = properties.get('BucketName') or f"{spec.stack}-{spec.logical_name}".lower()[:63]

        create_params: Dict[str, Any] = {'Bucket': bucket}
        region = self._region()
        # us-east-1 is the default and must not be passed as a constraint
        if region != 'us-east-1':
            create_params['CreateBucketConfiguration'] = {'LocationConstraint': region}
        if properties.get('OwnershipControls'):
            rules = properties['OwnershipControls'].get('Rules', [])
            if rules:
                create_params['ObjectOwnership'] = rules[0]['ObjectOwnership']

        self.client.create_bucket(**create_params)
        self._configure(bucket, spec, created=True)
        logger.info(f"Created S3 bucket {bucket}")
        return bucket, self._attributes(bucket)

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        self._configure(physical_id, spec)
        return self._attributes(physical_id)

    def delete(self, physical_id: str) -> None:
        self.client.delete_bucket(Bucket=physical_id)

    def read(self, physical_id: str) -> Dict[str, Any]:
        try:
            self.client.head_bucket(Bucket=physical_id)
        except ClientError as e:
            # head_bucket reports a bare status code
            if e.response['Error']['Code'] in ('404', 'NoSuchBucket'):
                raise NotFoundError(f"S3 bucket {physical_id} not found", cause=e)
            raise
        return self._attributes(physical_id)

    def _configure(self, bucket: str, spec: ProviderSpec, created: bool = False) -> None:
        properties = spec.properties

        if properties.get('BucketEncryption'):
            self.client.put_bucket_encryption(
                Bucket=bucket,
                ServerSideEncryptionConfiguration={
                    'Rules': properties['BucketEncryption']['ServerSideEncryptionConfiguration']
                }
            )
        if properties.get('PublicAccessBlockConfiguration'):
            self.client.put_public_access_block(
                Bucket=bucket,
                PublicAccessBlockConfiguration=properties['PublicAccessBlockConfiguration']
            )
        if properties.get('VersioningConfiguration'):
            self.client.put_bucket_versioning(
                Bucket=bucket,
                VersioningConfiguration={'Status': properties['VersioningConfiguration']['Status']}
            )
        if properties.get('WebsiteConfiguration'):
            website = properties['WebsiteConfiguration']
            config: Dict[str, Any] = {}
            if 'IndexDocument' in website:
                config['IndexDocument'] = {'Suffix': website['IndexDocument']}
            if 'ErrorDocument' in website:
                config['ErrorDocument'] = {'Key': website['ErrorDocument']}
            if 'RedirectAllRequestsTo' in website:
                config['RedirectAllRequestsTo'] = dict(website['RedirectAllRequestsTo'])
            self.client.put_bucket_website(Bucket=bucket, WebsiteConfiguration=config)
        if properties.get('CorsConfiguration'):
            self.client.put_bucket_cors(
                Bucket=bucket,
                CORSConfiguration={'CORSRules': properties['CorsConfiguration']['CorsRules']}
            )
        if properties.get('AccessControl'):
            self.client.put_bucket_acl(Bucket=bucket, ACL=_canned_acl(properties['AccessControl']))

        if spec.tags:
            self.client.put_bucket_tagging(
                Bucket=bucket,
                Tagging={'TagSet': [{'Key': k, 'Value': v} for k, v in spec.tag_dict().items()]}
            )
        elif not created:
            self.client.delete_bucket_tagging(Bucket=bucket)


def _canned_acl(value: str) -> str:
    """PublicRead -> public-read."""
    out = []
    for i, char in enumerate(value):
        if char.isupper() and i:
            out.append('-')
        out.append(char.lower())
    return ''.join(out)


class BucketPolicyProvider(AWSResourceProvider):
    """Physical ID is the bucket name the policy is attached to."""

    type_name = "AWS::S3::BucketPolicy"
    service_name = "s3"

    def _put(self, spec: ProviderSpec) -> str:
        bucket = spec.properties['Bucket']
        document = spec.properties['PolicyDocument']
        self.client.put_bucket_policy(
            Bucket=bucket,
            Policy=document if isinstance(document, str) else json.dumps(document)
        )
        return bucket

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        return self._put(spec), {}

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        self._put(spec)
        return {}

    def delete(self, physical_id: str) -> None:
        self.client.delete_bucket_policy(Bucket=physical_id)

    def read(self, physical_id: str) -> Dict[str, Any]:
        self.client.get_bucket_policy(Bucket=physical_id)
        return {}
