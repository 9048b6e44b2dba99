"""ACM certificate provider."""

import uuid
from typing import Any, Dict, List, Tuple

from .base import AWSResourceProvider, ProviderSpec
from stackweaver.utils.errors import ProviderError
from stackweaver.utils.logging import get_logger
from stackweaver.utils.retry import with_retry

logger = get_logger(__name__)


@with_retry(max_attempts=10, base_delay=2.0, max_delay=10.0)
def published_validation_records(
    client,
    certificate_arn: str,
    domains: List[str]
) -> List[Tuple[str, Dict[str, str]]]:
    """(domain, DNS validation record) pairs, once ACM has published them.

    Records for a domain and its wildcard are identical, so duplicates are dropped.

    Raises:
        ProviderError: Retryable until every domain has its record
    """
    certificate = client.describe_certificate(CertificateArn=certificate_arn)['Certificate']
    by_domain = {
        option['DomainName']: option.get('ResourceRecord')
        for option in certificate.get('DomainValidationOptions', [])
    }
    missing = [domain for domain in domains if not by_domain.get(domain)]
    if missing:
        raise ProviderError(
            f"ACM has not published validation records for {', '.join(missing)} yet",
            retryable=True
        )

    records: Dict[str, Tuple[str, Dict[str, str]]] = {}
    for domain in domains:
        record = by_domain[domain]
        records.setdefault(record['Name'], (domain, record))
    return list(records.values())


class CertificateProvider(AWSResourceProvider):
    """Requests and deletes ACM certificates. Physical ID is the certificate ARN."""

    type_name = "AWS::CertificateManager::Certificate"
    service_name = "acm"

    def __init__(self, boto_session, client=None, route53_client=None):
        super().__init__(boto_session, client=client)
        self._route53 = route53_client

    @property
    def route53(self):
        """Client for publishing DNS validation records."""
        if self._route53 is None:
            self._route53 = self.session.client('route53')
        return self._route53

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        properties = spec.properties
        params: Dict[str, Any] = {
            'DomainName': properties['DomainName'],
            'ValidationMethod': properties.get('ValidationMethod', 'DNS'),
            # Retried requests must not produce a second certificate
            'IdempotencyToken': uuid.uuid5(
                uuid.NAMESPACE_URL, f"{spec.stack}/{spec.logical_name}"
            ).hex[:32],
        }
        if properties.get('SubjectAlternativeNames'):
            params['SubjectAlternativeNames'] = list(properties['SubjectAlternativeNames'])
        if properties.get('DomainValidationOptions'):
            params['DomainValidationOptions'] = [
                {
                    'DomainName': option['DomainName'],
                    'ValidationDomain': option.get('ValidationDomain', option['DomainName']),
                }
                for option in properties['DomainValidationOptions']
            ]
        if properties.get('CertificateAuthorityArn'):
            params['CertificateAuthorityArn'] = properties['CertificateAuthorityArn']
        if properties.get('KeyAlgorithm'):
            params['KeyAlgorithm'] = properties['KeyAlgorithm']
        if properties.get('CertificateTransparencyLoggingPreference'):
            params['Options'] = {
                'CertificateTransparencyLoggingPreference':
                    properties['CertificateTransparencyLoggingPreference']
            }
        if spec.tags:
            params['Tags'] = [{'Key': t['Key'], 'Value': str(t['Value'])} for t in spec.tags]

        response = self.client.request_certificate(**params)
        arn = response['CertificateArn']
        logger.info(f"Requested certificate for {properties['DomainName']}: {arn}")

        zones = {
            option['DomainName']: option['HostedZoneId']
            for option in properties.get('DomainValidationOptions') or []
            if option.get('HostedZoneId')
        }
        if zones and params['ValidationMethod'] == 'DNS':
            self._validate_with_route53(arn, zones)
        return arn, {'Arn': arn}

    def _validate_with_route53(self, arn: str, zones: Dict[str, str]) -> None:
        """Publish the DNS validation records and wait for the certificate to be issued."""
        records = published_validation_records(self.client, arn, sorted(zones))
        for domain, record in records:
            self.route53.change_resource_record_sets(
                HostedZoneId=zones[domain].split('/')[-1],
                ChangeBatch={'Changes': [{
                    'Action': 'UPSERT',
                    'ResourceRecordSet': {
                        'Name': record['Name'],
                        'Type': record['Type'],
                        'TTL': 300,
                        'ResourceRecords': [{'Value': record['Value']}],
                    },
                }]}
            )
        logger.info(f"Waiting for DNS validation of {arn}")
        self.client.get_waiter('certificate_validated').wait(
            CertificateArn=arn, WaiterConfig={'Delay': 15, 'MaxAttempts': 120}
        )

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        preference = spec.properties.get('CertificateTransparencyLoggingPreference')
        if preference:
            self.client.update_certificate_options(
                CertificateArn=physical_id,
                Options={'CertificateTransparencyLoggingPreference': preference}
            )

        current = self.client.list_tags_for_certificate(CertificateArn=physical_id).get('Tags', [])
        desired = spec.tag_dict()
        stale = [tag for tag in current if tag['Key'] not in desired]
        if stale:
            self.client.remove_tags_from_certificate(CertificateArn=physical_id, Tags=stale)
        if desired:
            self.client.add_tags_to_certificate(
                CertificateArn=physical_id,
                Tags=[{'Key': k, 'Value': v} for k, v in desired.items()]
            )
        return {'Arn': physical_id}

    def delete(self, physical_id: str) -> None:
        self.client.delete_certificate(CertificateArn=physical_id)

    def read(self, physical_id: str) -> Dict[str, Any]:
        certificate = self.client.describe_certificate(CertificateArn=physical_id)['Certificate']
        return {'Arn': certificate['CertificateArn']}
