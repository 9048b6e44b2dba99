"""Route 53 hosted zone and record set group providers."""

import uuid
from typing import Any, Dict, List, Tuple

from .base import AWSResourceProvider, ProviderSpec
from stackweaver.utils.errors import NotFoundError, ProviderError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)


def _zone_id(value: str) -> str:
    return value.split('/')[-1]


def _fqdn(name: str) -> str:
    return name if name.endswith('.') else f"{name}."


class HostedZoneProvider(AWSResourceProvider):
    """Physical ID is the hosted zone ID without the /hostedzone/ prefix."""

    type_name = "AWS::Route53::HostedZone"
    service_name = "route53"

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        properties = spec.properties
        params: Dict[str, Any] = {
            'Name': properties['Name'],
            'CallerReference': str(uuid.uuid4()),
        }
        if properties.get('HostedZoneConfig'):
            params['HostedZoneConfig'] = dict(properties['HostedZoneConfig'])
        vpcs = properties.get('VPCs') or []
        if vpcs:
            params['VPC'] = {'VPCRegion': vpcs[0]['VPCRegion'], 'VPCId': vpcs[0]['VPCId']}

        response = self.client.create_hosted_zone(**params)
        zone_id = _zone_id(response['HostedZone']['Id'])
        self._tag(zone_id, properties.get('HostedZoneTags') or [])
        logger.info(f"Created hosted zone {properties['Name']} ({zone_id})")
        return zone_id, {
            'Id': zone_id,
            'NameServers': list(response.get('DelegationSet', {}).get('NameServers', [])),
        }

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        comment = (spec.properties.get('HostedZoneConfig') or {}).get('Comment', '')
        self.client.update_hosted_zone_comment(Id=physical_id, Comment=comment)
        self._tag(physical_id, spec.properties.get('HostedZoneTags') or [])
        return self.read(physical_id)

    def delete(self, physical_id: str) -> None:
        self.client.delete_hosted_zone(Id=physical_id)

    def read(self, physical_id: str) -> Dict[str, Any]:
        response = self.client.get_hosted_zone(Id=physical_id)
        return {
            'Id': _zone_id(response['HostedZone']['Id']),
            'NameServers': list(response.get('DelegationSet', {}).get('NameServers', [])),
        }

    def _tag(self, zone_id: str, tags: List[Dict[str, Any]]) -> None:
        if tags:
            self.client.change_tags_for_resource(
                ResourceType='hostedzone',
                ResourceId=zone_id,
                AddTags=[{'Key': t['Key'], 'Value': str(t['Value'])} for t in tags]
            )


def _record_set(record: Dict[str, Any]) -> Dict[str, Any]:
    """Template record set to a ResourceRecordSet."""
    record_set: Dict[str, Any] = {'Name': _fqdn(record['Name']), 'Type': record['Type']}
    if 'AliasTarget' in record:
        alias = record['AliasTarget']
        record_set['AliasTarget'] = {
            'HostedZoneId': alias['HostedZoneId'],
            'DNSName': alias['DNSName'],
            'EvaluateTargetHealth': bool(alias.get('EvaluateTargetHealth', False)),
        }
    else:
        record_set['TTL'] = int(record.get('TTL', 300))
        record_set['ResourceRecords'] = [{'Value': str(v)} for v in record.get('ResourceRecords', [])]
    for key in ('SetIdentifier', 'Weight', 'Region', 'Failover', 'HealthCheckId'):
        if key in record:
            record_set[key] = record[key]
    return record_set


class RecordSetGroupProvider(AWSResourceProvider):
    """Manages a group of record sets with one change batch.

    The physical ID is ``<zone id>|<name>:<type>,...`` so delete and read can find
    the group's records without the template.
    """

    type_name = "AWS::Route53::RecordSetGroup"
    service_name = "route53"

    @staticmethod
    def _physical_id(zone_id: str, record_sets: List[Dict[str, Any]]) -> str:
        keys = ",".join(f"{r['Name']}:{r['Type']}" for r in record_sets)
        return f"{zone_id}|{keys}"

    @staticmethod
    def _parse(physical_id: str) -> Tuple[str, List[Tuple[str, str]]]:
        zone_id, _, keys = physical_id.partition('|')
        pairs = []
        for key in filter(None, keys.split(',')):
            name, _, record_type = key.rpartition(':')
            pairs.append((name, record_type))
        return zone_id, pairs

    def _resolve_zone(self, properties: Dict[str, Any]) -> str:
        if properties.get('HostedZoneId'):
            return _zone_id(properties['HostedZoneId'])
        name = _fqdn(properties['HostedZoneName'])
        zones = self.client.list_hosted_zones_by_name(DNSName=name, MaxItems='1')['HostedZones']
        if not zones or zones[0]['Name'] != name:
            raise NotFoundError(f"Hosted zone {name} not found")
        return _zone_id(zones[0]['Id'])

    def _change(self, zone_id: str, changes: List[Dict[str, Any]], comment: str = '') -> None:
        if not changes:
            return
        response = self.client.change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={'Comment': comment, 'Changes': changes}
        )
        self.client.get_waiter('resource_record_sets_changed').wait(
            Id=response['ChangeInfo']['Id']
        )

    def _existing(self, zone_id: str, pairs: List[Tuple[str, str]]) -> List[Dict[str, Any]]:
        found = []
        for name, record_type in pairs:
            response = self.client.list_resource_record_sets(
                HostedZoneId=zone_id, StartRecordName=name, StartRecordType=record_type,
                MaxItems='1'
            )
            for record_set in response.get('ResourceRecordSets', []):
                if record_set['Name'] == name and record_set['Type'] == record_type:
                    found.append(record_set)
        return found

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        zone_id = self._resolve_zone(spec.properties)
        record_sets = [_record_set(r) for r in spec.properties['RecordSets']]
        self._change(
            zone_id,
            [{'Action': 'UPSERT', 'ResourceRecordSet': r} for r in record_sets],
            spec.properties.get('Comment', '')
        )
        return self._physical_id(zone_id, record_sets), {}

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        zone_id, previous = self._parse(physical_id)
        record_sets = [_record_set(r) for r in spec.properties['RecordSets']]
        if self._physical_id(zone_id, record_sets) != physical_id:
            # The physical ID names the records; a different set is a different group
            raise ProviderError(
                f"Record set group {physical_id} cannot change its record names or types in place",
                context=spec.error_context('update')
            )
        self._change(
            zone_id,
            [{'Action': 'UPSERT', 'ResourceRecordSet': r} for r in record_sets],
            spec.properties.get('Comment', '')
        )
        return {}

    def delete(self, physical_id: str) -> None:
        zone_id, pairs = self._parse(physical_id)
        existing = self._existing(zone_id, pairs)
        self._change(zone_id, [{'Action': 'DELETE', 'ResourceRecordSet': r} for r in existing])

    def read(self, physical_id: str) -> Dict[str, Any]:
        zone_id, pairs = self._parse(physical_id)
        if len(self._existing(zone_id, pairs)) != len(pairs):
            raise NotFoundError(f"Record set group {physical_id} not found")
        return {}
