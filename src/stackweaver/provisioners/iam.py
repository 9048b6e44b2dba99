"""IAM role provider."""

import json
from typing import Any, Dict, List, Tuple

from botocore.exceptions import ClientError

from .base import AWSResourceProvider, ProviderSpec
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)


def _document(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


class RoleProvider(AWSResourceProvider):
    """Provider for IAM roles with inline and managed policies. Physical ID is the role name."""

    type_name = "AWS::IAM::Role"
    service_name = "iam"

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        """Create the role, then attach its policies.

        Args:
            spec: Resolved role properties

        Returns:
            (role name, {Arn, RoleId})
        """
        properties = spec.properties
        role_name = properties.get('RoleName') or f"{spec.stack}-{spec.logical_name}"[:64]

        create_params = {
            'RoleName': role_name,
            'AssumeRolePolicyDocument': _document(properties['AssumeRolePolicyDocument']),
            'Path': properties.get('Path', '/'),
        }
        if 'Description' in properties:
            create_params['Description'] = properties['Description']
        if 'MaxSessionDuration' in properties:
            create_params['MaxSessionDuration'] = int(properties['MaxSessionDuration'])
        if 'PermissionsBoundary' in properties:
            create_params['PermissionsBoundary'] = properties['PermissionsBoundary']
        if spec.tags:
            create_params['Tags'] = [{'Key': k, 'Value': v} for k, v in spec.tag_dict().items()]

        role = self.client.create_role(**create_params)['Role']
        self._sync_policies(role_name, properties)
        logger.info(f"Created IAM role {role_name}")
        return role_name, {'Arn': role['Arn'], 'RoleId': role['RoleId']}

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        properties = spec.properties
        self.client.update_assume_role_policy(
            RoleName=physical_id,
            PolicyDocument=_document(properties['AssumeRolePolicyDocument'])
        )
        update_params = {'RoleName': physical_id, 'Description': properties.get('Description', '')}
        if 'MaxSessionDuration' in properties:
            update_params['MaxSessionDuration'] = int(properties['MaxSessionDuration'])
        self.client.update_role(**update_params)
        self._sync_policies(physical_id, properties)
        self._sync_tags(physical_id, spec)
        return self.read(physical_id)

    def delete(self, physical_id: str) -> None:
        # Inline policies and attachments must go before the role itself
        for policy_name in self._inline_policy_names(physical_id):
            self.client.delete_role_policy(RoleName=physical_id, PolicyName=policy_name)
        for policy_arn in self._attached_policy_arns(physical_id):
            self.client.detach_role_policy(RoleName=physical_id, PolicyArn=policy_arn)
        self.client.delete_role(RoleName=physical_id)

    def read(self, physical_id: str) -> Dict[str, Any]:
        role = self.client.get_role(RoleName=physical_id)['Role']
        return {'Arn': role['Arn'], 'RoleId': role['RoleId']}

    def _inline_policy_names(self, role_name: str) -> List[str]:
        paginator = self.client.get_paginator('list_role_policies')
        return [name for page in paginator.paginate(RoleName=role_name)
                for name in page.get('PolicyNames', [])]

    def _attached_policy_arns(self, role_name: str) -> List[str]:
        paginator = self.client.get_paginator('list_attached_role_policies')
        return [policy['PolicyArn'] for page in paginator.paginate(RoleName=role_name)
                for policy in page.get('AttachedPolicies', [])]

    def _sync_policies(self, role_name: str, properties: Dict[str, Any]) -> None:
        desired_inline = {
            policy['PolicyName']: _document(policy['PolicyDocument'])
            for policy in properties.get('Policies', [])
        }
        for policy_name, document in desired_inline.items():
            self.client.put_role_policy(
                RoleName=role_name, PolicyName=policy_name, PolicyDocument=document
            )

        desired_managed = set(properties.get('ManagedPolicyArns', []))
        try:
            existing_inline = self._inline_policy_names(role_name)
            existing_managed = set(self._attached_policy_arns(role_name))
        except ClientError as e:
            # A freshly created role can lag behind in the list calls
            if e.response['Error']['Code'] != 'NoSuchEntity':
                raise
            existing_inline, existing_managed = [], set()

        for policy_name in existing_inline:
            if policy_name not in desired_inline:
                self.client.delete_role_policy(RoleName=role_name, PolicyName=policy_name)
        for policy_arn in desired_managed - existing_managed:
            self.client.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        for policy_arn in existing_managed - desired_managed:
            self.client.detach_role_policy(RoleName=role_name, PolicyArn=policy_arn)

    def _sync_tags(self, role_name: str, spec: ProviderSpec) -> None:
        desired = spec.tag_dict()
        current = {
            tag['Key']: tag['Value']
            for tag in self.client.list_role_tags(RoleName=role_name).get('Tags', [])
        }
        stale = [key for key in current if key not in desired]
        if stale:
            self.client.untag_role(RoleName=role_name, TagKeys=stale)
        if desired and desired != current:
            self.client.tag_role(
                RoleName=role_name,
                Tags=[{'Key': k, 'Value': v} for k, v in desired.items()]
            )
