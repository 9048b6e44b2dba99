"""CodeBuild project and source credential providers."""

from typing import Any, Dict, Tuple

from .base import AWSResourceProvider, ProviderSpec
from stackweaver.utils.errors import NotFoundError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)

_PROJECT_FIELDS = {
    'Description': 'description',
    'Source': 'source',
    'SecondarySources': 'secondarySources',
    'SourceVersion': 'sourceVersion',
    'Artifacts': 'artifacts',
    'SecondaryArtifacts': 'secondaryArtifacts',
    'Environment': 'environment',
    'ServiceRole': 'serviceRole',
    'TimeoutInMinutes': 'timeoutInMinutes',
    'QueuedTimeoutInMinutes': 'queuedTimeoutInMinutes',
    'EncryptionKey': 'encryptionKey',
    'Cache': 'cache',
    'LogsConfig': 'logsConfig',
    'BadgeEnabled': 'badgeEnabled',
    'ConcurrentBuildLimit': 'concurrentBuildLimit',
}

_NUMERIC_FIELDS = {'timeoutInMinutes', 'queuedTimeoutInMinutes', 'concurrentBuildLimit'}


def _camel(value: Any) -> Any:
    """PascalCase template keys to the camelCase keys of the CodeBuild API."""
    if isinstance(value, dict):
        return {key[:1].lower() + key[1:]: _camel(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_camel(item) for item in value]
    return value


def project_params(spec: ProviderSpec, name: str) -> Dict[str, Any]:
    params: Dict[str, Any] = {'name': name}
    for prop, field_name in _PROJECT_FIELDS.items():
        if prop not in spec.properties:
            continue
        value = _camel(spec.properties[prop])
        if field_name in _NUMERIC_FIELDS:
            value = int(value)
        params[field_name] = value

    if spec.tags:
        params['tags'] = [{'key': k, 'value': v} for k, v in spec.tag_dict().items()]
    return params


class ProjectProvider(AWSResourceProvider):
    """Physical ID is the project name."""

    type_name = "AWS::CodeBuild::Project"
    service_name = "codebuild"

    def _webhook(self, name: str, triggers: Dict[str, Any], exists: bool) -> None:
        if not triggers or not triggers.get('Webhook'):
            if exists:
                self.client.delete_webhook(projectName=name)
            return
        params: Dict[str, Any] = {'projectName': name}
        if triggers.get('FilterGroups'):
            params['filterGroups'] = _camel(triggers['FilterGroups'])
        if triggers.get('BuildType'):
            params['buildType'] = triggers['BuildType']
        if exists:
            self.client.update_webhook(**params)
        else:
            self.client.create_webhook(**params)

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        name = spec.properties.get('Name') or f"{spec.stack}-{spec.logical_name}"
        project = self.client.create_project(**project_params(spec, name))['project']
        self._webhook(name, spec.properties.get('Triggers'), exists=False)
        logger.info(f"Created CodeBuild project {name}")
        return name, {'Arn': project['arn']}

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        current = self._get(physical_id)
        project = self.client.update_project(**project_params(spec, physical_id))['project']
        self._webhook(physical_id, spec.properties.get('Triggers'), exists='webhook' in current)
        return {'Arn': project['arn']}

    def delete(self, physical_id: str) -> None:
        self._get(physical_id)
        self.client.delete_project(name=physical_id)

    def read(self, physical_id: str) -> Dict[str, Any]:
        return {'Arn': self._get(physical_id)['arn']}

    def _get(self, name: str) -> Dict[str, Any]:
        # batch_get_projects reports unknown names instead of raising
        response = self.client.batch_get_projects(names=[name])
        if not response.get('projects'):
            raise NotFoundError(f"CodeBuild project {name} not found")
        return response['projects'][0]


class SourceCredentialProvider(AWSResourceProvider):
    """Physical ID is the credential ARN."""

    type_name = "AWS::CodeBuild::SourceCredential"
    service_name = "codebuild"

    def _import(self, spec: ProviderSpec) -> str:
        params = {
            'token': spec.properties['Token'],
            'serverType': spec.properties['ServerType'],
            'authType': spec.properties['AuthType'],
            'shouldOverwrite': True,
        }
        if spec.properties.get('Username'):
            params['username'] = spec.properties['Username']
        return self.client.import_source_credentials(**params)['arn']

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        arn = self._import(spec)
        return arn, {'Arn': arn}

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        # One credential per server type; importing again overwrites it in place
        return {'Arn': self._import(spec)}

    def delete(self, physical_id: str) -> None:
        self.client.delete_source_credentials(arn=physical_id)

    def read(self, physical_id: str) -> Dict[str, Any]:
        infos = self.client.list_source_credentials().get('sourceCredentialsInfos', [])
        if not any(info['arn'] == physical_id for info in infos):
            raise NotFoundError(f"CodeBuild source credential {physical_id} not found")
        return {'Arn': physical_id}
