"""Tests for providers, the provider registry and resource schemas."""

import json
from datetime import datetime
from unittest.mock import Mock

import boto3
import pytest
from botocore.stub import ANY, Stubber

from stackweaver.orchestrator import OperationLog, ProviderCaller
from stackweaver.provisioners import (
    CertificateProvider,
    ProviderRegistry,
    ProviderSpec,
    RecordSetGroupProvider,
    RoleProvider,
    aws_providers,
    simulated_providers,
)
from stackweaver.provisioners.acm import published_validation_records
from stackweaver.provisioners.cloudfront import distribution_config
from stackweaver.schema import ResourceSchema, SchemaRegistry, default_registry
from stackweaver.utils.aws_client import AccountIdentity, AWSClientManager
from stackweaver.utils.errors import NotFoundError, ProviderError, UnknownTypeError, ValidationError
from stackweaver.utils.retry import RetryStrategy

from .conftest import THING, THING_SCHEMA, thing

TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [{
        "Effect": "Allow",
        "Principal": {"Service": "codebuild.amazonaws.com"},
        "Action": "sts:AssumeRole",
    }],
}
LOGS_POLICY = {
    "Version": "2012-10-17",
    "Statement": [{"Effect": "Allow", "Action": "logs:*", "Resource": "*"}],
}
READ_ONLY_ARN = "arn:aws:iam::aws:policy/ReadOnlyAccess"
ROLE_NAME = "site-BuildRole"
ROLE = {
    "Path": "/",
    "RoleName": ROLE_NAME,
    "RoleId": "AROAEXAMPLEROLEID0001",
    "Arn": f"arn:aws:iam::123456789012:role/{ROLE_NAME}",
    "CreateDate": datetime(2024, 1, 1),
}


@pytest.fixture
def session():
    return boto3.Session(
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def iam(session):
    client = session.client("iam")
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def role_provider(session, iam):
    return RoleProvider(session, client=iam[0])


def role_spec(**properties):
    properties.setdefault("AssumeRolePolicyDocument", TRUST_POLICY)
    return ProviderSpec(
        logical_name="BuildRole",
        type_name=RoleProvider.type_name,
        properties=properties,
        tags=[{"Key": "env", "Value": "dev"}],
        stack="site",
    )


class TestRoleProvider:
    def test_create_attaches_policies(self, role_provider, iam):
        _, stubber = iam
        stubber.add_response("create_role", {"Role": ROLE}, {
            "RoleName": ROLE_NAME,
            "AssumeRolePolicyDocument": json.dumps(TRUST_POLICY),
            "Path": "/",
            "Tags": [{"Key": "env", "Value": "dev"}],
        })
        stubber.add_response("put_role_policy", {}, {
            "RoleName": ROLE_NAME,
            "PolicyName": "logs",
            "PolicyDocument": json.dumps(LOGS_POLICY),
        })
        stubber.add_response("list_role_policies",
                             {"PolicyNames": ["logs"], "IsTruncated": False},
                             {"RoleName": ROLE_NAME})
        stubber.add_response("list_attached_role_policies",
                             {"AttachedPolicies": [], "IsTruncated": False},
                             {"RoleName": ROLE_NAME})
        stubber.add_response("attach_role_policy", {},
                             {"RoleName": ROLE_NAME, "PolicyArn": READ_ONLY_ARN})

        physical_id, attributes = role_provider.create(role_spec(
            Policies=[{"PolicyName": "logs", "PolicyDocument": LOGS_POLICY}],
            ManagedPolicyArns=[READ_ONLY_ARN],
        ))

        assert physical_id == ROLE_NAME
        assert attributes == {"Arn": ROLE["Arn"], "RoleId": ROLE["RoleId"]}

    def test_delete_removes_policies_first(self, role_provider, iam):
        _, stubber = iam
        stubber.add_response("list_role_policies",
                             {"PolicyNames": ["logs"], "IsTruncated": False},
                             {"RoleName": ROLE_NAME})
        stubber.add_response("delete_role_policy", {},
                             {"RoleName": ROLE_NAME, "PolicyName": "logs"})
        stubber.add_response("list_attached_role_policies", {
            "AttachedPolicies": [{"PolicyName": "ReadOnlyAccess", "PolicyArn": READ_ONLY_ARN}],
            "IsTruncated": False,
        }, {"RoleName": ROLE_NAME})
        stubber.add_response("detach_role_policy", {},
                             {"RoleName": ROLE_NAME, "PolicyArn": READ_ONLY_ARN})
        stubber.add_response("delete_role", {}, {"RoleName": ROLE_NAME})

        role_provider.delete(ROLE_NAME)


class TestProviderCaller:
    @pytest.fixture
    def caller(self, role_provider):
        registry = ProviderRegistry({RoleProvider.type_name: role_provider})
        retry = RetryStrategy(max_attempts=3, base_delay=0, jitter=False, sleep=lambda s: None)
        return ProviderCaller(registry, retry, OperationLog(), stack_name="site")

    def test_missing_role_becomes_not_found(self, caller, iam):
        _, stubber = iam
        stubber.add_client_error("get_role", service_error_code="NoSuchEntity",
                                 service_message="Role not found", http_status_code=404)

        with pytest.raises(NotFoundError) as exc_info:
            caller.invoke(RoleProvider.type_name, "BuildRole", "read", "forward", None, ROLE_NAME)

        assert exc_info.value.context.resource_id == "BuildRole"
        assert exc_info.value.context.stack_name == "site"
        [record] = caller.log.records()
        assert not record.succeeded
        assert record.physical_id == ROLE_NAME

    def test_throttling_is_retried(self, caller, iam):
        _, stubber = iam
        stubber.add_client_error("get_role", service_error_code="Throttling",
                                 service_message="Rate exceeded", http_status_code=400)
        stubber.add_response("get_role", {"Role": ROLE}, {"RoleName": ROLE_NAME})

        attributes = caller.invoke(
            RoleProvider.type_name, "BuildRole", "read", "forward", None, ROLE_NAME
        )

        assert attributes["Arn"] == ROLE["Arn"]
        assert [r.succeeded for r in caller.log.records()] == [False, True]

    def test_access_denied_is_not_retried(self, caller, iam):
        _, stubber = iam
        stubber.add_response("list_role_policies", {"PolicyNames": [], "IsTruncated": False},
                             {"RoleName": ROLE_NAME})
        stubber.add_response("list_attached_role_policies",
                             {"AttachedPolicies": [], "IsTruncated": False},
                             {"RoleName": ROLE_NAME})
        stubber.add_client_error("delete_role", service_error_code="AccessDenied",
                                 service_message="not allowed", http_status_code=403)

        with pytest.raises(ProviderError, match=r"AWS Error \(AccessDenied\)"):
            caller.invoke(RoleProvider.type_name, "BuildRole", "delete", "cleanup", None,
                          ROLE_NAME)
        assert len(caller.log.records()) == 1


def test_distribution_config_uses_api_shapes():
    properties = {
        "Aliases": ["example.com"],
        "DefaultCacheBehavior": {
            "AllowedMethods": ["GET", "HEAD"],
            "CachedMethods": ["GET", "HEAD"],
            "TargetOriginId": "root",
            "ViewerProtocolPolicy": "redirect-to-https",
        },
        "Origins": [{
            "Id": "root",
            "DomainName": "example.com.s3.us-east-1.amazonaws.com",
            "S3OriginConfig": {},
        }],
        "ViewerCertificate": {
            "AcmCertificateArn": "arn:aws:acm:us-east-1:123456789012:certificate/abc",
            "SslSupportMethod": "sni-only",
        },
    }

    config = distribution_config(properties, "ref-1")

    assert config["CallerReference"] == "ref-1"
    assert config["Enabled"] is True
    assert config["Comment"] == ""
    assert config["Aliases"] == {"Quantity": 1, "Items": ["example.com"]}
    assert config["DefaultCacheBehavior"]["AllowedMethods"] == {
        "Quantity": 2,
        "Items": ["GET", "HEAD"],
        "CachedMethods": {"Quantity": 2, "Items": ["GET", "HEAD"]},
    }
    assert "CachedMethods" not in config["DefaultCacheBehavior"]
    assert config["Origins"]["Items"][0]["S3OriginConfig"] == {"OriginAccessIdentity": ""}
    assert config["ViewerCertificate"] == {
        "ACMCertificateArn": "arn:aws:acm:us-east-1:123456789012:certificate/abc",
        "SSLSupportMethod": "sni-only",
    }
    assert properties["Aliases"] == ["example.com"]


def test_record_set_group_physical_id():
    physical_id = RecordSetGroupProvider._physical_id("Z123", [
        {"Name": "example.com.", "Type": "A"},
        {"Name": "www.example.com.", "Type": "AAAA"},
    ])

    assert physical_id == "Z123|example.com.:A,www.example.com.:AAAA"
    assert RecordSetGroupProvider._parse(physical_id) == (
        "Z123", [("example.com.", "A"), ("www.example.com.", "AAAA")]
    )


class TestProviderRegistry:
    def test_unknown_type(self):
        with pytest.raises(ValidationError, match="No provider registered"):
            ProviderRegistry().get("AWS::Lambda::Function")

    def test_aws_providers_cover_builtin_schemas(self, session):
        manager = Mock(session=session)
        clients = {}
        manager.get_client.side_effect = lambda service: clients.setdefault(service, Mock())

        registry = aws_providers(manager)

        assert registry.missing(default_registry().type_names()) == []
        assert registry.get(RoleProvider.type_name).client is clients["iam"]

    def test_simulated_providers_seed_existing_records(self, harness):
        harness.apply([thing("A")])
        state = harness.store.load("demo")

        providers = simulated_providers(harness.registry, state)
        physical_id = state.get_record("A").physical_id

        assert providers.get(THING).exists(physical_id)
        assert providers.get(THING).read(physical_id)["Arn"] == f"arn:aws:sim:::{physical_id}"

    def test_simulated_providers_seed_pending_deletes(self, harness):
        harness.apply([thing("A")])
        state = harness.store.load("demo")
        state.get_record("A").add_pending_delete("a-old", THING)

        providers = simulated_providers(harness.registry, state)

        assert providers.get(THING).exists("a-old")


class TestSchemaRegistry:
    def test_lookup_unknown(self):
        with pytest.raises(UnknownTypeError, match="Unknown resource type: Test::Nope"):
            SchemaRegistry([THING_SCHEMA]).lookup("Test::Nope")

    def test_frozen_registry_rejects_registration(self):
        registry = SchemaRegistry([THING_SCHEMA]).freeze()
        with pytest.raises(RuntimeError):
            registry.register(ResourceSchema("Test::Other"))

    def test_builtin_replacement_rules(self):
        bucket = default_registry().lookup("AWS::S3::Bucket")

        assert bucket.requires_replacement("BucketName")
        assert not bucket.requires_replacement("Tags")
        assert bucket.has_attribute("RegionalDomainName")

    def test_validate_collects_every_problem(self):
        problems = THING_SCHEMA.validate({"Size": "large", "Color": "red"})

        assert problems == [
            "property 'Size' must be of type number, got str",
            "unknown property 'Color'",
        ]


class TestAWSClientManager:
    @pytest.fixture
    def manager(self, monkeypatch, tmp_path):
        monkeypatch.delenv("AWS_PROFILE", raising=False)
        monkeypatch.setenv("AWS_CONFIG_FILE", str(tmp_path / "config"))
        monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(tmp_path / "credentials"))
        monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
        return AWSClientManager(region="eu-west-1")

    def test_clients_are_cached(self, manager):
        client = manager.get_client("sts")

        assert manager.get_client("sts") is client
        assert client.meta.region_name == "eu-west-1"

    def test_identity_is_looked_up_once(self, manager):
        with Stubber(manager.get_client("sts")) as stubber:
            stubber.add_response("get_caller_identity", {
                "UserId": "AIDAEXAMPLEUSERID01",
                "Account": "123456789012",
                "Arn": "arn:aws:iam::123456789012:user/deployer",
            }, {})

            first = manager.identity()
            second = manager.identity()

        assert first is second
        assert first == AccountIdentity("123456789012", "arn:aws:iam::123456789012:user/deployer",
                                        "eu-west-1")

    def test_rejected_credentials(self, manager):
        with Stubber(manager.get_client("sts")) as stubber:
            stubber.add_client_error("get_caller_identity", service_error_code="InvalidClientTokenId",
                                     service_message="bad token", http_status_code=403)

            with pytest.raises(ProviderError) as exc_info:
                manager.identity()

        assert exc_info.value.context.aws_service == "sts"
        assert exc_info.value.suggestions


class TestCertificateProvider:
    CERT_ARN = "arn:aws:acm:us-east-1:123456789012:certificate/0a1b2c3d"
    RECORD = {
        "Name": "_x1.example.com.",
        "Type": "CNAME",
        "Value": "_y1.acm-validations.aws.",
    }

    def certificate(self, status):
        options = [
            {"DomainName": domain, "ValidationDomain": "example.com",
             "ValidationStatus": status, "ResourceRecord": self.RECORD}
            for domain in ("*.example.com", "example.com")
        ]
        return {"Certificate": {
            "CertificateArn": self.CERT_ARN,
            "DomainName": "example.com",
            "DomainValidationOptions": options,
        }}

    def test_dns_validation_through_hosted_zone(self, session):
        acm = session.client("acm")
        route53 = session.client("route53")
        provider = CertificateProvider(session, client=acm, route53_client=route53)

        with Stubber(acm) as acm_stub, Stubber(route53) as route53_stub:
            acm_stub.add_response("request_certificate", {"CertificateArn": self.CERT_ARN}, {
                "DomainName": "example.com",
                "ValidationMethod": "DNS",
                "IdempotencyToken": ANY,
                "SubjectAlternativeNames": ["*.example.com"],
                "DomainValidationOptions": [
                    {"DomainName": "example.com", "ValidationDomain": "example.com"},
                    {"DomainName": "*.example.com", "ValidationDomain": "example.com"},
                ],
            })
            acm_stub.add_response("describe_certificate", self.certificate("PENDING_VALIDATION"),
                                  {"CertificateArn": self.CERT_ARN})
            route53_stub.add_response("change_resource_record_sets", {
                "ChangeInfo": {"Id": "/change/C1", "Status": "PENDING",
                               "SubmittedAt": datetime(2024, 1, 1)},
            }, {
                "HostedZoneId": "Z0EXAMPLE",
                "ChangeBatch": {"Changes": [{
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": "_x1.example.com.",
                        "Type": "CNAME",
                        "TTL": 300,
                        "ResourceRecords": [{"Value": "_y1.acm-validations.aws."}],
                    },
                }]},
            })
            acm_stub.add_response("describe_certificate", self.certificate("SUCCESS"),
                                  {"CertificateArn": self.CERT_ARN})

            physical_id, attributes = provider.create(ProviderSpec(
                logical_name="mySSLCertificate",
                type_name=CertificateProvider.type_name,
                properties={
                    "DomainName": "example.com",
                    "SubjectAlternativeNames": ["*.example.com"],
                    "ValidationMethod": "DNS",
                    "DomainValidationOptions": [
                        {"DomainName": "example.com", "HostedZoneId": "/hostedzone/Z0EXAMPLE"},
                        {"DomainName": "*.example.com", "HostedZoneId": "Z0EXAMPLE",
                         "ValidationDomain": "example.com"},
                    ],
                },
                stack="site",
            ))

            acm_stub.assert_no_pending_responses()
            route53_stub.assert_no_pending_responses()

        assert physical_id == self.CERT_ARN
        assert attributes == {"Arn": self.CERT_ARN}

    def test_validation_records_not_yet_published(self):
        client = Mock()
        client.describe_certificate.return_value = {"Certificate": {
            "DomainValidationOptions": [{"DomainName": "example.com"}],
        }}

        with pytest.raises(ProviderError, match="has not published validation records"):
            published_validation_records.__wrapped__(client, self.CERT_ARN, ["example.com"])
