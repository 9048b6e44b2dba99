"""Tests for dependency graph construction."""

import pytest

from stackweaver.orchestrator import GraphBuilder, OutputSpec, ResourceSpec, attr, ref
from stackweaver.orchestrator.models import Interpolation, Reference, Tag
from stackweaver.template import load_template, parse_template
from stackweaver.utils.errors import CycleError, DanglingReferenceError, ValidationError

from .conftest import thing

WEBSITE_PARAMS = {"paramRootDomain": "example.com"}


@pytest.fixture
def builder():
    return GraphBuilder()


class TestFromSpecs:
    def test_topological_order_and_ranks(self, builder):
        graph = builder.from_specs([
            thing("Zone", 0),
            thing("Record", 1, Value=ref("Dist")),
            thing("Dist", 2, Value=attr("Zone", "Arn")),
            thing("Bucket", 3),
        ])

        assert graph.topological_order() == ["Zone", "Bucket", "Dist", "Record"]
        assert [graph.rank(n) for n in ("Zone", "Bucket", "Dist", "Record")] == [0, 0, 1, 2]
        assert graph.get_dependencies("Record") == frozenset({"Dist"})
        assert graph.get_dependents("Zone") == frozenset({"Dist"})
        assert graph.get_all_dependents("Zone") == {"Dist", "Record"}
        assert graph.get_deployment_waves() == [["Zone", "Bucket"], ["Dist"], ["Record"]]

    def test_depends_on_adds_edge_without_reference(self, builder):
        spec = ResourceSpec("B", "Test::Thing", depends_on=("A",), declaration_index=1)
        graph = builder.from_specs([thing("A", 0), spec])

        assert graph.get_dependencies("B") == frozenset({"A"})
        assert graph.get_reference_dependencies("B") == frozenset()

    def test_references_inside_interpolations_and_tags(self, builder):
        tagged = ResourceSpec(
            "C", "Test::Thing",
            properties={"Value": Interpolation(("arn/", Reference("A", "Arn")))},
            tags=(Tag("owner", ref("B")),),
            declaration_index=2,
        )
        graph = builder.from_specs([thing("A", 0), thing("B", 1), tagged])

        assert graph.get_dependencies("C") == frozenset({"A", "B"})

    def test_cycle_names_every_member_once(self, builder):
        with pytest.raises(CycleError) as exc_info:
            builder.from_specs([
                thing("A", 0, Value=ref("C")),
                thing("B", 1, Value=ref("A")),
                thing("C", 2, Value=ref("B")),
                thing("D", 3),
            ])

        cycle = exc_info.value.cycle
        assert sorted(cycle) == ["A", "B", "C"]
        assert len(cycle) == len(set(cycle))
        assert exc_info.value.exit_code == 3
        assert "Circular dependency detected" in str(exc_info.value)

    def test_self_reference_is_a_cycle(self, builder):
        with pytest.raises(CycleError) as exc_info:
            builder.from_specs([thing("A", 0, Value=attr("A", "Arn"))])
        assert exc_info.value.cycle == ["A"]

    def test_dangling_reference(self, builder):
        with pytest.raises(DanglingReferenceError) as exc_info:
            builder.from_specs([thing("A", 0, Value=ref("Missing"))])

        assert exc_info.value.source == "A"
        assert exc_info.value.target == "Missing"
        assert exc_info.value.excluded is False
        assert exc_info.value.exit_code == 4

    def test_reference_to_excluded_resource(self, builder):
        with pytest.raises(DanglingReferenceError, match="excluded by its condition"):
            builder.from_specs([thing("A", 0, Value=ref("B"))], excluded=["B"])

    def test_output_reference_checked(self, builder):
        outputs = {"Out": OutputSpec("Out", attr("Gone", "Arn"))}
        with pytest.raises(DanglingReferenceError) as exc_info:
            builder.from_specs([thing("A", 0)], outputs=outputs)
        assert exc_info.value.source == "Outputs.Out"

    def test_duplicate_logical_name(self, builder):
        with pytest.raises(ValidationError, match="Duplicate logical name 'A'"):
            builder.from_specs([thing("A", 0), thing("A", 1)])

    def test_empty_graph(self, builder):
        graph = builder.from_specs([])
        assert graph.is_empty()
        assert graph.topological_order() == []


class TestBuildFromTemplate:
    def test_website_graph(self, builder, website_template_path):
        graph = builder.build(load_template(website_template_path), WEBSITE_PARAMS)

        assert graph.topological_order() == [
            "myCloudFrontOAI",
            "mySSLCertificate",
            "myS3BucketForRootDomain",
            "myS3BucketForSubdomain",
            "myCloudFrontDistributionForRootDomain",
            "myBucketPolicyForRootDomain",
            "myRoute53RecordSetGroup",
        ]
        assert graph.rank("myRoute53RecordSetGroup") == 2
        assert graph.get_dependencies("myCloudFrontDistributionForRootDomain") == frozenset({
            "myCloudFrontOAI", "mySSLCertificate", "myS3BucketForRootDomain",
        })
        assert graph.excluded == ()
        assert set(graph.outputs) == {
            "outputCloudFrontDomainName", "outputS3HostedZoneId", "outputSubdomainBucket",
        }
        assert graph.outputs["outputS3HostedZoneId"].value == "Z3AQBSTGFYJSTF"

    def test_parameters_are_folded_into_properties(self, builder, website_template_path):
        graph = builder.build(load_template(website_template_path), WEBSITE_PARAMS)

        cert = graph.get_spec("mySSLCertificate")
        assert cert.properties["DomainName"] == "example.com"
        assert cert.properties["SubjectAlternativeNames"] == ["*.example.com"]
        assert "Tags" not in cert.properties
        assert cert.tags == (Tag("mystack", "static-website-hosting-to-s3"),)
        assert cert.deletion_policy.value == "Retain"

        sub = graph.get_spec("myS3BucketForSubdomain")
        assert sub.properties["BucketName"] == "www.example.com"

    def test_condition_false_excludes_resource_and_output(self, builder, website_template_path):
        graph = builder.build(
            load_template(website_template_path),
            {"paramRootDomain": "example.com", "paramSubdomain": ""},
        )

        assert "myS3BucketForSubdomain" not in graph
        assert graph.excluded == ("myS3BucketForSubdomain",)
        assert "outputSubdomainBucket" not in graph.outputs

    def test_region_changes_mapping_lookup(self, builder, website_template_path):
        from stackweaver.template import pseudo_parameters

        graph = builder.build(
            load_template(website_template_path), WEBSITE_PARAMS,
            pseudo=pseudo_parameters("site", region="eu-west-1"),
        )
        assert graph.outputs["outputS3HostedZoneId"].value == "Z1BKCTXD74EZPE"

    def test_parameter_constraint_failure(self, builder, website_template_path):
        with pytest.raises(ValidationError, match="Must be a lowercase domain name"):
            builder.build(load_template(website_template_path), {"paramRootDomain": "Example.COM"})

    def test_reference_to_excluded_resource_in_template(self, builder):
        template = parse_template("""
Parameters:
  Enabled:
    Type: String
    Default: 'false'
Conditions:
  IsEnabled: !Equals [!Ref Enabled, 'true']
Resources:
  Bucket:
    Type: AWS::S3::Bucket
    Condition: IsEnabled
  Policy:
    Type: AWS::S3::BucketPolicy
    Properties:
      Bucket: !Ref Bucket
      PolicyDocument: {}
""")
        with pytest.raises(DanglingReferenceError) as exc_info:
            builder.build(template)
        assert exc_info.value.excluded is True

    def test_masked_parameters_recorded(self, builder):
        template = parse_template("""
Parameters:
  Token:
    Type: String
    NoEcho: true
Resources:
  Credential:
    Type: AWS::CodeBuild::SourceCredential
    Properties:
      AuthType: PERSONAL_ACCESS_TOKEN
      ServerType: GITHUB
      Token: !Ref Token
""")
        graph = builder.build(template, {"Token": "ghp_secret"})

        assert graph.parameters == {"Token": "****"}
        assert graph.get_spec("Credential").properties["Token"] == "ghp_secret"
