"""Tests for template loading, parameters and intrinsic functions."""

import json

import pytest

from stackweaver.orchestrator.models import Interpolation, Reference
from stackweaver.template import (
    NO_ECHO_MASK,
    IntrinsicEvaluator,
    MappingLookup,
    load_parameter_file,
    load_template,
    masked_parameters,
    parse_parameter_overrides,
    parse_template,
    pseudo_parameters,
    resolve_parameters,
)
from stackweaver.template.loader import ParameterDefinition
from stackweaver.utils.errors import ValidationError


MINIMAL = """
Resources:
  Bucket:
    Type: AWS::S3::Bucket
"""


def evaluator(parameters=None, conditions=None, mappings=None, region="us-east-1"):
    return IntrinsicEvaluator(
        parameters=parameters or {},
        pseudo=pseudo_parameters("demo", region=region, account_id="123456789012"),
        mappings=MappingLookup(mappings or {}),
        conditions=conditions or {},
    )


class TestLoader:
    def test_load_website_fixture(self, website_template_path):
        template = load_template(website_template_path)

        assert template.format_version == "2010-09-09"
        assert template.resource_names()[0] == "myCloudFrontOAI"
        assert template.resources["mySSLCertificate"].deletion_policy == "Retain"
        assert template.resources["myS3BucketForSubdomain"].condition == "HasSubdomainName"
        assert template.conditions["HasSubdomainName"] == {
            "Fn::Not": [{"Fn::Equals": [{"Ref": "paramSubdomain"}, ""]}]
        }

    def test_short_form_get_att_scalar(self):
        template = parse_template("""
Resources:
  Policy:
    Type: AWS::S3::BucketPolicy
    Properties:
      Principal: !GetAtt Identity.S3CanonicalUserId
""")
        properties = template.resources["Policy"].properties
        assert properties["Principal"] == {"Fn::GetAtt": "Identity.S3CanonicalUserId"}

    def test_json_template(self, tmp_path):
        path = tmp_path / "stack.json"
        path.write_text(json.dumps({
            "Resources": {"Bucket": {"Type": "AWS::S3::Bucket", "DependsOn": "Other"}}
        }))

        template = load_template(path)

        assert template.resources["Bucket"].depends_on == ["Other"]

    def test_empty_resources_rejected(self):
        with pytest.raises(ValidationError, match="at least one resource"):
            parse_template("Resources: {}\n")

    def test_missing_resources_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_template("Description: nothing here\n", source="empty.yaml")
        assert exc_info.value.path.startswith("empty.yaml")

    def test_non_alphanumeric_name_rejected(self):
        with pytest.raises(ValidationError, match="alphanumeric"):
            parse_template("Resources:\n  my-bucket:\n    Type: AWS::S3::Bucket\n")

    def test_undeclared_condition_rejected(self):
        with pytest.raises(ValidationError, match="not declared"):
            parse_template(MINIMAL + "    Condition: Missing\n")

    def test_invalid_deletion_policy_rejected(self):
        with pytest.raises(ValidationError):
            parse_template(MINIMAL + "    DeletionPolicy: Snapshot\n")

    def test_unparseable_yaml(self):
        with pytest.raises(ValidationError, match="Failed to parse template"):
            parse_template("Resources: [unclosed\n")

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="Cannot read template"):
            load_template(tmp_path / "absent.yaml")


class TestParameters:
    def test_defaults_and_supplied_values(self):
        definitions = {
            "Domain": ParameterDefinition(Type="String"),
            "Sub": ParameterDefinition(Type="String", Default="www"),
        }
        values = resolve_parameters(definitions, {"Domain": "example.com"})
        assert values == {"Domain": "example.com", "Sub": "www"}

    def test_missing_value(self):
        with pytest.raises(ValidationError, match="Parameters.Domain"):
            resolve_parameters({"Domain": ParameterDefinition(Type="String")}, {})

    def test_unknown_parameter(self):
        with pytest.raises(ValidationError, match="Unknown parameters supplied: Extra"):
            resolve_parameters({}, {"Extra": "1"})

    def test_allowed_values(self):
        definitions = {"Env": ParameterDefinition(Type="String", AllowedValues=["dev", "prod"])}
        assert resolve_parameters(definitions, {"Env": "prod"}) == {"Env": "prod"}
        with pytest.raises(ValidationError, match="must be one of: dev, prod"):
            resolve_parameters(definitions, {"Env": "test"})

    def test_constraint_description_replaces_message(self):
        definitions = {"Name": ParameterDefinition(
            Type="String", AllowedPattern="^[a-z]+$", ConstraintDescription="Lowercase only"
        )}
        with pytest.raises(ValidationError, match="Lowercase only"):
            resolve_parameters(definitions, {"Name": "Abc"})

    def test_length_limits(self):
        definitions = {"Token": ParameterDefinition(Type="String", MinLength=10)}
        with pytest.raises(ValidationError, match="at least 10 characters"):
            resolve_parameters(definitions, {"Token": "short"})

    def test_number_kept_as_string(self):
        definitions = {"Port": ParameterDefinition(Type="Number", MinValue=1, MaxValue=65535)}
        assert resolve_parameters(definitions, {"Port": 8080}) == {"Port": "8080"}
        with pytest.raises(ValidationError, match="at most 65535"):
            resolve_parameters(definitions, {"Port": "70000"})
        with pytest.raises(ValidationError, match="is not a number"):
            resolve_parameters(definitions, {"Port": "http"})

    def test_comma_delimited_list(self):
        definitions = {"Names": ParameterDefinition(Type="CommaDelimitedList")}
        assert resolve_parameters(definitions, {"Names": "a, b,c"}) == {"Names": ["a", "b", "c"]}

    def test_no_echo_masked(self):
        definitions = {
            "Token": ParameterDefinition(Type="String", NoEcho=True),
            "Name": ParameterDefinition(Type="String"),
        }
        masked = masked_parameters(definitions, {"Token": "secret", "Name": "site"})
        assert masked == {"Token": NO_ECHO_MASK, "Name": "site"}

    def test_parameter_file_list_layout(self, tmp_path):
        path = tmp_path / "params.json"
        path.write_text(json.dumps([
            {"ParameterKey": "paramRootDomain", "ParameterValue": "example.com"},
        ]))
        assert load_parameter_file(path) == {"paramRootDomain": "example.com"}

    def test_parameter_file_mapping_layout(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("paramRootDomain: example.com\nparamSubdomain: ''\n")
        assert load_parameter_file(path) == {"paramRootDomain": "example.com", "paramSubdomain": ""}

    def test_parameter_overrides(self):
        assert parse_parameter_overrides(["A=1", "B=x=y", "C="]) == {"A": "1", "B": "x=y", "C": ""}
        with pytest.raises(ValidationError, match="expected KEY=VALUE"):
            parse_parameter_overrides(["novalue"])


class TestIntrinsics:
    def test_ref_parameter_and_pseudo(self):
        ev = evaluator({"Domain": "example.com"})
        assert ev.evaluate({"Ref": "Domain"}) == "example.com"
        assert ev.evaluate({"Ref": "AWS::AccountId"}) == "123456789012"
        assert ev.evaluate({"Ref": "Bucket"}) == Reference("Bucket")

    def test_unknown_pseudo_parameter(self):
        with pytest.raises(ValidationError, match="Unknown pseudo parameter AWS::Nope"):
            evaluator().evaluate({"Ref": "AWS::Nope"})

    def test_partition_for_china_regions(self):
        pseudo = pseudo_parameters("demo", region="cn-north-1")
        assert pseudo["AWS::Partition"] == "aws-cn"
        assert pseudo["AWS::URLSuffix"] == "amazonaws.com.cn"

    def test_sub_with_literals_only(self):
        ev = evaluator({"Domain": "example.com"})
        assert ev.evaluate({"Fn::Sub": "*.${Domain}"}) == "*.example.com"
        assert ev.evaluate({"Fn::Sub": "${AWS::Region}-${!Literal}"}) == "us-east-1-${Literal}"

    def test_sub_with_resource_reference(self):
        value = evaluator().evaluate({"Fn::Sub": "${Bucket.Arn}/*"})
        assert value == Interpolation((Reference("Bucket", "Arn"), "/*"))

    def test_sub_with_variable_map(self):
        value = evaluator().evaluate({"Fn::Sub": ["id/${Id}", {"Id": {"Ref": "Identity"}}]})
        assert value == Interpolation(("id/", Reference("Identity")))

    def test_join(self):
        ev = evaluator({"Names": ["a", "b"]})
        assert ev.evaluate({"Fn::Join": [",", {"Ref": "Names"}]}) == "a,b"
        assert ev.evaluate({"Fn::Join": ["", ["arn:", {"Ref": "Role"}]]}) == Interpolation(
            ("arn:", Reference("Role"))
        )

    def test_find_in_map(self):
        ev = evaluator(mappings={"RegionMap": {"us-east-1": {"Zone": "Z3AQBSTGFYJSTF"}}})
        value = ev.evaluate({"Fn::FindInMap": ["RegionMap", {"Ref": "AWS::Region"}, "Zone"]})
        assert value == "Z3AQBSTGFYJSTF"
        with pytest.raises(ValidationError, match="has no key 'Other'"):
            ev.evaluate({"Fn::FindInMap": ["RegionMap", "us-east-1", "Other"]})

    def test_select_and_split(self):
        ev = evaluator()
        assert ev.evaluate({"Fn::Select": [1, {"Fn::Split": [".", "www.example.com"]}]}) == "example"
        with pytest.raises(ValidationError, match="out of range"):
            ev.evaluate({"Fn::Select": [5, ["a"]]})

    def test_base64(self):
        assert evaluator().evaluate({"Fn::Base64": "hello"}) == "aGVsbG8="

    def test_if_and_no_value(self):
        conditions = {"IsProd": {"Fn::Equals": [{"Ref": "Env"}, "prod"]}}
        ev = evaluator({"Env": "dev"}, conditions=conditions)
        value = ev.evaluate({
            "Name": "site",
            "Size": {"Fn::If": ["IsProd", 10, {"Ref": "AWS::NoValue"}]},
            "Items": ["a", {"Fn::If": ["IsProd", "b", {"Ref": "AWS::NoValue"}]}],
        })
        assert value == {"Name": "site", "Items": ["a"]}

    def test_condition_operators(self):
        conditions = {
            "HasName": {"Fn::Not": [{"Fn::Equals": [{"Ref": "Name"}, ""]}]},
            "IsProd": {"Fn::Equals": ["prod", {"Ref": "Env"}]},
            "Both": {"Fn::And": [{"Condition": "HasName"}, {"Condition": "IsProd"}]},
            "Either": {"Fn::Or": [{"Condition": "HasName"}, {"Condition": "IsProd"}]},
        }
        ev = evaluator({"Name": "www", "Env": "dev"}, conditions=conditions)
        assert ev.evaluate_conditions() == {
            "HasName": True, "IsProd": False, "Both": False, "Either": True,
        }

    def test_condition_cycle(self):
        conditions = {"A": {"Condition": "B"}, "B": {"Condition": "A"}}
        with pytest.raises(ValidationError, match="cycle"):
            evaluator(conditions=conditions).condition("A")

    def test_condition_rejects_resource_reference(self):
        conditions = {"Bad": {"Fn::Equals": [{"Ref": "Bucket"}, "x"]}}
        with pytest.raises(ValidationError, match="requires literal operands"):
            evaluator(conditions=conditions).condition("Bad")

    def test_get_att_forms(self):
        ev = evaluator({"Domain": "example.com"})
        assert ev.evaluate({"Fn::GetAtt": "Dist.DomainName"}) == Reference("Dist", "DomainName")
        assert ev.evaluate({"Fn::GetAtt": ["Dist", "Id"]}) == Reference("Dist", "Id")
        with pytest.raises(ValidationError, match="cannot target parameter"):
            ev.evaluate({"Fn::GetAtt": ["Domain", "Arn"]})

    def test_unsupported_function(self):
        with pytest.raises(ValidationError, match="Unsupported intrinsic function Fn::ImportValue"):
            evaluator().evaluate({"Fn::ImportValue": "shared"})
