"""Built-in schemas for the resource types used by static-website stacks."""

from stackweaver.schema.registry import PropertySchema, ResourceSchema, ValueType

S = ValueType.STRING
N = ValueType.NUMBER
B = ValueType.BOOLEAN
L = ValueType.LIST
M = ValueType.MAP
A = ValueType.ANY


def _prop(name, value_type=S, required=False, replace=False):
    return PropertySchema(name, value_type, required=required, replace_on_change=replace)


ACM_CERTIFICATE = ResourceSchema(
    type_name="AWS::CertificateManager::Certificate",
    properties=(
        _prop("DomainName", required=True, replace=True),
        _prop("SubjectAlternativeNames", L, replace=True),
        _prop("DomainValidationOptions", L, replace=True),
        _prop("ValidationMethod", replace=True),
        _prop("CertificateAuthorityArn", replace=True),
        _prop("KeyAlgorithm", replace=True),
        _prop("CertificateTransparencyLoggingPreference"),
        _prop("Tags", L),
    ),
    attributes=("Arn",),
)

CLOUDFRONT_OAI = ResourceSchema(
    type_name="AWS::CloudFront::CloudFrontOriginAccessIdentity",
    properties=(
        _prop("CloudFrontOriginAccessIdentityConfig", M, required=True),
    ),
    attributes=("Id", "S3CanonicalUserId"),
)

CLOUDFRONT_DISTRIBUTION = ResourceSchema(
    type_name="AWS::CloudFront::Distribution",
    properties=(
        _prop("DistributionConfig", M, required=True),
        _prop("Tags", L),
    ),
    attributes=("Id", "DomainName"),
)

CODEBUILD_PROJECT = ResourceSchema(
    type_name="AWS::CodeBuild::Project",
    properties=(
        _prop("Name", replace=True),
        _prop("Description"),
        _prop("Source", M, required=True),
        _prop("SecondarySources", L),
        _prop("SourceVersion"),
        _prop("Artifacts", M, required=True),
        _prop("SecondaryArtifacts", L),
        _prop("Environment", M, required=True),
        _prop("ServiceRole", required=True),
        _prop("TimeoutInMinutes", N),
        _prop("QueuedTimeoutInMinutes", N),
        _prop("EncryptionKey"),
        _prop("Cache", M),
        _prop("LogsConfig", M),
        _prop("Triggers", M),
        _prop("BadgeEnabled", B),
        _prop("ConcurrentBuildLimit", N),
        _prop("Visibility"),
        _prop("Tags", L),
    ),
    attributes=("Arn",),
)

CODEBUILD_SOURCE_CREDENTIAL = ResourceSchema(
    type_name="AWS::CodeBuild::SourceCredential",
    properties=(
        _prop("AuthType", required=True),
        _prop("ServerType", required=True, replace=True),
        _prop("Token", required=True),
        _prop("Username"),
    ),
    attributes=("Arn",),
)

IAM_ROLE = ResourceSchema(
    type_name="AWS::IAM::Role",
    properties=(
        _prop("RoleName", replace=True),
        _prop("Path", replace=True),
        _prop("AssumeRolePolicyDocument", A, required=True),
        _prop("Description"),
        _prop("ManagedPolicyArns", L),
        _prop("MaxSessionDuration", N),
        _prop("PermissionsBoundary"),
        _prop("Policies", L),
        _prop("Tags", L),
    ),
    attributes=("Arn", "RoleId"),
)

ROUTE53_HOSTED_ZONE = ResourceSchema(
    type_name="AWS::Route53::HostedZone",
    properties=(
        _prop("Name", required=True, replace=True),
        _prop("HostedZoneConfig", M),
        _prop("HostedZoneTags", L),
        _prop("QueryLoggingConfig", M),
        _prop("VPCs", L),
    ),
    attributes=("Id", "NameServers"),
)

ROUTE53_RECORD_SET_GROUP = ResourceSchema(
    type_name="AWS::Route53::RecordSetGroup",
    properties=(
        _prop("HostedZoneId", replace=True),
        _prop("HostedZoneName", replace=True),
        _prop("Comment"),
        _prop("RecordSets", L, required=True),
    ),
)

S3_BUCKET = ResourceSchema(
    type_name="AWS::S3::Bucket",
    properties=(
        _prop("BucketName", replace=True),
        _prop("AccessControl"),
        _prop("BucketEncryption", M),
        _prop("CorsConfiguration", M),
        _prop("LifecycleConfiguration", M),
        _prop("OwnershipControls", M),
        _prop("PublicAccessBlockConfiguration", M),
        _prop("VersioningConfiguration", M),
        _prop("WebsiteConfiguration", M),
        _prop("Tags", L),
    ),
    attributes=("Arn", "DomainName", "DualStackDomainName", "RegionalDomainName", "WebsiteURL"),
)

S3_BUCKET_POLICY = ResourceSchema(
    type_name="AWS::S3::BucketPolicy",
    properties=(
        _prop("Bucket", required=True, replace=True),
        _prop("PolicyDocument", A, required=True),
    ),
)

BUILTIN_SCHEMAS = (
    ACM_CERTIFICATE,
    CLOUDFRONT_OAI,
    CLOUDFRONT_DISTRIBUTION,
    CODEBUILD_PROJECT,
    CODEBUILD_SOURCE_CREDENTIAL,
    IAM_ROLE,
    ROUTE53_HOSTED_ZONE,
    ROUTE53_RECORD_SET_GROUP,
    S3_BUCKET,
    S3_BUCKET_POLICY,
)
