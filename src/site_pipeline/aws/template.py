"""CloudFormation rendering for the pipeline descriptors.

Each ``render_*`` function turns one descriptor into the resource(s)
CloudFormation expects. Cross-resource references use ``Ref`` and
``Fn::GetAtt`` so that CloudFormation resolves real names and ARNs at
provisioning time.
"""
import json
from typing import Dict, Any, List

from site_pipeline.schemas import (
    BucketDescriptor,
    BucketPolicyStatement,
    BuildDescriptor,
    DeployDescriptor,
    DistributionDescriptor,
    OriginAccessIdentity,
    PipelineDefinition,
    PipelineStage,
    RemovalPolicy,
    SourceDescriptor,
)

TEMPLATE_FORMAT_VERSION = "2010-09-09"

ARTIFACTS_BUCKET_ID = "PipelineArtifactsBucket"
PIPELINE_ROLE_ID = "PipelineRole"
BUILD_ROLE_ID = "BuildProjectRole"
PIPELINE_ID = "Pipeline"
WEBHOOK_ID = "PipelineWebhook"
ORIGIN_ID = "origin1"

Resource = Dict[str, Any]


def ref(logical_id: str) -> Dict[str, str]:
    return {"Ref": logical_id}


def get_att(logical_id: str, attribute: str) -> Dict[str, List[str]]:
    return {"Fn::GetAtt": [logical_id, attribute]}


def join(*parts: Any) -> Dict[str, Any]:
    return {"Fn::Join": ["", list(parts)]}


def _deletion_policy(policy: RemovalPolicy) -> Dict[str, str]:
    value = "Delete" if policy == RemovalPolicy.DESTROY else "Retain"
    return {"DeletionPolicy": value, "UpdateReplacePolicy": value}


def _assume_role_document(service: str) -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": service},
            "Action": "sts:AssumeRole",
        }],
    }


def render_bucket(bucket: BucketDescriptor) -> Dict[str, Resource]:
    return {
        bucket.logical_id: {
            "Type": "AWS::S3::Bucket",
            **_deletion_policy(bucket.removal_policy),
        }
    }


def render_artifacts_bucket() -> Dict[str, Resource]:
    return {
        ARTIFACTS_BUCKET_ID: {
            "Type": "AWS::S3::Bucket",
            "Properties": {
                "BucketEncryption": {
                    "ServerSideEncryptionConfiguration": [{
                        "ServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}
                    }]
                },
                "PublicAccessBlockConfiguration": {
                    "BlockPublicAcls": True,
                    "BlockPublicPolicy": True,
                    "IgnorePublicAcls": True,
                    "RestrictPublicBuckets": True,
                },
            },
            **_deletion_policy(RemovalPolicy.DESTROY),
        }
    }


def render_origin_access_identity(oai: OriginAccessIdentity) -> Dict[str, Resource]:
    return {
        oai.logical_id: {
            "Type": "AWS::CloudFront::CloudFrontOriginAccessIdentity",
            "Properties": {
                "CloudFrontOriginAccessIdentityConfig": {"Comment": oai.comment}
            },
        }
    }


def render_bucket_policy(statement: BucketPolicyStatement) -> Dict[str, Resource]:
    bucket_id = statement.bucket.logical_id
    return {
        f"{bucket_id}Policy": {
            "Type": "AWS::S3::BucketPolicy",
            "Properties": {
                "Bucket": ref(bucket_id),
                "PolicyDocument": {
                    "Version": "2012-10-17",
                    "Statement": [{
                        "Effect": statement.effect,
                        "Action": list(statement.actions),
                        "Principal": {
                            "CanonicalUser": get_att(
                                statement.principal.logical_id, "S3CanonicalUserId"
                            )
                        },
                        "Resource": join(get_att(bucket_id, "Arn"), statement.resource_suffix),
                    }],
                },
            },
        }
    }


def render_build_role() -> Dict[str, Resource]:
    return {
        BUILD_ROLE_ID: {
            "Type": "AWS::IAM::Role",
            "Properties": {
                "AssumeRolePolicyDocument": _assume_role_document("codebuild.amazonaws.com"),
                "Policies": [{
                    "PolicyName": "BuildProjectPolicy",
                    "PolicyDocument": {
                        "Version": "2012-10-17",
                        "Statement": [
                            {
                                "Effect": "Allow",
                                "Action": [
                                    "logs:CreateLogGroup",
                                    "logs:CreateLogStream",
                                    "logs:PutLogEvents",
                                ],
                                "Resource": "*",
                            },
                            {
                                "Effect": "Allow",
                                "Action": ["s3:GetObject*", "s3:GetBucket*", "s3:List*", "s3:PutObject"],
                                "Resource": [
                                    get_att(ARTIFACTS_BUCKET_ID, "Arn"),
                                    join(get_att(ARTIFACTS_BUCKET_ID, "Arn"), "/*"),
                                ],
                            },
                        ],
                    },
                }],
            },
        }
    }


def render_build_project(build: BuildDescriptor) -> Dict[str, Resource]:
    return {
        build.project_name: {
            "Type": "AWS::CodeBuild::Project",
            "Properties": {
                "Name": build.project_name,
                "ServiceRole": get_att(BUILD_ROLE_ID, "Arn"),
                "Source": {"Type": "CODEPIPELINE", "BuildSpec": build.build_spec},
                "Artifacts": {"Type": "CODEPIPELINE"},
                "Environment": {
                    "Type": "LINUX_CONTAINER",
                    "ComputeType": build.compute_type,
                    "Image": build.build_image,
                    "PrivilegedMode": False,
                },
            },
        }
    }


def render_pipeline_role(build: BuildDescriptor, site_bucket: BucketDescriptor) -> Dict[str, Resource]:
    return {
        PIPELINE_ROLE_ID: {
            "Type": "AWS::IAM::Role",
            "Properties": {
                "AssumeRolePolicyDocument": _assume_role_document("codepipeline.amazonaws.com"),
                "Policies": [{
                    "PolicyName": "PipelinePolicy",
                    "PolicyDocument": {
                        "Version": "2012-10-17",
                        "Statement": [
                            {
                                "Effect": "Allow",
                                "Action": ["s3:GetObject*", "s3:GetBucket*", "s3:List*",
                                           "s3:PutObject", "s3:DeleteObject*"],
                                "Resource": [
                                    get_att(ARTIFACTS_BUCKET_ID, "Arn"),
                                    join(get_att(ARTIFACTS_BUCKET_ID, "Arn"), "/*"),
                                    get_att(site_bucket.logical_id, "Arn"),
                                    join(get_att(site_bucket.logical_id, "Arn"), "/*"),
                                ],
                            },
                            {
                                "Effect": "Allow",
                                "Action": [
                                    "codebuild:BatchGetBuilds",
                                    "codebuild:StartBuild",
                                    "codebuild:StopBuild",
                                ],
                                "Resource": get_att(build.project_name, "Arn"),
                            },
                        ],
                    },
                }],
            },
        }
    }


def _artifact_refs(artifacts) -> List[Dict[str, str]]:
    return [{"Name": artifact.name} for artifact in artifacts]


def render_source_action(source: SourceDescriptor) -> Dict[str, Any]:
    return {
        "Name": source.action_name,
        "ActionTypeId": {
            "Category": "Source",
            "Owner": "ThirdParty",
            "Provider": "GitHub",
            "Version": "1",
        },
        "Configuration": {
            "Owner": source.owner,
            "Repo": source.repo,
            "Branch": source.branch,
            "OAuthToken": source.oauth_token,
            "PollForSourceChanges": source.poll_for_source_changes,
        },
        "OutputArtifacts": _artifact_refs([source.output]),
        "RunOrder": 1,
    }


def render_build_action(build: BuildDescriptor) -> Dict[str, Any]:
    environment = [
        {"name": name, "type": "PLAINTEXT", "value": value}
        for name, value in build.environment_variables.items()
    ]
    return {
        "Name": build.action_name,
        "ActionTypeId": {
            "Category": "Build",
            "Owner": "AWS",
            "Provider": "CodeBuild",
            "Version": "1",
        },
        "Configuration": {
            "ProjectName": ref(build.project_name),
            "EnvironmentVariables": json.dumps(environment),
        },
        "InputArtifacts": _artifact_refs([build.input]),
        "OutputArtifacts": _artifact_refs([build.output]),
        "RunOrder": 1,
    }


def render_deploy_action(deploy: DeployDescriptor) -> Dict[str, Any]:
    return {
        "Name": deploy.action_name,
        "ActionTypeId": {
            "Category": "Deploy",
            "Owner": "AWS",
            "Provider": "S3",
            "Version": "1",
        },
        "Configuration": {
            "BucketName": ref(deploy.bucket.logical_id),
            "Extract": "true" if deploy.extract else "false",
        },
        "InputArtifacts": _artifact_refs([deploy.input]),
        "RunOrder": 1,
    }


_ACTION_RENDERERS = {
    SourceDescriptor: render_source_action,
    BuildDescriptor: render_build_action,
    DeployDescriptor: render_deploy_action,
}


def render_stage(stage: PipelineStage) -> Dict[str, Any]:
    return {
        "Name": stage.name,
        "Actions": [_ACTION_RENDERERS[type(action)](action) for action in stage.actions],
    }


def render_pipeline(pipeline: PipelineDefinition) -> Dict[str, Resource]:
    return {
        PIPELINE_ID: {
            "Type": "AWS::CodePipeline::Pipeline",
            "Properties": {
                "Name": pipeline.name,
                "RoleArn": get_att(PIPELINE_ROLE_ID, "Arn"),
                "ArtifactStore": {"Type": "S3", "Location": ref(ARTIFACTS_BUCKET_ID)},
                "Stages": [render_stage(stage) for stage in pipeline.stages],
            },
            "DependsOn": [PIPELINE_ROLE_ID],
        }
    }


def render_webhook(source: SourceDescriptor) -> Dict[str, Resource]:
    """GitHub webhook that starts the pipeline on pushes to the watched branch.

    The OAuth token doubles as the HMAC secret, so GitHub signs deliveries
    with a value CodePipeline already holds.
    """
    return {
        WEBHOOK_ID: {
            "Type": "AWS::CodePipeline::Webhook",
            "Properties": {
                "Authentication": "GITHUB_HMAC",
                "AuthenticationConfiguration": {"SecretToken": source.oauth_token},
                "Filters": [{
                    "JsonPath": "$.ref",
                    "MatchEquals": "refs/heads/{Branch}",
                }],
                "TargetPipeline": ref(PIPELINE_ID),
                "TargetAction": source.action_name,
                "TargetPipelineVersion": get_att(PIPELINE_ID, "Version"),
                "RegisterWithThirdParty": True,
            },
        }
    }


def render_distribution(distribution: DistributionDescriptor) -> Dict[str, Resource]:
    behavior = distribution.default_behavior
    cache_behavior = {
        "TargetOriginId": ORIGIN_ID,
        "ViewerProtocolPolicy": "redirect-to-https",
        "AllowedMethods": ["GET", "HEAD"],
        "CachedMethods": ["GET", "HEAD"],
        "Compress": True,
        "ForwardedValues": {"QueryString": False, "Cookies": {"Forward": "none"}},
        "MinTTL": behavior.min_ttl,
        "DefaultTTL": behavior.default_ttl,
        "MaxTTL": behavior.max_ttl,
    }
    extra_behaviors = [
        {
            **cache_behavior,
            "PathPattern": b.path_pattern,
            "MinTTL": b.min_ttl,
            "DefaultTTL": b.default_ttl,
            "MaxTTL": b.max_ttl,
        }
        for b in distribution.behaviors if not b.is_default
    ]
    config = {
        "Enabled": True,
        "HttpVersion": "http2",
        "IPV6Enabled": True,
        "DefaultRootObject": distribution.default_root_object,
        "PriceClass": distribution.price_class.value,
        "ViewerCertificate": {"CloudFrontDefaultCertificate": True},
        "Origins": [{
            "Id": ORIGIN_ID,
            "DomainName": get_att(distribution.bucket.logical_id, "RegionalDomainName"),
            "S3OriginConfig": {
                "OriginAccessIdentity": join(
                    "origin-access-identity/cloudfront/",
                    ref(distribution.origin_access_identity.logical_id),
                )
            },
        }],
        "DefaultCacheBehavior": cache_behavior,
        "CustomErrorResponses": [
            {
                "ErrorCode": error.error_code,
                "ResponseCode": error.response_code,
                "ResponsePagePath": error.response_page_path,
                "ErrorCachingMinTTL": error.error_caching_min_ttl,
            }
            for error in distribution.error_responses
        ],
    }
    if extra_behaviors:
        config["CacheBehaviors"] = extra_behaviors

    return {
        distribution.logical_id: {
            "Type": "AWS::CloudFront::Distribution",
            "Properties": {"DistributionConfig": config},
        }
    }


def render_outputs(site_bucket: BucketDescriptor, distribution: DistributionDescriptor) -> Dict[str, Any]:
    return {
        "SiteBucketName": {"Value": ref(site_bucket.logical_id)},
        "ArtifactsBucketName": {"Value": ref(ARTIFACTS_BUCKET_ID)},
        "PipelineName": {"Value": ref(PIPELINE_ID)},
        "DistributionId": {"Value": ref(distribution.logical_id)},
        "DistributionDomainName": {"Value": get_att(distribution.logical_id, "DomainName")},
    }
