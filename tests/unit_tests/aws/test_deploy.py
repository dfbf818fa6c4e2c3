import json
from unittest.mock import MagicMock

import boto3
import pytest
import yaml
from botocore.exceptions import (
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    WaiterError,
)

from site_pipeline.exceptions import ConfigurationError, DeploymentError
from site_pipeline.aws import deploy as deploy_module
from site_pipeline.aws.deploy import StackDeployer
from tests.consts import TEST_BUCKET_NAME, TEST_STACK_NAME

STACK_ID = f"arn:aws:cloudformation:us-east-1:123456789012:stack/{TEST_STACK_NAME}/abc"
OUTPUTS = [
    {"OutputKey": "SiteBucketName", "OutputValue": TEST_BUCKET_NAME},
    {"OutputKey": "ArtifactsBucketName", "OutputValue": "missing-artifacts-bucket"},
    {"OutputKey": "PipelineName", "OutputValue": "Pipeline"},
    {"OutputKey": "DistributionId", "OutputValue": "E2EXAMPLE"},
    {"OutputKey": "DistributionDomainName", "OutputValue": "d111.cloudfront.net"},
]


def client_error(message, code="ValidationError", operation="DescribeStacks"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def stack_description(status="CREATE_COMPLETE"):
    return {"Stacks": [{"StackId": STACK_ID, "StackStatus": status, "Outputs": OUTPUTS}]}


NOT_FOUND = client_error(f"Stack with id {TEST_STACK_NAME} does not exist")


@pytest.fixture
def cloudformation(monkeypatch):
    client = MagicMock()
    monkeypatch.setattr(deploy_module, "get_cloudformation_client", lambda: client)
    return client


@pytest.fixture
def deployer(settings):
    return StackDeployer(settings)


def test_deploy_creates_missing_stack(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = [NOT_FOUND, stack_description()]
    cloudformation.create_stack.return_value = {"StackId": STACK_ID}

    result = deployer.deploy()

    kwargs = cloudformation.create_stack.call_args.kwargs
    assert kwargs["StackName"] == TEST_STACK_NAME
    assert kwargs["Capabilities"] == ["CAPABILITY_IAM"]
    assert "Pipeline" in json.loads(kwargs["TemplateBody"])["Resources"]
    cloudformation.get_waiter.assert_called_once_with("stack_create_complete")

    assert result["status"] == "success"
    assert result["stack_id"] == STACK_ID
    assert result["outputs"]["DistributionId"] == "E2EXAMPLE"
    assert deployer.state_manager.status == "deployed"
    assert deployer.state_manager.get_output("SiteBucketName") == TEST_BUCKET_NAME


def test_deploy_updates_existing_stack(cloudformation, deployer):
    cloudformation.describe_stacks.return_value = stack_description()
    cloudformation.update_stack.return_value = {"StackId": STACK_ID}

    deployer.deploy()

    cloudformation.create_stack.assert_not_called()
    cloudformation.update_stack.assert_called_once()
    cloudformation.get_waiter.assert_called_once_with("stack_update_complete")


def test_deploy_without_changes_is_success(cloudformation, deployer):
    cloudformation.describe_stacks.return_value = stack_description()
    cloudformation.update_stack.side_effect = client_error(
        "No updates are to be performed.", operation="UpdateStack"
    )

    result = deployer.deploy()

    cloudformation.get_waiter.assert_not_called()
    assert result["stack_id"] == STACK_ID
    assert deployer.state_manager.status == "deployed"


def test_failed_stack_creation_is_recorded(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = [NOT_FOUND]
    cloudformation.create_stack.return_value = {"StackId": STACK_ID}
    cloudformation.get_waiter.return_value.wait.side_effect = WaiterError(
        name="StackCreateComplete",
        reason="Waiter encountered a terminal failure state",
        last_response={},
    )

    with pytest.raises(DeploymentError, match="failed"):
        deployer.deploy()

    assert deployer.state_manager.status == "failed"


def test_unreachable_endpoint_fails_deployment(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = EndpointConnectionError(
        endpoint_url="https://cloudformation.us-east-1.amazonaws.com"
    )

    with pytest.raises(DeploymentError, match="Could not connect"):
        deployer.deploy()

    cloudformation.create_stack.assert_not_called()
    assert deployer.state_manager.status == "failed"


def test_missing_credentials_fail_deployment(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = [NOT_FOUND]
    cloudformation.create_stack.side_effect = NoCredentialsError()

    with pytest.raises(DeploymentError, match="Unable to locate credentials"):
        deployer.deploy()

    assert deployer.state_manager.status == "failed"


def test_rolled_back_stack_is_deleted_and_recreated(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = [
        stack_description("ROLLBACK_COMPLETE"),
        stack_description(),
    ]
    cloudformation.create_stack.return_value = {"StackId": STACK_ID}

    result = deployer.deploy()

    cloudformation.delete_stack.assert_called_once_with(StackName=TEST_STACK_NAME)
    cloudformation.update_stack.assert_not_called()
    cloudformation.create_stack.assert_called_once()
    assert [c.args for c in cloudformation.get_waiter.call_args_list] == [
        ("stack_delete_complete",),
        ("stack_create_complete",),
    ]
    assert result["stack_id"] == STACK_ID
    assert deployer.state_manager.status == "deployed"


def test_failed_delete_of_rolled_back_stack_is_recorded(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = [stack_description("ROLLBACK_COMPLETE")]
    cloudformation.get_waiter.return_value.wait.side_effect = WaiterError(
        name="StackDeleteComplete",
        reason="Waiter encountered a terminal failure state",
        last_response={},
    )

    with pytest.raises(DeploymentError, match="failed"):
        deployer.deploy()

    cloudformation.create_stack.assert_not_called()
    assert deployer.state_manager.status == "failed"


def test_deploy_refuses_without_token(cloudformation, settings):
    deployer = StackDeployer(settings.model_copy(update={"github_token": None}))

    with pytest.raises(ConfigurationError):
        deployer.deploy()

    cloudformation.create_stack.assert_not_called()
    assert deployer.state_manager.status == "not_deployed"


def test_write_template_yaml(deployer, tmp_path):
    path = deployer.write_template(str(tmp_path / "out" / "template.yaml"), fmt="yaml")

    template = yaml.safe_load(path.read_text())
    assert template["AWSTemplateFormatVersion"] == "2010-09-09"
    assert template["Resources"]["WebsiteDistribution"]["Type"] == "AWS::CloudFront::Distribution"


def test_write_template_rejects_unknown_format(deployer, tmp_path):
    with pytest.raises(ValueError):
        deployer.write_template(str(tmp_path / "template.txt"), fmt="toml")


def test_destroy_empties_buckets_then_deletes_stack(mocked_aws, cloudformation, deployer):
    s3 = boto3.client("s3", region_name="us-east-1")
    s3.put_object(Bucket=TEST_BUCKET_NAME, Key="index.html", Body=b"<html></html>")
    s3.put_object(Bucket=TEST_BUCKET_NAME, Key="static/app.js", Body=b"console.log(1)")
    cloudformation.describe_stacks.return_value = stack_description()

    deployer.destroy()

    assert s3.list_objects_v2(Bucket=TEST_BUCKET_NAME).get("KeyCount") == 0
    cloudformation.delete_stack.assert_called_once_with(StackName=TEST_STACK_NAME)
    cloudformation.get_waiter.assert_called_once_with("stack_delete_complete")
    assert deployer.state_manager.status == "destroyed"


def test_destroy_missing_stack_is_noop(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = NOT_FOUND

    deployer.destroy()

    cloudformation.delete_stack.assert_not_called()


def test_status_reports_pipeline_stages(cloudformation, deployer, monkeypatch):
    cloudformation.describe_stacks.return_value = stack_description()
    codepipeline = MagicMock()
    codepipeline.get_pipeline_state.return_value = {"stageStates": [
        {"stageName": "Source", "latestExecution": {"status": "Succeeded"}},
        {"stageName": "Build", "latestExecution": {"status": "Failed"}},
        {"stageName": "Deploy"},
    ]}
    monkeypatch.setattr(deploy_module, "get_codepipeline_client", lambda: codepipeline)

    result = deployer.status()

    codepipeline.get_pipeline_state.assert_called_once_with(name="Pipeline")
    assert result["stack_status"] == "CREATE_COMPLETE"
    assert result["stages"] == [
        {"stage": "Source", "status": "Succeeded"},
        {"stage": "Build", "status": "Failed"},
        {"stage": "Deploy", "status": "NotStarted"},
    ]


def test_status_of_missing_stack(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = NOT_FOUND

    assert deployer.status()["stack_status"] == "NOT_DEPLOYED"


def test_describe_errors_are_wrapped(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = client_error("Access denied", code="AccessDenied")

    with pytest.raises(DeploymentError, match="Access denied"):
        deployer.stack_outputs()


def test_status_without_credentials_is_wrapped(cloudformation, deployer):
    cloudformation.describe_stacks.side_effect = NoCredentialsError()

    with pytest.raises(DeploymentError, match="Unable to locate credentials"):
        deployer.status()


def test_invalidate_connection_error_is_wrapped(cloudformation, deployer, monkeypatch):
    cloudformation.describe_stacks.return_value = stack_description()
    cloudfront = MagicMock()
    cloudfront.create_invalidation.side_effect = EndpointConnectionError(
        endpoint_url="https://cloudfront.amazonaws.com"
    )
    monkeypatch.setattr(deploy_module, "get_cloudfront_client", lambda: cloudfront)

    with pytest.raises(DeploymentError, match="Invalidation failed"):
        deployer.invalidate()


def test_publish_without_credentials_is_wrapped(cloudformation, deployer, monkeypatch, tmp_path):
    cloudformation.describe_stacks.return_value = stack_description()
    (tmp_path / "index.html").write_text("<html></html>")
    s3 = MagicMock()
    s3.upload_file.side_effect = NoCredentialsError()
    monkeypatch.setattr("site_pipeline.aws.utils.get_s3_client", lambda: s3)

    with pytest.raises(DeploymentError, match="Upload to .* failed"):
        deployer.publish(str(tmp_path))


def test_destroy_delete_error_is_wrapped(cloudformation, deployer, monkeypatch):
    outputs_without_buckets = {"Stacks": [{"StackId": STACK_ID, "StackStatus": "CREATE_COMPLETE"}]}
    cloudformation.describe_stacks.return_value = outputs_without_buckets
    cloudformation.delete_stack.side_effect = EndpointConnectionError(
        endpoint_url="https://cloudformation.us-east-1.amazonaws.com"
    )
    monkeypatch.setattr(deploy_module, "get_s3_client", MagicMock)

    with pytest.raises(DeploymentError, match="Deletion of"):
        deployer.destroy()


def test_invalidate_defaults_to_all_paths(cloudformation, deployer, monkeypatch):
    cloudformation.describe_stacks.return_value = stack_description()
    cloudfront = MagicMock()
    cloudfront.create_invalidation.return_value = {"Invalidation": {"Id": "I2J0I21PCUYOIK"}}
    monkeypatch.setattr(deploy_module, "get_cloudfront_client", lambda: cloudfront)

    invalidation_id = deployer.invalidate()

    assert invalidation_id == "I2J0I21PCUYOIK"
    kwargs = cloudfront.create_invalidation.call_args.kwargs
    assert kwargs["DistributionId"] == "E2EXAMPLE"
    assert kwargs["InvalidationBatch"]["Paths"] == {"Quantity": 1, "Items": ["/*"]}


def test_publish_requires_deployed_stack(cloudformation, deployer, tmp_path):
    cloudformation.describe_stacks.side_effect = NOT_FOUND

    with pytest.raises(DeploymentError, match="not deployed"):
        deployer.publish(str(tmp_path))
