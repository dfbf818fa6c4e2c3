"""Shared fixtures: isolated environment, settings and mocked AWS."""
import boto3
import pytest
from moto import mock_aws

from site_pipeline.settings import Settings, get_settings
from site_pipeline.aws.utils import AWSClientManager
from tests.consts import (
    TEST_BUCKET_NAME,
    TEST_OWNER,
    TEST_REPO,
    TEST_STACK_NAME,
    TEST_TOKEN,
    TEST_WEB_SOCKET_URL,
)

PIPELINE_ENV_VARS = [
    "STACK_NAME",
    "SOURCE_ACTION_REPO",
    "SOURCE_ACTION_OWNER",
    "SOURCE_ACTION_BRANCH",
    "SOURCE_ACTION_TRIGGER",
    "SOURCE_ACTION_GITHUB_TOKEN",
    "SOURCE_ACTION_GITHUB_TOKEN_SECRET",
    "REACT_APP_WEB_SOCKET_URL",
    "BUILD_SPEC",
    "AWS_ENDPOINT_URL",
    "AWS_PROFILE",
    "DEPLOYMENT_STATE_FILE",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Run every test in a temp dir with a clean pipeline environment."""
    for name in PIPELINE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "mock")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "mock")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.chdir(tmp_path)

    get_settings.cache_clear()
    AWSClientManager.reset()
    yield
    get_settings.cache_clear()
    AWSClientManager.reset()


@pytest.fixture
def pipeline_env(monkeypatch):
    """Environment a configured operator shell would have."""
    monkeypatch.setenv("STACK_NAME", TEST_STACK_NAME)
    monkeypatch.setenv("SOURCE_ACTION_OWNER", TEST_OWNER)
    monkeypatch.setenv("SOURCE_ACTION_REPO", TEST_REPO)
    monkeypatch.setenv("SOURCE_ACTION_GITHUB_TOKEN", TEST_TOKEN)
    monkeypatch.setenv("REACT_APP_WEB_SOCKET_URL", TEST_WEB_SOCKET_URL)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        stack_name=TEST_STACK_NAME,
        source_owner=TEST_OWNER,
        source_repo=TEST_REPO,
        github_token=TEST_TOKEN,
        web_socket_url=TEST_WEB_SOCKET_URL,
        state_file=str(tmp_path / "state.json"),
    )


@pytest.fixture
def mocked_aws():
    """Moto-backed AWS with the site bucket already created."""
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket=TEST_BUCKET_NAME)
        yield
