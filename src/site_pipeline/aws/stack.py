"""Assembly of the site deployment stack.

Builds the descriptor graph in dependency order and synthesizes it into a
CloudFormation template:

    source -> build -> bucket + origin access identity + bucket policy
           -> deploy -> pipeline -> distribution
"""
import logging
from typing import Dict, Any, Optional

from site_pipeline.exceptions import StackDefinitionError
from site_pipeline.schemas import (
    Artifact,
    BucketDescriptor,
    BucketPolicyStatement,
    BuildDescriptor,
    DeployDescriptor,
    DistributionDescriptor,
    OriginAccessIdentity,
    PipelineDefinition,
    PipelineStage,
    SourceDescriptor,
    SourceTrigger,
)
from site_pipeline.settings import Settings
from site_pipeline.aws import template

logger = logging.getLogger(__name__)

SOURCE_ARTIFACT = "Artifact_Source_GitHubAction"
BUILD_ARTIFACT = "Artifact_Build_BuildAction"
WEB_SOCKET_URL_VARIABLE = "REACT_APP_WEB_SOCKET_URL"


class SitePipelineStack:
    """Builder for the source/build/deploy pipeline and its distribution."""

    description = "GitHub -> CodeBuild -> S3 pipeline served through CloudFront"

    def __init__(self, stack_name: str):
        self.stack_name = stack_name
        self.source: Optional[SourceDescriptor] = None
        self.build: Optional[BuildDescriptor] = None
        self.bucket: Optional[BucketDescriptor] = None
        self.origin_access_identity: Optional[OriginAccessIdentity] = None
        self.bucket_policy: Optional[BucketPolicyStatement] = None
        self.deploy: Optional[DeployDescriptor] = None
        self.pipeline: Optional[PipelineDefinition] = None
        self.distribution: Optional[DistributionDescriptor] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> 'SitePipelineStack':
        """Define the whole stack from settings.

        Raises ConfigurationError when no GitHub token is configured.
        """
        stack = cls(settings.stack_name)
        return (stack
                .add_source(
                    owner=settings.source_owner,
                    repo=settings.source_repo,
                    branch=settings.source_branch,
                    oauth_token=settings.source_oauth_token(),
                    trigger=settings.source_trigger)
                .add_build(
                    build_spec=settings.build_spec,
                    environment_variables={WEB_SOCKET_URL_VARIABLE: settings.web_socket_url})
                .add_storage()
                .add_deploy()
                .add_pipeline()
                .add_distribution())

    def add_source(self, owner: str, repo: str, branch: str, oauth_token: str,
                   trigger: SourceTrigger = SourceTrigger.POLL) -> 'SitePipelineStack':
        self.source = SourceDescriptor(
            owner=owner,
            repo=repo,
            branch=branch,
            oauth_token=oauth_token,
            trigger=trigger,
            output=Artifact(name=SOURCE_ARTIFACT),
        )
        logger.debug(f"Source: {owner}/{repo}@{branch} ({trigger.value})")
        return self

    def add_build(self, build_spec: str, environment_variables: Dict[str, str]) -> 'SitePipelineStack':
        self._require("source", "build")
        self.build = BuildDescriptor(
            build_spec=build_spec,
            environment_variables=environment_variables,
            input=self.source.output,
            output=Artifact(name=BUILD_ARTIFACT),
        )
        return self

    def add_storage(self) -> 'SitePipelineStack':
        """Site bucket, origin access identity and the policy binding them."""
        self.bucket = BucketDescriptor()
        self.origin_access_identity = OriginAccessIdentity()
        self.bucket_policy = BucketPolicyStatement(
            principal=self.origin_access_identity,
            bucket=self.bucket,
        )
        return self

    def add_deploy(self) -> 'SitePipelineStack':
        self._require("build", "deploy")
        self._require("bucket", "deploy")
        self.deploy = DeployDescriptor(bucket=self.bucket, input=self.build.output)
        return self

    def add_pipeline(self, name: str = "Pipeline") -> 'SitePipelineStack':
        self._require("deploy", "pipeline")
        self.pipeline = PipelineDefinition(
            name=name,
            stages=[
                PipelineStage(name="Source", actions=[self.source]),
                PipelineStage(name="Build", actions=[self.build]),
                PipelineStage(name="Deploy", actions=[self.deploy]),
            ],
        )
        return self

    def add_distribution(self) -> 'SitePipelineStack':
        self._require("origin_access_identity", "distribution")
        self.distribution = DistributionDescriptor(
            bucket=self.bucket,
            origin_access_identity=self.origin_access_identity,
        )
        return self

    def _require(self, attribute: str, needed_by: str) -> None:
        if getattr(self, attribute) is None:
            raise StackDefinitionError(f"{needed_by} requires {attribute} to be defined first")

    def validate(self) -> None:
        """Check the cross-resource wiring the models cannot see on their own."""
        for attribute in ("pipeline", "bucket_policy", "distribution"):
            self._require(attribute, "synth")

        if self.bucket_policy.principal != self.distribution.origin_access_identity:
            raise StackDefinitionError(
                "bucket policy principal and distribution origin use different access identities"
            )
        if self.bucket_policy.bucket != self.distribution.bucket:
            raise StackDefinitionError("bucket policy is not attached to the distribution origin bucket")
        if self.deploy.bucket != self.distribution.bucket:
            raise StackDefinitionError("deploy stage does not target the distribution origin bucket")

    def synth(self) -> Dict[str, Any]:
        """Render the CloudFormation template."""
        self.validate()

        resources: Dict[str, Any] = {}
        resources.update(template.render_artifacts_bucket())
        resources.update(template.render_bucket(self.bucket))
        resources.update(template.render_origin_access_identity(self.origin_access_identity))
        resources.update(template.render_bucket_policy(self.bucket_policy))
        resources.update(template.render_build_role())
        resources.update(template.render_build_project(self.build))
        resources.update(template.render_pipeline_role(self.build, self.bucket))
        resources.update(template.render_pipeline(self.pipeline))
        if self.source.uses_webhook:
            resources.update(template.render_webhook(self.source))
        resources.update(template.render_distribution(self.distribution))

        logger.info(f"Synthesized {len(resources)} resources for stack {self.stack_name}")
        return {
            "AWSTemplateFormatVersion": template.TEMPLATE_FORMAT_VERSION,
            "Description": self.description,
            "Resources": resources,
            "Outputs": template.render_outputs(self.bucket, self.distribution),
        }
