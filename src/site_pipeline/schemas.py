########################################
# --- Pipeline configuration models --- #
########################################

from enum import Enum
from typing import Dict, List, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator
)
from typing_extensions import Self

ONE_DAY_SECONDS = 24 * 60 * 60
ONE_YEAR_SECONDS = 365 * ONE_DAY_SECONDS

DEFAULT_ENTRY_DOCUMENT = "index.html"
DEFAULT_BUILD_IMAGE = "aws/codebuild/standard:7.0"
DEFAULT_COMPUTE_TYPE = "BUILD_GENERAL1_SMALL"

STAGE_ORDER = ["Source", "Build", "Deploy"]

# Origin errors CloudFront can rewrite
CUSTOMIZABLE_ERROR_CODES = (400, 403, 404, 405, 414, 416, 500, 501, 502, 503, 504)


class SourceTrigger(str, Enum):
    """How the source stage notices new commits.

    POLL lets CodePipeline poll the branch, WEBHOOK registers a GitHub
    webhook on the repository, NONE only runs on manual release.
    """
    POLL = "POLL"
    WEBHOOK = "WEBHOOK"
    NONE = "NONE"


class RemovalPolicy(str, Enum):
    """What happens to a resource when the stack is torn down."""
    DESTROY = "DESTROY"
    RETAIN = "RETAIN"


class PriceClass(str, Enum):
    """CloudFront edge footprint, broadest first."""
    PRICE_CLASS_ALL = "PriceClass_All"
    PRICE_CLASS_200 = "PriceClass_200"
    PRICE_CLASS_100 = "PriceClass_100"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Artifact(_Frozen):
    """A named bundle of files passed between pipeline stages."""
    name: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_\-]+$")


class SourceDescriptor(_Frozen):
    """Which repository and branch the source stage watches.

    Owner, repo and token may be empty strings: a bad value only surfaces
    when the pipeline first fetches.
    """
    action_name: str = "GitHubAction"
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    trigger: SourceTrigger = SourceTrigger.POLL
    oauth_token: str = ""
    output: Artifact

    @property
    def poll_for_source_changes(self) -> bool:
        return self.trigger == SourceTrigger.POLL

    @property
    def uses_webhook(self) -> bool:
        return self.trigger == SourceTrigger.WEBHOOK


class BuildDescriptor(_Frozen):
    """How the source artifact becomes a build artifact."""
    action_name: str = "BuildAction"
    project_name: str = "BuildProject"
    build_spec: str = "buildspec.yml"
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    build_image: str = DEFAULT_BUILD_IMAGE
    compute_type: str = DEFAULT_COMPUTE_TYPE
    input: Artifact
    output: Artifact

    @model_validator(mode="after")
    def check_artifacts_differ(self) -> Self:
        if self.input == self.output:
            raise ValueError("build input and output artifacts must be distinct")
        return self


class BucketDescriptor(_Frozen):
    """Storage bucket holding the deployed site."""
    logical_id: str = "ServerlessChatAppBucket"
    removal_policy: RemovalPolicy = RemovalPolicy.DESTROY


class OriginAccessIdentity(_Frozen):
    """Identity CloudFront uses to read the bucket."""
    logical_id: str = "OriginAccessIdentity"
    comment: str = "Allows CloudFront to reach the site bucket"


class BucketPolicyStatement(_Frozen):
    """Read-only object access for the origin access identity."""
    effect: str = "Allow"
    actions: List[str] = Field(default_factory=lambda: ["s3:GetObject"])
    principal: OriginAccessIdentity
    bucket: BucketDescriptor
    resource_suffix: str = "/*"

    @field_validator('actions')
    @classmethod
    def read_only(cls, v):
        if not v or any(not action.startswith("s3:Get") for action in v):
            raise ValueError(f"bucket policy must only grant object reads, got {v}")
        return v


class DeployDescriptor(_Frozen):
    """Uploads the build artifact into the site bucket."""
    action_name: str = "ServerlessChatAppDeployAction"
    bucket: BucketDescriptor
    input: Artifact
    extract: bool = True


StageAction = Union[SourceDescriptor, BuildDescriptor, DeployDescriptor]


class PipelineStage(_Frozen):
    name: str
    actions: List[StageAction] = Field(min_length=1)

    @property
    def inputs(self) -> List[Artifact]:
        return [a.input for a in self.actions if hasattr(a, "input")]

    @property
    def outputs(self) -> List[Artifact]:
        return [a.output for a in self.actions if hasattr(a, "output")]


class PipelineDefinition(_Frozen):
    """Ordered stages; each stage consumes what the previous one produced."""
    name: str = "Pipeline"
    stages: List[PipelineStage]

    @model_validator(mode="after")
    def check_stage_chain(self) -> Self:
        names = [stage.name for stage in self.stages]
        if names != STAGE_ORDER:
            raise ValueError(f"stages must be {STAGE_ORDER}, got {names}")

        for previous, current in zip(self.stages, self.stages[1:]):
            if current.inputs != previous.outputs:
                raise ValueError(
                    f"stage {current.name} consumes {[a.name for a in current.inputs]} "
                    f"but {previous.name} produces {[a.name for a in previous.outputs]}"
                )
        return self


class CacheBehavior(_Frozen):
    """Per-path caching rule. TTLs are in seconds."""
    path_pattern: str = "*"
    is_default: bool = True
    min_ttl: int = Field(default=0, ge=0)
    default_ttl: int = Field(default=ONE_DAY_SECONDS, ge=0)
    max_ttl: int = Field(default=ONE_YEAR_SECONDS, ge=0)

    @model_validator(mode="after")
    def check_ttl_order(self) -> Self:
        if not self.min_ttl <= self.default_ttl <= self.max_ttl:
            raise ValueError(
                f"TTLs must satisfy min <= default <= max, got "
                f"{self.min_ttl} / {self.default_ttl} / {self.max_ttl}"
            )
        return self


class ErrorResponse(_Frozen):
    """Rewrites an origin error into the entry document."""
    error_code: int
    response_code: int = 200
    response_page_path: str = f"/{DEFAULT_ENTRY_DOCUMENT}"
    error_caching_min_ttl: int = 0

    @field_validator('error_code')
    @classmethod
    def customizable_code(cls, v):
        if v not in CUSTOMIZABLE_ERROR_CODES:
            raise ValueError(f"CloudFront cannot customize error code {v}")
        return v

    @model_validator(mode="after")
    def check_fallback(self) -> Self:
        if self.response_code != 200:
            raise ValueError("fallback responses must be served with status 200")
        if not self.response_page_path.startswith("/"):
            raise ValueError("response_page_path must start with '/'")
        if self.error_caching_min_ttl != 0:
            raise ValueError("fallback responses must not be cached")
        return self


def spa_error_responses(entry_document: str = DEFAULT_ENTRY_DOCUMENT) -> List[ErrorResponse]:
    """403 and 404 both fall back to the entry document."""
    return [
        ErrorResponse(error_code=code, response_page_path=f"/{entry_document}")
        for code in (403, 404)
    ]


class DistributionDescriptor(_Frozen):
    """Edge caching in front of the bucket with SPA fallback."""
    logical_id: str = "WebsiteDistribution"
    bucket: BucketDescriptor
    origin_access_identity: OriginAccessIdentity
    behaviors: List[CacheBehavior] = Field(default_factory=lambda: [CacheBehavior()])
    error_responses: List[ErrorResponse] = Field(default_factory=spa_error_responses)
    price_class: PriceClass = PriceClass.PRICE_CLASS_ALL
    default_root_object: str = DEFAULT_ENTRY_DOCUMENT

    @model_validator(mode="after")
    def check_single_default(self) -> Self:
        defaults = [b for b in self.behaviors if b.is_default]
        if len(defaults) != 1:
            raise ValueError(f"exactly one default behavior required, got {len(defaults)}")
        return self

    @property
    def default_behavior(self) -> CacheBehavior:
        return next(b for b in self.behaviors if b.is_default)
