# src/site_pipeline/settings.py
from typing import Optional, Dict
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

from site_pipeline.exceptions import ConfigurationError
from site_pipeline.schemas import SourceTrigger


class Settings(BaseSettings):
    """
    Single source of truth for all pipeline settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from site_pipeline.settings import get_settings
        settings = get_settings()
        repo = settings.source_repo
    """

    # Stack Settings
    stack_name: str = Field(
        default="CdkDeployStack",
        alias="STACK_NAME",
        description="CloudFormation stack name"
    )

    # Source Stage
    source_repo: str = Field(
        default="",
        alias="SOURCE_ACTION_REPO",
        description="GitHub repository name to poll"
    )

    source_owner: str = Field(
        default="",
        alias="SOURCE_ACTION_OWNER",
        description="GitHub repository owner or organization"
    )

    source_branch: str = Field(
        default="main",
        alias="SOURCE_ACTION_BRANCH",
        description="Branch watched by the source stage"
    )

    source_trigger: SourceTrigger = Field(
        default=SourceTrigger.POLL,
        alias="SOURCE_ACTION_TRIGGER",
        description="POLL, WEBHOOK or NONE"
    )

    github_token: Optional[str] = Field(
        default=None,
        alias="SOURCE_ACTION_GITHUB_TOKEN",
        description="GitHub token for repository access"
    )

    github_token_secret: Optional[str] = Field(
        default=None,
        alias="SOURCE_ACTION_GITHUB_TOKEN_SECRET",
        description="Secrets Manager secret holding the GitHub token"
    )

    # Build Stage
    web_socket_url: str = Field(
        default="",
        alias="REACT_APP_WEB_SOCKET_URL",
        description="Injected into the build environment"
    )

    build_spec: str = Field(
        default="buildspec.yml",
        alias="BUILD_SPEC",
        description="Build specification file in the source tree"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    # Local state
    state_file: str = Field(
        default=".deployment_state.json",
        alias="DEPLOYMENT_STATE_FILE",
        description="Where deployment state is recorded"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level"
    )

    @field_validator('github_token', 'github_token_secret', 'aws_endpoint_url', mode='before')
    @classmethod
    def blank_as_none(cls, v):
        """Treat blank optional values as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('source_trigger', mode='before')
    @classmethod
    def normalize_trigger(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one the logging module knows."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"Invalid log_level: {v}. Must be one of {valid_levels}")
        return v

    def source_oauth_token(self) -> str:
        """Return the token value handed to the source action.

        A Secrets Manager secret takes precedence over a plaintext token and
        is rendered as a CloudFormation dynamic reference. Missing both is a
        configuration error.
        """
        if self.github_token_secret:
            return f"{{{{resolve:secretsmanager:{self.github_token_secret}}}}}"
        if self.github_token:
            return self.github_token
        raise ConfigurationError(
            "GitHub token is not configured: set SOURCE_ACTION_GITHUB_TOKEN "
            "or SOURCE_ACTION_GITHUB_TOKEN_SECRET"
        )

    def as_display_dict(self) -> Dict[str, str]:
        """Effective configuration with credentials masked."""
        def mask(value: Optional[str]) -> str:
            if not value:
                return "<not set>"
            return value[:4] + "****" if len(value) > 8 else "****"

        return {
            'STACK_NAME': self.stack_name,
            'SOURCE_ACTION_OWNER': self.source_owner,
            'SOURCE_ACTION_REPO': self.source_repo,
            'SOURCE_ACTION_BRANCH': self.source_branch,
            'SOURCE_ACTION_TRIGGER': self.source_trigger.value,
            'SOURCE_ACTION_GITHUB_TOKEN': mask(self.github_token),
            'SOURCE_ACTION_GITHUB_TOKEN_SECRET': self.github_token_secret or "<not set>",
            'REACT_APP_WEB_SOCKET_URL': self.web_socket_url,
            'BUILD_SPEC': self.build_spec,
            'AWS_DEFAULT_REGION': self.aws_region,
            'AWS_ENDPOINT_URL': self.aws_endpoint_url or "<not set>",
            'DEPLOYMENT_STATE_FILE': self.state_file,
            'LOG_LEVEL': self.log_level,
        }

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
