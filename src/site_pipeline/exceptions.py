"""Exceptions raised by the site pipeline."""


class SitePipelineError(Exception):
    """Base class for site pipeline errors."""


class ConfigurationError(SitePipelineError):
    """Raised when required configuration is missing or invalid."""


class StackDefinitionError(SitePipelineError):
    """Raised when the assembled resources break a wiring invariant."""


class DeploymentError(SitePipelineError):
    """Raised when a CloudFormation or S3 operation fails."""
