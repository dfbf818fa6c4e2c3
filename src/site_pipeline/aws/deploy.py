"""CloudFormation deployment of the site pipeline stack."""
import json
import logging
import time
from functools import wraps
from pathlib import Path
from typing import Dict, Any, List, Optional

import yaml
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from site_pipeline.exceptions import DeploymentError
from site_pipeline.settings import Settings, get_settings
from site_pipeline.aws.stack import SitePipelineStack
from site_pipeline.aws.deployment_state import StateManager
from site_pipeline.aws.utils import (
    empty_bucket,
    get_cloudformation_client,
    get_cloudfront_client,
    get_codepipeline_client,
    get_s3_client,
    upload_directory,
)

logger = logging.getLogger(__name__)

CAPABILITIES = ["CAPABILITY_IAM"]
NO_UPDATES_MESSAGE = "No updates are to be performed"
UNRECOVERABLE_STATUSES = ("ROLLBACK_COMPLETE",)
WAITER_CONFIG = {"Delay": 15, "MaxAttempts": 240}


def log_operation(description: str):
    """Decorator for timing and logging deployment operations."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger.info(f"Starting: {description}")
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
                duration = time.time() - start_time
                logger.info(f"Completed: {description} in {duration:.2f}s")
                return result
            except Exception as e:
                duration = time.time() - start_time
                logger.error(f"Failed: {description} after {duration:.2f}s - {str(e)}")
                raise
        return wrapper
    return decorator


def _error_message(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Message', str(error))
    return str(error)


class StackDeployer:
    """Synthesizes the stack and drives CloudFormation through boto3."""

    def __init__(self, settings: Optional[Settings] = None,
                 state_manager: Optional[StateManager] = None):
        self.settings = settings or get_settings()
        self.stack_name = self.settings.stack_name
        self.state_manager = state_manager or StateManager(self.settings.state_file)

    def synth(self) -> Dict[str, Any]:
        return SitePipelineStack.from_settings(self.settings).synth()

    def write_template(self, path: str, fmt: str = "json") -> Path:
        """Write the synthesized template as JSON or YAML."""
        template = self.synth()
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        if fmt == "yaml":
            body = yaml.safe_dump(template, sort_keys=False)
        elif fmt == "json":
            body = json.dumps(template, indent=2)
        else:
            raise ValueError(f"Unsupported template format: {fmt}")

        target.write_text(body)
        logger.info(f"Template written to {target}")
        return target

    # ---- stack lookups ----

    def _describe_stack(self) -> Optional[Dict[str, Any]]:
        cloudformation = get_cloudformation_client()
        try:
            response = cloudformation.describe_stacks(StackName=self.stack_name)
        except ClientError as e:
            if "does not exist" in _error_message(e):
                return None
            raise DeploymentError(f"Could not describe stack {self.stack_name}: {_error_message(e)}") from e
        except BotoCoreError as e:
            raise DeploymentError(f"Could not describe stack {self.stack_name}: {e}") from e
        stacks = response.get("Stacks", [])
        return stacks[0] if stacks else None

    def stack_outputs(self) -> Dict[str, str]:
        stack = self._describe_stack()
        if stack is None:
            raise DeploymentError(f"Stack {self.stack_name} is not deployed")
        return {o["OutputKey"]: o["OutputValue"] for o in stack.get("Outputs", [])}

    def _output(self, key: str) -> str:
        value = self.stack_outputs().get(key)
        if not value:
            raise DeploymentError(f"Stack {self.stack_name} has no output {key}")
        return value

    # ---- operations ----

    @log_operation("Deploy site pipeline stack")
    def deploy(self) -> Dict[str, Any]:
        """Create the stack, or update it when it already exists."""
        template_body = json.dumps(self.synth())
        deployment_id = f"{self.stack_name}-{int(time.time())}"
        self.state_manager.start_deployment(deployment_id, self.stack_name)

        cloudformation = get_cloudformation_client()
        try:
            stack = self._describe_stack()
            if stack is not None and stack.get("StackStatus") in UNRECOVERABLE_STATUSES:
                self._delete_failed_stack(stack["StackStatus"])
                stack = None

            if stack is None:
                logger.info(f"Creating stack {self.stack_name}")
                response = cloudformation.create_stack(
                    StackName=self.stack_name,
                    TemplateBody=template_body,
                    Capabilities=CAPABILITIES,
                )
                waiter_name = "stack_create_complete"
                stack_id = response["StackId"]
            else:
                logger.info(f"Updating stack {self.stack_name}")
                try:
                    response = cloudformation.update_stack(
                        StackName=self.stack_name,
                        TemplateBody=template_body,
                        Capabilities=CAPABILITIES,
                    )
                    waiter_name = "stack_update_complete"
                    stack_id = response["StackId"]
                except ClientError as e:
                    if NO_UPDATES_MESSAGE not in _error_message(e):
                        raise
                    logger.info("Stack is already up to date")
                    waiter_name = None
                    stack_id = None

            if waiter_name:
                cloudformation.get_waiter(waiter_name).wait(
                    StackName=self.stack_name, WaiterConfig=WAITER_CONFIG
                )

            stack = self._describe_stack() or {}
            outputs = {o["OutputKey"]: o["OutputValue"] for o in stack.get("Outputs", [])}
            stack_id = stack_id or stack.get("StackId")
        except (ClientError, BotoCoreError, DeploymentError) as e:
            message = _error_message(e)
            self.state_manager.mark_deployment_failed(message)
            raise DeploymentError(f"Deployment of {self.stack_name} failed: {message}") from e

        self.state_manager.mark_deployment_complete(stack_id, outputs)
        return {
            "status": "success",
            "deployment_id": deployment_id,
            "stack_name": self.stack_name,
            "stack_id": stack_id,
            "outputs": outputs,
        }

    @log_operation("Destroy site pipeline stack")
    def destroy(self) -> None:
        """Empty the buckets and delete the stack."""
        stack = self._describe_stack()
        if stack is None:
            logger.info(f"Stack {self.stack_name} does not exist, nothing to destroy")
            self.state_manager.mark_destroyed()
            return

        outputs = {o["OutputKey"]: o["OutputValue"] for o in stack.get("Outputs", [])}
        s3_client = get_s3_client()
        for key in ("SiteBucketName", "ArtifactsBucketName"):
            bucket_name = outputs.get(key)
            if not bucket_name:
                continue
            try:
                empty_bucket(bucket_name, s3_client)
            except ClientError as e:
                if e.response.get('Error', {}).get('Code') != 'NoSuchBucket':
                    raise DeploymentError(f"Could not empty {bucket_name}: {_error_message(e)}") from e
            except BotoCoreError as e:
                raise DeploymentError(f"Could not empty {bucket_name}: {e}") from e

        cloudformation = get_cloudformation_client()
        try:
            cloudformation.delete_stack(StackName=self.stack_name)
            cloudformation.get_waiter("stack_delete_complete").wait(
                StackName=self.stack_name, WaiterConfig=WAITER_CONFIG
            )
        except (ClientError, BotoCoreError) as e:
            raise DeploymentError(f"Deletion of {self.stack_name} failed: {_error_message(e)}") from e

        self.state_manager.mark_destroyed()

    def _delete_failed_stack(self, status: str) -> None:
        """A stack whose first create rolled back can only be deleted and recreated."""
        logger.warning(f"Stack {self.stack_name} is in {status}, deleting it before recreating")
        cloudformation = get_cloudformation_client()
        cloudformation.delete_stack(StackName=self.stack_name)
        cloudformation.get_waiter("stack_delete_complete").wait(
            StackName=self.stack_name, WaiterConfig=WAITER_CONFIG
        )

    def status(self) -> Dict[str, Any]:
        """Stack status plus the latest state of each pipeline stage."""
        stack = self._describe_stack()
        if stack is None:
            return {"stack_name": self.stack_name, "stack_status": "NOT_DEPLOYED", "stages": []}

        outputs = {o["OutputKey"]: o["OutputValue"] for o in stack.get("Outputs", [])}
        stages: List[Dict[str, Any]] = []
        pipeline_name = outputs.get("PipelineName")
        if pipeline_name:
            try:
                state = get_codepipeline_client().get_pipeline_state(name=pipeline_name)
            except (ClientError, BotoCoreError) as e:
                raise DeploymentError(f"Could not read pipeline state: {_error_message(e)}") from e
            for stage in state.get("stageStates", []):
                latest = stage.get("latestExecution", {})
                stages.append({
                    "stage": stage.get("stageName"),
                    "status": latest.get("status", "NotStarted"),
                })

        return {
            "stack_name": self.stack_name,
            "stack_status": stack.get("StackStatus"),
            "outputs": outputs,
            "stages": stages,
        }

    @log_operation("Publish build directory")
    def publish(self, directory: str) -> int:
        """Upload a local build into the site bucket, as the deploy stage does."""
        bucket_name = self._output("SiteBucketName")
        try:
            return upload_directory(directory, bucket_name)
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise DeploymentError(f"Upload to {bucket_name} failed: {_error_message(e)}") from e

    @log_operation("Invalidate distribution cache")
    def invalidate(self, paths: Optional[List[str]] = None) -> str:
        """Invalidate cached paths so the latest deploy is served."""
        paths = list(paths or ["/*"])
        distribution_id = self._output("DistributionId")
        try:
            response = get_cloudfront_client().create_invalidation(
                DistributionId=distribution_id,
                InvalidationBatch={
                    "Paths": {"Quantity": len(paths), "Items": paths},
                    "CallerReference": f"site-pipeline-{time.time()}",
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise DeploymentError(f"Invalidation failed: {_error_message(e)}") from e
        invalidation_id = response["Invalidation"]["Id"]
        logger.info(f"Created invalidation {invalidation_id} for {distribution_id}")
        return invalidation_id
