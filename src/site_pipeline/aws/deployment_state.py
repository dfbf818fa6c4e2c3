"""
Deployment state management.

Keeps a local history of deploy and destroy runs (status, timestamps, last
error and the outputs seen at the end of a deploy) and exports those outputs
to an env file. The status, publish, invalidate and destroy commands do not
read this file: they look up the live CloudFormation stack outputs.
"""
import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class DeploymentStatus(Enum):
    NOT_DEPLOYED = "not_deployed"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    DESTROYED = "destroyed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateManager:
    """Manages local deployment state for the stack."""

    def __init__(self, state_file: str = ".deployment_state.json"):
        self.state_file = state_file
        self.state = self._load_state()

    def _empty_state(self) -> Dict[str, Any]:
        return {
            "deployment_id": None,
            "stack_name": None,
            "stack_id": None,
            "created_at": None,
            "last_updated": None,
            "outputs": {},
            "status": DeploymentStatus.NOT_DEPLOYED.value,
        }

    def _load_state(self) -> Dict[str, Any]:
        """Load deployment state from file."""
        if os.path.exists(self.state_file):
            try:
                with open(self.state_file, 'r') as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")

        return self._empty_state()

    def save_state(self):
        """Save current state to file."""
        self.state["last_updated"] = _now()

        try:
            with open(self.state_file, 'w') as f:
                json.dump(self.state, f, indent=2)
        except IOError as e:
            logger.warning(f"Could not save state file: {e}")

    @property
    def status(self) -> str:
        return self.state.get("status", DeploymentStatus.NOT_DEPLOYED.value)

    def start_deployment(self, deployment_id: str, stack_name: str):
        """Start a new deployment."""
        self.state.update({
            "deployment_id": deployment_id,
            "stack_name": stack_name,
            "created_at": self.state.get("created_at") or _now(),
            "status": DeploymentStatus.DEPLOYING.value,
        })
        self.state.pop("error", None)
        self.save_state()

    def mark_deployment_complete(self, stack_id: Optional[str], outputs: Dict[str, str]):
        """Mark deployment as complete and keep the stack outputs."""
        self.state["status"] = DeploymentStatus.DEPLOYED.value
        self.state["stack_id"] = stack_id
        self.state["outputs"] = dict(outputs)
        self.save_state()

    def mark_deployment_failed(self, error: str):
        """Mark deployment as failed."""
        self.state["status"] = DeploymentStatus.FAILED.value
        self.state["error"] = error
        self.save_state()

    def mark_destroyed(self):
        self.state["status"] = DeploymentStatus.DESTROYED.value
        self.state["outputs"] = {}
        self.save_state()

    def get_output(self, key: str, default: Any = None) -> Any:
        """Get a recorded stack output."""
        return self.state.get("outputs", {}).get(key, default)

    def clear_state(self):
        """Clear all deployment state."""
        if os.path.exists(self.state_file):
            os.remove(self.state_file)
        self.state = self._empty_state()

    def export_env_file(self, env_file: str = ".env.deployed"):
        """Export resolved stack outputs to an environment file."""
        outputs = self.state.get("outputs", {})
        names = {
            "SiteBucketName": "SITE_BUCKET_NAME",
            "ArtifactsBucketName": "ARTIFACTS_BUCKET_NAME",
            "PipelineName": "PIPELINE_NAME",
            "DistributionId": "DISTRIBUTION_ID",
            "DistributionDomainName": "DISTRIBUTION_DOMAIN_NAME",
        }

        env_lines = [
            "# Site pipeline deployment outputs",
            f"# Generated on {_now()}",
            f"# Deployment ID: {self.state.get('deployment_id') or 'unknown'}",
            "",
            f"STACK_NAME={self.state.get('stack_name') or ''}",
        ]
        env_lines.extend(
            f"{env_name}={outputs[key]}" for key, env_name in names.items() if key in outputs
        )

        with open(env_file, 'w') as f:
            f.write('\n'.join(env_lines) + '\n')
        logger.info(f"Configuration exported to {env_file}")
