"""AWS client management and S3 helpers."""
import logging
import mimetypes
import os
from pathlib import Path
from typing import Any, Dict, Optional

import boto3

from site_pipeline.settings import get_settings

logger = logging.getLogger(__name__)


class AWSClientManager:
    """Singleton manager for AWS service clients."""
    _instance = None
    _clients: Dict[str, Any] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(AWSClientManager, cls).__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize the client manager with settings."""
        self.settings = get_settings()
        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url

        logger.debug(f"Initializing AWSClientManager (region={self.region}, endpoint={self.endpoint_url})")

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        client_kwargs = {
            'region_name': self.region
        }

        # Named profiles (SSO) take precedence over static credentials
        aws_profile = os.environ.get('AWS_PROFILE')
        if aws_profile:
            session = boto3.Session(profile_name=aws_profile)
            client = session.client(service_name, region_name=self.region,
                                    endpoint_url=self.endpoint_url)
            self._clients[service_name] = client
            logger.debug(f"Created {service_name} client using profile: {aws_profile}")
            return client

        if self.settings.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            client_kwargs['aws_secret_access_key'] = self.settings.aws_secret_access_key
        if self.endpoint_url:
            client_kwargs['endpoint_url'] = self.endpoint_url

        client = boto3.client(service_name, **client_kwargs)
        self._clients[service_name] = client
        logger.debug(f"Created {service_name} client")
        return client

    @classmethod
    def reset(cls):
        """Forget the singleton so the next use re-reads settings."""
        cls._clients.clear()
        cls._instance = None


def get_cloudformation_client():
    """Get the CloudFormation client."""
    return AWSClientManager().get_client('cloudformation')

def get_s3_client():
    """Get the S3 client."""
    return AWSClientManager().get_client('s3')

def get_cloudfront_client():
    """Get the CloudFront client."""
    return AWSClientManager().get_client('cloudfront')

def get_codepipeline_client():
    """Get the CodePipeline client."""
    return AWSClientManager().get_client('codepipeline')


def empty_bucket(bucket_name: str, s3_client=None) -> int:
    """Delete every object in an unversioned bucket.

    Returns the number of keys removed.
    """
    s3_client = s3_client or get_s3_client()
    removed = 0

    paginator = s3_client.get_paginator('list_objects_v2')
    for page in paginator.paginate(Bucket=bucket_name):
        objects = [{'Key': item['Key']} for item in page.get('Contents', [])]
        if objects:
            s3_client.delete_objects(Bucket=bucket_name, Delete={'Objects': objects, 'Quiet': True})
            removed += len(objects)

    logger.info(f"Emptied bucket {bucket_name} ({removed} objects)")
    return removed


def upload_directory(directory: str, bucket_name: str, s3_client=None,
                     prefix: Optional[str] = None) -> int:
    """Upload a local build directory to a bucket, overwriting matching keys.

    Keys are the file paths relative to ``directory`` using forward slashes.
    Returns the number of files uploaded.
    """
    s3_client = s3_client or get_s3_client()
    root = Path(directory)
    if not root.is_dir():
        raise NotADirectoryError(f"Build directory not found: {directory}")

    uploaded = 0
    for path in sorted(p for p in root.rglob('*') if p.is_file()):
        key = path.relative_to(root).as_posix()
        if prefix:
            key = f"{prefix.strip('/')}/{key}"

        extra_args = {}
        content_type, _ = mimetypes.guess_type(path.name)
        if content_type:
            extra_args['ContentType'] = content_type

        s3_client.upload_file(str(path), bucket_name, key, ExtraArgs=extra_args or None)
        uploaded += 1
        logger.debug(f"Uploaded {key}")

    logger.info(f"Uploaded {uploaded} files from {directory} to s3://{bucket_name}")
    return uploaded
