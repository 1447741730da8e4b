"""Shared S3-compatible storage helpers.

The client is built once per process from env vars:
- R2_ACCOUNT_ID, R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY for Cloudflare R2
- otherwise S3_ENDPOINT_URL (optional, e.g. MinIO), S3_REGION and the default
  boto3 credential chain

Every helper takes the bucket explicitly since bucket names arrive with each
storage notification.
"""

import logging
import os

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shared_py.streams import collect_body

logger = logging.getLogger(__name__)

# Module-level cached client, shared by every request handled in this process
_s3_client = None


class MetadataFetchError(Exception):
    """HeadObject failed; the cause is chained on __cause__."""


class PublishError(Exception):
    """PutObject failed; the cause is chained on __cause__."""


def get_s3_client():
    """Get or create the cached S3 client."""
    global _s3_client
    if _s3_client is None:
        account_id = os.environ.get("R2_ACCOUNT_ID")
        if account_id:
            _s3_client = boto3.client(
                "s3",
                endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
                aws_access_key_id=os.environ.get("R2_ACCESS_KEY_ID"),
                aws_secret_access_key=os.environ.get("R2_SECRET_ACCESS_KEY"),
                region_name="auto",
            )
        else:
            _s3_client = boto3.client(
                "s3",
                endpoint_url=os.environ.get("S3_ENDPOINT_URL") or None,
                region_name=os.environ.get("S3_REGION", "ap-northeast-1"),
            )
    return _s3_client


def read_metadata(bucket: str, key: str) -> dict:
    """Return the user metadata of an object ({} when it has none)."""
    try:
        head = get_s3_client().head_object(Bucket=bucket, Key=key)
    except (ClientError, BotoCoreError) as err:
        raise MetadataFetchError(f"HeadObject failed for {bucket}/{key}: {err}") from err
    return head.get("Metadata") or {}


def download_object(bucket: str, key: str) -> bytes:
    """Download an object and return its full payload."""
    response = get_s3_client().get_object(Bucket=bucket, Key=key)
    return collect_body(response["Body"], expected_length=response.get("ContentLength"))


def upload_object(bucket: str, key: str, body: bytes, content_type: str, metadata: dict):
    """Write `body` to bucket/key, replacing whatever is stored there."""
    try:
        return get_s3_client().put_object(
            Bucket=bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
            Metadata=metadata,
        )
    except (ClientError, BotoCoreError) as err:
        raise PublishError(f"PutObject failed for {bucket}/{key}: {err}") from err
