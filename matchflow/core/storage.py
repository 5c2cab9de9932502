import logging
import os
from functools import lru_cache

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from matchflow.core.env import load_env

load_env()

logger = logging.getLogger(__name__)

REGION = os.getenv("AWS_REGION") or os.getenv("S3_REGION", "us-east-1")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "http://127.0.0.1:9000").strip()
S3_PUBLIC_ENDPOINT_URL = os.getenv("S3_PUBLIC_ENDPOINT_URL", "").strip()
S3_BUCKET = os.getenv("S3_BUCKET", "").strip()


def _video_url_expires_seconds() -> int:
    try:
        value = int(os.environ.get("VIDEO_URL_EXPIRES_SECONDS", str(7 * 24 * 3600)))
    except ValueError:
        value = 7 * 24 * 3600
    # s3v4 presigned urls are capped at 7 days
    return max(60, min(value, 7 * 24 * 3600))


class StorageError(RuntimeError):
    pass


def make_s3(endpoint_url: str):
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        region_name=REGION,
        aws_access_key_id=os.getenv("S3_ACCESS_KEY"),
        aws_secret_access_key=os.getenv("S3_SECRET_KEY"),
        config=Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
        ),
    )


@lru_cache(maxsize=1)
def get_internal_s3_client():
    return make_s3(S3_ENDPOINT_URL)


@lru_cache(maxsize=1)
def get_presign_s3_client():
    # links leave the cluster, so sign against the public endpoint when set
    return make_s3(S3_PUBLIC_ENDPOINT_URL or S3_ENDPOINT_URL)


def object_exists(bucket: str, key: str) -> bool:
    try:
        get_internal_s3_client().head_object(Bucket=bucket, Key=key)
    except ClientError as exc:
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code in ("404", "NoSuchKey", "NotFound"):
            return False
        raise StorageError(f"Unable to check uploaded video: {code}") from exc
    except BotoCoreError as exc:
        raise StorageError(f"Unable to check uploaded video: {exc}") from exc
    return True


def presign_video_url(bucket: str, key: str) -> str:
    """Resolve an uploaded object into the location the AI service downloads."""
    try:
        return get_presign_s3_client().generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=_video_url_expires_seconds(),
        )
    except (BotoCoreError, ClientError) as exc:
        logger.warning("PRESIGN_FAIL bucket=%s key=%s error=%s", bucket, key, exc)
        raise StorageError(f"Unable to sign video url: {exc}") from exc
