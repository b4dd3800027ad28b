import logging
import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from receiptbridge.core.config import (
    R2_BUCKET,
    R2_ENDPOINT,
    R2_ACCESS_KEY,
    R2_SECRET_KEY,
    ATTACHMENT_DOWNLOAD_TIMEOUT,
)

logger = logging.getLogger(__name__)

_s3 = None


def get_s3_client():
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            endpoint_url=R2_ENDPOINT,
            aws_access_key_id=R2_ACCESS_KEY,
            aws_secret_access_key=R2_SECRET_KEY,
            config=Config(
                connect_timeout=10,
                read_timeout=ATTACHMENT_DOWNLOAD_TIMEOUT,
                retries={"max_attempts": 2},
            ),
        )
    return _s3


def get_file_from_r2(key: str):
    """
    Fetch (bytes, content_type) for an R2 object, or None when it is missing.
    """
    try:
        obj = get_s3_client().get_object(Bucket=R2_BUCKET, Key=key)
    except (BotoCoreError, ClientError) as e:
        logger.warning("Error fetching %s from R2: %s", key, e)
        return None
    return obj["Body"].read(), obj.get("ContentType")
