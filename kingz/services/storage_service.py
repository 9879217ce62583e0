"""
Blob storage for match videos and analysis audit records (S3).

Provides a lazy-initialized boto3 client. Video upload and download failures
propagate to the caller; the analysis audit write is best-effort.
"""

import json
import logging
import os
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Lazy-initialized S3 client
_s3_client = None

VIDEO_EXTENSIONS = {
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
    "video/x-matroska": "mkv",
}


def _get_config():
    """Read S3 configuration from environment at call time (not import time)."""
    return {
        "access_key_id": os.getenv("AWS_ACCESS_KEY_ID"),
        "secret_access_key": os.getenv("AWS_SECRET_ACCESS_KEY"),
        "bucket": os.getenv("AWS_S3_BUCKET"),
        "region": os.getenv("AWS_S3_REGION", "eu-central-1"),
    }


def _get_s3_client():
    """Get or create the boto3 S3 client. Lazy-imports boto3 to avoid import-time dependency."""
    global _s3_client
    if _s3_client is None:
        cfg = _get_config()
        if not all([cfg["access_key_id"], cfg["secret_access_key"], cfg["bucket"]]):
            raise ValueError(
                "AWS S3 environment variables not configured. "
                "Set AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, and AWS_S3_BUCKET."
            )
        import boto3

        _s3_client = boto3.client(
            "s3",
            aws_access_key_id=cfg["access_key_id"],
            aws_secret_access_key=cfg["secret_access_key"],
            region_name=cfg["region"],
        )
    return _s3_client


def _public_url(bucket: str, region: str, key: str) -> str:
    return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"


def video_extension(content_type: str) -> str:
    """File extension for a video MIME type ("mp4" when unknown)."""
    return VIDEO_EXTENSIONS.get((content_type or "").lower(), "mp4")


def upload_match_video(match_id: int, video_bytes: bytes, content_type: str) -> str:
    """
    Upload a match video to S3.

    Stores at key: match-videos/{match_id}/{timestamp}.{ext}

    Args:
        match_id: Match the video belongs to
        video_bytes: Raw video content
        content_type: MIME type from the upload

    Returns:
        Public URL of the uploaded video
    """
    client = _get_s3_client()
    cfg = _get_config()
    bucket = cfg["bucket"]
    timestamp = int(time.time() * 1000)
    key = f"match-videos/{match_id}/{timestamp}.{video_extension(content_type)}"

    client.put_object(
        Bucket=bucket,
        Key=key,
        Body=video_bytes,
        ContentType=content_type,
    )

    url = _public_url(bucket, cfg["region"], key)
    logger.info(f"Uploaded video for match {match_id}: {key}")
    return url


def save_match_analysis(match_id: int, data: Dict[str, Any]) -> Optional[str]:
    """
    Write the raw analysis result to match-analysis/{match_id}.json.

    Best-effort: logs errors and returns None instead of raising.
    """
    try:
        client = _get_s3_client()
        cfg = _get_config()
        key = f"match-analysis/{match_id}.json"
        client.put_object(
            Bucket=cfg["bucket"],
            Key=key,
            Body=json.dumps(data, default=str).encode("utf-8"),
            ContentType="application/json",
        )
        logger.info("Saved analysis audit for match %s", match_id)
        return _public_url(cfg["bucket"], cfg["region"], key)
    except Exception as e:
        logger.error("Failed to save analysis for match %s: %s", match_id, e)
        return None


def download_file(url: str) -> bytes:
    """
    Fetch an object previously stored by this service.

    Raises:
        ValueError: If the URL does not point into the configured bucket
    """
    client = _get_s3_client()
    cfg = _get_config()
    bucket = cfg["bucket"]
    key = _extract_key_from_url(url, bucket)
    if not key:
        raise ValueError(f"Could not extract S3 key from URL: {url}")

    response = client.get_object(Bucket=bucket, Key=key)
    return response["Body"].read()


def _extract_key_from_url(url: str, expected_bucket: Optional[str] = None) -> Optional[str]:
    """
    Extract the S3 object key from a full S3 URL.

    Handles URLs like:
      https://bucket.s3.region.amazonaws.com/match-videos/12/1700000000000.mp4

    Returns:
        Object key string or None if parsing fails or hostname doesn't match
    """
    try:
        parsed = urlparse(url)

        if expected_bucket and parsed.hostname:
            if expected_bucket not in parsed.hostname:
                logger.warning(
                    f"URL hostname '{parsed.hostname}' does not match "
                    f"expected bucket '{expected_bucket}'"
                )
                return None

        key = parsed.path.lstrip("/")
        return key if key else None
    except ValueError:
        return None
