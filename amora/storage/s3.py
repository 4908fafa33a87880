"""
Amora — storage/s3.py
─────────────────────────────────────────────────────────────────
AWS S3 profile image storage.

Flow:
  PUT /api/users/me (multipart, profile_image)
      → upload_image(bytes, content_type, user_id)
      → permanent public URL → users.profile_image

.env:
  AWS_ACCESS_KEY_ID=your_access_key
  AWS_SECRET_ACCESS_KEY=your_secret_key
  AWS_S3_BUCKET=amora-profiles
  AWS_REGION=eu-west-1
  AWS_CDN_URL=                  # optional CloudFront URL
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
import secrets
from datetime import datetime, timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from amora.core.config import cfg
from amora.core.errors import ExternalServiceError, ValidationError

logger = logging.getLogger("amora.s3")

# profiles/2025/01/<user_id>-<rand>.jpg
S3_PREFIX = "profiles"

MAX_IMAGE_BYTES = 5 * 1024 * 1024

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png":  "png",
    "image/webp": "webp",
    "image/gif":  "gif",
}


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class S3Error(ExternalServiceError):
    """Image storage failed."""

class S3UploadError(S3Error):
    """Upload failed."""

class S3NotConfiguredError(S3Error):
    """Image storage is not configured."""


# ─────────────────────────────────────────────
# Client / keys
# ─────────────────────────────────────────────
def _get_client():
    if not cfg.s3_ready:
        raise S3NotConfiguredError(
            "AWS credentials missing. Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY in .env"
        )
    return boto3.client(
        "s3",
        region_name           = cfg.AWS_REGION,
        aws_access_key_id     = cfg.AWS_ACCESS_KEY_ID,
        aws_secret_access_key = cfg.AWS_SECRET_ACCESS_KEY,
    )


def make_key(user_id: str, extension: str) -> str:
    now = datetime.now(timezone.utc)
    return f"{S3_PREFIX}/{now:%Y}/{now:%m}/{user_id}-{secrets.token_hex(4)}.{extension.lstrip('.')}"


def public_url(key: str) -> str:
    if cfg.AWS_CDN_URL:
        return f"{cfg.AWS_CDN_URL}/{key}"
    return f"https://{cfg.AWS_S3_BUCKET}.s3.{cfg.AWS_REGION}.amazonaws.com/{key}"


def _put_object(data: bytes, key: str, content_type: str) -> str:
    client = _get_client()
    try:
        client.put_object(
            Bucket       = cfg.AWS_S3_BUCKET,
            Key          = key,
            Body         = data,
            ContentType  = content_type,
            CacheControl = "public, max-age=31536000, immutable",
            Metadata     = {"source": "amora-profile"},
        )
    except NoCredentialsError:
        raise S3NotConfiguredError("Invalid AWS credentials")
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "unknown")
        raise S3UploadError(f"S3 upload failed [{error_code}]: {e}")
    except BotoCoreError as e:
        raise S3UploadError(f"S3 upload failed: {e}")

    logger.info(f"Uploaded to S3: {key} ({len(data)} bytes)")
    return public_url(key)


# ─────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────
async def upload_image(data: bytes, content_type: str, user_id: str) -> str:
    """
    Store a profile image and return its permanent public URL.

    Raises:
        ValidationError       empty, oversized, or not an image
        S3NotConfiguredError  AWS credentials missing
        S3UploadError         S3 rejected the upload
    """
    content_type = (content_type or "").split(";")[0].strip().lower()
    extension = EXTENSIONS.get(content_type)
    if extension is None:
        raise ValidationError(f"Unsupported image type: {content_type or 'unknown'}")
    if not data:
        raise ValidationError("Image is empty")
    if len(data) > MAX_IMAGE_BYTES:
        raise ValidationError("Image is larger than 5 MB")

    key = make_key(user_id, extension)
    # boto3 is blocking
    return await asyncio.to_thread(_put_object, data, key, content_type)


def check_s3_connection() -> dict:
    """Startup probe: {"ok": True, ...} or {"ok": False, "error": ...}."""
    try:
        client = _get_client()
        client.head_bucket(Bucket=cfg.AWS_S3_BUCKET)
        return {
            "ok":     True,
            "bucket": cfg.AWS_S3_BUCKET,
            "region": cfg.AWS_REGION,
            "cdn":    cfg.AWS_CDN_URL or "none",
        }
    except S3NotConfiguredError as e:
        return {"ok": False, "error": e.message}
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "unknown")
        if error_code == "404":
            return {"ok": False, "error": f"Bucket '{cfg.AWS_S3_BUCKET}' does not exist"}
        if error_code == "403":
            return {"ok": False, "error": "Access denied, check IAM permissions"}
        return {"ok": False, "error": str(e)}
    except BotoCoreError as e:
        return {"ok": False, "error": str(e)}
