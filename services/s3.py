# -*- coding: utf-8 -*-

import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

import config
from services.errors import StorageUnavailable

logger = logging.getLogger("api.s3")

# =========================================================
# LAZY CLIENT
# =========================================================
_client = None


def get_s3_client():
    global _client
    if _client is not None:
        return _client
    _client = boto3.client("s3", region_name=config.AWS_REGION)
    return _client


# =========================================================
# URIS
# =========================================================
def s3_uri(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key}"


def parse_s3_uri(uri: str) -> tuple[str, str]:
    if not uri or not uri.startswith("s3://"):
        raise ValueError(f"Invalid S3 URI: {uri}")
    path = uri[len("s3://"):]
    if "/" not in path:
        raise ValueError(f"Invalid S3 URI: {uri}")
    bucket, key = path.split("/", 1)
    if not bucket or not key:
        raise ValueError(f"Invalid S3 URI: {uri}")
    return bucket, key


def _bucket() -> str:
    if not config.BUCKET_NAME:
        raise RuntimeError("BUCKET_NAME not set")
    return config.BUCKET_NAME


# =========================================================
# READ OBJECT BYTES (MANIFEST BUILD)
# =========================================================
def get_object_bytes(key: str, *, client=None, bucket: str | None = None) -> bytes:
    client = client or get_s3_client()
    response = client.get_object(Bucket=bucket or _bucket(), Key=key)
    return response["Body"].read()


# =========================================================
# UPLOAD FILE (STREAM SAFE)
# =========================================================
def upload_fileobj(
    *,
    file_obj,
    destination_key: str,
    content_type: str,
    client=None,
) -> dict:
    bucket_name = _bucket()
    client = client or get_s3_client()
    try:
        client.upload_fileobj(
            file_obj,
            bucket_name,
            destination_key,
            ExtraArgs={"ContentType": content_type},
        )
    except (BotoCoreError, ClientError) as exc:
        raise StorageUnavailable(
            f"Failed to store {destination_key}",
            details={"error": f"{exc.__class__.__name__}: {exc}"},
        ) from exc

    return {
        "bucket": bucket_name,
        "key": destination_key,
        "s3_uri": s3_uri(bucket_name, destination_key),
    }


# =========================================================
# STREAM LINES (RESULT RECONCILE)
# =========================================================
def iter_object_lines(uri: str, *, client=None):
    """Yield decoded lines of an S3 object without buffering the whole body.

    Read failures, including a missing object, raise StorageUnavailable.
    """
    bucket, key = parse_s3_uri(uri)
    client = client or get_s3_client()
    try:
        response = client.get_object(Bucket=bucket, Key=key)
    except (BotoCoreError, ClientError) as exc:
        raise StorageUnavailable(
            f"Failed to read {uri}",
            details={"output_uri": uri, "error": f"{exc.__class__.__name__}: {exc}"},
        ) from exc

    body = response["Body"]
    try:
        for raw in body.iter_lines():
            yield raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
    except BotoCoreError as exc:
        raise StorageUnavailable(
            f"Read of {uri} interrupted",
            details={"output_uri": uri, "error": f"{exc.__class__.__name__}: {exc}"},
        ) from exc
    finally:
        body.close()


# =========================================================
# COPY / DELETE (IMAGE MIGRATION)
# =========================================================
def copy_object(*, source_key: str, destination_key: str, client=None) -> None:
    bucket_name = _bucket()
    client = client or get_s3_client()
    client.copy_object(
        Bucket=bucket_name,
        CopySource={"Bucket": bucket_name, "Key": source_key},
        Key=destination_key,
    )


def delete_object(key: str, *, client=None) -> None:
    client = client or get_s3_client()
    client.delete_object(Bucket=_bucket(), Key=key)
