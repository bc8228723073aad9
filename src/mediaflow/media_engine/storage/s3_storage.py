"""
S3 Object Store
Implements ObjectStore for AWS S3 compatible storage (e.g., MinIO).
"""

import logging

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from mediaflow.config.settings import Settings
from mediaflow.exceptions.handlers import NotFoundError, TransientIOError
from mediaflow.media_engine.storage.storage_interface import ObjectStore

logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_TRANSIENT_CODES = {"500", "503", "InternalError", "ServiceUnavailable", "SlowDown", "RequestTimeout"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectStore(ObjectStore):
    def __init__(self, settings: Settings, client=None, presign_client=None):
        self.bucket_name = settings.S3_BUCKET_NAME
        self.region_name = settings.S3_REGION_NAME
        self._endpoint_url = settings.S3_ENDPOINT_URL
        self._public_endpoint_url = (
            settings.S3_PUBLIC_ENDPOINT_URL.strip() or self._endpoint_url
        )

        boto_config = BotoConfig(
            signature_version="s3v4",
            s3={"addressing_style": "path" if settings.S3_FORCE_PATH_STYLE else "auto"},
        )

        def _make_client(endpoint_url: str):
            return boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=settings.S3_ACCESS_KEY_ID,
                aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
                region_name=settings.S3_REGION_NAME,
                config=boto_config,
            )

        self.s3_client = client or _make_client(self._endpoint_url)
        if presign_client is not None:
            self._presign_client = presign_client
        elif self._public_endpoint_url == self._endpoint_url:
            self._presign_client = self.s3_client
        else:
            self._presign_client = _make_client(self._public_endpoint_url)

    def presign_upload(self, key: str, content_type: str, ttl_seconds: int = 3600) -> str:
        try:
            return self._presign_client.generate_presigned_url(
                ClientMethod="put_object",
                Params={
                    "Bucket": self.bucket_name,
                    "Key": key,
                    "ContentType": content_type,
                },
                ExpiresIn=ttl_seconds,
                HttpMethod="PUT",
            )
        except ClientError as e:
            logger.error(f"Failed to generate presigned PUT URL for {key}: {e}")
            raise

    def presign_download(self, key: str, ttl_seconds: int = 3600) -> str:
        try:
            return self._presign_client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except ClientError as e:
            logger.error(f"Failed to generate presigned GET URL for {key}: {e}")
            raise

    def download(self, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            data = response["Body"].read()
        except ClientError as e:
            code = _error_code(e)
            if code in _MISSING_CODES:
                raise NotFoundError("Object", key) from e
            if code in _TRANSIENT_CODES:
                raise TransientIOError(f"S3 unavailable while reading {key}: {e}", key=key) from e
            logger.error(f"Failed to download {key} from S3: {e}")
            raise
        except _NETWORK_ERRORS as e:
            raise TransientIOError(f"S3 unreachable while reading {key}: {e}", key=key) from e
        logger.debug(f"Downloaded {key} ({len(data)} bytes) from bucket {self.bucket_name}")
        return data

    def upload(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            if _error_code(e) in _TRANSIENT_CODES:
                raise TransientIOError(f"S3 unavailable while writing {key}: {e}", key=key) from e
            logger.error(f"Failed to upload {key} to S3: {e}")
            raise
        except _NETWORK_ERRORS as e:
            raise TransientIOError(f"S3 unreachable while writing {key}: {e}", key=key) from e
        logger.info(f"Object {key} uploaded to S3 bucket {self.bucket_name}")

    def delete(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return
            logger.error(f"Failed to delete {key} from S3: {e}")
            raise
        except _NETWORK_ERRORS as e:
            raise TransientIOError(f"S3 unreachable while deleting {key}: {e}", key=key) from e
        logger.info(f"Object {key} deleted from S3 bucket {self.bucket_name}")

    def exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return False
            logger.error(f"Error checking existence of {key} in S3: {e}")
            raise

    def ensure_bucket(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return False
        except ClientError as e:
            if _error_code(e) not in ("404", "NoSuchBucket"):
                raise
        if self.region_name == "us-east-1":
            self.s3_client.create_bucket(Bucket=self.bucket_name)
        else:
            self.s3_client.create_bucket(
                Bucket=self.bucket_name,
                CreateBucketConfiguration={"LocationConstraint": self.region_name},
            )
        logger.info(f"Bucket {self.bucket_name} created")
        return True
