"""
Object-store access for project input files.

Browsers upload input documents straight to the S3-compatible store with a
presigned PUT URL, so file bodies never pass through the gateway. Keys follow
``projects/<project_id>/input/<sanitized filename>``.

The boto3 client is built once from ``StorageSettings`` (path-style
addressing, which SeaweedFS and MinIO expect) and injected where needed.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .configuration import StorageSettings
from .errors import ExternalServiceError, ServiceUnavailableError
from .logging_utils import as_context_logger
from .utils import sanitize_object_name

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".md": "text/markdown",
    ".txt": "text/plain",
    ".json": "application/json",
    ".yaml": "application/x-yaml",
    ".yml": "application/x-yaml",
    ".csv": "text/csv",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
}


def get_content_type(filename: str) -> str:
    return CONTENT_TYPES.get(PurePosixPath(filename).suffix.lower(), DEFAULT_CONTENT_TYPE)


def input_file_key(project_id: str, filename: str) -> str:
    return f"projects/{project_id}/input/{sanitize_object_name(filename)}"


def build_s3_client(settings: StorageSettings, endpoint: Optional[str] = None) -> Any:
    return boto3.client(
        "s3",
        endpoint_url=endpoint or settings.endpoint,
        aws_access_key_id=settings.access_key,
        aws_secret_access_key=settings.secret_key,
        region_name=settings.region,
        config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
    )


@dataclass
class PresignedUpload:
    upload_url: str
    key: str
    expires_in: int
    content_type: str


class StorageService:
    """
    Presigned URL generation for the project bucket.

    Presigned URLs are signed against ``public_endpoint`` when it is set, so a
    browser outside the deployment network can reach the store even when the
    gateway talks to it on an internal hostname.
    """

    def __init__(
        self,
        settings: StorageSettings,
        client: Any = None,
        logger: Optional[logging.Logger | logging.LoggerAdapter] = None,
    ):
        self.settings = settings
        if client is None and settings.configured:
            client = build_s3_client(settings, endpoint=settings.public_endpoint)
        self._client = client
        self._logger = as_context_logger(logger, __name__)

    def with_logger(self, logger: logging.Logger | logging.LoggerAdapter) -> "StorageService":
        """Return a copy sharing the S3 client that logs through ``logger``."""
        bound = copy.copy(self)
        bound._logger = as_context_logger(logger, __name__)
        return bound

    @property
    def configured(self) -> bool:
        return self._client is not None and bool(self.settings.bucket)

    def _require_client(self) -> Any:
        if not self.configured:
            raise ServiceUnavailableError("Object storage is not configured")
        return self._client

    def generate_upload_url(
        self,
        project_id: str,
        filename: str,
        content_type: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> PresignedUpload:
        """
        Generate a presigned PUT URL for a project input file.

        Args:
            project_id: Project the file belongs to
            filename: Original filename; unsafe characters are replaced
            content_type: MIME type the upload must use; guessed from the
                extension when omitted
            expires_in: URL lifetime in seconds; defaults to the configured value

        Returns:
            The URL, the object key, its lifetime and the content type it was signed for

        Raises:
            ServiceUnavailableError: Storage is not configured
            ExternalServiceError: The client could not sign the request
        """
        client = self._require_client()
        key = input_file_key(project_id, filename)
        content_type = content_type or get_content_type(filename)
        expires = expires_in or self.settings.presign_expires

        try:
            url = client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.settings.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=expires,
            )
        except (ClientError, BotoCoreError) as exc:
            self._logger.error(f"Failed to generate presigned upload URL for {key}: {exc}")
            raise ExternalServiceError("S3", "Failed to generate upload URL") from exc

        self._logger.info(f"Generated presigned upload URL for {key} (expires in {expires}s)")
        return PresignedUpload(upload_url=url, key=key, expires_in=expires, content_type=content_type)
