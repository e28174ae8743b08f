"""
Tests for presigned upload URL generation.
"""

from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import pytest
from botocore.exceptions import BotoCoreError

from factory_gateway.configuration import StorageSettings
from factory_gateway.errors import ExternalServiceError, ServiceUnavailableError
from factory_gateway.s3_service import StorageService, get_content_type, input_file_key

STORAGE = StorageSettings(
    endpoint="http://seaweedfs:8333",
    access_key="access",
    secret_key="secret",
    bucket="product-factory",
    presign_expires=900,
)


class BrokenS3Client:
    def generate_presigned_url(self, *args, **kwargs):
        raise BotoCoreError()


class TestKeysAndContentTypes:
    def test_input_file_key(self):
        assert input_file_key("p1", "brief.pdf") == "projects/p1/input/brief.pdf"
        assert input_file_key("p1", "../etc/passwd") == "projects/p1/input/.._etc_passwd"

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("brief.PDF", "application/pdf"),
            ("notes.md", "text/markdown"),
            ("config.yml", "application/x-yaml"),
            ("archive.tar.gz", "application/octet-stream"),
            ("README", "application/octet-stream"),
        ],
    )
    def test_get_content_type(self, filename, expected):
        assert get_content_type(filename) == expected


class TestStorageService:
    """Tests for StorageService."""

    def test_upload_url_uses_internal_endpoint(self):
        upload = StorageService(STORAGE).generate_upload_url("p1", "brief.pdf")

        url = urlparse(upload.upload_url)
        assert url.netloc == "seaweedfs:8333"
        assert url.path == "/product-factory/projects/p1/input/brief.pdf"
        assert upload.expires_in == 900
        assert upload.content_type == "application/pdf"

    def test_upload_url_uses_public_endpoint(self):
        settings = replace(STORAGE, public_endpoint="https://files.example.com")

        upload = StorageService(settings).generate_upload_url("p1", "brief.pdf", expires_in=60)

        url = urlparse(upload.upload_url)
        assert url.netloc == "files.example.com"
        assert parse_qs(url.query)["X-Amz-Expires"] == ["60"]

    def test_unconfigured(self):
        service = StorageService(StorageSettings(bucket="product-factory"))

        assert service.configured is False
        with pytest.raises(ServiceUnavailableError):
            service.generate_upload_url("p1", "brief.pdf")

    def test_signing_failure(self):
        service = StorageService(STORAGE, client=BrokenS3Client())

        with pytest.raises(ExternalServiceError) as exc_info:
            service.generate_upload_url("p1", "brief.pdf")
        assert exc_info.value.status_code == 502
        assert str(exc_info.value).startswith("S3:")
