"""
Tests for the export storage drivers.
"""

from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from shared.services.local_storage import LocalStorage
from shared.services.s3_service import S3Service
from shared.services.storage import build_storage
from shared.utils.errors import S3Error, StorageError


class TestLocalStorage:
    async def test_put_then_get(self, tmp_path):
        storage = LocalStorage(tmp_path)

        url = await storage.put("exports/1/part-00001.csv", b"id\n1\n", "text/csv")

        assert url.startswith("file://")
        assert url == await storage.url_for("exports/1/part-00001.csv")
        assert await storage.get("exports/1/part-00001.csv") == b"id\n1\n"
        assert not list(tmp_path.rglob("*.tmp"))

    async def test_put_overwrites(self, tmp_path):
        storage = LocalStorage(tmp_path)
        await storage.put("a.csv", b"old", "text/csv")
        await storage.put("a.csv", b"new", "text/csv")
        assert await storage.get("a.csv") == b"new"

    async def test_missing_file_is_404(self, tmp_path):
        with pytest.raises(StorageError) as exc_info:
            await LocalStorage(tmp_path).get("nope.csv")
        assert exc_info.value.status_code == 404

    async def test_key_cannot_escape_base_dir(self, tmp_path):
        storage = LocalStorage(tmp_path / "exports")
        with pytest.raises(StorageError) as exc_info:
            await storage.put("../outside.csv", b"x", "text/csv")
        assert exc_info.value.status_code == 400


@pytest.fixture
def s3_client():
    return Mock()


@pytest.fixture
def s3(s3_client):
    return S3Service(bucket_name="bucket", key_prefix="exports/", s3_client=s3_client)


class TestS3Service:
    """Test cases for the S3 driver against a mocked boto3 client."""

    def test_sanitize_key(self):
        assert S3Service.sanitize_key("../../etc/passwd") == "etc/passwd"
        assert S3Service.sanitize_key("/a b/c$d.csv") == "ab/cd.csv"

    async def test_put_uploads_under_prefix(self, s3, s3_client):
        url = await s3.put("orders_csv/7/part-00001.csv", b"data", "text/csv")

        assert url == "s3://bucket/exports/orders_csv/7/part-00001.csv"
        args, kwargs = s3_client.upload_fileobj.call_args
        assert args[0].read() == b"data"
        assert args[1:] == ("bucket", "exports/orders_csv/7/part-00001.csv")
        assert kwargs["ExtraArgs"] == {"ContentType": "text/csv"}

    async def test_put_failure_raises_s3_error(self, s3, s3_client):
        s3_client.upload_fileobj.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )
        with pytest.raises(S3Error) as exc_info:
            await s3.put("a.csv", b"x", "text/csv")
        assert exc_info.value.status_code == 500

    async def test_get_missing_object_is_404(self, s3, s3_client):
        s3_client.get_object.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
        )
        with pytest.raises(S3Error) as exc_info:
            await s3.get("a.csv")
        assert exc_info.value.status_code == 404

    async def test_get_reads_body(self, s3, s3_client):
        body = Mock()
        body.read.return_value = b"payload"
        s3_client.get_object.return_value = {"Body": body}

        assert await s3.get("a.csv") == b"payload"
        s3_client.get_object.assert_called_once_with(
            Bucket="bucket", Key="exports/a.csv"
        )

    async def test_url_for_presigns(self, s3, s3_client):
        s3_client.generate_presigned_url.return_value = "https://signed"

        assert await s3.url_for("a.csv") == "https://signed"
        _, kwargs = s3_client.generate_presigned_url.call_args
        assert kwargs["Params"] == {"Bucket": "bucket", "Key": "exports/a.csv"}


class TestBuildStorage:
    def test_local_driver(self):
        assert isinstance(build_storage("local"), LocalStorage)

    def test_unknown_driver(self):
        with pytest.raises(StorageError):
            build_storage("ftp")
