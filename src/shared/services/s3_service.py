import asyncio
import re
from io import BytesIO
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shared.services.storage import ExportStorage
from shared.utils.configs import s3_configs
from shared.utils.errors import ErrorType, S3Error
from shared.utils.logger import logger


class S3Service(ExportStorage):
    """Export storage on S3. boto3 calls run in a worker thread."""

    def __init__(
        self,
        bucket_name: Optional[str] = None,
        key_prefix: str = "",
        s3_client=None,
    ):
        self.s3_client = s3_client or boto3.client(
            "s3", region_name=s3_configs["s3_region"]
        )
        self.bucket_name = bucket_name or s3_configs["s3_bucket_name"]
        self.key_prefix = key_prefix.strip("/")

    @staticmethod
    def sanitize_key(key: str) -> str:
        """
        Sanitize an object key to prevent path traversal and injection.
        """
        key = key.replace("../", "").replace("..\\", "")
        return re.sub(r"[^a-zA-Z0-9\-_\./]", "", key).lstrip("/")

    def _full_key(self, key: str) -> str:
        key = self.sanitize_key(key)
        return f"{self.key_prefix}/{key}" if self.key_prefix else key

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """
        Upload one object.

        Args:
            key: Object key relative to the export prefix
            data: Object body
            content_type: MIME type stored with the object

        Returns:
            S3 URL of the uploaded object

        Raises:
            S3Error: If the upload fails
        """
        s3_key = self._full_key(key)
        try:
            logger.info(
                f"Uploading {len(data)} bytes to S3 bucket {self.bucket_name} with key {s3_key}"
            )
            await asyncio.to_thread(
                self.s3_client.upload_fileobj,
                BytesIO(data),
                self.bucket_name,
                s3_key,
                ExtraArgs={"ContentType": content_type},
            )
            return f"s3://{self.bucket_name}/{s3_key}"
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error uploading {s3_key} to S3: {str(e)}")
            raise S3Error(
                message=f"Error uploading {s3_key} to S3: {str(e)}",
                error_type=ErrorType.S3_ERROR,
                status_code=500,
            ) from e

    async def get(self, key: str) -> bytes:
        """
        Read one object.

        Raises:
            S3Error: If the object can't be read
        """
        s3_key = self._full_key(key)
        try:
            response = await asyncio.to_thread(
                self.s3_client.get_object, Bucket=self.bucket_name, Key=s3_key
            )
            return response["Body"].read()
        except ClientError as e:
            error_message = f"Error reading {s3_key} from S3: {str(e)}"
            logger.error(error_message)
            raise S3Error(
                message=error_message,
                error_type=ErrorType.S3_ERROR,
                status_code=404
                if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404")
                else 500,
            ) from e

    async def url_for(self, key: str) -> str:
        """Presigned GET URL for a stored object."""
        s3_key = self._full_key(key)
        try:
            return await asyncio.to_thread(
                self.s3_client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": s3_key},
                ExpiresIn=s3_configs["s3_presign_expires_seconds"],
            )
        except (ClientError, BotoCoreError) as e:
            raise S3Error(
                message=f"Error presigning {s3_key}: {str(e)}",
                error_type=ErrorType.S3_ERROR,
                status_code=500,
            ) from e
