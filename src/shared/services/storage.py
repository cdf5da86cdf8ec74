"""
Object storage for export files.
"""

from typing import Optional

from shared.utils.configs import export_configs
from shared.utils.errors import ErrorType, StorageError
from shared.utils.logger import logger


class ExportStorage:
    """Interface of an export file store. Keys are relative, "/" separated."""

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    async def get(self, key: str) -> bytes:
        raise NotImplementedError

    async def url_for(self, key: str) -> str:
        raise NotImplementedError


def build_storage(driver: Optional[str] = None) -> ExportStorage:
    """
    Pick the export storage driver.

    Args:
        driver: "local" or "s3", defaults to EXPORT_STORAGE_DRIVER

    Raises:
        StorageError: For an unknown driver name
    """
    # Imported here so each driver module can subclass ExportStorage
    from shared.services.local_storage import LocalStorage
    from shared.services.s3_service import S3Service

    driver = (driver or export_configs["storage_driver"]).lower()
    if driver == "local":
        logger.info(f"Export storage: local directory {export_configs['local_dir']}")
        return LocalStorage(export_configs["local_dir"])
    if driver == "s3":
        logger.info("Export storage: S3")
        return S3Service(key_prefix=export_configs["key_prefix"])
    raise StorageError(
        message=f"Unknown export storage driver: {driver}",
        error_type=ErrorType.VALIDATION_ERROR,
        status_code=500,
    )
