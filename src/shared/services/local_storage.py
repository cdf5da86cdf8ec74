"""
Export storage on the local filesystem, the default driver.
"""

import asyncio
from pathlib import Path
from typing import Union

from shared.services.storage import ExportStorage
from shared.utils.errors import ErrorType, StorageError
from shared.utils.logger import logger


class LocalStorage(ExportStorage):
    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir).resolve()

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir not in path.parents:
            raise StorageError(
                message=f"Export key escapes the storage directory: {key}",
                error_type=ErrorType.VALIDATION_ERROR,
                status_code=400,
            )
        return path

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            logger.error(f"Error writing export file {path}: {e}")
            raise StorageError(
                message=f"Error writing export file {key}: {e}",
                error_type=ErrorType.STORAGE_ERROR,
                status_code=500,
            ) from e
        logger.debug(f"Wrote {len(data)} bytes to {path}")
        return path.as_uri()

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(
                message=f"Export file not found: {key}",
                error_type=ErrorType.STORAGE_ERROR,
                status_code=404,
            ) from e
        except OSError as e:
            raise StorageError(
                message=f"Error reading export file {key}: {e}",
                error_type=ErrorType.STORAGE_ERROR,
                status_code=500,
            ) from e

    async def url_for(self, key: str) -> str:
        return self._path(key).as_uri()
