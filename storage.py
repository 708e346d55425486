#!/usr/bin/env python3
"""
Public media storage.

Enclosures and podcast images live as flat files in PUBLIC_DIR and are served
from PUBLIC_BASE_URL. When Azure storage is configured, every published file is
mirrored as a blob of the same name and removed together with the local file.
"""

import os
import uuid
from typing import Optional
from urllib.parse import quote

from azure_storage import BlobClient
from config import config, get_logger
from utils import safe_filename

# Module-specific logger
logger = get_logger("storage")


class MediaStore:
    """Flat directory of media files addressable by name."""

    def __init__(self, public_dir: Optional[str] = None, base_url: Optional[str] = None, blob_client=None,
                 container: Optional[str] = None):
        self.public_dir = public_dir or config.PUBLIC_DIR
        self.base_url = (base_url or config.PUBLIC_BASE_URL).rstrip("/")
        self.blob_client = blob_client
        self.container = container or config.AZURE_STORAGE_CONTAINER
        os.makedirs(self.public_dir, exist_ok=True)

    @staticmethod
    def unique_name(feed: str, kind: str, extension: str = "") -> str:
        """A fresh media name, "{feed}_{kind}_{unique}" plus optional extension."""
        name = f"{safe_filename(feed)}_{kind}_{uuid.uuid4().hex[:13]}"
        return f"{name}.{extension}" if extension else name

    def path_for(self, name: str) -> str:
        return os.path.join(self.public_dir, os.path.basename(name))

    def exists(self, name: str) -> bool:
        return bool(name) and os.path.isfile(self.path_for(name))

    def size(self, name: str) -> int:
        try:
            return os.path.getsize(self.path_for(name))
        except OSError:
            return 0

    def rename(self, name: str, new_name: str) -> str:
        os.replace(self.path_for(name), self.path_for(new_name))
        return new_name

    def write_bytes(self, name: str, payload: bytes) -> str:
        with open(self.path_for(name), "wb") as f:
            f.write(payload)
        return name

    def public_url(self, name: str) -> str:
        return f"{self.base_url}/{quote(name)}"

    async def publish(self, name: str, mimetype: Optional[str] = None) -> bool:
        """Mirror a stored file to blob storage, when configured."""
        if self.blob_client is None:
            return True
        return await self.blob_client.put_file(self.container, name, self.path_for(name), mimetype)

    async def remove(self, name: str) -> bool:
        """Delete a media file (and its blob). Returns True if the local file existed."""
        if not name:
            return False
        removed = False
        file_path = self.path_for(name)
        if os.path.isfile(file_path):
            try:
                os.remove(file_path)
                removed = True
                logger.debug(f"Removed media file {name}")
            except OSError as e:
                logger.error(f"Could not remove media file {name}: {e}")
        if self.blob_client is not None:
            await self.blob_client.delete_blob(self.container, name)
        return removed

    async def close(self) -> None:
        if self.blob_client is not None:
            await self.blob_client.close()


def create_media_store() -> MediaStore:
    """MediaStore for the configured public directory, mirrored to Azure when credentials are set."""
    blob_client = None
    if config.AZURE_STORAGE_ACCOUNT and config.AZURE_STORAGE_KEY:
        blob_client = BlobClient(config.AZURE_STORAGE_ACCOUNT, config.AZURE_STORAGE_KEY)
        logger.info(f"Mirroring media to Azure container {config.AZURE_STORAGE_CONTAINER}")
    return MediaStore(blob_client=blob_client)
