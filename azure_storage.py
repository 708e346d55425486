#!/usr/bin/env python3
"""
Minimal Azure Blob Storage client used to mirror media files.

Only the three operations the media store needs are implemented: upload a
file, delete a blob and close the session. Requests are signed with
SharedKeyLite.
"""

from base64 import b64decode, b64encode
from email.utils import formatdate
from hashlib import sha256
from hmac import HMAC
from typing import Optional
from urllib.parse import quote

from aiohttp import ClientError, ClientSession

from config import get_logger

# Module-specific logger
logger = get_logger("azure")

API_VERSION = '2018-03-28'


class BlobClient:
    """Uploads and deletes blobs in one storage account."""

    def __init__(self, account: str, auth: str, session: Optional[ClientSession] = None) -> None:
        if not auth:
            raise ValueError("Storage account key (auth) is required")
        self.account = account
        self.auth = b64decode(auth)
        self.session = session

    def _session(self) -> ClientSession:
        if self.session is None or self.session.closed:
            self.session = ClientSession()
        return self.session

    def _uri(self, container: str, blob_path: str) -> str:
        return f'https://{self.account}.blob.core.windows.net/{container}/{quote(blob_path)}'

    def _sign(self, verb: str, container: str, blob_path: str, content_type: str,
              length: int, extra: Optional[dict] = None) -> dict:
        """Build the request headers, SharedKeyLite authorization included."""
        headers = {
            'x-ms-date': formatdate(usegmt=True),  # the API rejects non-GMT dates
            'x-ms-version': API_VERSION,
            'Content-Type': content_type,
            **(extra or {}),
        }
        canon_headers = "\n".join(f"{k}:{headers[k]}" for k in sorted(k for k in headers if k.startswith('x-ms')))
        canon_resource = f'/{self.account}/{container}/{quote(blob_path)}'
        to_sign = "\n".join([verb, '', content_type, '', canon_headers, canon_resource]).encode('utf-8')
        signature = b64encode(HMAC(self.auth, to_sign, sha256).digest()).decode('utf-8')
        return {
            'Authorization': f'SharedKeyLite {self.account}:{signature}',
            'Content-Length': str(length),
            **headers,
        }

    async def put_file(self, container: str, blob_path: str, file_path: str,
                       mimetype: Optional[str] = None, cache_control: Optional[str] = None) -> bool:
        """Upload a local file as a block blob."""
        mimetype = mimetype or 'application/octet-stream'
        extra = {'x-ms-blob-type': 'BlockBlob', 'x-ms-blob-content-type': mimetype}
        if cache_control:
            extra['x-ms-blob-cache-control'] = cache_control
        try:
            with open(file_path, 'rb') as f:
                payload = f.read()
            headers = self._sign('PUT', container, blob_path, mimetype, len(payload), extra)
            async with self._session().put(self._uri(container, blob_path), data=payload, headers=headers) as res:
                if res.status not in (200, 201):
                    logger.error(f"Upload of {blob_path} failed: HTTP {res.status} {await res.text()}")
                    return False
        except (ClientError, OSError) as e:
            logger.error(f"Upload of {blob_path} failed: {e}")
            return False
        logger.debug(f"Uploaded {blob_path} to {container}")
        return True

    async def delete_blob(self, container: str, blob_path: str) -> bool:
        """Delete a blob. A blob that is already gone counts as deleted."""
        headers = self._sign('DELETE', container, blob_path, 'application/octet-stream', 0)
        try:
            async with self._session().delete(self._uri(container, blob_path), headers=headers) as res:
                if res.status not in (200, 202, 404):
                    logger.error(f"Delete of {blob_path} failed: HTTP {res.status}")
                    return False
        except ClientError as e:
            logger.error(f"Delete of {blob_path} failed: {e}")
            return False
        return True

    async def close(self) -> None:
        """Close the session"""
        if self.session is not None and not self.session.closed:
            await self.session.close()
