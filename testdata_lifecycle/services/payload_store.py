"""
Content-addressed storage for snapshot payloads.

Payloads are addressed by the hex sha256 of their bytes and referenced from
snapshot rows as ``sha256:<hex>``. Identical content is stored once.

Two backends:
- DatabasePayloadStore keeps blobs in a table and takes part in the caller's
  transaction, so metadata and payload commit or roll back together.
- FileSystemPayloadStore writes blobs under a directory (temp file + atomic
  rename). It is not transactional; the snapshot engine cleans up blobs it
  created when the metadata commit fails, and deletes blobs only after the
  metadata delete has committed.

Callers hold the payload lock (db.session.lock_payload) around put and around
the reference check that precedes a delete.
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
from sqlalchemy.ext.asyncio import AsyncSession

from testdata_lifecycle.core.settings import AppSettings, get_app_settings
from testdata_lifecycle.repositories.snapshots import SnapshotPayloadRepository

logger = logging.getLogger(__name__)

REF_PREFIX = "sha256:"


def compute_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def payload_ref_for(checksum: str) -> str:
    return f"{REF_PREFIX}{checksum}"


def checksum_from_ref(payload_ref: str) -> str:
    if not payload_ref.startswith(REF_PREFIX):
        raise ValueError(f"Unsupported payload reference {payload_ref!r}")
    return payload_ref[len(REF_PREFIX):]


class PayloadStore(ABC):
    """Interface of a content-addressed blob store keyed by sha256 hex digest."""

    #: True when writes and deletes join the session transaction
    transactional: bool = False

    @abstractmethod
    async def put(self, checksum: str, data: bytes) -> bool:
        """Store data under checksum; returns True when a new blob was created."""

    @abstractmethod
    async def get(self, checksum: str) -> Optional[bytes]:
        """Return the stored bytes, or None when no blob exists."""

    @abstractmethod
    async def delete(self, checksum: str) -> None:
        """Remove the blob; missing blobs are ignored."""


class DatabasePayloadStore(PayloadStore):
    """Blobs in test_data_snapshot_payloads, written through the caller's session."""

    transactional = True

    def __init__(self, session: AsyncSession) -> None:
        self.repo = SnapshotPayloadRepository(session)

    async def put(self, checksum: str, data: bytes) -> bool:
        return await self.repo.insert_payload_if_absent(checksum, data)

    async def get(self, checksum: str) -> Optional[bytes]:
        row = await self.repo.get_payload(checksum)
        return None if row is None else bytes(row.data)

    async def delete(self, checksum: str) -> None:
        await self.repo.delete_payload(checksum)


class FileSystemPayloadStore(PayloadStore):
    """Blobs under root/<first two hex chars>/<digest>."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, checksum: str) -> Path:
        if len(checksum) < 3 or not all(c in "0123456789abcdef" for c in checksum):
            raise ValueError(f"Invalid checksum {checksum!r}")
        return self.root / checksum[:2] / checksum

    async def put(self, checksum: str, data: bytes) -> bool:
        path = self.path_for(checksum)
        if await aiofiles.os.path.exists(path):
            return False
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        tmp = path.with_name(f".{checksum}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp, "wb") as fh:
                await fh.write(data)
                await fh.flush()
            await aiofiles.os.replace(tmp, path)
        except BaseException:
            if await aiofiles.os.path.exists(tmp):
                await aiofiles.os.remove(tmp)
            raise
        logger.debug("Stored payload %s (%d bytes) at %s", checksum, len(data), path)
        return True

    async def get(self, checksum: str) -> Optional[bytes]:
        path = self.path_for(checksum)
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, "rb") as fh:
            return await fh.read()

    async def delete(self, checksum: str) -> None:
        path = self.path_for(checksum)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return


# PUBLIC_INTERFACE
def build_payload_store(session: AsyncSession, settings: Optional[AppSettings] = None) -> PayloadStore:
    """Return the payload backend selected by SNAPSHOT_STORAGE_BACKEND."""
    settings = settings or get_app_settings()
    if settings.SNAPSHOT_STORAGE_BACKEND == "filesystem":
        return FileSystemPayloadStore(settings.SNAPSHOT_STORAGE_DIR)
    return DatabasePayloadStore(session)
