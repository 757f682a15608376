"""
Offloads local archives to cold storage.

Every archive still in status 'local' is eligible. Each archive is uploaded
independently: a failure is recorded in its UploadResult and the batch moves
on, the archive stays 'local' and is retried on the next invocation. An archive
whose upload was confirmed but whose receipt could not be written keeps its
remote_ref, and only the receipt is retried.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from merdeglace.models import Archive, ArchiveStatus
from .retention import RetentionStore, StoreError
from .storage import UploadError


logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    """Outcome of one archive upload attempt"""
    archive: Archive
    remote_ref: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ColdStorageUploader:
    """
    Uploads pending archives and records confirmations in the store.
    """

    def __init__(self, storage, vault_name: str):
        """
        Args:
            storage: Cold storage adapter with upload(local_path, vault_name, description=...)
            vault_name: Target vault
        """
        self.storage = storage
        self.vault_name = vault_name

    def pending(self, store: RetentionStore) -> List[Archive]:
        """Archives not yet confirmed uploaded, oldest first."""
        return [a for a in store.list() if a.status == ArchiveStatus.LOCAL]

    def upload_pending(self, store: RetentionStore,
                       should_stop: Optional[Callable[[], bool]] = None) -> List[UploadResult]:
        """
        Upload every pending archive.

        Args:
            store: Retention store to read archives from and record uploads in
            should_stop: Optional callable checked before each archive; when it
                returns True the remaining archives are left for the next run

        Returns:
            One UploadResult per attempted archive, oldest first
        """
        results = []
        pending = self.pending(store)

        if pending:
            logger.info(f"{len(pending)} archive(s) pending upload to vault {self.vault_name}")

        for archive in pending:
            if should_stop and should_stop():
                logger.info("Stop requested, deferring remaining uploads")
                break

            results.append(self._upload_one(store, archive))

        return results

    def _upload_one(self, store: RetentionStore, archive: Archive) -> UploadResult:
        description = f"{archive.id} created {archive.created_at.isoformat()}"

        if archive.remote_ref:
            # Upload already confirmed, only the receipt is missing
            remote_ref = archive.remote_ref
            logger.info(f"Retrying upload receipt: archive={archive.id} remote_ref={remote_ref}")
        else:
            try:
                remote_ref = self.storage.upload(archive.local_path, self.vault_name, description=description)
            except UploadError as e:
                logger.error(f"Upload failed: archive={archive.id} cause={e}")
                return UploadResult(archive=archive, error=e)

        details = {
            'vault': self.vault_name,
            'checksum': archive.checksum,
            'size_bytes': archive.size_bytes
        }
        try:
            store.mark_uploaded(archive.id, remote_ref, details=details)
        except StoreError as e:
            logger.error(f"Failed to record upload: archive={archive.id} remote_ref={remote_ref} cause={e}")
            return UploadResult(archive=archive, remote_ref=remote_ref, error=e)

        logger.info(f"Uploaded archive {archive.id} to vault {self.vault_name}: {remote_ref}")
        return UploadResult(archive=store.get(archive.id), remote_ref=remote_ref)
