"""
Local retention store for backup archives.

The backups directory is the source of truth. The in-memory index is a cache
that can always be rebuilt with reconcile():

    backup-20240115T020000Z.tar.gz          archive produced on that date
    backup-20240115T020000Z.receipt.json    written once cold storage confirmed it
    .staging-*/                             in-progress snapshots (never admitted)

Retention rules:
- An archive older than the rolling period is deleted from disk only once its
  upload is confirmed. The record stays (status 'uploaded') together with its
  receipt, which holds the cold storage reference needed for a restore.
- An expired archive that was never confirmed uploaded is kept and a warning
  is logged. It may be the only copy.
"""

import errno
import json
import os
import shutil
import tempfile
import threading
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any

from merdeglace.models import Archive, ArchiveStatus, RetentionPolicy, utcnow
from .compression import parse_archive_filename, parse_archive_id


logger = logging.getLogger(__name__)

RECEIPT_SUFFIX = '.receipt.json'
STAGING_PREFIX = '.staging-'


class StoreError(Exception):
    """Raised when a retention store operation fails."""
    pass


class AlreadyExists(StoreError):
    """Raised when admitting an archive id that is already registered."""
    pass


class NotFound(StoreError):
    """Raised when an archive id is unknown to the store."""
    pass


class DiskFull(StoreError):
    """Raised when the backups volume has no space left."""
    pass


def is_disk_full(error: BaseException) -> bool:
    """Check an exception and its cause chain for ENOSPC."""
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, DiskFull):
            return True
        if isinstance(error, OSError) and error.errno == errno.ENOSPC:
            return True
        seen.add(id(error))
        error = error.__cause__ or error.__context__
    return False


class RetentionStore:
    """
    Owns the archive records and the archive files in the backups directory.
    """

    def __init__(self, directory: str):
        """
        Initialize retention store.

        Args:
            directory: Backups directory (created if missing)

        Raises:
            StoreError: If the directory cannot be created
        """
        self.base_path = Path(directory)
        self._archives: Dict[str, Archive] = {}
        self._lock = threading.RLock()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StoreError(f"Failed to create backups directory {directory}: {e}")

    @property
    def directory(self) -> str:
        return str(self.base_path)

    def path_for(self, filename: str) -> str:
        return str(self.base_path / filename)

    def receipt_path(self, archive_id: str) -> str:
        return str(self.base_path / f"{archive_id}{RECEIPT_SUFFIX}")

    def check_writable(self):
        """
        Probe that archives can be written to the backups directory.

        Raises:
            StoreError: If a file cannot be created in the directory
        """
        try:
            fd, probe = tempfile.mkstemp(prefix='.probe-', dir=self.directory)
            os.close(fd)
            os.remove(probe)
        except OSError as e:
            raise StoreError(f"Backups directory is not writable: {self.directory}: {e}")

    def staging_dir(self) -> str:
        """
        Create a private staging directory on the same filesystem.

        The producer builds snapshots here so the final move into the store
        is an atomic rename.
        """
        try:
            return tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=self.directory)
        except OSError as e:
            if e.errno == errno.ENOSPC:
                raise DiskFull(f"No space left in {self.directory}") from e
            raise StoreError(f"Failed to create staging directory: {e}") from e

    def contains(self, archive_id: str) -> bool:
        with self._lock:
            return archive_id in self._archives

    def get(self, archive_id: str) -> Archive:
        with self._lock:
            archive = self._archives.get(archive_id)
            if archive is None:
                raise NotFound(f"Unknown archive: {archive_id}")
            return replace(archive)

    def list(self) -> List[Archive]:
        """Copies of all records, oldest first."""
        with self._lock:
            archives = [replace(a) for a in self._archives.values()]
        return sorted(archives, key=lambda a: (a.created_at, a.id))

    def admit(self, archive: Archive):
        """
        Register a newly produced archive.

        Raises:
            AlreadyExists: If the id is already registered
            StoreError: If the archive is not a committed local archive
        """
        with self._lock:
            if archive.id in self._archives:
                raise AlreadyExists(f"Archive already registered: {archive.id}")

            if archive.status != ArchiveStatus.LOCAL:
                raise StoreError(f"Cannot admit archive {archive.id} with status {archive.status.value}")

            if not archive.local_path or not os.path.isfile(archive.local_path):
                raise StoreError(f"Archive file missing for {archive.id}: {archive.local_path}")

            self._archives[archive.id] = replace(archive)

        logger.info(f"Admitted archive {archive.id} ({archive.local_path})")

    def evict_expired(self, now: datetime, policy: RetentionPolicy) -> List[Archive]:
        """
        Delete expired archives whose upload is confirmed.

        Args:
            now: Current time
            policy: Retention policy

        Returns:
            Records of the evicted archives (status 'uploaded')
        """
        evicted = []

        with self._lock:
            for archive in sorted(self._archives.values(), key=lambda a: a.created_at):
                if not archive.is_local or not policy.is_expired(archive, now):
                    continue

                if archive.status != ArchiveStatus.LOCAL_AND_UPLOADED:
                    logger.warning(
                        f"Archive {archive.id} is past its rolling period "
                        f"(age {archive.age(now)}) but not confirmed uploaded; keeping it"
                    )
                    continue

                try:
                    os.remove(archive.local_path)
                except FileNotFoundError:
                    logger.warning(f"Archive file already gone: {archive.local_path}")
                except OSError as e:
                    logger.error(f"Failed to delete expired archive {archive.id}: {e}")
                    continue

                logger.info(f"Evicted archive {archive.id} (age {archive.age(now)})")
                archive.local_path = None
                archive.status = ArchiveStatus.UPLOADED
                evicted.append(replace(archive))

        return evicted

    def overdue(self, now: datetime, policy: RetentionPolicy) -> List[Archive]:
        """Expired archives that are kept only because their upload is unconfirmed."""
        return [
            a for a in self.list()
            if a.status == ArchiveStatus.LOCAL and policy.is_expired(a, now)
        ]

    def mark_uploaded(self, archive_id: str, remote_ref: str, details: Optional[Dict[str, Any]] = None) -> bool:
        """
        Record a confirmed cold storage upload.

        Args:
            archive_id: Archive id
            remote_ref: Confirmation id returned by cold storage
            details: Extra fields stored in the receipt (vault, checksum, size)

        Returns:
            True if the record changed, False if it was already marked with
            the same remote_ref

        Raises:
            NotFound: If the id is unknown
            StoreError: If the archive is already uploaded under another ref,
                or the receipt cannot be written (the record stays 'local' and
                keeps remote_ref, so the receipt can be written without a re-upload)
            DiskFull: If the receipt cannot be written for lack of space
        """
        details = details or {}

        with self._lock:
            archive = self._archives.get(archive_id)
            if archive is None:
                raise NotFound(f"Unknown archive: {archive_id}")

            if archive.is_uploaded:
                if archive.remote_ref == remote_ref:
                    return False
                raise StoreError(
                    f"Archive {archive_id} already uploaded as {archive.remote_ref}, got {remote_ref}"
                )

            updated = replace(archive, remote_ref=remote_ref, status=ArchiveStatus.LOCAL_AND_UPLOADED)
            if details.get('checksum'):
                updated.checksum = details['checksum']
            if details.get('size_bytes') is not None:
                updated.size_bytes = details['size_bytes']

            try:
                self._write_receipt(updated, details)
            except StoreError:
                # Remember the confirmed ref so only the receipt is retried
                self._archives[archive_id] = replace(archive, remote_ref=remote_ref)
                raise
            self._archives[archive_id] = updated

        logger.info(f"Archive {archive_id} confirmed in cold storage: {remote_ref}")
        return True

    def _write_receipt(self, archive: Archive, details: Dict[str, Any]):
        receipt = dict(details)
        receipt.update({
            'archive_id': archive.id,
            'created_at': archive.created_at.isoformat(),
            'remote_ref': archive.remote_ref,
            'uploaded_at': utcnow().isoformat()
        })

        path = self.receipt_path(archive.id)
        tmp_path = f"{path}.tmp"

        try:
            with open(tmp_path, 'w') as f:
                json.dump(receipt, f, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            if e.errno == errno.ENOSPC:
                raise DiskFull(f"No space left to write receipt for {archive.id}") from e
            raise StoreError(f"Failed to write receipt for {archive.id}: {e}") from e

    def _read_receipt(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path, 'r') as f:
                receipt = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable receipt {path}: {e}")
            return None

        if not isinstance(receipt, dict) or not receipt.get('remote_ref'):
            logger.warning(f"Ignoring receipt without remote reference: {path}")
            return None
        return receipt

    def reconcile(self) -> List[Archive]:
        """
        Rebuild the index from the backups directory.

        Archive files without a receipt come back as 'local' with an unknown
        remote_ref, so they are uploaded again instead of assumed uploaded.
        Leftover staging directories from an interrupted run are removed.

        Returns:
            The rebuilt records, oldest first
        """
        archives: Dict[str, Archive] = {}
        receipts: Dict[str, Dict[str, Any]] = {}

        for entry in sorted(self.base_path.iterdir()):
            name = entry.name

            if name.startswith(STAGING_PREFIX):
                logger.warning(f"Removing incomplete snapshot left from a previous run: {name}")
                if entry.is_dir():
                    shutil.rmtree(entry, ignore_errors=True)
                else:
                    try:
                        entry.unlink()
                    except OSError as e:
                        logger.error(f"Failed to remove {entry}: {e}")
                continue

            if name.endswith(RECEIPT_SUFFIX) and entry.is_file():
                archive_id = name[:-len(RECEIPT_SUFFIX)]
                if parse_archive_id(archive_id) is None:
                    continue
                receipt = self._read_receipt(entry)
                if receipt is not None:
                    receipts[archive_id] = receipt
                continue

            parsed = parse_archive_filename(name)
            if parsed is None or not entry.is_file():
                logger.debug(f"Ignoring unrecognized entry in backups directory: {name}")
                continue

            archive_id, created_at = parsed
            archives[archive_id] = Archive(
                id=archive_id,
                created_at=created_at,
                local_path=str(entry),
                status=ArchiveStatus.LOCAL,
                size_bytes=entry.stat().st_size
            )

        for archive_id, receipt in receipts.items():
            archive = archives.get(archive_id)
            if archive is None:
                # Evicted after upload; keep the record for restores
                archive = Archive(
                    id=archive_id,
                    created_at=parse_archive_id(archive_id),
                    local_path=None,
                    status=ArchiveStatus.UPLOADED,
                    size_bytes=receipt.get('size_bytes')
                )
                archives[archive_id] = archive
            else:
                archive.status = ArchiveStatus.LOCAL_AND_UPLOADED
            archive.remote_ref = receipt['remote_ref']
            archive.checksum = receipt.get('checksum')

        with self._lock:
            self._archives = archives

        rebuilt = self.list()
        pending = sum(1 for a in rebuilt if a.status == ArchiveStatus.LOCAL)
        logger.info(
            f"Reconciled {len(rebuilt)} archives from {self.directory} "
            f"({pending} awaiting upload)"
        )
        return rebuilt

    def __len__(self):
        with self._lock:
            return len(self._archives)
