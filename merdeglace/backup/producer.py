"""
Snapshot producer - builds one complete backup archive.

Workflow:
1. Create a staging directory inside the backups directory
2. Export the database and the content directory in parallel
3. Combine both exports into a single tar.gz in the staging directory
4. Name the archive from its completion time and move it into place
5. Remove the staging directory

Nothing becomes visible under an archive name until step 4 succeeds, so a
failed or interrupted run never leaves a half-written archive behind.
"""

import os
import shutil
import threading
import logging
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_EXCEPTION
from typing import Callable, Optional

from merdeglace.models import Archive, ArchiveStatus, utcnow
from .compression import (
    create_archive, generate_archive_id, archive_filename, get_archive_size,
    DATABASE_MEMBER, CONTENT_MEMBER, CompressionError
)
from .retention import RetentionStore, DiskFull, is_disk_full
from .sources import SourceError, ExportAborted
from .treehash import tree_hash


logger = logging.getLogger(__name__)

# Seconds an aborted sibling export gets to wind down after a failure
ABORT_GRACE_SECONDS = 5.0


class ProduceError(Exception):
    """Raised when a snapshot cannot be produced."""
    pass


class DatabaseExportFailed(ProduceError):
    pass


class FilesystemExportFailed(ProduceError):
    pass


class DuplicateArchive(ProduceError):
    """An archive with the same id already exists; nothing was overwritten."""
    pass


class WriteFailed(ProduceError):
    """Combining or committing the archive failed."""

    def __init__(self, message: str, archive: Optional[Archive] = None):
        super().__init__(message)
        self.archive = archive


class StageTimeout(ProduceError):
    """The exports did not finish within the configured stage timeout."""
    pass


class SnapshotProducer:
    """
    Combines a database export and a content export into one archive.
    """

    def __init__(self, database_source, content_source, store: RetentionStore,
                 clock: Optional[Callable] = None, timeout: Optional[float] = None):
        """
        Initialize snapshot producer.

        Args:
            database_source: Adapter with export(dest_path, abort=None)
            content_source: Adapter with export(dest_path, abort=None)
            store: Retention store the archive is committed into
            clock: Returns the current aware UTC datetime (default: utcnow)
            timeout: Seconds allowed for the exports (None: wait forever)
        """
        self.database_source = database_source
        self.content_source = content_source
        self.store = store
        self.clock = clock or utcnow
        self.timeout = timeout

    def produce(self) -> Archive:
        """
        Build and commit one archive.

        Returns:
            Archive with status 'local', not yet admitted to the store

        Raises:
            DatabaseExportFailed, FilesystemExportFailed, StageTimeout,
            DuplicateArchive, WriteFailed: see class docs
            DiskFull: If the backups volume ran out of space
        """
        staging_dir = self.store.staging_dir()
        logger.debug(f"Staging snapshot in {staging_dir}")

        try:
            database_path, content_path = self._export(staging_dir)
            return self._commit(staging_dir, database_path, content_path)
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

    def _export(self, staging_dir: str):
        database_path = os.path.join(staging_dir, DATABASE_MEMBER)
        content_path = os.path.join(staging_dir, CONTENT_MEMBER)
        abort = threading.Event()
        stalled = False

        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='merdeglace-export')
        try:
            database_future = executor.submit(self.database_source.export, database_path, abort)
            content_future = executor.submit(self.content_source.export, content_path, abort)
            futures = [database_future, content_future]

            done, not_done = wait(futures, timeout=self.timeout, return_when=FIRST_EXCEPTION)

            if not_done:
                failed = any(f.exception() is not None for f in done)
                # Either a sibling failed or the timeout hit; stop the rest
                abort.set()
                for future in not_done:
                    future.cancel()

                if not failed:
                    # A stalled export may never look at the abort event
                    stalled = True
                    raise StageTimeout(f"Exports did not finish within {self.timeout} seconds")

                _, not_done = wait(not_done, timeout=ABORT_GRACE_SECONDS)
                stalled = bool(not_done)

            exports = [
                (database_future, DatabaseExportFailed, 'Database export'),
                (content_future, FilesystemExportFailed, 'Filesystem export')
            ]
            # Report the export that actually failed before the one we aborted
            for future, error_class, label in exports:
                error = self._export_error(future)
                if error is not None and not isinstance(error, ExportAborted):
                    self._raise_export_failure(error, error_class, label)
            for future, error_class, label in exports:
                error = self._export_error(future)
                if error is not None:
                    self._raise_export_failure(error, error_class, label)

        finally:
            if stalled:
                logger.warning("Abandoning an export that did not stop; its output is discarded with the staging directory")
            executor.shutdown(wait=not stalled, cancel_futures=True)

        return database_path, content_path

    def _export_error(self, future) -> Optional[BaseException]:
        if future.cancelled():
            return ExportAborted("Export cancelled before it started")
        if not future.done():
            return ExportAborted("Export still running after abort")
        return future.exception()

    def _raise_export_failure(self, error: BaseException, error_class, label: str):
        if is_disk_full(error):
            raise DiskFull(f"{label} ran out of space: {error}") from error
        if isinstance(error, SourceError):
            raise error_class(f"{label} failed: {error}") from error
        raise error_class(f"{label} failed unexpectedly: {error!r}") from error

    def _commit(self, staging_dir: str, database_path: str, content_path: str) -> Archive:
        combined_path = os.path.join(staging_dir, 'archive.tar.gz')

        try:
            create_archive(
                [(database_path, DATABASE_MEMBER), (content_path, CONTENT_MEMBER)],
                combined_path
            )
            size = get_archive_size(combined_path)
            checksum = tree_hash(combined_path)
        except (CompressionError, OSError) as e:
            if is_disk_full(e):
                raise DiskFull(f"No space left writing archive: {e}") from e
            raise WriteFailed(f"Failed to write archive: {e}") from e

        # The archive is named after completion of the combined write.
        # Second precision matches what reconcile() recovers from the name.
        created_at = self.clock().replace(microsecond=0)
        archive_id = generate_archive_id(created_at)
        final_path = self.store.path_for(archive_filename(archive_id))

        if self.store.contains(archive_id) or os.path.exists(final_path):
            raise DuplicateArchive(f"Archive already exists: {archive_id}")

        archive = Archive(
            id=archive_id,
            created_at=created_at,
            local_path=final_path,
            status=ArchiveStatus.BUILDING,
            size_bytes=size,
            checksum=checksum
        )

        try:
            os.replace(combined_path, final_path)
        except OSError as e:
            archive.status = ArchiveStatus.FAILED
            archive.local_path = None
            raise WriteFailed(f"Failed to commit archive {archive_id}: {e}", archive=archive) from e

        archive.status = ArchiveStatus.LOCAL
        logger.info(f"Archive created: {archive_id} ({size / 1024 / 1024:.2f} MB)")
        return archive
