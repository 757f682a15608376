"""
Unit tests for the snapshot producer (merdeglace/backup/producer.py).

Tests parallel exports, atomic commit into the backups directory and the
error taxonomy raised on failure.
"""

import errno
import os
import tarfile
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from merdeglace.models import ArchiveStatus
from merdeglace.backup.compression import CompressionError, DATABASE_MEMBER, CONTENT_MEMBER
from merdeglace.backup.producer import (
    SnapshotProducer,
    DatabaseExportFailed,
    FilesystemExportFailed,
    DuplicateArchive,
    WriteFailed,
    StageTimeout
)
from merdeglace.backup.retention import DiskFull, STAGING_PREFIX
from merdeglace.backup.sources import SourceError
from merdeglace.backup.treehash import tree_hash


def backups_entries(backups_dir):
    return sorted(p.name for p in backups_dir.iterdir())


class StalledSource:
    """Export adapter stuck in a read that never checks the abort event."""

    def __init__(self):
        self.release = threading.Event()
        self.finished = threading.Event()

    def export(self, dest_path, abort=None):
        try:
            self.release.wait(10)
        finally:
            self.finished.set()
        raise SourceError("read timed out")


class TestProduce:
    """Test successful snapshot production."""

    def test_produce_creates_archive(self, store, backups_dir, clock, database_source, content_source):
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        archive = producer.produce()

        assert archive.id == 'backup-20240115T020000Z'
        assert archive.created_at == clock.now
        assert archive.status == ArchiveStatus.LOCAL
        assert archive.local_path == str(backups_dir / 'backup-20240115T020000Z.tar.gz')
        assert archive.size_bytes == os.path.getsize(archive.local_path)
        assert archive.checksum == tree_hash(archive.local_path)

        with tarfile.open(archive.local_path, 'r:gz') as tar:
            assert tar.getnames() == [DATABASE_MEMBER, CONTENT_MEMBER]
            assert tar.extractfile(DATABASE_MEMBER).read() == b'CREATE DATABASE wordpress;\n'
            assert tar.extractfile(CONTENT_MEMBER).read() == b'content tar bytes'

    def test_produce_does_not_admit(self, store, clock, database_source, content_source):
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        producer.produce()

        assert len(store) == 0

    def test_produce_removes_staging(self, store, backups_dir, clock, database_source, content_source):
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        producer.produce()

        assert backups_entries(backups_dir) == ['backup-20240115T020000Z.tar.gz']

    def test_created_at_truncated_to_seconds(self, store, clock, database_source, content_source):
        clock.advance(microseconds=750000)
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        archive = producer.produce()

        assert archive.created_at.microsecond == 0


class TestProduceFailures:
    """Test that failed runs leave nothing behind."""

    def test_database_export_failure(self, source_factory, store, backups_dir, clock, content_source):
        database_source = source_factory(error=SourceError("mysqldump exited with code 2"))
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        with pytest.raises(DatabaseExportFailed, match="mysqldump exited with code 2"):
            producer.produce()

        assert backups_entries(backups_dir) == []

    def test_filesystem_failure_after_database_success(self, source_factory, store, backups_dir, clock, database_source):
        content_source = source_factory(error=SourceError("Permission denied reading /var/www/html"), delay=0.1)
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        with pytest.raises(FilesystemExportFailed, match="Permission denied"):
            producer.produce()

        assert database_source.calls == 1
        assert len(store) == 0
        assert backups_entries(backups_dir) == []

    def test_failure_aborts_sibling_and_reports_cause(self, source_factory, store, backups_dir, clock):
        database_source = source_factory(error=SourceError("connection refused"))
        content_source = source_factory(block=True)
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        with pytest.raises(DatabaseExportFailed, match="connection refused"):
            producer.produce()

        assert content_source.aborted is True
        assert not any(name.startswith(STAGING_PREFIX) for name in backups_entries(backups_dir))

    def test_unexpected_source_error(self, source_factory, store, clock, content_source):
        database_source = source_factory(error=RuntimeError("boom"))
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        with pytest.raises(DatabaseExportFailed, match="unexpectedly"):
            producer.produce()

    def test_stage_timeout(self, source_factory, store, backups_dir, clock, content_source):
        database_source = source_factory(block=True)
        producer = SnapshotProducer(database_source, content_source, store, clock=clock, timeout=0.2)

        with pytest.raises(StageTimeout):
            producer.produce()

        assert database_source.finished.wait(5)
        assert database_source.aborted is True
        assert backups_entries(backups_dir) == []

    def test_stage_timeout_does_not_wait_for_stalled_export(self, store, backups_dir, clock, database_source):
        content_source = StalledSource()
        producer = SnapshotProducer(database_source, content_source, store, clock=clock, timeout=0.2)

        started = time.monotonic()
        try:
            with pytest.raises(StageTimeout):
                producer.produce()
            elapsed = time.monotonic() - started
        finally:
            content_source.release.set()

        assert elapsed < 1.0
        assert content_source.finished.wait(5)
        assert not any(name.endswith('.tar.gz') for name in backups_entries(backups_dir))

    def test_export_disk_full(self, source_factory, store, clock, content_source):
        database_source = source_factory(error=OSError(errno.ENOSPC, 'No space left on device'))
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        with pytest.raises(DiskFull):
            producer.produce()

    def test_duplicate_archive(self, store, backups_dir, clock, database_source, content_source):
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)
        first = producer.produce()
        original = Path(first.local_path).read_bytes()

        with pytest.raises(DuplicateArchive, match=first.id):
            producer.produce()

        assert Path(first.local_path).read_bytes() == original
        assert backups_entries(backups_dir) == [os.path.basename(first.local_path)]

    @patch('merdeglace.backup.producer.create_archive')
    def test_combine_disk_full(self, mock_create_archive, store, backups_dir, clock, database_source, content_source):
        error = CompressionError("Failed to create archive")
        error.__cause__ = OSError(errno.ENOSPC, 'No space left on device')
        mock_create_archive.side_effect = error
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        with pytest.raises(DiskFull):
            producer.produce()

        assert backups_entries(backups_dir) == []

    @patch('merdeglace.backup.producer.create_archive')
    def test_combine_failure(self, mock_create_archive, store, clock, database_source, content_source):
        mock_create_archive.side_effect = CompressionError("corrupt member")
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        with pytest.raises(WriteFailed, match="corrupt member"):
            producer.produce()

    def test_commit_failure_reports_failed_archive(self, store, backups_dir, clock, database_source, content_source):
        producer = SnapshotProducer(database_source, content_source, store, clock=clock)

        with patch('merdeglace.backup.producer.os.replace', side_effect=OSError(errno.EIO, 'I/O error')):
            with pytest.raises(WriteFailed) as exc_info:
                producer.produce()

        assert exc_info.value.archive.status == ArchiveStatus.FAILED
        assert exc_info.value.archive.local_path is None
        assert backups_entries(backups_dir) == []
