"""
Shared pytest fixtures for mer-de-glace tests.

This module provides fixtures for:
- A controllable clock
- Temporary backups and content directories
- Fake database/content sources and a fake cold storage adapter
- A fully wired BackupScheduler built from the fakes
- Environment-style settings for config and app tests
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from merdeglace.models import RetentionPolicy
from merdeglace.backup.retention import RetentionStore
from merdeglace.backup.producer import SnapshotProducer
from merdeglace.backup.uploader import ColdStorageUploader
from merdeglace.backup.scheduler import BackupScheduler
from merdeglace.backup.sources import ExportAborted
from merdeglace.backup.storage import NetworkError


START = datetime(2024, 1, 15, 2, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeSource:
    """
    Export adapter writing fixed bytes.

    error: exception raised instead of writing
    block: wait for the abort event instead of finishing
    """

    def __init__(self, data=b'data', error=None, block=False, delay=0.0):
        self.data = data
        self.error = error
        self.block = block
        self.delay = delay
        self.calls = 0
        self.aborted = False
        self.finished = threading.Event()

    def export(self, dest_path, abort=None):
        try:
            return self._export(dest_path, abort)
        finally:
            self.finished.set()

    def _export(self, dest_path, abort):
        self.calls += 1

        if self.delay:
            time.sleep(self.delay)

        if self.block:
            abort.wait(10)
            self.aborted = abort.is_set()
            raise ExportAborted("aborted by test")

        if self.error is not None:
            raise self.error

        with open(dest_path, 'wb') as f:
            f.write(self.data)
        return dest_path


class FakeColdStorage:
    """
    Cold storage adapter recording calls.

    fail_times: number of calls that fail before uploads succeed
    errors: optional list of exceptions consumed one per failing call
    """

    def __init__(self, fail_times=0, errors=None, fail_ids=None):
        self.fail_times = fail_times
        self.errors = list(errors or [])
        self.fail_ids = set(fail_ids or [])
        self.calls = []
        self.uploaded = {}

    def upload(self, local_path, vault_name, description=None, cancellation_check=None):
        self.calls.append(local_path)

        if self.errors:
            raise self.errors.pop(0)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise NetworkError("connection reset by test")
        if any(archive_id in local_path for archive_id in self.fail_ids):
            raise NetworkError(f"refusing {local_path}")

        remote_ref = f"glacier-{len(self.uploaded) + 1}"
        self.uploaded[remote_ref] = local_path
        return remote_ref


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backups_dir(tmp_path):
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def content_dir(tmp_path):
    """
    Create a small content tree.

    Creates:
    - index.php
    - wp-config.php
    - wp-content/uploads/2024/photo.jpg
    - wp-content/cache/page.html (excluded in some tests)
    """
    root = tmp_path / 'html'
    (root / 'wp-content' / 'uploads' / '2024').mkdir(parents=True)
    (root / 'wp-content' / 'cache').mkdir(parents=True)
    (root / 'index.php').write_text('<?php // index')
    (root / 'wp-config.php').write_text('<?php // config')
    (root / 'wp-content' / 'uploads' / '2024' / 'photo.jpg').write_bytes(b'\xff\xd8jpeg')
    (root / 'wp-content' / 'cache' / 'page.html').write_text('<html></html>')
    return root


@pytest.fixture
def store(backups_dir):
    return RetentionStore(str(backups_dir))


@pytest.fixture
def database_source():
    return FakeSource(b'CREATE DATABASE wordpress;\n')


@pytest.fixture
def content_source():
    return FakeSource(b'content tar bytes')


@pytest.fixture
def cold_storage():
    return FakeColdStorage()


@pytest.fixture
def make_engine(store, clock, database_source, content_source, cold_storage):
    """
    Factory for a BackupScheduler wired to fakes.

    Keyword arguments override the retention policy (in days) or any
    component.
    """
    def _make(interval_days=1, rolling_days=3, **overrides):
        producer = overrides.pop('producer', None) or SnapshotProducer(
            overrides.pop('database_source', database_source),
            overrides.pop('content_source', content_source),
            overrides.get('store', store),
            clock=clock,
            timeout=overrides.pop('timeout', None)
        )
        uploader = overrides.pop('uploader', None) or ColdStorageUploader(
            overrides.pop('storage', cold_storage), 'test-vault'
        )
        return BackupScheduler(
            producer,
            overrides.pop('store', store),
            uploader,
            RetentionPolicy.from_days(rolling_days, interval_days),
            clock=clock,
            **overrides
        )

    return _make


@pytest.fixture
def env_settings(tmp_path, content_dir):
    """Environment-style configuration accepted by load_settings()."""
    return {
        'WORDPRESS_DIRECTORY': str(content_dir),
        'CONTENT_EXCLUDE': '',
        'MYSQL_HOST': 'db',
        'MYSQL_PORT': '3306',
        'MYSQL_DATABASE': 'wordpress',
        'MYSQL_USER': 'wp',
        'MYSQL_PASSWORD': 's3cret',
        'MYSQLDUMP_BINARY': 'mysqldump',
        'BACKUPS_DIRECTORY': str(tmp_path / 'backups'),
        'BACKUP_INTERVAL': '1',
        'ARCHIVE_ROLLING_PERIOD': '7',
        'AWS_REGION': 'us-east-1',
        'AWS_GLACIER_VAULT': 'test-vault',
        'AWS_ACCESS_KEY_ID': 'testing',
        'AWS_SECRET_ACCESS_KEY': 'testing',
        'AWS_GLACIER_CREATE_VAULT': 'true',
        'STAGE_TIMEOUT': '3600',
        'ALERT_AFTER_FAILURES': '3',
        'SCHEDULER_POLL_INTERVAL': '60',
        'VERBOSITY': 'info',
        'LOG_DIR': None
    }


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS credentials for moto."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def reset_scheduler_module():
    """Reset the process-wide scheduler globals around a test."""
    from merdeglace import scheduler as scheduler_module

    scheduler_module.scheduler = None
    scheduler_module.backup_scheduler = None
    yield scheduler_module
    if scheduler_module.scheduler is not None and scheduler_module.scheduler.running:
        scheduler_module.scheduler.shutdown(wait=False)
    scheduler_module.scheduler = None
    scheduler_module.backup_scheduler = None


@pytest.fixture
def source_factory():
    """FakeSource class, for tests that need failing or blocking sources."""
    return FakeSource


@pytest.fixture
def storage_factory():
    """FakeColdStorage class, for tests that need failing uploads."""
    return FakeColdStorage
