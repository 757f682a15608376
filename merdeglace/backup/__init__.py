"""
Backup module for mer-de-glace.

This module handles the core backup functionality including:
- Source exports (mysqldump and content directory)
- Archive packaging and naming
- Local retention store
- Glacier cold storage uploads
- The backup scheduling loop
"""

from .sources import MysqlDumpSource, ContentDirectorySource
from .compression import create_archive
from .producer import SnapshotProducer
from .retention import RetentionStore
from .storage import GlacierStorage
from .uploader import ColdStorageUploader
from .scheduler import BackupScheduler

__all__ = [
    'MysqlDumpSource',
    'ContentDirectorySource',
    'create_archive',
    'SnapshotProducer',
    'RetentionStore',
    'GlacierStorage',
    'ColdStorageUploader',
    'BackupScheduler'
]
