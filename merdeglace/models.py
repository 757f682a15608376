from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any


def utcnow() -> datetime:
    """Timezone-aware current UTC time (default clock)."""
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ArchiveStatus(str, Enum):
    """Lifecycle of a backup archive"""
    BUILDING = 'building'
    LOCAL = 'local'
    UPLOADED = 'uploaded'
    LOCAL_AND_UPLOADED = 'local_and_uploaded'
    FAILED = 'failed'


@dataclass
class Archive:
    """One packaged backup (database dump + content export)"""
    id: str
    created_at: datetime
    local_path: Optional[str]
    remote_ref: Optional[str] = None
    status: ArchiveStatus = ArchiveStatus.BUILDING
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None  # Glacier SHA-256 tree hash

    @property
    def is_local(self) -> bool:
        return self.status in (ArchiveStatus.LOCAL, ArchiveStatus.LOCAL_AND_UPLOADED)

    @property
    def is_uploaded(self) -> bool:
        return self.status in (ArchiveStatus.UPLOADED, ArchiveStatus.LOCAL_AND_UPLOADED)

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': _isoformat(self.created_at),
            'local_path': self.local_path,
            'remote_ref': self.remote_ref,
            'status': self.status.value,
            'size_bytes': self.size_bytes,
            'checksum': self.checksum
        }

    def __repr__(self):
        return f'<Archive {self.id} status={self.status.value}>'


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Local retention configuration.

    rolling_period: how long an archive stays on local disk after creation
    backup_interval: minimum spacing between two snapshot attempts
    """
    rolling_period: timedelta
    backup_interval: timedelta

    @classmethod
    def from_days(cls, rolling_period_days: float, backup_interval_days: float) -> 'RetentionPolicy':
        return cls(
            rolling_period=timedelta(days=rolling_period_days),
            backup_interval=timedelta(days=backup_interval_days)
        )

    def is_expired(self, archive: Archive, now: datetime) -> bool:
        # Strict: an archive exactly rolling_period old is still kept
        return archive.age(now) > self.rolling_period


@dataclass
class ScheduleState:
    """Bookkeeping owned by a single BackupScheduler for the process lifetime"""
    last_attempt_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    consecutive_failures: int = 0
    upload_failures: Dict[str, int] = field(default_factory=dict)
    alerts: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'last_attempt_at': _isoformat(self.last_attempt_at),
            'last_success_at': _isoformat(self.last_success_at),
            'consecutive_failures': self.consecutive_failures,
            'upload_failures': dict(self.upload_failures),
            'alerts': dict(self.alerts)
        }


@dataclass(frozen=True)
class DatabaseParams:
    """Connection parameters for the database dump"""
    host: str
    port: int
    database: str
    user: str
    password: str = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        params = asdict(self)
        params['password'] = '***'
        return params
