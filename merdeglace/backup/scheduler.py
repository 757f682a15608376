"""
Backup scheduler - the control loop driving producer, store and uploader.

One cycle:
    producing   SnapshotProducer.produce()
    storing     RetentionStore.admit() + RetentionStore.evict_expired()
    uploading   ColdStorageUploader.upload_pending()

Every stage failure is caught, logged and recorded in the CycleReport; it
never propagates out of run_cycle(). A stop request is honored before
producing and between storing and uploading, never in the middle of writing
an archive.
"""

import threading
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from merdeglace.models import Archive, RetentionPolicy, ScheduleState, utcnow
from .producer import ProduceError
from .retention import RetentionStore, StoreError, DiskFull
from .storage import AuthFailed, VaultNotFound
from .uploader import ColdStorageUploader, UploadResult


logger = logging.getLogger(__name__)
alert_logger = logging.getLogger('merdeglace.alerts')


class SchedulerPhase(str, Enum):
    IDLE = 'idle'
    PRODUCING = 'producing'
    STORING = 'storing'
    UPLOADING = 'uploading'
    STOPPED = 'stopped'


@dataclass
class StageFailure:
    stage: str
    error: Exception
    archive_id: Optional[str] = None

    def to_dict(self):
        return {
            'stage': self.stage,
            'archive_id': self.archive_id,
            'error': f"{type(self.error).__name__}: {self.error}"
        }


@dataclass
class CycleReport:
    """Outcome of one backup cycle"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    archive: Optional[Archive] = None
    admitted: bool = False
    evicted: List[Archive] = field(default_factory=list)
    uploads: List[UploadResult] = field(default_factory=list)
    failures: List[StageFailure] = field(default_factory=list)
    stopped_early: bool = False

    @property
    def succeeded(self) -> bool:
        """A cycle counts as successful once its archive is admitted."""
        return self.admitted

    def to_dict(self):
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'archive_id': self.archive.id if self.archive else None,
            'succeeded': self.succeeded,
            'evicted': [a.id for a in self.evicted],
            'uploaded': [r.archive.id for r in self.uploads if r.ok],
            'failures': [f.to_dict() for f in self.failures],
            'stopped_early': self.stopped_early
        }


class BackupScheduler:
    """
    Runs backup cycles no closer together than the backup interval.

    The clock and the wait primitive are injectable so the loop can be driven
    deterministically.
    """

    def __init__(self, producer, store: RetentionStore, uploader: ColdStorageUploader,
                 policy: RetentionPolicy, state: Optional[ScheduleState] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 wait: Optional[Callable[[float], bool]] = None,
                 alert_after_failures: int = 3):
        """
        Args:
            producer: SnapshotProducer
            store: RetentionStore
            uploader: ColdStorageUploader
            policy: Retention policy (rolling period and backup interval)
            state: Schedule state to continue from (default: fresh state)
            clock: Returns the current aware UTC datetime (default: utcnow)
            wait: wait(seconds) -> True if stop was requested (default: waits
                on the internal stop event)
            alert_after_failures: Consecutive failures before escalating
        """
        self.producer = producer
        self.store = store
        self.uploader = uploader
        self.policy = policy
        self.state = state or ScheduleState()
        self.clock = clock or utcnow
        self.alert_after_failures = alert_after_failures
        self.last_report: Optional[CycleReport] = None

        self._stop_event = threading.Event()
        self._wait = wait or self._stop_event.wait
        self._cycle_lock = threading.Lock()
        self._phase = SchedulerPhase.IDLE

    @property
    def phase(self) -> SchedulerPhase:
        return self._phase

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self):
        """Request a clean stop. An in-flight archive write is finished first."""
        if not self._stop_event.is_set():
            logger.info("Stop requested")
        self._stop_event.set()
        if not self._cycle_lock.locked():
            self._phase = SchedulerPhase.STOPPED

    def seed_from_store(self):
        """
        Continue the schedule from the newest archive on disk.

        Without this a restarted process would back up immediately on every
        container restart.
        """
        archives = self.store.list()
        if not archives:
            return

        newest = archives[-1].created_at
        if self.state.last_attempt_at is None or self.state.last_attempt_at < newest:
            self.state.last_attempt_at = newest
        if self.state.last_success_at is None or self.state.last_success_at < newest:
            self.state.last_success_at = newest
        logger.info(f"Schedule resumed from newest archive {archives[-1].id}")

    def next_due_at(self) -> Optional[datetime]:
        if self.state.last_attempt_at is None:
            return None
        return self.state.last_attempt_at + self.policy.backup_interval

    def is_due(self, now: datetime) -> bool:
        due_at = self.next_due_at()
        return due_at is None or now >= due_at

    def seconds_until_due(self, now: datetime) -> float:
        due_at = self.next_due_at()
        if due_at is None:
            return 0.0
        return max((due_at - now).total_seconds(), 0.0)

    def tick(self) -> Optional[CycleReport]:
        """Run one cycle if the backup interval has elapsed."""
        if self.stop_requested:
            return None
        if not self.is_due(self.clock()):
            return None
        return self.run_cycle()

    def run_forever(self):
        """
        Tick until stop() is called.

        Sleeps through the injected wait primitive between cycles; stage
        failures never leave this loop.
        """
        logger.info(
            f"Backup loop started (interval {self.policy.backup_interval}, "
            f"rolling period {self.policy.rolling_period})"
        )

        while not self.stop_requested:
            self.tick()
            if self.stop_requested:
                break

            delay = self.seconds_until_due(self.clock())
            if delay > 0:
                logger.debug(f"Next backup due in {timedelta(seconds=round(delay))}")
            if self._wait(delay):
                break

        self._phase = SchedulerPhase.STOPPED
        logger.info("Backup loop stopped")

    def run_cycle(self) -> Optional[CycleReport]:
        """
        Run one full backup cycle now.

        Returns:
            CycleReport, or None if another cycle is already running
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Backup cycle already running, skipping")
            return None

        try:
            return self._run_cycle()
        finally:
            self._phase = SchedulerPhase.STOPPED if self.stop_requested else SchedulerPhase.IDLE
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleReport:
        now = self.clock()
        report = CycleReport(started_at=now)
        self.state.last_attempt_at = now
        logger.info("Starting backup cycle")

        if self.stop_requested:
            report.stopped_early = True
            return self._finish(report)

        self._produce(report)
        self._storing(report)

        if self.stop_requested:
            logger.info("Stop requested, skipping upload stage")
            report.stopped_early = True
            return self._finish(report)

        self._uploading(report)
        return self._finish(report)

    def _produce(self, report: CycleReport):
        self._phase = SchedulerPhase.PRODUCING
        try:
            report.archive = self.producer.produce()
        except Exception as e:
            archive_id = getattr(getattr(e, 'archive', None), 'id', None)
            self._stage_failed(report, 'produce', e, archive_id)

    def _storing(self, report: CycleReport):
        self._phase = SchedulerPhase.STORING

        if report.archive is not None:
            try:
                self.store.admit(report.archive)
                report.admitted = True
            except Exception as e:
                self._stage_failed(report, 'admit', e, report.archive.id)

        try:
            report.evicted = self.store.evict_expired(self.clock(), self.policy)
        except Exception as e:
            self._stage_failed(report, 'evict', e)

    def _uploading(self, report: CycleReport):
        self._phase = SchedulerPhase.UPLOADING
        try:
            report.uploads = self.uploader.upload_pending(self.store, should_stop=lambda: self.stop_requested)
        except Exception as e:
            self._stage_failed(report, 'upload', e)
            return

        for result in report.uploads:
            archive_id = result.archive.id
            if result.ok:
                self.state.upload_failures.pop(archive_id, None)
                self._clear_alert(f'upload:{archive_id}')
                self._clear_alert('cold_storage_auth')
                self._clear_alert('vault_not_found')
                continue

            report.failures.append(StageFailure('upload', result.error, archive_id))
            failures = self.state.upload_failures.get(archive_id, 0) + 1
            self.state.upload_failures[archive_id] = failures

            if isinstance(result.error, AuthFailed):
                self._alert('cold_storage_auth', f"Cold storage rejected the credentials: {result.error}")
            elif isinstance(result.error, VaultNotFound):
                self._alert('vault_not_found', f"Cold storage vault not found: {result.error}")
            elif isinstance(result.error, DiskFull):
                self._alert('disk_full', f"Backups volume is full: {result.error}")

            if failures >= self.alert_after_failures:
                self._alert(
                    f'upload:{archive_id}',
                    f"Archive {archive_id} failed to upload {failures} times in a row: {result.error}"
                )

        # Archives that were uploaded elsewhere or evicted no longer need tracking
        known = {a.id for a in self.store.list() if not a.is_uploaded}
        for archive_id in list(self.state.upload_failures):
            if archive_id not in known:
                self.state.upload_failures.pop(archive_id)
                self._clear_alert(f'upload:{archive_id}')

    def _stage_failed(self, report: CycleReport, stage: str, error: Exception, archive_id: Optional[str] = None):
        report.failures.append(StageFailure(stage, error, archive_id))

        if isinstance(error, (ProduceError, StoreError)):
            logger.error(f"Stage failed: stage={stage} archive={archive_id or '-'} cause={error}")
        else:
            logger.exception(f"Stage failed unexpectedly: stage={stage} archive={archive_id or '-'} cause={error!r}")

        if isinstance(error, DiskFull):
            self._alert('disk_full', f"Backups volume is full: {error}")

    def _finish(self, report: CycleReport) -> CycleReport:
        report.finished_at = self.clock()

        if report.succeeded:
            self.state.last_success_at = report.started_at
            self.state.consecutive_failures = 0
            self._clear_alert('consecutive_failures')
            self._clear_alert('disk_full')
        elif not report.stopped_early or report.failures:
            self.state.consecutive_failures += 1
            if self.state.consecutive_failures >= self.alert_after_failures:
                self._alert(
                    'consecutive_failures',
                    f"{self.state.consecutive_failures} consecutive backup cycles failed"
                )

        overdue = self.store.overdue(report.finished_at, self.policy)
        if overdue:
            logger.warning(
                f"{len(overdue)} archive(s) past the rolling period are kept until uploaded: "
                f"{', '.join(a.id for a in overdue)}"
            )

        self.last_report = report
        logger.info(
            f"Backup cycle finished: archive={report.archive.id if report.archive else '-'} "
            f"admitted={report.admitted} evicted={len(report.evicted)} "
            f"uploaded={sum(1 for r in report.uploads if r.ok)} failures={len(report.failures)}"
        )
        return report

    def _alert(self, key: str, message: str):
        if self.state.alerts.get(key) != message:
            alert_logger.critical(message)
        self.state.alerts[key] = message

    def _clear_alert(self, key: str):
        if self.state.alerts.pop(key, None) is not None:
            logger.info(f"Alert cleared: {key}")

    def describe(self):
        """Snapshot of the scheduler for status reporting."""
        next_due = self.next_due_at()
        return {
            'phase': self._phase.value,
            'state': self.state.to_dict(),
            'next_due_at': next_due.isoformat() if next_due else None,
            'backup_interval_seconds': self.policy.backup_interval.total_seconds(),
            'rolling_period_seconds': self.policy.rolling_period.total_seconds(),
            'last_cycle': self.last_report.to_dict() if self.last_report else None
        }
