"""
APScheduler configuration for mer-de-glace.

Manages:
- Building the backup engine from settings (store, sources, uploader)
- A single interval job that asks the BackupScheduler whether a cycle is due
- Clean shutdown: stop between stages, wait for the in-flight cycle
"""

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from merdeglace.config import Settings, ConfigError
from merdeglace.models import ScheduleState
from merdeglace.backup.sources import MysqlDumpSource, ContentDirectorySource
from merdeglace.backup.producer import SnapshotProducer
from merdeglace.backup.retention import RetentionStore, StoreError
from merdeglace.backup.storage import GlacierStorage, UploadError
from merdeglace.backup.uploader import ColdStorageUploader
from merdeglace.backup.scheduler import BackupScheduler


logger = logging.getLogger(__name__)

TICK_JOB_ID = 'backup_tick'

# Global scheduler instances
scheduler = None
backup_scheduler = None


def build_backup_scheduler(settings: Settings, state: ScheduleState = None,
                           storage=None, wait=None, clock=None) -> BackupScheduler:
    """
    Assemble the backup engine and rebuild its state from disk.

    Args:
        settings: Validated settings
        state: Schedule state to continue from (default: fresh)
        storage: Cold storage adapter (default: GlacierStorage from settings)
        wait: Wait primitive for BackupScheduler.run_forever
        clock: Clock shared by producer and scheduler

    Returns:
        BackupScheduler with a reconciled store

    Raises:
        ConfigError: If the backups directory or the cold storage client
            cannot be set up
    """
    try:
        store = RetentionStore(settings.backups_directory)
        store.check_writable()
    except StoreError as e:
        raise ConfigError(str(e))

    store.reconcile()

    database_source = MysqlDumpSource(settings.database, binary=settings.mysqldump_binary)
    content_source = ContentDirectorySource(settings.content_directory, exclude_patterns=settings.content_exclude)
    producer = SnapshotProducer(
        database_source,
        content_source,
        store,
        clock=clock,
        timeout=settings.stage_timeout
    )

    if storage is None:
        try:
            storage = GlacierStorage(
                region=settings.aws_region,
                access_key=settings.aws_access_key_id,
                secret_key=settings.aws_secret_access_key
            )
        except UploadError as e:
            raise ConfigError(f"Invalid cold storage settings: {e}") from e
    uploader = ColdStorageUploader(storage, settings.glacier_vault)

    engine = BackupScheduler(
        producer,
        store,
        uploader,
        settings.policy,
        state=state,
        clock=clock,
        wait=wait,
        alert_after_failures=settings.alert_after_failures
    )
    engine.seed_from_store()
    return engine


def prepare_vault(engine: BackupScheduler, create: bool = True):
    """
    Check the vault once at startup.

    Cold storage may be unreachable at boot; failures are logged and the
    uploader retries on every cycle.
    """
    storage = engine.uploader.storage
    if not hasattr(storage, 'ensure_vault'):
        return

    try:
        storage.ensure_vault(engine.uploader.vault_name, create=create)
    except UploadError as e:
        logger.warning(f"Could not verify vault {engine.uploader.vault_name}: {e}")


def init_scheduler(settings: Settings, engine: BackupScheduler = None):
    """
    Initialize and configure APScheduler.

    Args:
        settings: Validated settings
        engine: Prebuilt BackupScheduler (default: built from settings)
    """
    global scheduler, backup_scheduler

    if scheduler is not None:
        return scheduler

    backup_scheduler = engine or build_backup_scheduler(settings)

    executors = {
        # One worker: backup cycles never overlap
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': None  # Late ticks always run
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=_tick_wrapper,
        trigger=IntervalTrigger(seconds=settings.poll_interval),
        id=TICK_JOB_ID,
        name='Backup cycle check',
        next_run_time=datetime.now(timezone.utc),
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after init_scheduler().
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state}, running={scheduler.running})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """
    Stop the backup loop and the APScheduler.

    Waits for an in-flight cycle; the cycle itself stops at its next stage
    boundary.
    """
    global scheduler, backup_scheduler

    if backup_scheduler is not None:
        backup_scheduler.stop()

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("APScheduler stopped")


def _tick_wrapper():
    """
    Job function executed by APScheduler.

    Exceptions are logged here; the job keeps firing on its interval.
    """
    global backup_scheduler

    if backup_scheduler is None:
        logger.error("Backup tick fired before the backup scheduler was initialized")
        return

    try:
        backup_scheduler.tick()
    except Exception as e:
        logger.exception(f"Backup tick failed: {e}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    global scheduler
    return scheduler is not None and scheduler.running


def get_scheduler_diagnostics() -> dict:
    """
    Get scheduler diagnostics for the status API.

    Returns:
        Dict with APScheduler state, scheduled jobs and backup loop state
    """
    global scheduler, backup_scheduler

    if backup_scheduler is None:
        return {
            'initialized': False,
            'running': False,
            'state': 'NOT_INITIALIZED',
            'note': 'Backup scheduler not available in this process'
        }

    diagnostics = {
        'initialized': True,
        'running': is_scheduler_running(),
        'state': str(scheduler.state) if scheduler is not None else 'NOT_STARTED',
        'jobs': get_scheduled_jobs()
    }
    diagnostics.update(backup_scheduler.describe())
    return diagnostics
