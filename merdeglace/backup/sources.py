"""
Source exports for backup operations.

Supports:
- MysqlDumpSource: logical export of a MySQL database via mysqldump
- ContentDirectorySource: deterministic tar export of the content directory

Both sources write into a destination file and accept an optional abort
event, checked while the export is in flight, so a failing sibling export can
stop them early.
"""

import os
import shutil
import subprocess
import tarfile
import tempfile
import threading
import logging
from pathlib import Path
from typing import List, Optional
from fnmatch import fnmatch

from merdeglace.models import DatabaseParams


logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when a source export fails."""
    pass


class ExportAborted(SourceError):
    """Raised when an export stops because its abort event was set."""
    pass


def _normalize_tarinfo(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    # Ownership differs between hosts and containers; keep the stream stable
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = ''
    tarinfo.gname = ''
    return tarinfo


# MySQL option files understand these escapes inside quoted values
OPTION_FILE_ESCAPES = str.maketrans({
    '\\': '\\\\',
    '"': '\\"',
    '\n': '\\n',
    '\r': '\\r',
    '\t': '\\t',
})


class MysqlDumpSource:
    """
    Handler for MySQL database exports.

    Runs mysqldump as a subprocess writing straight into the destination
    file. The password is passed through a private option file instead of
    the command line so it never shows up in the process list.
    """

    DEFAULT_ARGS = ['--single-transaction', '--routines', '--triggers']

    def __init__(self, params: DatabaseParams, binary: str = 'mysqldump',
                 extra_args: Optional[List[str]] = None, poll_interval: float = 0.5):
        """
        Initialize MySQL dump source.

        Args:
            params: Database connection parameters
            binary: mysqldump executable name or path
            extra_args: Additional mysqldump arguments (default: DEFAULT_ARGS)
            poll_interval: Seconds between abort checks while mysqldump runs
        """
        self.params = params
        self.binary = binary
        self.extra_args = list(self.DEFAULT_ARGS if extra_args is None else extra_args)
        self.poll_interval = poll_interval

    def _write_defaults_file(self, directory: str) -> str:
        path = os.path.join(directory, 'client.cnf')
        password = self.params.password.translate(OPTION_FILE_ESCAPES)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write('[client]\n')
            f.write(f'password="{password}"\n')
        return path

    def build_command(self, defaults_file: str) -> List[str]:
        """
        Build the mysqldump command line.

        --defaults-extra-file must be the first option for mysqldump to honor it.
        """
        return [
            self.binary,
            f'--defaults-extra-file={defaults_file}',
            '-h', self.params.host,
            '--port', str(self.params.port),
            '-u', self.params.user,
            *self.extra_args,
            '--databases', self.params.database
        ]

    def export(self, dest_path: str, abort: Optional[threading.Event] = None) -> str:
        """
        Dump the database into dest_path.

        Args:
            dest_path: File to write the SQL dump to
            abort: Optional event; when set, mysqldump is killed

        Returns:
            dest_path

        Raises:
            ExportAborted: If abort was set before mysqldump finished
            SourceError: If mysqldump cannot be started or exits non-zero
        """
        secrets_dir = tempfile.mkdtemp(prefix='merdeglace_mysql_')

        try:
            defaults_file = self._write_defaults_file(secrets_dir)
            command = self.build_command(defaults_file)

            with open(dest_path, 'wb') as out, tempfile.TemporaryFile() as err:
                try:
                    process = subprocess.Popen(command, stdout=out, stderr=err)
                except FileNotFoundError:
                    raise SourceError(f"mysqldump executable not found: {self.binary}")
                except OSError as e:
                    raise SourceError(f"Failed to start mysqldump: {e}") from e

                self._wait(process, abort)

                if process.returncode != 0:
                    err.seek(0)
                    message = err.read().decode('utf-8', errors='replace').strip()
                    raise SourceError(
                        f"mysqldump exited with code {process.returncode}: {message or 'no output'}"
                    )

            return dest_path

        finally:
            shutil.rmtree(secrets_dir, ignore_errors=True)

    def _wait(self, process: subprocess.Popen, abort: Optional[threading.Event]):
        while True:
            try:
                process.wait(timeout=self.poll_interval)
                return
            except subprocess.TimeoutExpired:
                if abort is not None and abort.is_set():
                    process.kill()
                    process.wait()
                    raise ExportAborted("mysqldump aborted")


class ContentDirectorySource:
    """
    Handler for the content directory export.

    Produces an uncompressed tar of the directory. Entries are added in
    sorted order with normalized ownership, so the same tree always yields
    the same byte stream.
    """

    def __init__(self, directory: str, exclude_patterns: List[str] = None, arcname: str = 'content'):
        """
        Initialize content directory source.

        Args:
            directory: Root of the content tree
            exclude_patterns: List of glob patterns to exclude (e.g., *.log, cache)
            arcname: Name of the root directory inside the tar
        """
        self.directory = directory
        self.exclude_patterns = exclude_patterns or []
        self.arcname = arcname

    def _should_exclude(self, path: Path) -> bool:
        """
        Check if a path should be excluded based on exclude patterns.

        Args:
            path: Path to check

        Returns:
            True if path matches any exclude pattern, False otherwise
        """
        if not self.exclude_patterns:
            return False

        path_str = str(path)
        path_name = path.name

        for pattern in self.exclude_patterns:
            # Match against full path or just the name
            if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
                return True
            # Also match against relative path patterns
            if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
                return True

        return False

    def export(self, dest_path: str, abort: Optional[threading.Event] = None) -> str:
        """
        Write the content tree into dest_path as a tar stream.

        Args:
            dest_path: File to write the tar to
            abort: Optional event checked between entries

        Returns:
            dest_path

        Raises:
            ExportAborted: If abort was set during the walk
            SourceError: If the directory is missing or cannot be read
        """
        root = Path(self.directory).expanduser()

        if not root.is_dir():
            raise SourceError(f"Content directory does not exist: {self.directory}")

        try:
            with tarfile.open(dest_path, 'w', format=tarfile.PAX_FORMAT) as tar:
                tar.add(str(root), arcname=self.arcname, recursive=False, filter=_normalize_tarinfo)

                for dirpath, dirnames, filenames in os.walk(root):
                    current = Path(dirpath)
                    dirnames[:] = sorted(d for d in dirnames if not self._should_exclude(current / d))
                    files = sorted(f for f in filenames if not self._should_exclude(current / f))

                    for name in dirnames + files:
                        if abort is not None and abort.is_set():
                            raise ExportAborted("Content export aborted")

                        path = current / name
                        arcname = f"{self.arcname}/{path.relative_to(root).as_posix()}"
                        try:
                            tar.add(str(path), arcname=arcname, recursive=False, filter=_normalize_tarinfo)
                        except FileNotFoundError:
                            # Removed while the walk was running
                            logger.warning(f"Content entry vanished during export: {path}")

            return dest_path

        except SourceError:
            raise
        except PermissionError as e:
            raise SourceError(f"Permission denied reading {self.directory}: {e}") from e
        except OSError as e:
            raise SourceError(f"Failed to export {self.directory}: {e}") from e
