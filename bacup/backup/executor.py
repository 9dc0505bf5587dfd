"""
Backup executor - orchestrates one firing of a backup job.

Workflow:
1. Create a scoped temporary directory
2. Acquire content from the service (dump file or matched paths)
3. Compress it (gzip for a single file, tar.gz for a path set), if configured
4. Transfer: put, put_tree or incremental sync, depending on the definition
5. Enforce keep_last retention, if configured
6. Cleanup temporary files, whatever happened before

Classification: failure when no content was produced, partial when content
was produced but a later step failed, success otherwise. Cancellation on
shutdown always reports failure.
"""

import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar

from bacup.config import Config
from bacup.models import BackupDefinition, RunOutcome, RunResult
from .compression import (
    CompressionError,
    compress_file,
    create_archive,
    generate_archive_filename,
    get_archive_size,
)
from .remotes import ConnectFailed, Remote, RemoteError, join_remote
from .retention import RetentionError, RetentionManager
from .services import ServiceContent, ServiceError


logger = logging.getLogger(__name__)

T = TypeVar('T')


class ShutdownCancelled(Exception):
    """Raised inside a run when the daemon is shutting down."""
    pass


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one job firing.
    """

    def __init__(self, definition: BackupDefinition, service, remote: Remote,
                 cancel_event: Optional[threading.Event] = None,
                 temp_root: Optional[str] = None,
                 connect_retries: Optional[int] = None,
                 retry_delay: Optional[float] = None):
        """
        Initialize backup executor.

        Args:
            definition: BackupDefinition to execute
            service: Service handler built for definition.what
            remote: Remote handler built for definition.where
            cancel_event: Set by the scheduler on shutdown
            temp_root: Parent directory for the run's temp dir
            connect_retries: Attempts for a remote call failing with ConnectFailed
            retry_delay: Seconds between those attempts
        """
        self.definition = definition
        self.service = service
        self.remote = remote
        self.cancel_event = cancel_event or threading.Event()
        self.temp_root = temp_root or Config.TEMP_DIR
        self.connect_retries = max(1, connect_retries if connect_retries is not None
                                   else Config.CONNECT_RETRIES)
        self.retry_delay = retry_delay if retry_delay is not None else Config.RETRY_DELAY_SECONDS
        self.temp_dir = None
        self.result = None

    def execute(self) -> RunResult:
        """
        Execute the backup job.

        Never raises for per-run failures: every error ends up in the
        returned RunResult.

        Returns:
            RunResult with execution results
        """
        self.result = RunResult(job_name=self.definition.name,
                                started_at=datetime.now(timezone.utc))
        content = None

        self._log(f"Starting backup job: {self.definition.name}")

        try:
            self._check_cancelled()
            self.temp_dir = tempfile.mkdtemp(prefix='bacup_', dir=self.temp_root)
            self._log(f"Temporary directory: {self.temp_dir}")

            content = self._acquire()
            self._transfer(content)
            self._enforce_retention(content)

            self.result.outcome = RunOutcome.SUCCESS

        except ShutdownCancelled as e:
            self._fail(RunOutcome.FAILURE, f"ShutdownCancelled: {e}")
        except ServiceError as e:
            self._fail(RunOutcome.FAILURE, f"{type(e).__name__}: {e}")
        except (CompressionError, RemoteError) as e:
            self._fail(RunOutcome.PARTIAL, f"{type(e).__name__}: {e}")
        except RetentionError as e:
            self.result.deleted.extend(e.deleted)
            self._fail(RunOutcome.PARTIAL, f"RetentionError: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error in job {self.definition.name}")
            outcome = RunOutcome.FAILURE if content is None else RunOutcome.PARTIAL
            self._fail(outcome, f"{type(e).__name__}: {e}")

        finally:
            self._cleanup()
            self.result.finished_at = datetime.now(timezone.utc)
            self._report()

        return self.result

    def _acquire(self) -> ServiceContent:
        """
        Acquire content from the service.

        Raises:
            ServiceError: If the service produced no content
        """
        self._log(f"Acquiring content from {self.definition.what.qualified_name}")
        try:
            content = self.service.acquire(self.temp_dir)
        except OSError as e:
            raise ServiceError(f"Unable to acquire content: {e}") from e

        if content.is_path_set:
            self._log(f"Acquired {len(content.paths)} paths below {content.root}")
        else:
            self._log(f"Acquired {content.name}")
        return content

    def _transfer(self, content: ServiceContent):
        """Compress if configured, then hand the content to the remote."""
        self._check_cancelled()
        remote_path = self.definition.remote_path

        if self.definition.compress:
            archive_path = self._compress(content)
            self._check_cancelled()
            location = join_remote(remote_path, os.path.basename(archive_path))
            self._log(f"Uploading {os.path.basename(archive_path)} to {self.remote.name}")
            stored = self._with_retry('put', lambda: self.remote.put(
                archive_path, location, self._check_cancelled))
            self.result.stored.append(stored)
            self._log(f"Stored {stored}")
            return

        paths, root = self._path_set(content)

        if self.definition.incremental:
            self._log(f"Syncing {len(paths)} paths into {remote_path} on {self.remote.name}")
            self._with_retry('incremental sync', lambda: self.remote.incremental_sync(
                paths, root, remote_path))
            self.result.stored.append(remote_path)
            self._log("Incremental sync complete")
        elif content.is_path_set:
            self._log(f"Uploading {len(paths)} paths into {remote_path} on {self.remote.name}")
            stored = self._with_retry('put tree', lambda: self.remote.put_tree(
                paths, root, remote_path, self._check_cancelled))
            self.result.stored.extend(stored)
            self._log(f"Stored {len(stored)} files")
        else:
            location = join_remote(remote_path, content.name)
            self._log(f"Uploading {content.name} to {self.remote.name}")
            stored = self._with_retry('put', lambda: self.remote.put(
                content.file_path, location, self._check_cancelled))
            self.result.stored.append(stored)
            self._log(f"Stored {stored}")

    @staticmethod
    def _path_set(content: ServiceContent):
        if content.is_path_set:
            return content.paths, content.root
        return [content.file_path], os.path.dirname(content.file_path)

    def _compress(self, content: ServiceContent) -> str:
        """
        Create the timestamped archive in the temp directory.

        Returns:
            Path to created archive file

        Raises:
            CompressionError: If archive creation fails
        """
        filename = generate_archive_filename(
            content.name, self.result.started_at, is_archive=content.is_path_set
        )
        output_path = os.path.join(self.temp_dir, filename)

        if content.is_path_set:
            self._log(f"Creating archive {filename}")
            create_archive(content.paths, content.root, output_path)
        else:
            self._log(f"Compressing {content.name} to {filename}")
            compress_file(content.file_path, output_path)

        size = get_archive_size(output_path)
        self._log(f"Archive created: {filename} ({size / 1024 / 1024:.2f} MB)")
        return output_path

    def _enforce_retention(self, content: ServiceContent):
        keep_last = self.definition.keep_last
        if keep_last is None or self.definition.incremental:
            return

        self._check_cancelled()
        self._log(f"Enforcing retention: keep last {keep_last}")
        manager = RetentionManager(self.remote)
        deleted = self._with_retry('retention', lambda: self._retention_pass(
            manager, content.name, keep_last))
        self.result.deleted.extend(deleted)
        self._log(f"Deleted {len(deleted)} old backups")

    def _retention_pass(self, manager: RetentionManager, name: str, keep_last: int) -> List[str]:
        try:
            return manager.enforce(self.definition.remote_path, name, keep_last)
        except RetentionError as e:
            if isinstance(e.__cause__, ConnectFailed) and not e.deleted:
                raise e.__cause__
            raise

    def _with_retry(self, action: str, call: Callable[[], T]) -> T:
        """
        Run a remote call, retrying while it fails with ConnectFailed.

        Raises:
            ConnectFailed: When every attempt failed to connect
            ShutdownCancelled: If shutdown starts while waiting to retry
        """
        for attempt in range(1, self.connect_retries + 1):
            self._check_cancelled()
            try:
                return call()
            except ConnectFailed as e:
                if attempt >= self.connect_retries:
                    raise
                self._log(
                    f"{action} could not connect (attempt {attempt}/{self.connect_retries}): {e}. "
                    f"Retrying in {self.retry_delay}s"
                )
                if self.cancel_event.wait(self.retry_delay):
                    raise ShutdownCancelled(f"Shutdown while waiting to retry {action}") from e

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise ShutdownCancelled(f"Job {self.definition.name} cancelled by shutdown")

    def _fail(self, outcome: RunOutcome, error: str):
        self.result.outcome = outcome
        self.result.error = error
        self._log(f"Backup {outcome.value}: {error}")

    def _cleanup(self):
        """Release service resources and remove the temporary directory."""
        try:
            self.service.cleanup()
        except Exception as e:
            self._log(f"Warning: Failed to cleanup service {self.definition.what.name}: {e}")

        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

    def _report(self):
        result = self.result
        message = (f"Job {result.job_name} finished with {result.outcome.value} "
                   f"in {result.duration_seconds:.1f}s")
        if result.outcome == RunOutcome.SUCCESS:
            logger.info(message)
        elif result.outcome == RunOutcome.PARTIAL:
            logger.warning(f"{message}: {result.error}")
        else:
            logger.error(f"{message}: {result.error}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.debug(f"[{self.definition.name}] {message}")


def execute_backup(definition: BackupDefinition, service, remote: Remote,
                   cancel_event: Optional[threading.Event] = None) -> RunResult:
    """
    Execute one firing of a backup definition.

    Args:
        definition: BackupDefinition to execute
        service: Service handler for definition.what
        remote: Remote handler for definition.where
        cancel_event: Shutdown signal shared with the scheduler

    Returns:
        RunResult with execution results
    """
    executor = BackupExecutor(definition, service, remote, cancel_event)
    return executor.execute()
