"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Select files from the source directory (stop with a "no files" report if none)
2. Create a temporary working directory
3. Build the compressed archive
4. Upload to the SFTP server and verify the remote size
5. Send the outcome notification
6. Cleanup temporary files
"""

import os
import logging
from datetime import datetime
from typing import List, Optional

from dirbackup.config import BackupConfig
from dirbackup.errors import CleanupFailed
from dirbackup.models import ArchiveResult, CandidateFile, RunReport, RunState, TransferResult
from .sources import DirectorySource
from .compression import ArchiveBuilder, generate_archive_filename
from .storage import SFTPStorage
from .notifier import Notifier
from .workspace import create_workdir, remove_workdir, sweep_stale_workdirs


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates one backup run.

    Stages run strictly in order. A failure in selection, building or
    uploading ends the workflow early, but the notification and the cleanup
    of the working directory always run.
    """

    def __init__(self, config: BackupConfig, source: Optional[DirectorySource] = None,
                 builder: Optional[ArchiveBuilder] = None, storage: Optional[SFTPStorage] = None,
                 notifier: Optional[Notifier] = None):
        """
        Initialize backup executor.

        Args:
            config: Validated run configuration
            source: File selector (default: built from config)
            builder: Archive builder (default: built from config)
            storage: Transfer client (default: built from config)
            notifier: Outcome notifier (default: built from config)
        """
        self.config = config
        self.source = source or DirectorySource(config.source_dir, config.policy)
        self.builder = builder or ArchiveBuilder(
            max_workers=config.max_concurrency,
            compression_format=config.compression_format,
            progress=self._on_archive_progress
        )
        self.storage = storage or SFTPStorage.from_config(config)
        self.notifier = notifier or Notifier.from_config(config)

        self.report: Optional[RunReport] = None
        self.temp_dir: Optional[str] = None
        self.archive: Optional[ArchiveResult] = None
        self.transfer_result: Optional[TransferResult] = None
        self.upload_attempts = 0
        self.transitions: List[RunState] = []

    def execute(self) -> RunReport:
        """
        Execute the backup run.

        Returns:
            RunReport with the outcome. Errors are recorded on the report,
            never raised.
        """
        self.report = RunReport(
            source_dir=self.config.source_dir,
            started_at=datetime.now()
        )

        self._log(f"Starting backup of {self.config.source_dir}")

        try:
            self._execute_workflow()

        except Exception as e:
            self.report.success = False
            self.report.error_message = str(e)
            self._log(f"Backup failed: {e}", level=logging.ERROR)

        finally:
            self.report.completed_at = datetime.now()

            if self.report.no_files:
                self._notify()
            else:
                self._set_state(RunState.REPORTING)
                self._notify()
                self._set_state(RunState.CLEANING_UP)
                self._cleanup()

            self._set_state(RunState.DONE)

        return self.report

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Select files
        self._set_state(RunState.SELECTING)
        files = self.source.select()
        self.report.file_count = len(files)

        if not files:
            self._set_state(RunState.NO_FILES)
            self.report.no_files = True
            self._log(f"No files to back up in {self.config.source_dir}")
            return

        self._log(f"Selected {len(files)} files ({sum(f.size for f in files)} bytes)")

        # Step 2: Create temporary directory
        sweep_stale_workdirs(self.config.work_dir, self.config.stale_after_hours)
        self.temp_dir = create_workdir(self.config.work_dir)
        self._log(f"Temporary directory: {self.temp_dir}")

        # Step 3: Create archive
        self._set_state(RunState.BUILDING)
        self.archive = self._create_archive(files)
        self.report.archive_name = os.path.basename(self.archive.path)
        self.report.size = self.archive.size
        self._log(
            f"Archive created: {self.report.archive_name} "
            f"({len(self.archive.entries)} entries, {self.archive.size / 1024 / 1024:.2f} MB)"
        )

        # Step 4: Upload
        self._set_state(RunState.UPLOADING)
        self.transfer_result = self._upload()
        self.report.remote_path = self.transfer_result.remote_path
        self.report.size = self.transfer_result.remote_size
        self._log(f"Uploaded to {self.config.host}:{self.transfer_result.remote_path}")

        self.report.success = True
        self._log("Backup completed successfully")

    def _create_archive(self, files: List[CandidateFile]) -> ArchiveResult:
        """
        Build the archive in the working directory and wait for it.

        Raises:
            BuildFailed: If archive creation fails
        """
        filename = generate_archive_filename(
            self.config.archive_prefix,
            self.report.started_at,
            self.config.compression_format
        )
        archive_path = os.path.join(self.temp_dir, filename)

        self._log(f"Creating archive (format: {self.config.compression_format})")
        job = self.builder.build(files, archive_path)
        return job.result()

    def _upload(self) -> TransferResult:
        """
        Upload the archive.

        Raises:
            ConnectFailed, UploadFailed, VerifyFailed: If any upload step fails
        """
        self.upload_attempts += 1
        try:
            return self.storage.upload(
                self.archive.path,
                self.config.remote_dir,
                progress=self._on_upload_progress
            )
        except Exception as e:
            self.transfer_result = TransferResult(error=e)
            raise

    def _notify(self):
        """Hand the report to the notifier exactly once."""
        if self.report.notified:
            return
        self.report.notified = True

        try:
            delivered = self.notifier.notify(self.report)
        except Exception as e:
            self._log(f"Warning: Notification failed: {e}", level=logging.WARNING)
            return

        if not delivered:
            self._log("Warning: Notification could not be delivered", level=logging.WARNING)

    def _cleanup(self):
        """Remove temporary directory and files."""
        if not self.temp_dir:
            return

        try:
            remove_workdir(self.temp_dir)
            self._log("Cleaned up temporary directory")
        except CleanupFailed as e:
            self._log(f"Warning: Failed to cleanup temp directory: {e}", level=logging.WARNING)

    def _set_state(self, state: RunState):
        self.transitions.append(state)
        if self.report is not None:
            self.report.state = state
        logger.info(f"Backup state: {state.value}")

    def _on_archive_progress(self, done: int, total: int, name: str):
        logger.debug(f"Archiving {name}: {done}/{total} bytes")

    def _on_upload_progress(self, sent: int, total: int):
        logger.debug(f"Uploading: {sent}/{total} bytes")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the report.

        Args:
            message: Log message
            level: Logging level for the process log
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.report.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup(config: BackupConfig) -> RunReport:
    """
    Run one backup with collaborators built from the configuration.

    Args:
        config: Validated run configuration

    Returns:
        RunReport with the outcome
    """
    executor = BackupExecutor(config)
    return executor.execute()
