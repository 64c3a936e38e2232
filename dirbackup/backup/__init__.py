"""
Backup module for dirbackup.

This module handles the core backup functionality including:
- File selection
- Compression
- SFTP transfer
- Outcome notification
- Execution orchestration
"""

from .executor import BackupExecutor, execute_backup
from .sources import DirectorySource, select_files
from .compression import ArchiveBuilder, create_archive
from .storage import SFTPStorage
from .notifier import Notifier

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'DirectorySource',
    'select_files',
    'ArchiveBuilder',
    'create_archive',
    'SFTPStorage',
    'Notifier'
]
