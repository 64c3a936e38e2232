"""Plain data records passed between pipeline stages."""

import enum
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


class RunState(enum.Enum):
    SELECTING = 'selecting'
    NO_FILES = 'no_files'
    BUILDING = 'building'
    UPLOADING = 'uploading'
    REPORTING = 'reporting'
    CLEANING_UP = 'cleaning_up'
    DONE = 'done'


@dataclass(frozen=True)
class CandidateFile:
    """A regular file found in the source directory."""
    path: str
    size: int
    mtime: float

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def modified_at(self) -> datetime:
        return datetime.fromtimestamp(self.mtime)


@dataclass(frozen=True)
class ArchiveResult:
    """A finalized archive on local disk."""
    path: str
    size: int
    entries: List[str]


@dataclass
class TransferResult:
    """Outcome of a single upload."""
    remote_path: Optional[str] = None
    remote_size: Optional[int] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.remote_path is not None


@dataclass
class RunReport:
    """
    Summary of one backup run.

    Created when the run starts, filled in as each stage finishes and
    handed to the notifier once at the end.
    """
    source_dir: str
    started_at: datetime
    state: RunState = RunState.SELECTING
    success: bool = False
    no_files: bool = False
    archive_name: Optional[str] = None
    remote_path: Optional[str] = None
    size: Optional[int] = None
    file_count: int = 0
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    notified: bool = False
    logs: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
