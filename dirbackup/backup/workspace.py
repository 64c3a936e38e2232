"""
Transient working directories.

Each run builds its archive inside a fresh dirbackup_* directory under the
configured work_dir. The directory is removed at the end of the run. Runs
that crashed before removing theirs leave stale directories behind, which
the next run sweeps once they are older than a cutoff.

A directory's age is its last activity: the newest modification time of the
directory itself and of anything inside it. An archive still being written
keeps its mtime current, so a long run overlapping another one is never
swept while it is working.
"""

import os
import shutil
import logging
import tempfile
from datetime import datetime, timedelta
from typing import List, Optional

from dirbackup.errors import CleanupFailed


logger = logging.getLogger(__name__)

WORKDIR_PREFIX = 'dirbackup_'


def create_workdir(work_dir: Optional[str] = None) -> str:
    """
    Create a fresh working directory for one run.

    Args:
        work_dir: Parent directory (default: system temp dir)

    Returns:
        Path of the new directory
    """
    if work_dir:
        os.makedirs(work_dir, exist_ok=True)
    return tempfile.mkdtemp(prefix=WORKDIR_PREFIX, dir=work_dir)


def remove_workdir(path: str):
    """
    Remove a working directory and everything in it.

    Raises:
        CleanupFailed: If the directory exists but cannot be removed
    """
    if not os.path.exists(path):
        return

    try:
        shutil.rmtree(path)
    except OSError as e:
        raise CleanupFailed(f"Failed to remove {path}: {e}")


def sweep_stale_workdirs(work_dir: Optional[str] = None, max_age_hours: float = 6) -> List[str]:
    """
    Remove working directories left behind by earlier runs.

    Only dirbackup_* directories with no activity for max_age_hours are
    removed, so a run still in progress in another process keeps its
    directory.

    Args:
        work_dir: Parent directory (default: system temp dir)
        max_age_hours: Age after which a directory counts as stale

    Returns:
        Paths that were removed
    """
    parent = work_dir or tempfile.gettempdir()
    if not os.path.isdir(parent):
        return []

    cutoff = datetime.now() - timedelta(hours=max_age_hours)
    removed = []

    try:
        names = os.listdir(parent)
    except OSError as e:
        logger.warning(f"Failed to list {parent} for stale working directories: {e}")
        return []

    for name in names:
        if not name.startswith(WORKDIR_PREFIX):
            continue

        path = os.path.join(parent, name)
        try:
            if not os.path.isdir(path):
                continue
            modified = datetime.fromtimestamp(_last_activity(path))
        except OSError:
            continue

        if modified >= cutoff:
            continue

        try:
            remove_workdir(path)
            removed.append(path)
            logger.info(f"Removed stale working directory: {path}")
        except CleanupFailed as e:
            logger.warning(str(e))

    return removed


def _last_activity(path: str) -> float:
    """Newest mtime of a directory and everything below it."""
    newest = os.path.getmtime(path)
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            try:
                newest = max(newest, os.lstat(os.path.join(root, name)).st_mtime)
            except OSError:
                # removed while walking
                continue
    return newest
