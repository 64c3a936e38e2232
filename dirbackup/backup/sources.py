"""
File selection for backup runs.

Lists the entries of one flat source directory, stats each one and applies
an inclusion policy:
- all: every regular file
- modified_today: regular files whose modification date is today (local time)

Subdirectories are never descended into.
"""

import os
import stat
import logging
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from dirbackup.errors import DirectoryNotFound, StatFailed
from dirbackup.models import CandidateFile


logger = logging.getLogger(__name__)

Policy = Callable[[CandidateFile], bool]


def include_all(candidate: CandidateFile) -> bool:
    """Include every regular file."""
    return True


def modified_today(candidate: CandidateFile, today: Optional[date] = None) -> bool:
    """Include files whose local modification date is today."""
    today = today or datetime.now().date()
    return candidate.modified_at.date() == today


POLICIES: Dict[str, Policy] = {
    'all': include_all,
    'modified_today': modified_today,
}


def get_policy(name: str) -> Policy:
    """
    Look up a selection policy by name.

    Args:
        name: Policy name ('all' or 'modified_today')

    Returns:
        Predicate over CandidateFile

    Raises:
        ValueError: If the name is unknown
    """
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"Invalid policy: {name}. Valid options: {list(POLICIES.keys())}")


class DirectorySource:
    """
    Selects backup candidates from a single directory.
    """

    def __init__(self, source_dir: str, policy: str = 'all'):
        """
        Initialize directory source.

        Args:
            source_dir: Directory to scan
            policy: Name of the inclusion policy
        """
        self.source_dir = source_dir
        self.policy_name = policy
        self.policy = get_policy(policy)
        self.skipped: List[StatFailed] = []

    def select(self) -> List[CandidateFile]:
        """
        List, stat and filter the directory entries.

        Returns:
            Candidates that pass the policy, sorted by name. Empty when
            nothing qualifies.

        Raises:
            DirectoryNotFound: If the directory does not exist or cannot be listed
        """
        self.skipped = []
        names = self._list_entries()

        candidates = []
        for name in sorted(names):
            path = os.path.join(self.source_dir, name)
            candidate = self._stat_entry(path)
            if candidate is None:
                continue

            if self.policy(candidate):
                candidates.append(candidate)
            else:
                logger.debug(f"Excluded by policy '{self.policy_name}': {name}")

        logger.info(
            f"Selected {len(candidates)} of {len(names)} entries in {self.source_dir} "
            f"(policy: {self.policy_name}, skipped: {len(self.skipped)})"
        )
        return candidates

    def _list_entries(self) -> List[str]:
        if not os.path.isdir(self.source_dir):
            raise DirectoryNotFound(f"Unable to find directory {self.source_dir}")

        try:
            return os.listdir(self.source_dir)
        except PermissionError as e:
            raise DirectoryNotFound(f"Permission denied listing {self.source_dir}: {e}")
        except OSError as e:
            raise DirectoryNotFound(f"Failed to list {self.source_dir}: {e}")

    def _stat_entry(self, path: str) -> Optional[CandidateFile]:
        """Stat one entry; returns None when it must be skipped."""
        try:
            st = os.stat(path)
        except OSError as e:
            failure = StatFailed(path, e)
            self.skipped.append(failure)
            logger.warning(f"{failure}, skipping")
            return None

        if stat.S_ISDIR(st.st_mode):
            logger.info(f"Skipping directory: {path}")
            return None

        if not stat.S_ISREG(st.st_mode):
            logger.info(f"Skipping non-regular file: {path}")
            return None

        return CandidateFile(path=path, size=st.st_size, mtime=st.st_mtime)


def select_files(source_dir: str, policy: str = 'all') -> List[CandidateFile]:
    """
    Select backup candidates from a directory.

    Args:
        source_dir: Directory to scan
        policy: Name of the inclusion policy

    Returns:
        List of CandidateFile

    Raises:
        DirectoryNotFound: If the directory does not exist or cannot be listed
    """
    return DirectorySource(source_dir, policy).select()
