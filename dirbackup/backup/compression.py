"""
Archive building for backup runs.

Selected files are streamed into one flat archive (entries are named by
base name only). Supported formats:
- zip: Standard zip compression
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar

Appends fan out over a bounded thread pool; ArchiveSink serializes the
actual writes. The archive is finalized only after every append has
finished, and the ArchiveJob's completion future resolves exactly once.
"""

import os
import enum
import time
import tarfile
import zipfile
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, FIRST_EXCEPTION, wait
from datetime import datetime
from typing import Callable, List, Optional

from dirbackup.errors import BuildFailed
from dirbackup.models import ArchiveResult, CandidateFile


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
PROGRESS_INTERVAL = 1.0

EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
}

TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
}

# (bytes done, total bytes, file name)
ProgressCallback = Callable[[int, int, str], None]


class AppendIssue(enum.Enum):
    BENIGN_RACE = 'benign_race'
    FATAL = 'fatal'


def classify_append_error(exc: BaseException) -> AppendIssue:
    """
    Classify an error raised while appending one file.

    A file that disappeared between selection and append is an expected
    race; anything else (read errors, permissions, disk full) is fatal.
    """
    if isinstance(exc, FileNotFoundError):
        return AppendIssue.BENIGN_RACE
    return AppendIssue.FATAL


def is_benign_race(exc: BaseException) -> bool:
    return classify_append_error(exc) is AppendIssue.BENIGN_RACE


class _CountingWriter:
    """File wrapper that counts bytes written through it."""

    def __init__(self, raw):
        self._raw = raw
        self.bytes_written = 0

    def write(self, data) -> int:
        written = self._raw.write(data)
        self.bytes_written += len(data)
        return written

    def __getattr__(self, name):
        return getattr(self._raw, name)


class _ProgressReader:
    """Read-only wrapper that emits throttled progress events."""

    def __init__(self, fileobj, total: int, name: str,
                 callback: Optional[ProgressCallback], interval: float = PROGRESS_INTERVAL):
        self._fileobj = fileobj
        self.total = total
        self.name = name
        self.done = 0
        self._callback = callback
        self._interval = interval
        self._last_report = None
        self._last_done = None

    def read(self, size: int = -1) -> bytes:
        data = self._fileobj.read(size)
        self.done += len(data)
        now = time.monotonic()
        if self._last_report is None or (data and now - self._last_report >= self._interval):
            self._emit(now)
        return data

    def report(self):
        """Emit the final count unless the last event already carried it recently."""
        now = time.monotonic()
        if (self._last_report is not None and self.done == self._last_done
                and now - self._last_report < self._interval):
            return
        self._emit(now)

    def _emit(self, now: float):
        self._last_report = now
        self._last_done = self.done
        if self._callback is None:
            return
        try:
            self._callback(self.done, self.total, self.name)
        except Exception as e:
            logger.warning(f"Progress callback failed for {self.name}: {e}")


class ArchiveSink:
    """
    Destination archive shared by concurrent appends.

    Every write into the container goes through a single lock, so only one
    entry is open at a time.
    """

    def __init__(self, path: str, compression_format: str = 'zip'):
        if compression_format not in EXTENSIONS:
            raise ValueError(
                f"Invalid compression format: {compression_format}. "
                f"Valid options: {list(EXTENSIONS.keys())}"
            )

        self.path = path
        self.compression_format = compression_format
        self._lock = threading.Lock()
        self._raw = None
        self._writer = None
        self._container = None
        self.entries: List[str] = []

    @property
    def bytes_written(self) -> int:
        return self._writer.bytes_written if self._writer else 0

    def open(self):
        """Create the output file and the archive container."""
        self._raw = open(self.path, 'wb')
        self._writer = _CountingWriter(self._raw)

        if self.compression_format == 'zip':
            self._container = zipfile.ZipFile(self._writer, 'w', zipfile.ZIP_DEFLATED)
        else:
            self._container = tarfile.open(
                fileobj=self._writer,
                mode=TAR_MODES[self.compression_format]
            )

    def append(self, source_path: str, arcname: str,
               progress: Optional[ProgressCallback] = None) -> int:
        """
        Stream one file into the archive.

        Args:
            source_path: File to read
            arcname: Entry name inside the archive
            progress: Optional progress observer

        Returns:
            Number of source bytes appended

        Raises:
            FileNotFoundError: If the file vanished before it could be opened
            OSError: On read or write failure
        """
        with open(source_path, 'rb') as source:
            st = os.fstat(source.fileno())
            reader = _ProgressReader(source, st.st_size, arcname, progress)

            with self._lock:
                if self.compression_format == 'zip':
                    self._append_zip(reader, arcname, st)
                else:
                    self._append_tar(reader, arcname, st)
                self.entries.append(arcname)

            reader.report()
            return reader.done

    def _append_zip(self, reader: _ProgressReader, arcname: str, st: os.stat_result):
        date_time = time.localtime(st.st_mtime)[:6]
        if date_time[0] < 1980:
            date_time = (1980, 1, 1, 0, 0, 0)

        zinfo = zipfile.ZipInfo(arcname, date_time=date_time)
        zinfo.compress_type = zipfile.ZIP_DEFLATED
        zinfo.file_size = st.st_size
        zinfo.external_attr = (st.st_mode & 0xFFFF) << 16

        with self._container.open(zinfo, 'w') as dest:
            while True:
                chunk = reader.read(CHUNK_SIZE)
                if not chunk:
                    break
                dest.write(chunk)

    def _append_tar(self, reader: _ProgressReader, arcname: str, st: os.stat_result):
        tarinfo = tarfile.TarInfo(arcname)
        tarinfo.size = st.st_size
        tarinfo.mtime = int(st.st_mtime)
        tarinfo.mode = st.st_mode & 0o7777

        self._container.addfile(tarinfo, reader)

    def close(self):
        """Finalize the container and flush it to disk."""
        with self._lock:
            self._container.close()
            self._writer.flush()
            os.fsync(self._raw.fileno())
            self._raw.close()

    def abort(self):
        """Close without finalizing and remove the partial archive."""
        with self._lock:
            for closeable in (self._container, self._raw):
                if closeable is None:
                    continue
                try:
                    closeable.close()
                except Exception as e:
                    logger.debug(f"Ignoring error while aborting archive: {e}")

        if os.path.exists(self.path):
            try:
                os.remove(self.path)
            except OSError as e:
                logger.warning(f"Failed to remove partial archive {self.path}: {e}")


class ArchiveJob:
    """
    An archive being built in the background.

    The completion future resolves once, to an ArchiveResult on success or
    to a BuildFailed error.
    """

    def __init__(self, sink: ArchiveSink, files: List[CandidateFile]):
        self.sink = sink
        self.files = files
        self.future: Future = Future()
        self.future.set_running_or_notify_cancel()

    @property
    def path(self) -> str:
        return self.sink.path

    @property
    def bytes_written(self) -> int:
        return self.sink.bytes_written

    @property
    def total_bytes(self) -> int:
        return sum(f.size for f in self.files)

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> ArchiveResult:
        """
        Wait for the archive to be finalized.

        Raises:
            BuildFailed: If any file could not be archived
        """
        return self.future.result(timeout)


class ArchiveBuilder:
    """
    Builds one archive from a list of candidate files.
    """

    def __init__(self, max_workers: int = 4, compression_format: str = 'zip',
                 progress: Optional[ProgressCallback] = None):
        """
        Initialize archive builder.

        Args:
            max_workers: Maximum number of files read concurrently
            compression_format: One of 'zip', 'tar.gz', 'tar.bz2', 'tar.xz'
            progress: Optional observer called with (bytes done, total, file name)
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        if compression_format not in EXTENSIONS:
            raise ValueError(
                f"Invalid compression format: {compression_format}. "
                f"Valid options: {list(EXTENSIONS.keys())}"
            )

        self.max_workers = max_workers
        self.compression_format = compression_format
        self.progress = progress

    def build(self, files: List[CandidateFile], destination: str) -> ArchiveJob:
        """
        Start building an archive.

        Args:
            files: Files to include
            destination: Output archive path

        Returns:
            ArchiveJob whose result() blocks until the archive is finalized
        """
        sink = ArchiveSink(destination, self.compression_format)
        job = ArchiveJob(sink, list(files))

        try:
            sink.open()
        except Exception as e:
            sink.abort()
            job.future.set_exception(BuildFailed(f"Failed to create archive {destination}: {e}"))
            return job

        thread = threading.Thread(
            target=self._run,
            args=(job,),
            name=f"archive-{os.path.basename(destination)}",
            daemon=True
        )
        thread.start()
        return job

    def _run(self, job: ArchiveJob):
        failure = None

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers,
                                    thread_name_prefix='archive-append') as pool:
                futures = [pool.submit(self._append, job.sink, f) for f in job.files]
                done, pending = wait(futures, return_when=FIRST_EXCEPTION)

                for future in pending:
                    future.cancel()

                # No append may still be running when the archive is finalized
                wait(futures)

            for future in futures:
                if future.cancelled():
                    continue
                exc = future.exception()
                if exc is not None:
                    failure = exc
                    break

            if failure is None and not job.sink.entries:
                failure = BuildFailed(
                    f"All {len(job.files)} selected files vanished before they could be archived"
                )

        except Exception as e:
            failure = BuildFailed(f"Failed to create archive: {e}")

        if failure is not None:
            job.sink.abort()
            if not isinstance(failure, BuildFailed):
                failure = BuildFailed(f"Failed to create archive: {failure}")
            job.future.set_exception(failure)
            return

        try:
            job.sink.close()
            size = get_archive_size(job.sink.path)
        except Exception as e:
            job.sink.abort()
            job.future.set_exception(BuildFailed(f"Failed to finalize archive: {e}"))
            return

        logger.info(f"Archive finalized: {job.sink.path} ({len(job.sink.entries)} entries, {size} bytes)")
        job.future.set_result(ArchiveResult(
            path=job.sink.path,
            size=size,
            entries=list(job.sink.entries)
        ))

    def _append(self, sink: ArchiveSink, candidate: CandidateFile) -> Optional[int]:
        try:
            appended = sink.append(candidate.path, candidate.name, self.progress)
            logger.debug(f"Archived {candidate.name} ({appended} bytes)")
            return appended
        except Exception as e:
            if is_benign_race(e):
                logger.warning(f"File vanished before it could be archived, skipping: {candidate.path}")
                return None
            raise BuildFailed(f"Failed to archive {candidate.name}: {e}", filename=candidate.name) from e


def create_archive(files: List[CandidateFile], output_path: str,
                   compression_format: str = 'zip', max_workers: int = 4) -> ArchiveResult:
    """
    Build an archive and wait for it.

    Args:
        files: Files to include
        output_path: Output archive path
        compression_format: Archive format
        max_workers: Maximum concurrent file reads

    Returns:
        ArchiveResult for the finalized archive

    Raises:
        BuildFailed: If archive creation fails
    """
    builder = ArchiveBuilder(max_workers=max_workers, compression_format=compression_format)
    return builder.build(files, output_path).result()


def generate_archive_filename(prefix: str, started_at: datetime, compression_format: str = 'zip') -> str:
    """
    Generate a sortable archive filename.

    Format: {prefix}-{YYYY-MM-DD-HH-MM}.{ext}

    Args:
        prefix: Filename prefix
        started_at: Run start time
        compression_format: Archive format

    Returns:
        Filename (without path)
    """
    extension = EXTENSIONS.get(compression_format, 'zip')

    # Sanitize prefix (replace spaces and special chars with underscores)
    safe_prefix = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in prefix
    )

    return f"{safe_prefix}-{started_at.strftime('%Y-%m-%d-%H-%M')}.{extension}"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        BuildFailed: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise BuildFailed(f"Archive not found: {archive_path}")
    except OSError as e:
        raise BuildFailed(f"Failed to get archive size: {e}")
