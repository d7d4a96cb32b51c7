#!/usr/bin/env python3
"""
VolumePhase classes for captest - the three phases of a test run.

- Initializer: creates the test files and performs the quick test
- Writer: fills every block with pattern data
- Verifier: reads every block back and compares it
"""

import errno
import logging
import os
import time
from abc import ABC, abstractmethod

from global_constants import MEGABYTE, TRAILER_BYTE
from pattern_generator import block_data
from volume_errors import PhaseFailure, VolumeTestError

logger = logging.getLogger(__name__)

_PERMISSION_ERRNOS = (errno.EACCES, errno.EPERM, errno.EROFS)


def open_test_file(path):
    """
    Create or open a test file for unbuffered reading and writing.

    Args:
        path: Path of the test file

    Returns:
        Raw binary file object

    Raises:
        OSError: If the file cannot be created or opened
    """
    flags = os.O_RDWR | os.O_CREAT
    if hasattr(os, "O_BINARY"):
        flags |= os.O_BINARY
    fd = os.open(path, flags, 0o666)
    return os.fdopen(fd, "r+b", buffering=0)


def calculate_average_speed(total_bytes, elapsed_seconds):
    """
    Calculate average speed in MB/s.

    Args:
        total_bytes (int): Total bytes processed
        elapsed_seconds (float): Time elapsed in seconds

    Returns:
        float: Average speed in MB/s, or 0 if elapsed_seconds is 0
    """
    if elapsed_seconds > 0:
        return total_bytes / elapsed_seconds / MEGABYTE
    else:
        return 0.0


class VolumePhase(ABC):
    """
    Abstract base class for test phases.

    Holds the plan, the open file handles and the shared I/O helpers.
    A phase reports progress through progress_callback and polls
    cancel_check at its checkpoints.
    """

    def __init__(self, file_infos, files, pattern=None, use_fsync=True,
                 progress_callback=None, cancel_check=None):
        """
        Initialize test phase.

        Args:
            file_infos: Ordered list of FileInfo from the planner
            files: List of open file handles, one per created file
            pattern: Session pattern bytes (Writer and Verifier)
            use_fsync: Force a durable flush around block I/O
            progress_callback: Optional callback(bytes_reached, avg_speed)
            cancel_check: Optional callable returning True once the run
                          has been canceled
        """
        self.file_infos = file_infos
        self.files = files
        self.pattern = pattern
        self.use_fsync = use_fsync
        self.progress_callback = progress_callback
        self.cancel_check = cancel_check
        self.bytes_done = 0
        self.seconds_spent = 0.0

    @abstractmethod
    def run(self):
        """
        Execute the phase.

        Returns:
            bool: True if the phase completed, False if it was canceled

        Raises:
            PhaseFailure: On the first failed I/O operation
        """
        pass

    @abstractmethod
    def get_phase_name(self):
        """
        Get the name of this phase.

        Returns:
            str: Phase name for display/logging
        """
        pass

    def abort_requested(self):
        """Check the cancellation flag."""
        return bool(self.cancel_check and self.cancel_check())

    def average_speed(self):
        """Average speed of this phase so far in MB/s."""
        return calculate_average_speed(self.bytes_done, self.seconds_spent)

    def _report_progress(self, size, seconds, bytes_reached):
        """Account for a finished unit of work and report progress."""
        self.bytes_done += size
        self.seconds_spent += seconds
        if self.progress_callback:
            self.progress_callback(bytes_reached, self.average_speed())

    def _sync(self, handle):
        """Best-effort durable flush of a file."""
        if not self.use_fsync:
            return
        try:
            os.fsync(handle.fileno())
        except OSError as e:
            logger.debug("fsync failed: %s", e)

    @staticmethod
    def _write_at(handle, position, data):
        """
        Write data at a position.

        Returns:
            bool: True if all bytes were written
        """
        try:
            handle.seek(position)
            written = handle.write(data)
        except OSError as e:
            logger.debug("Write at %d failed: %s", position, e)
            return False
        return written == len(data)

    @staticmethod
    def _read_at(handle, position, size):
        """
        Read exactly size bytes at a position.

        Returns:
            bytes: Data read, shorter than size on end of file or error
        """
        try:
            handle.seek(position)
            chunks = []
            remaining = size
            while remaining > 0:
                chunk = handle.read(remaining)
                if not chunk:
                    break
                chunks.append(chunk)
                remaining -= len(chunk)
        except OSError as e:
            logger.debug("Read at %d failed: %s", position, e)
            return b''
        return b''.join(chunks)


class Initializer(VolumePhase):
    """
    Creates the test files and performs the quick test.

    Every file gets its tag at offset 0, is grown to its planned size and
    gets the trailer byte at its last offset. Tag and trailer are read
    back right away and once more after all files exist.
    """

    def get_phase_name(self):
        return "initialize"

    @staticmethod
    def head_id(file_info):
        """File tag as stored at offset 0, clipped before the trailer."""
        return file_info.id[:max(file_info.size - 1, 0)]

    def run(self):
        for file_info in self.file_infos:
            handle = self._create(file_info)
            self.files.append(handle)

            start_time = time.time()
            self._initialize_file(handle, file_info)
            self._report_progress(file_info.size, time.time() - start_time,
                                  file_info.end)

            # Check right away, a device that already lost this file
            # fails here without waiting for the remaining files
            self._quick_check(handle, file_info)

            if self.abort_requested():
                return False

        assert len(self.files) == len(self.file_infos)

        for file_info, handle in zip(self.file_infos, self.files):
            self._quick_check(handle, file_info)
            if self.abort_requested():
                return False

        return True

    def _create(self, file_info):
        """Create and open one test file."""
        try:
            return open_test_file(file_info.path)
        except OSError as e:
            error = VolumeTestError.CREATE
            if (isinstance(e, PermissionError) or
                    e.errno in _PERMISSION_ERRNOS):
                error |= VolumeTestError.PERMISSIONS
            logger.error("Creating %s failed: %s", file_info.path, e)
            raise PhaseFailure(PhaseFailure.CREATE, error, file_info.offset,
                               file_info.size, file_index=file_info.index)

    def _initialize_file(self, handle, file_info):
        """Write tag, grow the file and write the trailer byte."""
        if not self._write_at(handle, 0, self.head_id(file_info)):
            raise PhaseFailure(PhaseFailure.WRITE, VolumeTestError.WRITE,
                               file_info.offset, file_info.size)

        try:
            handle.truncate(file_info.size)
        except OSError as e:
            logger.error("Resizing %s to %d bytes failed: %s",
                         file_info.path, file_info.size, e)
            raise PhaseFailure(PhaseFailure.WRITE,
                               VolumeTestError.WRITE | VolumeTestError.RESIZE,
                               file_info.offset, file_info.size)

        if not self._write_at(handle, file_info.size - 1,
                              bytes([TRAILER_BYTE])):
            raise PhaseFailure(PhaseFailure.WRITE, VolumeTestError.WRITE,
                               file_info.offset, file_info.size)

    def _quick_check(self, handle, file_info):
        """Verify trailer byte and tag of one file."""
        trailer = self._read_at(handle, file_info.size - 1, 1)
        head = self.head_id(file_info)
        if (trailer != bytes([TRAILER_BYTE]) or
                self._read_at(handle, 0, len(head)) != head):
            logger.error("Quick test failed for %s", file_info.path)
            raise PhaseFailure(PhaseFailure.VERIFY, VolumeTestError.VERIFY,
                               file_info.offset, file_info.size)


class Writer(VolumePhase):
    """
    Writes pattern data to every block of every file.
    """

    def get_phase_name(self):
        return "write"

    def run(self):
        for file_info, handle in zip(self.file_infos, self.files):
            # May block for a while if initialized files are still cached
            self._sync(handle)

            for block_info in file_info.blocks:
                data = block_data(self.pattern, block_info)

                start_time = time.time()
                if not self._write_at(handle, block_info.rel_offset, data):
                    logger.error("Write failed at offset %d (%d bytes)",
                                 block_info.abs_offset, block_info.size)
                    raise PhaseFailure(PhaseFailure.WRITE,
                                       VolumeTestError.WRITE,
                                       block_info.abs_offset, block_info.size)
                self._sync(handle)
                self._report_progress(block_info.size,
                                      time.time() - start_time,
                                      block_info.abs_end)

                if self.abort_requested():
                    return False

        return True


class Verifier(VolumePhase):
    """
    Reads every block back and compares it with the expected data.
    """

    def __init__(self, file_infos, files, pattern=None, use_fsync=True,
                 progress_callback=None, cancel_check=None,
                 drop_cache=True):
        """
        Initialize verifier.

        Args:
            drop_cache: Ask the kernel to drop cached pages of a file
                        before reading it, so data comes from the medium
            (other arguments as VolumePhase)
        """
        super().__init__(file_infos, files, pattern, use_fsync,
                         progress_callback, cancel_check)
        self.drop_cache = drop_cache

    def get_phase_name(self):
        return "verify"

    def _drop_cache(self, handle):
        """Best-effort eviction of a file from the page cache."""
        if not self.drop_cache or not hasattr(os, "posix_fadvise"):
            return
        try:
            os.posix_fadvise(handle.fileno(), 0, 0,
                             os.POSIX_FADV_DONTNEED)
        except OSError as e:
            logger.debug("posix_fadvise failed: %s", e)

    def run(self):
        for file_info, handle in zip(self.file_infos, self.files):
            self._sync(handle)
            self._drop_cache(handle)

            for block_info in file_info.blocks:
                expected = block_data(self.pattern, block_info)

                start_time = time.time()
                data = self._read_at(handle, block_info.rel_offset,
                                     block_info.size)
                if data != expected:
                    logger.error("Verification failed at offset %d "
                                 "(%d bytes)", block_info.abs_offset,
                                 block_info.size)
                    raise PhaseFailure(PhaseFailure.VERIFY,
                                       VolumeTestError.VERIFY,
                                       block_info.abs_offset, block_info.size)
                self._report_progress(block_info.size,
                                      time.time() - start_time,
                                      block_info.abs_end)

                if self.abort_requested():
                    return False

        return True
