#!/usr/bin/env python3
"""
VolumeTester class for captest - capacity test session controller.

A VolumeTester tests the capacity of a mounted filesystem by filling its
available space with test files and reading them back. The goal is to
detect fake flash drives and memory cards which claim a larger capacity
than they really have; writes beyond the real limit are usually dropped
without any error being reported.

A test consists of three phases:
1. Initialization: the test files are created and a quick test checks
   the first and last bytes of every file.
2. Write: a test pattern is written to every block of every file.
3. Verify: every block is read back and compared with the pattern.

The filesystem should be empty and span the entire storage device. All
test files are removed at the end of every run.
"""

import logging
import os
from enum import Enum

from global_constants import (
    DEFAULT_BLOCK_SIZE,
    DEFAULT_FILE_SIZE,
    FILE_PREFIX,
    MEGABYTE,
)
from pattern_generator import PatternGenerator
from space_planner import SpacePlanner
from volume_errors import PhaseFailure, VolumeTestError
from volume_info import VolumeInfo
from volume_phase import Initializer, Verifier, Writer

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """States of a test session."""

    IDLE = 'idle'
    PLANNING = 'planning'
    INITIALIZING = 'initializing'
    WRITING = 'writing'
    VERIFYING = 'verifying'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CANCELED = 'canceled'
    CLEANED_UP = 'cleaned_up'


class VolumeTestListener:
    """
    Receives the events of a test run.

    All methods are no-ops; subclasses override what they need. Events
    are delivered synchronously from the thread running the test.
    """

    def initialization_started(self, bytes_total):
        pass

    def initialized(self, bytes_reached, avg_speed):
        pass

    def write_started(self):
        pass

    def written(self, bytes_reached, avg_speed):
        pass

    def verify_started(self):
        pass

    def verified(self, bytes_reached, avg_speed):
        pass

    def create_failed(self, file_index, offset):
        pass

    def write_failed(self, offset, size):
        pass

    def verify_failed(self, offset, size):
        pass

    def succeeded(self):
        pass

    def failed(self, error):
        pass

    def canceled(self):
        pass

    def finished(self):
        pass


class VolumeTester:
    """
    Runs a capacity test on one mounted volume.

    Owns the plan, the open test files, the byte counters, the
    cancellation flag and the accumulated error flags of a run.
    """

    def __init__(self, mountpoint, block_size=DEFAULT_BLOCK_SIZE,
                 file_size=DEFAULT_FILE_SIZE, use_fsync=True,
                 drop_cache=True, listener=None, seed=None,
                 file_prefix=FILE_PREFIX):
        """
        Initialize volume tester.

        Args:
            mountpoint: Root path of the filesystem to test
            block_size: Maximum block size in bytes (multiple of 1M)
            file_size: Maximum test file size in bytes (multiple of 1M,
                       larger than block_size)
            use_fsync: Force a durable flush around block I/O
            drop_cache: Drop cached file pages before verifying
            listener: Optional VolumeTestListener receiving run events
            seed: Optional pattern seed (None for a random pattern)
            file_prefix: Name prefix of the test files

        Raises:
            ValueError: If the size limits are invalid
        """
        self.volume = VolumeInfo(mountpoint, file_prefix)
        self.planner = SpacePlanner(file_size, block_size, file_prefix)
        self.block_size = block_size
        self.file_size = file_size
        self.use_fsync = use_fsync
        self.drop_cache = drop_cache
        self.listener = listener or VolumeTestListener()
        self.seed = seed
        self._reset()

    def _reset(self):
        """Create fresh session state."""
        self.state = SessionState.IDLE
        self.result = None
        self.bytes_total = 0
        self.bytes_written = 0
        self.bytes_remaining = 0
        self._canceled = False
        self.error = VolumeTestError.UNKNOWN
        self.failure = None
        self.file_infos = []

    @property
    def mountpoint(self):
        """Mountpoint used by this tester."""
        return self.volume.mountpoint

    def is_valid(self):
        """Check if the tester still points to a valid mountpoint."""
        return self.volume.is_valid()

    def name(self):
        return self.volume.name()

    def label(self):
        return self.volume.label()

    def bytes_used(self):
        """Bytes in use on the volume."""
        return self.volume.bytes_used()

    def bytes_available(self):
        """
        Bytes currently available to the test.

        The size of the volume itself is `volume.bytes_total()`;
        `bytes_total` on the tester is the size of the current run.
        """
        return self.volume.bytes_available()

    def conflict_files(self):
        """Leftover test files that prevent a test from starting."""
        return self.volume.conflict_files()

    def cancel(self):
        """
        Request the running test to stop.

        The test stops at its next checkpoint, after the current file
        operation. Test files are removed as usual.
        """
        self.error |= VolumeTestError.ABORTED
        self._canceled = True

    def abort_requested(self):
        return self._canceled

    def start(self):
        """
        Run a complete test.

        Returns:
            SessionState: SUCCEEDED, FAILED or CANCELED
        """
        self._reset()
        files = []
        try:
            outcome = self._run(files)
            self.state = outcome
        finally:
            self._cleanup(files)
            self.state = SessionState.CLEANED_UP

        self.result = outcome
        if outcome is SessionState.SUCCEEDED:
            logger.info("Test succeeded: %d bytes verified", self.bytes_total)
            self._emit('succeeded')
        elif outcome is SessionState.CANCELED:
            logger.info("Test canceled")
            self._emit('canceled')
            self._emit('failed', self.error)
        else:
            logger.warning("Test failed: %r", self.error)
            self._emit('failed', self.error)
        self._emit('finished')
        return outcome

    def _run(self, files):
        """Plan the test and run all phases."""
        self.state = SessionState.PLANNING

        if not self.volume.is_valid():
            logger.error("Not a valid mountpoint: %r", self.mountpoint)
            return SessionState.FAILED

        try:
            conflicts = self.volume.conflict_files()
            self.bytes_total = self.volume.bytes_available()
        except OSError as e:
            logger.error("Could not query %s: %s", self.mountpoint, e)
            return SessionState.FAILED

        if conflicts:
            logger.error("Conflicting files in %s: %s", self.mountpoint,
                         ", ".join(conflicts))
            self.error |= VolumeTestError.CREATE
            return SessionState.FAILED

        self.bytes_written = 0
        self.bytes_remaining = self.bytes_total
        if self.bytes_total <= 0:
            self.error |= VolumeTestError.FULL
            return SessionState.FAILED

        pattern = PatternGenerator(self.block_size, self.seed).generate()
        self.file_infos = self.planner.plan(self.bytes_total,
                                            self.mountpoint)
        logger.info("Testing %d bytes in %d files (%d MB blocks)",
                    self.bytes_total, len(self.file_infos),
                    self.block_size // MEGABYTE)

        phase_args = dict(file_infos=self.file_infos, files=files,
                          pattern=pattern, use_fsync=self.use_fsync,
                          cancel_check=self.abort_requested)
        try:
            self.state = SessionState.INITIALIZING
            self._emit('initialization_started', self.bytes_total)
            initializer = Initializer(progress_callback=self._on_initialized,
                                      **phase_args)
            if not self._run_phase(initializer):
                return SessionState.CANCELED

            self.state = SessionState.WRITING
            self._emit('write_started')
            writer = Writer(progress_callback=self._on_written, **phase_args)
            if not self._run_phase(writer):
                return SessionState.CANCELED

            self.state = SessionState.VERIFYING
            self._emit('verify_started')
            verifier = Verifier(progress_callback=self._on_verified,
                                drop_cache=self.drop_cache, **phase_args)
            if not self._run_phase(verifier):
                return SessionState.CANCELED
        except PhaseFailure as failure:
            self.failure = failure
            self.error |= failure.error
            if failure.kind == PhaseFailure.CREATE:
                self._emit('create_failed', failure.file_index, failure.offset)
            elif failure.kind == PhaseFailure.WRITE:
                self._emit('write_failed', failure.offset, failure.size)
            else:
                self._emit('verify_failed', failure.offset, failure.size)
            return SessionState.FAILED

        return SessionState.SUCCEEDED

    def _run_phase(self, phase):
        logger.info("Starting %s phase", phase.get_phase_name())
        return phase.run()

    def _on_initialized(self, bytes_reached, avg_speed):
        self._emit('initialized', bytes_reached, avg_speed)

    def _on_written(self, bytes_reached, avg_speed):
        self.bytes_written = bytes_reached
        self.bytes_remaining = self.bytes_total - bytes_reached
        self._emit('written', bytes_reached, avg_speed)

    def _on_verified(self, bytes_reached, avg_speed):
        self._emit('verified', bytes_reached, avg_speed)

    def _emit(self, event, *args):
        getattr(self.listener, event)(*args)

    def _cleanup(self, files):
        """
        Close and remove all created test files, last one first.

        Errors are logged and otherwise ignored; they never change the
        result of the run.
        """
        for index in reversed(range(len(files))):
            path = self.file_infos[index].path
            try:
                files[index].close()
            except OSError as e:
                logger.warning("Could not close %s: %s", path, e)
            try:
                os.remove(path)
            except OSError as e:
                logger.warning("Could not remove %s: %s", path, e)
        files.clear()
        self.file_infos = []
