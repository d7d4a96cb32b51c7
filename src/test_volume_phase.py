#!/usr/bin/env python3
"""
Unit tests for volume_phase - Initializer, Writer and Verifier.

The phases run against real files in a temporary directory. Faults are
injected by wrapping the file handles.
"""

import errno
import os
import tempfile
import unittest
from unittest.mock import Mock, patch

import volume_phase
from global_constants import MEGABYTE, TEST_SEED, TRAILER_BYTE
from pattern_generator import PatternGenerator, block_data
from space_planner import SpacePlanner
from volume_errors import PhaseFailure, VolumeTestError
from volume_phase import (
    Initializer,
    Verifier,
    VolumePhase,
    Writer,
    calculate_average_speed,
)

real_open_test_file = volume_phase.open_test_file


class FaultyFile:
    """
    File handle wrapper that injects faults.

    Args:
        handle: Real file handle
        short_write_at: File position whose write stores only half the data
        corrupt_read_at: File position whose byte is flipped when read
        fail_truncate: Make truncate() raise ENOSPC
    """

    def __init__(self, handle, short_write_at=None, corrupt_read_at=None,
                 fail_truncate=False):
        self._handle = handle
        self.short_write_at = short_write_at
        self.corrupt_read_at = corrupt_read_at
        self.fail_truncate = fail_truncate
        self.pos = 0
        self.writes = []

    def seek(self, position):
        self.pos = position
        return self._handle.seek(position)

    def write(self, data):
        self.writes.append(self.pos)
        if self.pos == self.short_write_at:
            data = data[:len(data) // 2]
        written = self._handle.write(data)
        self.pos += written
        return written

    def read(self, size):
        data = self._handle.read(size)
        if (self.corrupt_read_at is not None and
                self.pos <= self.corrupt_read_at < self.pos + len(data)):
            data = bytearray(data)
            data[self.corrupt_read_at - self.pos] ^= 0x5A
            data = bytes(data)
        self.pos += len(data)
        return data

    def truncate(self, size):
        if self.fail_truncate:
            raise OSError(errno.ENOSPC, "No space left on device")
        return self._handle.truncate(size)

    def fileno(self):
        return self._handle.fileno()

    def close(self):
        self._handle.close()


class PhaseTestCase(unittest.TestCase):
    """Common setup: a plan of 3 files (4MB, 4MB, 1MB + 500 bytes)."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.bytes_total = 9 * MEGABYTE + 500
        self.file_infos = SpacePlanner(4 * MEGABYTE, MEGABYTE).plan(
            self.bytes_total, self.tmp.name)
        self.pattern = PatternGenerator(MEGABYTE, TEST_SEED).generate()
        self.files = []
        self.addCleanup(self.close_files)

    def close_files(self):
        for handle in self.files:
            handle.close()

    def make_phase(self, phase_class, **kwargs):
        kwargs.setdefault('use_fsync', False)
        return phase_class(self.file_infos, self.files, self.pattern,
                           **kwargs)

    def initialize(self):
        self.assertTrue(self.make_phase(Initializer).run())

    def write_all(self):
        self.initialize()
        self.assertTrue(self.make_phase(Writer).run())

    def read_file(self, file_info):
        with open(file_info.path, 'rb') as f:
            return f.read()


class TestHelpers(unittest.TestCase):
    """Test module helpers."""

    def test_calculate_average_speed(self):
        self.assertEqual(calculate_average_speed(100 * MEGABYTE, 10), 10.0)
        self.assertEqual(calculate_average_speed(100 * MEGABYTE, 0), 0.0)

    def test_cannot_instantiate_abstract_class(self):
        """Test that abstract base class cannot be instantiated."""
        with self.assertRaises(TypeError):
            VolumePhase([], [])

    def test_open_test_file_creates(self):
        """Test open_test_file creates a read-write file."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'f')
            with real_open_test_file(path) as handle:
                handle.write(b'abc')
                handle.seek(0)
                self.assertEqual(handle.read(3), b'abc')

    def test_open_test_file_keeps_content(self):
        """Test opening an existing file does not truncate it."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'f')
            with open(path, 'wb') as f:
                f.write(b'keep')
            with real_open_test_file(path) as handle:
                self.assertEqual(handle.read(4), b'keep')


class TestInitializer(PhaseTestCase):
    """Test Initializer phase."""

    def test_phase_name(self):
        self.assertEqual(self.make_phase(Initializer).get_phase_name(),
                         'initialize')

    def test_creates_files(self):
        """Test every file gets its size, tag and trailer."""
        callback = Mock()
        initializer = self.make_phase(Initializer, progress_callback=callback)

        self.assertTrue(initializer.run())

        self.assertEqual(len(self.files), 3)
        for file_info in self.file_infos:
            data = self.read_file(file_info)
            self.assertEqual(len(data), file_info.size)
            self.assertTrue(data.startswith(file_info.id))
            self.assertEqual(data[-1], TRAILER_BYTE)
        reached = [c.args[0] for c in callback.call_args_list]
        self.assertEqual(reached, [f.end for f in self.file_infos])

    def test_single_byte_file(self):
        """Test a file too small for its tag holds just the trailer."""
        self.file_infos = SpacePlanner(4 * MEGABYTE, MEGABYTE).plan(
            4 * MEGABYTE + 1, self.tmp.name)

        self.initialize()

        self.assertEqual(self.read_file(self.file_infos[1]),
                         bytes([TRAILER_BYTE]))

    @patch('volume_phase.open_test_file')
    def test_create_permission_denied(self, mock_open_file):
        """Test permission errors add the PERMISSIONS flag."""
        mock_open_file.side_effect = PermissionError(errno.EACCES, "denied")

        with self.assertRaises(PhaseFailure) as ctx:
            self.make_phase(Initializer).run()

        failure = ctx.exception
        self.assertEqual(failure.kind, PhaseFailure.CREATE)
        self.assertEqual(failure.error,
                         VolumeTestError.CREATE | VolumeTestError.PERMISSIONS)
        self.assertEqual(failure.file_index, 0)
        self.assertEqual(failure.offset, 0)

    @patch('volume_phase.open_test_file')
    def test_create_failure_later_file(self, mock_open_file):
        """Test a create failure reports the failing file."""
        mock_open_file.side_effect = [
            real_open_test_file(self.file_infos[0].path),
            OSError(errno.ENOSPC, "No space left on device"),
        ]

        with self.assertRaises(PhaseFailure) as ctx:
            self.make_phase(Initializer).run()

        self.assertEqual(ctx.exception.error, VolumeTestError.CREATE)
        self.assertEqual(ctx.exception.file_index, 1)
        self.assertEqual(ctx.exception.offset, 4 * MEGABYTE)
        self.assertEqual(len(self.files), 1)

    @patch('volume_phase.open_test_file')
    def test_resize_failure(self, mock_open_file):
        """Test a failed grow is a WRITE and RESIZE error."""
        mock_open_file.side_effect = lambda path: FaultyFile(
            real_open_test_file(path), fail_truncate=True)

        with self.assertRaises(PhaseFailure) as ctx:
            self.make_phase(Initializer).run()

        self.assertEqual(ctx.exception.kind, PhaseFailure.WRITE)
        self.assertEqual(ctx.exception.error,
                         VolumeTestError.WRITE | VolumeTestError.RESIZE)
        self.assertEqual(ctx.exception.offset, 0)
        self.assertEqual(ctx.exception.size, 4 * MEGABYTE)

    @patch('volume_phase.open_test_file')
    def test_short_id_write(self, mock_open_file):
        """Test a short tag write is a WRITE error."""
        mock_open_file.side_effect = lambda path: FaultyFile(
            real_open_test_file(path), short_write_at=0)

        with self.assertRaises(PhaseFailure) as ctx:
            self.make_phase(Initializer).run()

        self.assertEqual(ctx.exception.error, VolumeTestError.WRITE)

    @patch('volume_phase.open_test_file')
    def test_quick_test_trailer_mismatch(self, mock_open_file):
        """Test a bad trailer byte fails the quick test for that file."""
        bad = self.file_infos[1]

        def open_file(path):
            handle = real_open_test_file(path)
            if path == bad.path:
                return FaultyFile(handle, corrupt_read_at=bad.size - 1)
            return handle

        mock_open_file.side_effect = open_file

        with self.assertRaises(PhaseFailure) as ctx:
            self.make_phase(Initializer).run()

        self.assertEqual(ctx.exception.kind, PhaseFailure.VERIFY)
        self.assertEqual(ctx.exception.error, VolumeTestError.VERIFY)
        self.assertEqual(ctx.exception.offset, bad.offset)
        self.assertEqual(ctx.exception.size, bad.size)
        self.assertEqual(len(self.files), 2)

    def test_second_pass_detects_lost_file(self):
        """Test a file lost while later files were created is detected."""
        first = self.file_infos[0]

        def progress(bytes_reached, avg_speed):
            # Simulate a device overwriting the first file's data
            if bytes_reached == self.file_infos[2].end:
                with open(first.path, 'r+b') as f:
                    f.seek(0)
                    f.write(b'\x00' * len(first.id))

        initializer = self.make_phase(Initializer, progress_callback=progress)

        with self.assertRaises(PhaseFailure) as ctx:
            initializer.run()

        self.assertEqual(ctx.exception.offset, first.offset)
        self.assertEqual(len(self.files), 3)

    def test_cancel_after_first_file(self):
        """Test cancellation stops at the next file boundary."""
        initializer = self.make_phase(Initializer,
                                      cancel_check=lambda: True)

        self.assertFalse(initializer.run())
        self.assertEqual(len(self.files), 1)
        self.assertFalse(os.path.exists(self.file_infos[1].path))


class TestWriter(PhaseTestCase):
    """Test Writer phase."""

    def test_phase_name(self):
        self.assertEqual(self.make_phase(Writer).get_phase_name(), 'write')

    def test_writes_all_blocks(self):
        """Test every block holds its derived data."""
        self.initialize()
        callback = Mock()

        self.assertTrue(self.make_phase(Writer,
                                        progress_callback=callback).run())

        for file_info in self.file_infos:
            expected = b''.join(block_data(self.pattern, b)
                                for b in file_info.blocks)
            self.assertEqual(self.read_file(file_info), expected)
        reached = [c.args[0] for c in callback.call_args_list]
        self.assertEqual(len(reached), 10)
        self.assertEqual(reached, sorted(reached))
        self.assertEqual(reached[-1], self.bytes_total)

    @patch('volume_phase.os.fsync')
    def test_fsync_per_block(self, mock_fsync):
        """Test durable flush per file and per block when enabled."""
        self.initialize()

        self.make_phase(Writer, use_fsync=True).run()

        # One flush per file plus one per block
        self.assertEqual(mock_fsync.call_count, 3 + 10)

    @patch('volume_phase.os.fsync')
    def test_no_fsync(self, mock_fsync):
        self.initialize()

        self.make_phase(Writer, use_fsync=False).run()

        mock_fsync.assert_not_called()

    def test_short_write_aborts(self):
        """Test a short write reports the block and stops writing."""
        self.initialize()
        bad_block = self.file_infos[1].blocks[2]
        self.files[:] = [
            FaultyFile(self.files[0]),
            FaultyFile(self.files[1], short_write_at=bad_block.rel_offset),
            FaultyFile(self.files[2]),
        ]

        with self.assertRaises(PhaseFailure) as ctx:
            self.make_phase(Writer).run()

        failure = ctx.exception
        self.assertEqual(failure.kind, PhaseFailure.WRITE)
        self.assertEqual(failure.error, VolumeTestError.WRITE)
        self.assertEqual(failure.offset, bad_block.abs_offset)
        self.assertEqual(failure.size, bad_block.size)
        self.assertEqual(len(self.files[0].writes), 4)
        self.assertEqual(self.files[1].writes,
                         [0, MEGABYTE, 2 * MEGABYTE])
        self.assertEqual(self.files[2].writes, [])

    def test_cancel_between_blocks(self):
        """Test cancellation stops after the current block."""
        self.initialize()
        self.files[:] = [FaultyFile(h) for h in self.files]
        checks = []

        def cancel_check():
            checks.append(1)
            return len(checks) >= 2

        self.assertFalse(self.make_phase(Writer,
                                         cancel_check=cancel_check).run())

        self.assertEqual(self.files[0].writes, [0, MEGABYTE])
        self.assertEqual(self.files[1].writes, [])
        self.assertEqual(self.files[2].writes, [])


class TestVerifier(PhaseTestCase):
    """Test Verifier phase."""

    def test_phase_name(self):
        self.assertEqual(self.make_phase(Verifier).get_phase_name(),
                         'verify')

    def test_verifies_written_data(self):
        """Test a clean write verifies without mismatches."""
        self.write_all()
        callback = Mock()

        self.assertTrue(self.make_phase(Verifier,
                                        progress_callback=callback).run())

        self.assertEqual(callback.call_count, 10)
        self.assertEqual(callback.call_args.args[0], self.bytes_total)

    def test_corrupted_byte(self):
        """Test a corrupted byte fails at exactly its block."""
        self.write_all()
        bad_block = self.file_infos[1].blocks[1]
        corrupt_at = bad_block.rel_offset + 123457
        self.files[1] = FaultyFile(self.files[1], corrupt_read_at=corrupt_at)

        with self.assertRaises(PhaseFailure) as ctx:
            self.make_phase(Verifier).run()

        failure = ctx.exception
        self.assertEqual(failure.kind, PhaseFailure.VERIFY)
        self.assertEqual(failure.error, VolumeTestError.VERIFY)
        self.assertEqual(failure.offset, bad_block.abs_offset)
        self.assertEqual(failure.size, bad_block.size)

    def test_aliased_block(self):
        """Test a block holding another block's data is detected."""
        self.write_all()
        source = self.file_infos[0].blocks[0]
        target = self.file_infos[0].blocks[3]
        with open(self.file_infos[0].path, 'r+b') as f:
            f.seek(target.rel_offset)
            f.write(block_data(self.pattern, source))

        with self.assertRaises(PhaseFailure) as ctx:
            self.make_phase(Verifier).run()

        self.assertEqual(ctx.exception.offset, target.abs_offset)

    def test_short_read(self):
        """Test missing data is a verify error at the first short block."""
        self.write_all()
        last_file = self.file_infos[2]
        self.files[2].truncate(MEGABYTE + 100)

        with self.assertRaises(PhaseFailure) as ctx:
            self.make_phase(Verifier).run()

        self.assertEqual(ctx.exception.offset, last_file.blocks[1].abs_offset)
        self.assertEqual(ctx.exception.size, 500)

    @patch('volume_phase.os.posix_fadvise', create=True)
    def test_drop_cache(self, mock_fadvise):
        """Test cached pages are dropped once per file."""
        self.write_all()

        self.make_phase(Verifier, drop_cache=True).run()

        self.assertEqual(mock_fadvise.call_count, 3)

    @patch('volume_phase.os.posix_fadvise', create=True)
    def test_keep_cache(self, mock_fadvise):
        self.write_all()

        self.make_phase(Verifier, drop_cache=False).run()

        mock_fadvise.assert_not_called()

    def test_cancel_after_block(self):
        """Test cancellation stops verifying after the current block."""
        self.write_all()
        callback = Mock()

        result = self.make_phase(Verifier, progress_callback=callback,
                                 cancel_check=lambda: True).run()

        self.assertFalse(result)
        callback.assert_called_once_with(MEGABYTE, callback.call_args.args[1])


if __name__ == '__main__':
    unittest.main()
