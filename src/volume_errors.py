#!/usr/bin/env python3
"""
Error classification for captest.

A test run can fail for more than one reason at once, so the result is a
set of flags rather than a single error kind.
"""

from enum import IntFlag


class VolumeTestError(IntFlag):
    """Error flags reported by a failed test run."""

    UNKNOWN = 0
    CREATE = 1 << 0
    PERMISSIONS = 1 << 1  # Qualifies CREATE
    WRITE = 1 << 2
    RESIZE = 1 << 3  # Qualifies WRITE
    VERIFY = 1 << 4
    FULL = 1 << 5
    ABORTED = 1 << 6  # Run was stopped by cancel()


def describe_error(error):
    """
    Build a human readable description of an error classification.

    Args:
        error: VolumeTestError flags

    Returns:
        str: Comma separated flag descriptions, or "unknown error"
    """
    descriptions = [
        (VolumeTestError.CREATE, "file could not be created"),
        (VolumeTestError.PERMISSIONS, "permission denied"),
        (VolumeTestError.WRITE, "write failed"),
        (VolumeTestError.RESIZE, "file could not be resized"),
        (VolumeTestError.VERIFY, "data verification failed"),
        (VolumeTestError.FULL, "volume is full"),
        (VolumeTestError.ABORTED, "test aborted"),
    ]
    parts = [text for flag, text in descriptions if error & flag]
    if not parts:
        return "unknown error"
    return ", ".join(parts)


class PhaseFailure(Exception):
    """
    Raised by a test phase when an I/O operation fails.

    Carries the error flags to add to the session error and the location
    of the failing file or block within the whole test space.
    """

    CREATE = 'create'
    WRITE = 'write'
    VERIFY = 'verify'

    def __init__(self, kind, error, offset, size, file_index=None):
        """
        Initialize phase failure.

        Args:
            kind: One of CREATE, WRITE or VERIFY
            error: VolumeTestError flags describing the failure
            offset: Absolute offset of the failing file or block
            size: Size of the failing file or block in bytes
            file_index: Index of the failing file (create failures)
        """
        super().__init__(f"{kind} failed at offset {offset} "
                         f"({size} bytes): {describe_error(error)}")
        self.kind = kind
        self.error = error
        self.offset = offset
        self.size = size
        self.file_index = file_index
