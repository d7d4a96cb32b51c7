#!/usr/bin/env python3
"""
SpacePlanner class for captest - test file and block layout.

The available space of a volume is treated as one virtual address space
starting at offset 0. It is split into test files of at most
file_size_max bytes and every file is split into blocks of at most
block_size_max bytes. Only the last file and the last block of each file
may be shorter.
"""

import math
import os

from global_constants import (
    DEFAULT_BLOCK_SIZE,
    DEFAULT_FILE_SIZE,
    FILE_PREFIX,
    ID_MARKER,
    MEGABYTE,
)


def make_file_id(file_index):
    """Return the tag of a file: decimal index followed by the marker."""
    return str(file_index).encode('ascii') + bytes([ID_MARKER])


def make_block_id(file_index, block_index):
    """Return the tag of a block: "file:block" followed by the marker."""
    return (f"{file_index}:{block_index}".encode('ascii') +
            bytes([ID_MARKER]))


def validate_sizes(file_size_max, block_size_max):
    """
    Check plan size limits.

    Args:
        file_size_max: Maximum test file size in bytes
        block_size_max: Maximum block size in bytes

    Raises:
        ValueError: If sizes are not whole megabytes or the block size
                    is not smaller than the file size
    """
    if block_size_max <= 0 or block_size_max % MEGABYTE:
        raise ValueError(f"Block size must be a positive multiple of 1M: "
                         f"{block_size_max}")
    if file_size_max <= 0 or file_size_max % MEGABYTE:
        raise ValueError(f"File size must be a positive multiple of 1M: "
                         f"{file_size_max}")
    if block_size_max >= file_size_max:
        raise ValueError("Block size must be smaller than file size")


class BlockInfo:
    """
    One block of a test file.

    The unit of write and verify I/O.
    """

    def __init__(self, index, rel_offset, abs_offset, size, block_id):
        """
        Initialize block information.

        Args:
            index: Block index within its file
            rel_offset: Offset relative to the start of the file
            abs_offset: Offset within the whole test space
            size: Block size in bytes
            block_id: Identifying tag bytes
        """
        self.index = index
        self.rel_offset = rel_offset
        self.abs_offset = abs_offset
        self.size = size
        self.id = block_id

    @property
    def abs_end(self):
        """Absolute offset just past the end of the block."""
        return self.abs_offset + self.size

    def __repr__(self):
        return (f"BlockInfo(index={self.index}, abs_offset={self.abs_offset}, "
                f"size={self.size})")


class FileInfo:
    """
    One planned test file and its blocks.
    """

    def __init__(self, index, path, offset, size, file_id, blocks=None):
        """
        Initialize file information.

        Args:
            index: File index within the plan
            path: Absolute path of the test file
            offset: Starting offset within the whole test space
            size: Planned file size in bytes
            file_id: Identifying tag bytes
            blocks: Ordered list of BlockInfo
        """
        self.index = index
        self.path = path
        self.offset = offset
        self.size = size
        self.id = file_id
        self.blocks = blocks if blocks is not None else []

    @property
    def end(self):
        """Absolute offset just past the end of the file."""
        return self.offset + self.size

    def __repr__(self):
        return (f"FileInfo(index={self.index}, path={self.path!r}, "
                f"offset={self.offset}, size={self.size}, "
                f"blocks={len(self.blocks)})")


class SpacePlanner:
    """
    Computes the file and block layout for a test run.

    Offsets are always index * max_size, never a running sum of the
    preceding sizes.
    """

    def __init__(self, file_size_max=DEFAULT_FILE_SIZE,
                 block_size_max=DEFAULT_BLOCK_SIZE, file_prefix=FILE_PREFIX):
        """
        Initialize space planner.

        Args:
            file_size_max: Maximum test file size in bytes
            block_size_max: Maximum block size in bytes
            file_prefix: Name prefix of the test files

        Raises:
            ValueError: If the size limits are invalid
        """
        validate_sizes(file_size_max, block_size_max)
        self.file_size_max = file_size_max
        self.block_size_max = block_size_max
        self.file_prefix = file_prefix

    def plan(self, bytes_available, directory):
        """
        Partition the available space into files and blocks.

        Args:
            bytes_available: Bytes to cover, must be positive
            directory: Directory the test files will be created in

        Returns:
            list: Ordered FileInfo objects covering [0, bytes_available)
        """
        assert bytes_available > 0

        file_count = math.ceil(bytes_available / self.file_size_max)
        last_file_size = bytes_available % self.file_size_max

        files = []
        for i in range(file_count):
            size = self.file_size_max
            if i == file_count - 1 and last_file_size:
                size = last_file_size
            assert size > 0

            offset = i * self.file_size_max
            path = os.path.join(os.path.abspath(directory),
                                f"{self.file_prefix}{i}")
            file_info = FileInfo(i, path, offset, size, make_file_id(i))
            file_info.blocks = self._plan_blocks(file_info)
            files.append(file_info)

        assert sum(f.size for f in files) == bytes_available
        return files

    def _plan_blocks(self, file_info):
        """Split one file into blocks."""
        block_count = math.ceil(file_info.size / self.block_size_max)
        last_block_size = file_info.size % self.block_size_max

        blocks = []
        for j in range(block_count):
            size = self.block_size_max
            if j == block_count - 1 and last_block_size:
                size = last_block_size
            assert size > 0

            rel_offset = j * self.block_size_max
            blocks.append(BlockInfo(j, rel_offset,
                                    file_info.offset + rel_offset, size,
                                    make_block_id(file_info.index, j)))

        assert sum(b.size for b in blocks) == file_info.size
        return blocks
