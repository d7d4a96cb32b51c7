#!/usr/bin/env python3
"""
VolumeInfo class for captest.

This module provides the VolumeInfo class which encapsulates all queries
about the mounted filesystem under test: validity, space, label and
leftover test files.
"""

import os
import subprocess

import psutil

from global_constants import FILE_PREFIX, GIGABYTE


class VolumeInfo:
    """
    Provides information about a mounted volume.

    Handles mountpoint validation, space queries, the volume label and
    the listing of files in the volume root.
    """

    def __init__(self, mountpoint, file_prefix=FILE_PREFIX):
        """
        Initialize volume info.

        Args:
            mountpoint: Root path of the mounted filesystem (e.g., '/media/usb')
            file_prefix: Name prefix of test files
        """
        self.mountpoint = mountpoint
        self.file_prefix = file_prefix

    @staticmethod
    def available_mountpoints():
        """
        List mounted volumes.

        Returns:
            list: Mountpoint paths of physical filesystems
        """
        try:
            partitions = psutil.disk_partitions(all=False)
        except OSError:
            return []
        return [p.mountpoint for p in partitions if p.mountpoint]

    @staticmethod
    def is_valid_mountpoint(mountpoint):
        """
        Check if a path is (still) the root of a mounted, ready filesystem.

        An ordinary directory on a mounted filesystem is not valid, nor is
        an empty path (no defaulting to the current directory).

        Args:
            mountpoint: Path to check

        Returns:
            bool: True if the path is a usable mountpoint
        """
        if not mountpoint:
            return False
        if mountpoint not in VolumeInfo.available_mountpoints():
            return False
        return os.path.isdir(mountpoint) and os.access(mountpoint, os.R_OK)

    def is_valid(self):
        """Check if this volume still points to a valid mountpoint."""
        return self.is_valid_mountpoint(self.mountpoint)

    def _disk_usage(self):
        """Return psutil disk usage, or None if the volume is unusable."""
        if not self.is_valid():
            return None
        try:
            return psutil.disk_usage(self.mountpoint)
        except OSError:
            return None

    def bytes_total(self):
        """Total capacity of the filesystem in bytes (0 if unknown)."""
        usage = self._disk_usage()
        return usage.total if usage else 0

    def bytes_used(self):
        """Used space of the filesystem in bytes (0 if unknown)."""
        usage = self._disk_usage()
        return usage.used if usage else 0

    def bytes_available(self):
        """Space available to this user in bytes (0 if unknown)."""
        usage = self._disk_usage()
        return usage.free if usage else 0

    def get_device(self):
        """
        Get the device backing the volume.

        Returns:
            str: Device path (e.g., '/dev/sdb1') or '' if unknown
        """
        try:
            for partition in psutil.disk_partitions(all=False):
                if partition.mountpoint == self.mountpoint:
                    return partition.device
        except OSError:
            pass
        return ''

    def name(self):
        """
        Get the filesystem label using lsblk.

        Returns:
            str: Volume label, or '' if it has none or it cannot be read
        """
        if not self.is_valid():
            return ''
        device = self.get_device()
        if not device:
            return ''
        try:
            cmd = ['lsblk', '-no', 'LABEL', device]
            return subprocess.check_output(
                cmd, stderr=subprocess.DEVNULL).decode().strip()
        except (OSError, subprocess.CalledProcessError):
            return ''

    def label(self):
        """
        Get a display label combining mountpoint and volume name.

        Returns:
            str: '<mountpoint>: <name>', '<mountpoint>', or '' if invalid
        """
        if not self.is_valid():
            return ''
        name = self.name()
        if name:
            return f"{self.mountpoint}: {name}"
        return self.mountpoint

    def root_files(self):
        """
        List the volume root (not recursively), hidden entries included.

        Directories are suffixed with '/' and listed first, then names
        in case-insensitive order.

        Returns:
            list: Entry names
        """
        if not self.is_valid():
            return []
        entries = []
        with os.scandir(self.mountpoint) as it:
            for entry in it:
                is_dir = entry.is_dir(follow_symlinks=False)
                entries.append((not is_dir, entry.name.lower(),
                                entry.name + '/' if is_dir else entry.name))
        entries.sort()
        return [name for _, _, name in entries]

    def conflict_files(self):
        """
        List leftover test files in the volume root.

        These are left behind by a crashed run and must be removed before
        a new test can start.

        Returns:
            list: Names of root entries starting with the test file prefix
        """
        assert self.file_prefix
        return [name for name in self.root_files()
                if name.startswith(self.file_prefix)]

    def display_info(self):
        """Display volume information."""
        print("=" * 70)
        print("VOLUME INFORMATION")
        print("=" * 70)
        print(f"• Mountpoint: {self.mountpoint}")
        if not self.is_valid():
            print("⚠️  Not a valid mountpoint")
            return
        name = self.name()
        if name:
            print(f"• Name: {name}")
        device = self.get_device()
        if device:
            print(f"• Device: {device}")
        print(f"• Total: {self.bytes_total() / GIGABYTE:.2f} GB")
        print(f"• Used: {self.bytes_used() / GIGABYTE:.2f} GB")
        print(f"• Available: {self.bytes_available() / GIGABYTE:.2f} GB")
