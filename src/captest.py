#!/usr/bin/env python3
"""
captest - Storage capacity verification utility
Fills a mounted volume with test data and reads it back to detect fake
flash drives and memory cards.
"""

import argparse
import logging
import signal
import sys
import time

from global_constants import (
    DEFAULT_BLOCK_SIZE,
    DEFAULT_FILE_SIZE,
    DISPLAY_LINE_WIDTH,
    GIGABYTE,
    MAX_SIZE_BYTES,
    MEGABYTE,
    MIN_SIZE_BYTES,
    PROGRESS_BAR_LENGTH,
    SECONDS_PER_HOUR,
    SECONDS_PER_MINUTE,
    USED_SPACE_WARNING_PERCENT,
)
from volume_errors import describe_error
from volume_info import VolumeInfo
from volume_tester import SessionState, VolumeTester, VolumeTestListener

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_CANCELED = 2


def parse_size(size_str) -> int:
    """Parse size string with M or G suffix (e.g., '16M', '1G')."""
    size_str = size_str.upper().strip()

    if not size_str:
        raise ValueError("Size must end with M or G: (empty)")
    if size_str[-1] in ['M', 'G']:
        try:
            value = float(size_str[:-1])
            suffix = size_str[-1]
        except ValueError:
            raise ValueError(f"Invalid size format: {size_str}")
    else:
        raise ValueError(f"Size must end with M or G: {size_str}")

    multipliers = {
        'M': MEGABYTE,
        'G': GIGABYTE,
    }

    size_bytes = int(value * multipliers[suffix])

    if size_bytes < MIN_SIZE_BYTES:
        raise ValueError("Size must be at least 1M")
    if size_bytes > MAX_SIZE_BYTES:
        raise ValueError("Size must not exceed 64G")
    if size_bytes % MEGABYTE:
        raise ValueError(f"Size must be a whole number of megabytes: "
                         f"{size_str}")

    return size_bytes


def format_eta(remaining_bytes, avg_speed):
    """
    Format estimated time remaining.

    Args:
        remaining_bytes: Bytes left in the current phase
        avg_speed: Average speed in MB/s

    Returns:
        str: Formatted ETA string (HH:MM:SS) or "??:??:??"
    """
    if avg_speed <= 0:
        return "??:??:??"
    eta_seconds = remaining_bytes / MEGABYTE / avg_speed
    hours = int(eta_seconds // SECONDS_PER_HOUR)
    minutes = int((eta_seconds % SECONDS_PER_HOUR) // SECONDS_PER_MINUTE)
    seconds = int(eta_seconds % SECONDS_PER_MINUTE)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def format_progress_bar(done, total, bar_length=PROGRESS_BAR_LENGTH):
    """
    Format visual progress bar.

    Returns:
        str: Formatted progress bar (e.g., "█████░░░░░")
    """
    filled_length = int(bar_length * done // total) if total else 0
    return '█' * filled_length + '░' * (bar_length - filled_length)


class ConsoleReporter(VolumeTestListener):
    """
    Prints the progress and outcome of a test run.
    """

    def __init__(self):
        self.bytes_total = 0
        self.phase = None
        self.failure_offset = None
        self.start_time = time.time()

    def _start_phase(self, name):
        if self.phase:
            print()
        self.phase = name
        print(f"• {name}...")

    def _display_progress(self, bytes_reached, avg_speed):
        progress_percent = ((bytes_reached / self.bytes_total) * 100
                            if self.bytes_total else 0)
        bar = format_progress_bar(bytes_reached, self.bytes_total)
        eta_str = format_eta(self.bytes_total - bytes_reached, avg_speed)
        print(f"\r  {progress_percent:5.1f}% |{bar}| "
              f"{bytes_reached / GIGABYTE:.2f}GB/"
              f"{self.bytes_total / GIGABYTE:.2f}GB "
              f"Speed: {avg_speed:.1f}MB/s ETA: {eta_str}",
              end='', flush=True)

    def initialization_started(self, bytes_total):
        self.bytes_total = bytes_total
        self.start_time = time.time()
        self._start_phase("Creating test files (quick test)")

    def initialized(self, bytes_reached, avg_speed):
        self._display_progress(bytes_reached, avg_speed)

    def write_started(self):
        self._start_phase("Writing test data")

    def written(self, bytes_reached, avg_speed):
        self._display_progress(bytes_reached, avg_speed)

    def verify_started(self):
        self._start_phase("Verifying test data")

    def verified(self, bytes_reached, avg_speed):
        self._display_progress(bytes_reached, avg_speed)

    def create_failed(self, file_index, offset):
        self.failure_offset = offset
        print(f"\n🚨 Could not create test file #{file_index} "
              f"at {offset / GIGABYTE:.2f} GB")

    def write_failed(self, offset, size):
        self.failure_offset = offset
        print(f"\n🚨 Write failed at {offset / GIGABYTE:.2f} GB "
              f"({size / MEGABYTE:.0f} MB)")

    def verify_failed(self, offset, size):
        self.failure_offset = offset
        print(f"\n🚨 Verification failed at {offset / GIGABYTE:.2f} GB "
              f"({size / MEGABYTE:.0f} MB)")

    def succeeded(self):
        total_time = time.time() - self.start_time
        print("\n" + "=" * 50)
        print("TEST COMPLETED")
        print("=" * 50)
        print(f"• Verified: {self.bytes_total / GIGABYTE:.2f} GB")
        print(f"• Time: {total_time:.2f} seconds")
        print("• Status: ✅ Capacity verified, volume is OK")

    def canceled(self):
        print("\n\n⚠️  Test canceled by user")

    def failed(self, error):
        print("\n" + "=" * 50)
        print("TEST FAILED")
        print("=" * 50)
        print(f"• Error: {describe_error(error)}")
        if self.failure_offset is not None:
            print(f"• Usable capacity: ~{self.failure_offset / GIGABYTE:.2f} "
                  f"GB of {self.bytes_total / GIGABYTE:.2f} GB")

    def finished(self):
        print("• Test files removed")


def list_volumes():
    """Display all mounted volumes."""
    mountpoints = VolumeInfo.available_mountpoints()
    if not mountpoints:
        print("No mounted volumes found")
        return
    for mountpoint in mountpoints:
        volume = VolumeInfo(mountpoint)
        print(f"• {volume.label() or mountpoint}: "
              f"{volume.bytes_available() / GIGABYTE:.2f} GB available of "
              f"{volume.bytes_total() / GIGABYTE:.2f} GB")


def check_volume(volume):
    """
    Check that a volume can be tested.

    Args:
        volume: VolumeInfo of the target

    Returns:
        bool: True if the test may start
    """
    if not volume.is_valid():
        print(f"Error: {volume.mountpoint} is not a valid mountpoint")
        print("Use --list to show mounted volumes")
        return False

    try:
        conflicts = volume.conflict_files()
    except OSError as e:
        print(f"Error: cannot read {volume.mountpoint}: {e}")
        return False
    if conflicts:
        print("\n" + "=" * DISPLAY_LINE_WIDTH)
        print("🚨 LEFTOVER TEST FILES FOUND")
        print("=" * DISPLAY_LINE_WIDTH)
        print("A previous test did not finish. Remove these files first:")
        for name in conflicts:
            print(f"   • {name}")
        return False

    if volume.bytes_available() <= 0:
        print(f"Error: {volume.mountpoint} is full")
        return False

    total = volume.bytes_total()
    if total and volume.bytes_used() * 100 / total > \
            USED_SPACE_WARNING_PERCENT:
        print("⚠️  WARNING: The volume is not empty.")
        print("   Only the available space will be tested.")

    return True


def run_test(mountpoint, block_size=DEFAULT_BLOCK_SIZE,
             file_size=DEFAULT_FILE_SIZE, use_fsync=True):
    """
    Run a capacity test with console progress output.

    Ctrl+C requests cancellation; the run stops at its next checkpoint
    and removes its files.

    Returns:
        int: Process exit code
    """
    reporter = ConsoleReporter()
    tester = VolumeTester(mountpoint, block_size=block_size,
                          file_size=file_size, use_fsync=use_fsync,
                          listener=reporter)

    def signal_handler(signum, frame):
        print("\n• Stopping after the current block...")
        tester.cancel()

    previous_handler = signal.signal(signal.SIGINT, signal_handler)
    try:
        outcome = tester.start()
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if outcome is SessionState.SUCCEEDED:
        return EXIT_SUCCEEDED
    if outcome is SessionState.CANCELED:
        return EXIT_CANCELED
    return EXIT_FAILED


def setup_argument_parser():
    """
    Set up and return the command-line argument parser.

    Returns:
        argparse.ArgumentParser: Configured argument parser
    """
    parser = argparse.ArgumentParser(
        description='Storage capacity verification utility',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  captest --list                  # List mounted volumes
  captest /media/usb              # Test volume with default settings
  captest -b 8M -f 256M /media/sd # Use 8MB blocks and 256MB files
  captest --yes /media/usb        # Do not ask for confirmation

The volume should be empty. All test files are removed afterwards.
        """
    )

    parser.add_argument(
        'mountpoint',
        nargs='?',
        help='Mountpoint of the volume to test (e.g., /media/usb)')
    parser.add_argument(
        '-b', '--block-size',
        default='16M',
        help='Block size (default: 16M)')
    parser.add_argument(
        '-f', '--file-size',
        default='512M',
        help='Test file size (default: 512M, larger than block size)')
    parser.add_argument('--no-fsync', action='store_true',
                        help='Do not force data to disk after each block')
    parser.add_argument('--list', action='store_true',
                        help='List mounted volumes')
    parser.add_argument('-y', '--yes', action='store_true',
                        help='Start without confirmation')
    parser.add_argument('--verbose', action='store_true',
                        help='Show debug log messages')
    parser.add_argument(
        '-v',
        '--version',
        action='version',
        version='captest 1.0.0')

    return parser


def main(argv=None):
    """Main function for CLI interface."""
    parser = setup_argument_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s')

    if args.list or not args.mountpoint:
        print("Mounted volumes:")
        print("=" * 50)
        list_volumes()
        return EXIT_SUCCEEDED

    try:
        block_size = parse_size(args.block_size)
        file_size = parse_size(args.file_size)
    except ValueError as e:
        print(f"Error: {e}")
        return EXIT_FAILED
    if block_size >= file_size:
        print("Error: Block size must be smaller than file size")
        return EXIT_FAILED

    print("=" * DISPLAY_LINE_WIDTH)
    print("CONFIGURATION")
    print("=" * DISPLAY_LINE_WIDTH)
    print(f"• Block size: {block_size / MEGABYTE:.0f} MB")
    print(f"• File size: {file_size / MEGABYTE:.0f} MB")

    volume = VolumeInfo(args.mountpoint)
    volume.display_info()
    if not check_volume(volume):
        return EXIT_CANCELED

    if not args.yes:
        print(f"\nThis will fill {args.mountpoint} completely with test data.")
        print("Type 'y' to start the test, or anything else to abort:")
        try:
            response = input().strip().lower()
        except (KeyboardInterrupt, EOFError):
            response = ''
        if response != 'y':
            print("Test cancelled by user")
            return EXIT_CANCELED

    print("\n🚀 Starting capacity test...")
    return run_test(args.mountpoint, block_size, file_size,
                    use_fsync=not args.no_fsync)


if __name__ == '__main__':
    sys.exit(main())
