#!/usr/bin/env python3
"""
Global constants for captest - Storage capacity verification utility.

This module contains all application-wide constants used throughout the codebase.
All constants follow the ALL_CAPS naming convention for easy identification.
"""

# Size multipliers for parsing size strings
MEGABYTE = 1024 * 1024
GIGABYTE = 1024 * 1024 * 1024

# Size parsing limits
MIN_SIZE_BYTES = MEGABYTE  # 1MB minimum
MAX_SIZE_BYTES = 64 * GIGABYTE  # 64GB maximum

# Default plan sizes
DEFAULT_BLOCK_SIZE = 16 * MEGABYTE   # 16MB, unit of write/verify I/O
DEFAULT_FILE_SIZE = 512 * MEGABYTE   # 512MB per test file

# Test files
FILE_PREFIX = "CAPTEST"

# Reserved byte values
ID_MARKER = 0x01       # Terminates file and block tags
TRAILER_BYTE = 0xFF    # Written to the last byte of every test file
PATTERN_BYTE_MIN = 1   # Pattern bytes are drawn from 1..254
PATTERN_BYTE_MAX = 254

# Time conversion constants
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600

# Display formatting
DISPLAY_LINE_WIDTH = 70
PROGRESS_BAR_LENGTH = 40

# Volumes with more than this share of used space get a warning
USED_SPACE_WARNING_PERCENT = 1

# Test constants
TEST_BLOCK_SIZE_1MB = MEGABYTE
TEST_FILE_SIZE_4MB = 4 * MEGABYTE
TEST_VOLUME_SIZE_16GB = 16 * GIGABYTE
TEST_SEED = 1234
