"""
captest - Storage capacity verification utility package.

This package fills a mounted volume with reproducible test data and
reads it back to detect storage media that report more capacity than
they can actually store.
"""

__version__ = "1.0.0"
