"""
Usage Monitor.

Keeps a local, deduplicated copy of metered expense bills pulled from the
billing API and tracks every sync attempt.
"""

__version__ = "0.1.0"
