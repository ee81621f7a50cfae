"""Diff, apply and copy directory trees while keeping file metadata."""

__version__ = "0.1.0"