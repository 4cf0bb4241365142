"""AIGENDA - offline-first synchronization for the AIGENDA productivity app."""

__version__ = "0.1.0"
