"""Shared helpers for AIGENDA."""
