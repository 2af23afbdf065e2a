"""Hybrid cross-store consistency engine for proposal intake and review."""

__version__ = "0.1.0"
