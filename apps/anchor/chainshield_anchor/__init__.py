"""Tamper-evident anchoring and verification of security log records."""

__version__ = "0.1.0"
