"""Automation and approval rule engine for business records."""

__version__ = "0.1.0"
