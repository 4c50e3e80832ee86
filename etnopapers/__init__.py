"""Ethnobotanical document-to-record extraction and sync core."""

__version__ = "0.1.0"
