"""Listing ingestion with re-listing detection, version chains and similarity scoring."""

__version__ = "0.1.0"
