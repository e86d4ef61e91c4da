"""Resumable CSV batch ingestion for supplier product catalogs."""

__version__ = "0.1.0"
