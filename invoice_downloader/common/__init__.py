"""Shared services for invoice downloader modules."""
