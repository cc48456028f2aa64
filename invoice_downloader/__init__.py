"""Top-level package for the vendor invoice downloader."""

from typing import Any

__all__ = ["JobOrchestrator", "run_vendor_job"]


def __getattr__(name: str) -> Any:
    if name == "JobOrchestrator":
        from invoice_downloader.jobs.orchestrator import JobOrchestrator as _JobOrchestrator

        return _JobOrchestrator
    if name == "run_vendor_job":
        from invoice_downloader.cli import run_vendor_job as _run_vendor_job

        return _run_vendor_job
    raise AttributeError(name)
