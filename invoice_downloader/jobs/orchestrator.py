from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

from invoice_downloader.browser.manager import BrowserSessionManager
from invoice_downloader.common.json_logger import JsonLogger, log_event
from invoice_downloader.storage.artifacts import ArtifactStore
from invoice_downloader.storage.credentials import CredentialStore
from invoice_downloader.storage.ledger import InvoiceLedger
from invoice_downloader.vendors import UnknownVendorError, VendorRegistry, default_registry

from .tracker import JobConflictError, JobRecord, JobStatus, JobTracker

__all__ = ["JobOrchestrator", "JobConflictError", "UnknownVendorError"]

_ALL_VENDORS_TASK = "*"


class JobOrchestrator:
    """Start, track and await vendor download jobs.

    These methods are the whole control surface: a CLI or HTTP front end only
    needs ``start_job`` (accepted / conflict), ``get_status`` and the ledger.
    """

    def __init__(
        self,
        *,
        registry: VendorRegistry,
        credentials: CredentialStore,
        browser_manager: BrowserSessionManager,
        ledger: InvoiceLedger,
        artifacts: ArtifactStore,
        logger: JsonLogger,
        tracker: JobTracker | None = None,
        poll_interval_ms: int = 1_000,
        run_timeout_seconds: float | None = None,
    ) -> None:
        self.registry = registry
        self.credentials = credentials
        self.browser_manager = browser_manager
        self.ledger = ledger
        self.artifacts = artifacts
        self.logger = logger
        self.tracker = tracker or JobTracker()
        self.poll_interval_ms = poll_interval_ms
        self.run_timeout_seconds = run_timeout_seconds
        self._tasks: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(
        cls,
        config: Any,
        *,
        logger: JsonLogger,
        registry: VendorRegistry | None = None,
        **overrides: Any,
    ) -> "JobOrchestrator":
        kwargs: Dict[str, Any] = {
            "registry": registry or default_registry(),
            "credentials": CredentialStore(config.credentials_file, config.secret_key, logger=logger),
            "browser_manager": BrowserSessionManager.from_config(config, logger=logger),
            "ledger": InvoiceLedger(config.database_url, logger=logger),
            "artifacts": ArtifactStore(config.invoice_storage_path),
            "logger": logger,
            "poll_interval_ms": config.login_poll_interval_ms,
            "run_timeout_seconds": config.run_timeout_seconds,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    async def prepare(self) -> None:
        await self.ledger.initialize()

    def start_job(self, vendor_id: str, limit: int | None = None, from_date: date | None = None) -> JobRecord:
        self.registry.get(vendor_id)
        loop = asyncio.get_running_loop()
        record = self.tracker.try_start(vendor_id, run_id=self.logger.run_id)
        task = loop.create_task(
            self._execute(vendor_id, limit, from_date), name=f"invoice-job-{vendor_id}"
        )
        self._tasks[vendor_id] = task
        log_event(logger=self.logger, phase="job", message="Job scheduled", vendor_id=vendor_id, limit=limit)
        return record

    async def run_job(self, vendor_id: str, limit: int | None = None, from_date: date | None = None) -> JobRecord:
        self.registry.get(vendor_id)
        self.tracker.try_start(vendor_id, run_id=self.logger.run_id)
        return await self._execute(vendor_id, limit, from_date)

    def start_all_jobs(self, limit: int | None = None, from_date: date | None = None) -> List[str]:
        vendor_ids = self.registry.ids()
        task = asyncio.get_running_loop().create_task(
            self._run_all(vendor_ids, limit, from_date), name="invoice-job-all"
        )
        self._tasks[_ALL_VENDORS_TASK] = task
        log_event(logger=self.logger, phase="job", message="Sequential run scheduled", vendor_ids=vendor_ids)
        return vendor_ids

    async def run_all_jobs(self, limit: int | None = None, from_date: date | None = None) -> Dict[str, JobRecord]:
        return await self._run_all(self.registry.ids(), limit, from_date)

    async def _run_all(
        self, vendor_ids: List[str], limit: int | None, from_date: date | None
    ) -> Dict[str, JobRecord]:
        results: Dict[str, JobRecord] = {}
        for vendor_id in vendor_ids:
            try:
                self.tracker.try_start(vendor_id, run_id=self.logger.run_id)
            except JobConflictError:
                log_event(
                    logger=self.logger,
                    phase="job",
                    status="warn",
                    message="Job already running; skipping vendor",
                    vendor_id=vendor_id,
                )
                continue
            results[vendor_id] = await self._execute(vendor_id, limit, from_date)
        return results

    async def _execute(self, vendor_id: str, limit: int | None, from_date: date | None) -> JobRecord:
        logger = self.logger.bind(vendor_id=vendor_id)
        log_event(logger=logger, phase="job", message="Job started", limit=limit, from_date=from_date)

        credential = self.credentials.get_credential(vendor_id)
        if credential is None:
            log_event(logger=logger, phase="job", status="error", message="No credentials stored for vendor")
            return self.tracker.mark_failed(vendor_id, "no credentials")

        try:
            vendor = self.registry.create(
                vendor_id,
                browser_manager=self.browser_manager,
                ledger=self.ledger,
                artifacts=self.artifacts,
                logger=self.logger,
                poll_interval_ms=self.poll_interval_ms,
                run_timeout_seconds=self.run_timeout_seconds,
            )
        except Exception as exc:
            log_event(logger=logger, phase="job", status="error", message="Vendor setup failed", error=str(exc))
            return self.tracker.mark_failed(vendor_id, str(exc))

        download_count = 0
        error: str | None = None
        try:
            await vendor.initialize()
            await vendor.login(credential)
            download_count = await vendor.download_invoices(limit, from_date)
        except asyncio.CancelledError:
            await self._close_vendor(vendor, logger)
            self.tracker.mark_failed(vendor_id, "cancelled")
            raise
        except Exception as exc:
            log_event(logger=logger, phase="job", status="error", message="Job failed", error=str(exc))
            error = str(exc)

        # The record leaves RUNNING only once the vendor has released its context.
        await self._close_vendor(vendor, logger)
        if error is not None:
            return self.tracker.mark_failed(vendor_id, error)
        log_event(logger=logger, phase="job", message="Job completed", download_count=download_count)
        return self.tracker.mark_completed(vendor_id, download_count)

    async def _close_vendor(self, vendor, logger: JsonLogger) -> None:
        try:
            await vendor.close()
        except Exception as exc:
            log_event(logger=logger, phase="job", status="warn", message="Vendor close failed", error=str(exc))

    def get_status(self, vendor_id: str) -> JobRecord:
        self.registry.get(vendor_id)
        return self.tracker.get(vendor_id)

    def get_all_statuses(self) -> Dict[str, JobRecord]:
        return {vendor_id: self.tracker.get(vendor_id) for vendor_id in self.registry.ids()}

    def running_vendors(self) -> List[str]:
        return [vendor_id for vendor_id, record in self.get_all_statuses().items() if record.status is JobStatus.RUNNING]

    async def wait(self, vendor_id: Optional[str] = None) -> None:
        if vendor_id is not None:
            tasks = [task for key, task in self._tasks.items() if key == vendor_id]
        else:
            tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for key in [key for key, task in self._tasks.items() if task.done()]:
            self._tasks.pop(key, None)

    async def shutdown(self, *, cancel: bool = False) -> None:
        if cancel:
            for task in self._tasks.values():
                task.cancel()
        await self.wait()
        await self.browser_manager.close_all()
        await self.ledger.close()
        log_event(logger=self.logger, phase="shutdown", message="Orchestrator stopped")
