import asyncio
from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from _fakes import AmazonSite, FakeInvoice, FakePlaywright, make_logger, make_manager
from invoice_downloader.jobs.orchestrator import JobConflictError, JobOrchestrator, UnknownVendorError
from invoice_downloader.jobs.tracker import JobStatus, JobTracker
from invoice_downloader.storage.artifacts import ArtifactStore
from invoice_downloader.storage.credentials import Credential, CredentialStore
from invoice_downloader.storage.ledger import InvoiceLedger, InvoiceRecord
from invoice_downloader.vendors import VendorRegistry, default_registry
from invoice_downloader.vendors.amazon import AMAZON, AmazonVendor
from invoice_downloader.vendors.base import VendorAutomation


async def _orchestrator(
    tmp_path: Path,
    site: AmazonSite,
    *,
    registry: VendorRegistry | None = None,
    headless: bool = True,
    with_credential: bool = True,
) -> JobOrchestrator:
    logger = make_logger()
    credentials = CredentialStore(tmp_path / "credentials.enc", "local-secret", logger=logger)
    if with_credential:
        credentials.store_credential("amazon", Credential(username="buyer@example.com", password="s3cret-pw"))
    orchestrator = JobOrchestrator(
        registry=registry or default_registry(),
        credentials=credentials,
        browser_manager=make_manager(tmp_path, FakePlaywright(site), logger=logger, headless=headless),
        ledger=InvoiceLedger(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", logger=logger),
        artifacts=ArtifactStore(tmp_path / "invoices"),
        logger=logger,
        poll_interval_ms=5,
    )
    await orchestrator.prepare()
    return orchestrator


def test_tracker_check_and_set() -> None:
    tracker = JobTracker()

    started = tracker.try_start("amazon", run_id="run-1")
    with pytest.raises(JobConflictError):
        tracker.try_start("amazon")
    tracker.mark_completed("amazon", 4)
    restarted = tracker.try_start("amazon")

    assert started.status is JobStatus.RUNNING
    assert restarted.status is JobStatus.RUNNING
    assert restarted.download_count == 0
    assert tracker.get("ebay").status is JobStatus.NOT_STARTED
    assert tracker.get("amazon").as_dict()["status"] == "running"


class _RejectingVendor(VendorAutomation):
    """Fails login, then holds its context open until the test releases it."""

    closing: asyncio.Event
    release: asyncio.Event

    def __init__(self, descriptor, **_):
        self.descriptor = descriptor

    async def initialize(self):
        return None

    async def login(self, credential):
        raise RuntimeError("login rejected")

    async def download_invoices(self, limit=None, from_date=None):
        return 0

    async def close(self):
        type(self).closing.set()
        await type(self).release.wait()


def test_start_job_outside_event_loop_leaves_tracker_untouched() -> None:
    orchestrator = JobOrchestrator(
        registry=default_registry(),
        credentials=None,
        browser_manager=None,
        ledger=None,
        artifacts=None,
        logger=make_logger(),
    )

    with pytest.raises(RuntimeError):
        orchestrator.start_job("amazon")

    assert orchestrator.get_status("amazon").status is JobStatus.NOT_STARTED


@pytest.mark.asyncio
async def test_job_stays_running_until_vendor_context_is_released(tmp_path: Path) -> None:
    _RejectingVendor.closing = asyncio.Event()
    _RejectingVendor.release = asyncio.Event()
    registry = VendorRegistry()
    registry.register(AMAZON, _RejectingVendor)
    orchestrator = await _orchestrator(tmp_path, AmazonSite(tmp_path / "downloads"), registry=registry)
    try:
        orchestrator.start_job("amazon")
        await asyncio.wait_for(_RejectingVendor.closing.wait(), timeout=1)

        assert orchestrator.get_status("amazon").status is JobStatus.RUNNING
        with pytest.raises(JobConflictError):
            orchestrator.start_job("amazon")

        _RejectingVendor.release.set()
        await orchestrator.wait("amazon")

        status = orchestrator.get_status("amazon")
        assert status.status is JobStatus.FAILED
        assert status.error == "login rejected"
    finally:
        _RejectingVendor.release.set()
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_second_start_conflicts_and_missing_credentials_fail_job(tmp_path: Path) -> None:
    orchestrator = await _orchestrator(tmp_path, AmazonSite(tmp_path / "downloads"), with_credential=False)
    try:
        accepted = orchestrator.start_job("amazon")
        with pytest.raises(JobConflictError):
            orchestrator.start_job("amazon")
        assert orchestrator.running_vendors() == ["amazon"]

        await orchestrator.wait("amazon")

        status = orchestrator.get_status("amazon")
        assert accepted.status is JobStatus.RUNNING
        assert status.status is JobStatus.FAILED
        assert status.error == "no credentials"
        assert status.finished_at is not None
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_unknown_vendor_is_rejected(tmp_path: Path) -> None:
    orchestrator = await _orchestrator(tmp_path, AmazonSite(tmp_path / "downloads"))
    try:
        with pytest.raises(UnknownVendorError) as excinfo:
            orchestrator.start_job("ebay")
        with pytest.raises(UnknownVendorError):
            orchestrator.get_status("ebay")

        assert str(excinfo.value) == "unknown vendor: ebay"
        assert orchestrator.get_all_statuses()["amazon"].status is JobStatus.NOT_STARTED
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_run_all_skips_vendor_that_is_already_running(tmp_path: Path) -> None:
    orchestrator = await _orchestrator(tmp_path, AmazonSite(tmp_path / "downloads"))
    try:
        orchestrator.tracker.try_start("amazon")

        results = await orchestrator.run_all_jobs()

        assert results == {}
        assert orchestrator.get_status("amazon").status is JobStatus.RUNNING
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_amazon_job_downloads_new_invoices_only(tmp_path: Path) -> None:
    site = AmazonSite(
        tmp_path / "downloads",
        [FakeInvoice("INV-1"), FakeInvoice("INV-2", date_text="1. Februar 2024"), FakeInvoice("INV-3")],
    )
    orchestrator = await _orchestrator(tmp_path, site)
    await orchestrator.ledger.append(
        InvoiceRecord(
            vendor_id="amazon",
            invoice_number="INV-2",
            issue_date=date(2024, 2, 1),
            amount=Decimal("10.00"),
            currency="EUR",
            file_name="amazon_INV-2_2024-02-01.pdf",
            storage_path="amazon/amazon_INV-2_2024-02-01.pdf",
        )
    )
    try:
        orchestrator.start_job("amazon", limit=10)
        await orchestrator.wait()

        status = orchestrator.get_status("amazon")
        assert status.status is JobStatus.COMPLETED, status.error
        assert status.download_count == 2
        records = await orchestrator.ledger.list_by_vendor("amazon")
        assert sorted(record.invoice_number for record in records) == ["INV-1", "INV-2", "INV-3"]
        assert sorted(path.name for path in (tmp_path / "invoices" / "amazon").iterdir()) == [
            "amazon_INV-1_2024-03-12.pdf",
            "amazon_INV-3_2024-03-12.pdf",
        ]
        assert orchestrator.browser_manager.session_store.path_for(AMAZON.profile_id).exists()
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_manual_login_timeout_fails_job_without_records(tmp_path: Path) -> None:
    descriptor = replace(AMAZON, auth_timeout_ms=50, manual_login_timeout_ms=100)
    registry = VendorRegistry()
    registry.register(descriptor, AmazonVendor)
    site = AmazonSite(tmp_path / "downloads", [FakeInvoice("INV-1")], accept_login=False)
    orchestrator = await _orchestrator(tmp_path, site, registry=registry, headless=False)
    try:
        record = await orchestrator.run_job("amazon")

        assert record.status is JobStatus.FAILED
        assert "timed out" in record.error
        assert "s3cret-pw" not in record.error
        assert await orchestrator.ledger.list_by_vendor("amazon") == []
        assert not (tmp_path / "invoices").exists()
    finally:
        await orchestrator.shutdown()
