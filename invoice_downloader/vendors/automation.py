from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, List, Optional

from playwright.async_api import Page

from invoice_downloader.browser.manager import BrowserSessionManager, ContextOptions
from invoice_downloader.common.json_logger import JsonLogger, log_event
from invoice_downloader.storage.artifacts import ArtifactStore
from invoice_downloader.storage.ledger import InvoiceLedger

from .base import VendorAutomation, VendorDescriptor, VendorRunState
from .extraction import InvoicePipeline
from .login import LoginPhase, LoginStateMachine

if TYPE_CHECKING:
    from invoice_downloader.storage.credentials import Credential

__all__ = ["BrowserVendor"]


class BrowserVendor(VendorAutomation):
    """Vendor driven entirely through the shared browser session manager.

    Subclasses normally only supply a descriptor and, when the order history
    needs narrowing before the scan, override :meth:`apply_listing_filter`.
    """

    def __init__(
        self,
        descriptor: VendorDescriptor,
        *,
        browser_manager: BrowserSessionManager,
        ledger: InvoiceLedger,
        artifacts: ArtifactStore,
        logger: JsonLogger,
        poll_interval_ms: int = 1_000,
        run_timeout_seconds: float | None = None,
        allow_manual: Optional[bool] = None,
    ) -> None:
        self.descriptor = descriptor
        self.browser_manager = browser_manager
        self.ledger = ledger
        self.artifacts = artifacts
        self.logger = logger.bind(vendor_id=descriptor.id)
        self.poll_interval_ms = poll_interval_ms
        self.run_timeout_seconds = run_timeout_seconds
        self.allow_manual = allow_manual
        self.state: VendorRunState | None = None
        self.login_history: List[LoginPhase] = []

    def _require_state(self) -> VendorRunState:
        if self.state is None:
            raise RuntimeError(f"{self.descriptor.id} automation is not initialized")
        return self.state

    async def initialize(self) -> VendorRunState:
        if self.state is not None:
            return self.state
        options = ContextOptions(launch_order=self.descriptor.launch_strategies or None)
        context = await self.browser_manager.acquire_context(self.descriptor.profile_id, options)
        try:
            page = await self.browser_manager.new_page(context)
        except BaseException:
            await self.browser_manager.close(context)
            raise
        self.state = VendorRunState(descriptor=self.descriptor, context=context, page=page)
        log_event(logger=self.logger, phase="initialize", message="Vendor automation initialized")
        return self.state

    async def login(self, credential: "Credential | None") -> None:
        state = self._require_state()
        machine = LoginStateMachine(
            self.descriptor,
            browser_manager=self.browser_manager,
            logger=self.logger,
            poll_interval_ms=self.poll_interval_ms,
            allow_manual=self.allow_manual,
        )
        try:
            await machine.run(state.page, credential)
        finally:
            self.login_history = list(machine.history)
        state.authenticated = True

    async def apply_listing_filter(self, page: Page, from_date: date) -> None:
        return None

    async def download_invoices(self, limit: int | None = None, from_date: date | None = None) -> int:
        state = self._require_state()
        if not state.authenticated:
            raise RuntimeError(f"{self.descriptor.id} automation is not logged in")
        pipeline = InvoicePipeline(
            self.descriptor,
            ledger=self.ledger,
            artifacts=self.artifacts,
            logger=self.logger,
            listing_filter=self.apply_listing_filter,
        )
        return await pipeline.run(
            state.page,
            limit=limit or self.descriptor.default_limit,
            from_date=from_date,
            timeout_seconds=self.run_timeout_seconds,
        )

    async def close(self) -> None:
        state, self.state = self.state, None
        if state is None:
            return
        await self.browser_manager.close(state.context)
        log_event(logger=self.logger, phase="close", message="Vendor automation closed")
