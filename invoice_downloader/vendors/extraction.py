from __future__ import annotations

import asyncio
import re
import time
from dataclasses import replace
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Awaitable, Callable, List, Optional
from urllib.parse import urljoin

from dateutil import parser as date_parser
from playwright.async_api import Page

from invoice_downloader.common.json_logger import JsonLogger, log_event, timed_event
from invoice_downloader.storage.artifacts import ArtifactStore
from invoice_downloader.storage.ledger import InvoiceLedger, InvoiceRecord, StorageError

from .base import ExtractedInvoice, InvoiceCandidate, VendorDescriptor

__all__ = [
    "ExtractionError",
    "InvoicePipeline",
    "ListingFilter",
    "parse_amount",
    "parse_issue_date",
]

ListingFilter = Callable[[Page, date], Awaitable[None]]

_AMOUNT_CHARS = re.compile(r"[^0-9.,]")
_ORDINAL_DOT = re.compile(r"(\d)\.(?=\s)")


class ExtractionError(RuntimeError):
    """Raised when one invoice cannot be read or downloaded."""


class _EuropeanParserInfo(date_parser.parserinfo):
    MONTHS = [
        ("Jan", "January", "Januar", "janvier", "enero", "gennaio"),
        ("Feb", "February", "Februar", "février", "fevrier", "febrero", "febbraio"),
        ("Mar", "March", "März", "Maerz", "mars", "marzo"),
        ("Apr", "April", "avril", "abril", "aprile"),
        ("May", "Mai", "mayo", "maggio"),
        ("Jun", "June", "Juni", "juin", "junio", "giugno"),
        ("Jul", "July", "Juli", "juillet", "julio", "luglio"),
        ("Aug", "August", "août", "aout", "agosto"),
        ("Sep", "Sept", "September", "septembre", "septiembre", "settembre"),
        ("Oct", "October", "Oktober", "Okt", "octobre", "octubre", "ottobre"),
        ("Nov", "November", "novembre", "noviembre"),
        ("Dec", "December", "Dezember", "Dez", "décembre", "decembre", "diciembre", "dicembre"),
    ]


_PARSER_INFO = _EuropeanParserInfo()


def parse_amount(text: str | None, decimal_separator: str = ",") -> Decimal:
    """Read a displayed total such as ``"EUR 1.234,56"`` as a Decimal.

    Anything that does not parse yields ``Decimal("0")``.
    """

    cleaned = _AMOUNT_CHARS.sub("", text or "")
    if decimal_separator == ",":
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    if not cleaned:
        return Decimal("0")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")


def parse_issue_date(text: str | None, *, dayfirst: bool = True, today: date | None = None) -> date:
    fallback = today or date.today()
    if not text or not text.strip():
        return fallback
    normalized = _ORDINAL_DOT.sub(r"\1", text.strip())
    try:
        return date_parser.parse(normalized, parserinfo=_PARSER_INFO, dayfirst=dayfirst, fuzzy=True).date()
    except (ValueError, OverflowError):
        return fallback


class InvoicePipeline:
    def __init__(
        self,
        descriptor: VendorDescriptor,
        *,
        ledger: InvoiceLedger,
        artifacts: ArtifactStore,
        logger: JsonLogger,
        listing_filter: Optional[ListingFilter] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.descriptor = descriptor
        self.selectors = descriptor.selectors
        self.ledger = ledger
        self.artifacts = artifacts
        self.logger = logger.bind(vendor_id=descriptor.id)
        self.listing_filter = listing_filter
        self._today = today

    async def run(
        self,
        page: Page,
        *,
        limit: int,
        from_date: date | None = None,
        timeout_seconds: float | None = None,
    ) -> int:
        async def _stage() -> int:
            candidates = await self.scan(page, limit, from_date)
            return await self.download_all(page, candidates)

        with timed_event(logger=self.logger, phase="download", message="Download stage", limit=limit):
            if timeout_seconds is None:
                return await _stage()
            try:
                return await asyncio.wait_for(_stage(), timeout=timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise ExtractionError(f"download stage timed out after {timeout_seconds} seconds") from exc

    async def scan(self, page: Page, limit: int, from_date: date | None = None) -> List[InvoiceCandidate]:
        selectors = self.selectors
        if from_date is not None and self.listing_filter is not None:
            await self.listing_filter(page, from_date)

        candidates: List[InvoiceCandidate] = []
        page_number = 1
        while len(candidates) < limit:
            rows = page.locator(selectors.order_rows)
            row_count = await rows.count()
            for row_index in range(row_count):
                if len(candidates) >= limit:
                    break
                row = rows.nth(row_index)
                link = row.locator(selectors.invoice_link)
                if await link.count() == 0:
                    log_event(
                        logger=self.logger,
                        phase="scan",
                        message="Order row has no invoice link; skipping",
                        page_number=page_number,
                        row_index=row_index,
                    )
                    continue
                href = await link.first.get_attribute("href")
                if not href:
                    continue
                candidates.append(
                    InvoiceCandidate(
                        index=len(candidates),
                        url=urljoin(page.url, href),
                        page_number=page_number,
                        row_index=row_index,
                    )
                )

            if len(candidates) >= limit or not selectors.next_page:
                break
            next_control = page.locator(selectors.next_page)
            if await next_control.count() == 0:
                break
            await next_control.first.click()
            await page.wait_for_load_state("domcontentloaded")
            page_number += 1

        log_event(
            logger=self.logger,
            phase="scan",
            message="Invoice candidates collected",
            candidate_count=len(candidates),
            pages_scanned=page_number,
            limit=limit,
        )
        return candidates

    async def _read_label(self, tab: Page, label: str) -> str | None:
        marker = tab.locator(f"text={label}")
        if await marker.count() == 0:
            return None
        text = await marker.first.locator("xpath=..").inner_text()
        value = text.replace(label, "", 1).strip()
        return value or None

    async def extract(
        self,
        page: Page,
        candidate: InvoiceCandidate,
        *,
        already_recorded: Optional[Callable[[str], Awaitable[bool]]] = None,
    ) -> ExtractedInvoice:
        """Open ``candidate`` in a new tab, read its fields and download the file.

        When ``already_recorded`` reports the invoice number as known, the
        download is skipped and the result is flagged ``duplicate``.
        """

        descriptor = self.descriptor
        selectors = self.selectors
        tab = await page.context.new_page()
        try:
            await tab.goto(candidate.url, wait_until="domcontentloaded", timeout=descriptor.download_timeout_ms)
            invoice_number = await self._read_label(tab, selectors.invoice_number_label)
            if not invoice_number:
                invoice_number = f"{descriptor.id}-{int(time.time() * 1000)}"
            issue_date = parse_issue_date(
                await self._read_label(tab, selectors.issue_date_label),
                dayfirst=descriptor.decimal_separator == ",",
                today=self._today(),
            )
            amount = parse_amount(await self._read_label(tab, selectors.amount_label), descriptor.decimal_separator)
            order_reference = await self._read_label(tab, selectors.order_reference_label)

            invoice = ExtractedInvoice(
                invoice_number=invoice_number,
                issue_date=issue_date,
                amount=amount,
                currency=descriptor.currency,
                order_reference=order_reference,
                source_url=candidate.url,
            )
            if already_recorded is not None and await already_recorded(invoice_number):
                return replace(invoice, duplicate=True)

            async with tab.expect_download(timeout=descriptor.download_timeout_ms) as download_info:
                await tab.click(selectors.download_button)
            download = await download_info.value
            download_path = await download.path()
            if download_path is None:
                raise ExtractionError(f"download for invoice {invoice_number} produced no file")
            content = Path(download_path).read_bytes()
        except ExtractionError:
            raise
        except StorageError:
            raise
        except Exception as exc:
            raise ExtractionError(f"invoice {candidate.index} ({candidate.url}) could not be extracted: {exc}") from exc
        finally:
            try:
                await tab.close()
            except Exception as exc:
                log_event(logger=self.logger, phase="extract", status="warn", message="Unable to close invoice tab", error=str(exc))

        return replace(invoice, content=content)

    async def download_all(self, page: Page, candidates: List[InvoiceCandidate]) -> int:
        vendor_id = self.descriptor.id
        downloaded = 0
        for candidate in candidates:
            try:
                invoice = await self.extract(
                    page,
                    candidate,
                    already_recorded=lambda number: self.ledger.exists(vendor_id, number),
                )
            except (ExtractionError, StorageError) as exc:
                log_event(
                    logger=self.logger,
                    phase="extract",
                    status="warn",
                    message="Skipping invoice after extraction error",
                    candidate_index=candidate.index,
                    error=str(exc),
                )
                continue

            if invoice.duplicate:
                log_event(
                    logger=self.logger,
                    phase="extract",
                    message="Invoice already recorded; skipping",
                    invoice_number=invoice.invoice_number,
                )
                continue

            try:
                await self._persist(invoice)
            except StorageError as exc:
                log_event(
                    logger=self.logger,
                    phase="store",
                    status="warn",
                    message="Skipping invoice after storage error",
                    invoice_number=invoice.invoice_number,
                    error=str(exc),
                )
                continue

            downloaded += 1
            log_event(
                logger=self.logger,
                phase="store",
                message="Invoice downloaded",
                invoice_number=invoice.invoice_number,
                issue_date=invoice.issue_date.isoformat(),
                amount=str(invoice.amount),
            )
        return downloaded

    async def _persist(self, invoice: ExtractedInvoice) -> InvoiceRecord:
        vendor_id = self.descriptor.id
        stored = self.artifacts.write(vendor_id, invoice.file_name(vendor_id), invoice.content or b"")
        record = InvoiceRecord(
            vendor_id=vendor_id,
            invoice_number=invoice.invoice_number,
            issue_date=invoice.issue_date,
            amount=invoice.amount,
            currency=invoice.currency,
            file_name=stored.name,
            storage_path=self.artifacts.relative(stored),
            extra=invoice.extra(),
        )
        try:
            return await self.ledger.append(record)
        except StorageError:
            self.artifacts.delete(stored)
            raise
