from __future__ import annotations

import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from playwright.async_api import BrowserContext, Page

if TYPE_CHECKING:
    from invoice_downloader.storage.credentials import Credential

__all__ = [
    "VendorSelectors",
    "VendorDescriptor",
    "VendorRunState",
    "InvoiceCandidate",
    "ExtractedInvoice",
    "VendorAutomation",
]

DEFAULT_MANUAL_LOGIN_TIMEOUT_MS = 5 * 60 * 1000

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass(frozen=True)
class VendorSelectors:
    username: str
    password: str
    submit: str
    order_rows: str
    invoice_link: str
    download_button: str
    continue_button: Optional[str] = None
    captcha: Optional[str] = None
    totp: Optional[str] = None
    totp_submit: Optional[str] = None
    order_filter: Optional[str] = None
    next_page: Optional[str] = None
    # Visible labels next to the values on the invoice page.
    invoice_number_label: str = "Invoice #"
    issue_date_label: str = "Invoice Date:"
    amount_label: str = "Grand Total:"
    order_reference_label: str = "Order #"


@dataclass(frozen=True)
class VendorDescriptor:
    """Static description of one vendor portal."""

    id: str
    name: str
    login_url: str
    invoice_list_url: str
    selectors: VendorSelectors
    requires_interaction: bool = False
    auth_timeout_ms: int = 60_000
    download_timeout_ms: int = 30_000
    target_url_patterns: Tuple[str, ...] = ()
    manual_login_timeout_ms: int = DEFAULT_MANUAL_LOGIN_TIMEOUT_MS
    currency: str = "EUR"
    decimal_separator: str = ","
    default_limit: int = 10
    launch_strategies: Tuple[str, ...] = ()
    profile_name: Optional[str] = None

    @property
    def profile_id(self) -> str:
        return self.profile_name or self.id


@dataclass
class VendorRunState:
    descriptor: VendorDescriptor
    context: BrowserContext
    page: Page
    authenticated: bool = False


@dataclass(frozen=True)
class InvoiceCandidate:
    index: int
    url: str
    page_number: int = 1
    row_index: int = 0
    summary: str = ""


@dataclass(frozen=True)
class ExtractedInvoice:
    invoice_number: str
    issue_date: date
    amount: Decimal
    currency: str
    order_reference: Optional[str] = None
    content: Optional[bytes] = field(default=None, repr=False)
    duplicate: bool = False
    source_url: Optional[str] = None

    def file_name(self, vendor_id: str) -> str:
        number = self.invoice_number
        if _UNSAFE_NAME_CHARS.search(number):
            # INV/1 and INV_1 sanitise to the same token.
            digest = hashlib.sha1(number.encode("utf-8")).hexdigest()[:8]
            number = "{}-{}".format(_UNSAFE_NAME_CHARS.sub("_", number), digest)
        return f"{vendor_id}_{number}_{self.issue_date.isoformat()}.pdf"

    def extra(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.order_reference:
            payload["order_reference"] = self.order_reference
        if self.source_url:
            payload["source_url"] = self.source_url
        return payload


class VendorAutomation(ABC):
    """Capability surface every vendor integration exposes to the job runner."""

    descriptor: VendorDescriptor

    @abstractmethod
    async def initialize(self) -> VendorRunState:
        ...

    @abstractmethod
    async def login(self, credential: "Credential") -> None:
        ...

    @abstractmethod
    async def download_invoices(self, limit: int | None = None, from_date: date | None = None) -> int:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
