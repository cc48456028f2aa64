from __future__ import annotations

from datetime import date

from playwright.async_api import Page

from invoice_downloader.common.json_logger import log_event

from .automation import BrowserVendor
from .base import VendorDescriptor, VendorSelectors

__all__ = ["AMAZON", "AMAZON_SELECTORS", "AmazonVendor"]

AMAZON_LOGIN_URL = (
    "https://www.amazon.de/ap/signin?openid.pape.max_auth_age=0"
    "&openid.return_to=https%3A%2F%2Fwww.amazon.de%2F%3Fref_%3Dnav_custrec_signin"
    "&openid.identity=http%3A%2F%2Fspecs.openid.net%2Fauth%2F2.0%2Fidentifier_select"
    "&openid.assoc_handle=deflex&openid.mode=checkid_setup"
    "&openid.claimed_id=http%3A%2F%2Fspecs.openid.net%2Fauth%2F2.0%2Fidentifier_select"
    "&openid.ns=http%3A%2F%2Fspecs.openid.net%2Fauth%2F2.0"
)
AMAZON_ORDER_HISTORY_URL = "https://www.amazon.de/-/en/gp/css/order-history"

AMAZON_SELECTORS = VendorSelectors(
    username="#ap_email",
    password="#ap_password",
    continue_button="#continue",
    submit="#signInSubmit",
    captcha="#auth-captcha-image-container",
    totp="#auth-mfa-otpcode",
    totp_submit="#auth-signin-button",
    order_filter="#time-filter",
    order_rows="#order-card",
    invoice_link='a[href*="invoice"]',
    download_button='input[name="Download"]',
    next_page=".a-pagination .a-last a",
)

AMAZON = VendorDescriptor(
    id="amazon",
    name="Amazon",
    login_url=AMAZON_LOGIN_URL,
    invoice_list_url=AMAZON_ORDER_HISTORY_URL,
    selectors=AMAZON_SELECTORS,
    requires_interaction=False,
    auth_timeout_ms=60_000,
    download_timeout_ms=30_000,
    target_url_patterns=("/gp/css/order-history", "/your-orders"),
    currency="EUR",
    decimal_separator=",",
    profile_name="amazon-profile",
)


class AmazonVendor(BrowserVendor):
    def __init__(self, descriptor: VendorDescriptor = AMAZON, **kwargs) -> None:
        super().__init__(descriptor, **kwargs)

    async def apply_listing_filter(self, page: Page, from_date: date) -> None:
        """Narrow the order history to the year of ``from_date``."""

        selector = self.descriptor.selectors.order_filter
        if not selector or await page.locator(selector).count() == 0:
            log_event(
                logger=self.logger,
                phase="scan",
                status="warn",
                message="Order period filter not found; scanning unfiltered history",
            )
            return
        await page.select_option(selector, value=f"year-{from_date.year}")
        await page.wait_for_load_state("domcontentloaded")
        log_event(logger=self.logger, phase="scan", message="Order period filter applied", year=from_date.year)
