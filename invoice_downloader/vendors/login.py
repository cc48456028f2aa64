"""Login state machine shared by every browser-driven vendor.

The machine reuses a stored session when the invoice list is reachable,
otherwise submits the stored credential (username, optional continue step,
password, optional TOTP) and confirms success by polling one URL predicate.
CAPTCHA walls and unconfirmed logins fall back to a bounded pause during which
a human can finish the login in the visible browser window.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from invoice_downloader import totp
from invoice_downloader.common.json_logger import JsonLogger, log_event

from .base import VendorDescriptor

if TYPE_CHECKING:
    from invoice_downloader.browser.manager import BrowserSessionManager
    from invoice_downloader.storage.credentials import Credential

__all__ = ["LoginPhase", "LoginFailed", "LoginStateMachine"]

USERNAME_ATTEMPTS = 3
SELECTOR_WAIT_MS = 3_000
# A code this close to rollover may expire before the vendor validates it.
MIN_CODE_LIFETIME_SECONDS = 3


class LoginPhase(str, Enum):
    CHECKING_EXISTING = "CHECKING_EXISTING"
    NEEDS_CREDENTIAL = "NEEDS_CREDENTIAL"
    SUBMITTING_CREDENTIAL = "SUBMITTING_CREDENTIAL"
    NEEDS_INTERACTION = "NEEDS_INTERACTION"
    WAITING_FOR_MANUAL_COMPLETION = "WAITING_FOR_MANUAL_COMPLETION"
    AUTHENTICATED = "AUTHENTICATED"
    FAILED = "FAILED"


class LoginFailed(RuntimeError):
    def __init__(self, vendor_id: str, phase: LoginPhase, reason: str) -> None:
        self.vendor_id = vendor_id
        self.phase = phase
        self.reason = reason
        super().__init__(f"{vendor_id} login failed during {phase.value}: {reason}")


class LoginStateMachine:
    def __init__(
        self,
        descriptor: VendorDescriptor,
        *,
        browser_manager: "BrowserSessionManager",
        logger: JsonLogger,
        poll_interval_ms: int = 1_000,
        selector_wait_ms: int = SELECTOR_WAIT_MS,
        allow_manual: Optional[bool] = None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.descriptor = descriptor
        self.selectors = descriptor.selectors
        self.browser_manager = browser_manager
        self.logger = logger.bind(vendor_id=descriptor.id)
        self.poll_interval_ms = poll_interval_ms
        self.selector_wait_ms = selector_wait_ms
        if allow_manual is None:
            allow_manual = descriptor.requires_interaction or not browser_manager.headless
        self.allow_manual = allow_manual
        self._wall_clock = wall_clock
        self.phase = LoginPhase.CHECKING_EXISTING
        self.history: List[LoginPhase] = []
        self._login_prefix = descriptor.login_url.split("?", 1)[0]

    def matches_target(self, url: str | None) -> bool:
        if not url or url.startswith(self._login_prefix):
            return False
        if url.startswith(self.descriptor.invoice_list_url):
            return True
        return any(fragment in url for fragment in self.descriptor.target_url_patterns)

    def _transition(self, phase: LoginPhase, **fields) -> None:
        self.phase = phase
        self.history.append(phase)
        log_event(logger=self.logger, phase="login", message=f"Login phase {phase.value}", login_phase=phase.value, **fields)

    def _fail(self, reason: str) -> LoginFailed:
        failed_in = self.phase
        self.phase = LoginPhase.FAILED
        self.history.append(LoginPhase.FAILED)
        log_event(
            logger=self.logger,
            phase="login",
            status="error",
            message="Login failed",
            login_phase=failed_in.value,
            reason=reason,
        )
        return LoginFailed(self.descriptor.id, failed_in, reason)

    async def run(self, page: Page, credential: "Credential | None") -> LoginPhase:
        descriptor = self.descriptor
        self.history.clear()
        self._transition(LoginPhase.CHECKING_EXISTING, url=descriptor.invoice_list_url)
        try:
            await page.goto(descriptor.invoice_list_url, wait_until="domcontentloaded", timeout=descriptor.auth_timeout_ms)
        except Exception as exc:
            raise self._fail(f"navigation to invoice list failed: {exc}") from exc

        if self.matches_target(page.url):
            return await self._authenticated(page, reused_session=True)

        self._transition(LoginPhase.NEEDS_CREDENTIAL, current_url=page.url)
        if credential is None:
            raise self._fail("no credentials available")

        if not (page.url or "").startswith(self._login_prefix):
            try:
                await page.goto(descriptor.login_url, wait_until="domcontentloaded", timeout=descriptor.auth_timeout_ms)
            except Exception as exc:
                raise self._fail(f"navigation to login page failed: {exc}") from exc

        self._transition(LoginPhase.SUBMITTING_CREDENTIAL)
        await self._submit_username(page, credential.username)

        if self.selectors.captcha and await self._is_present(page, self.selectors.captcha):
            log_event(logger=self.logger, phase="login", status="warn", message="CAPTCHA detected after username step")
            await self._wait_for_manual_completion(
                page, reason="captcha", timeout_ms=descriptor.auth_timeout_ms
            )
            return await self._authenticated(page)

        await self._submit_password(page, credential.password)
        await self._submit_second_factor(page, credential)

        if descriptor.requires_interaction:
            await self._wait_for_manual_completion(
                page, reason="requires_interaction", timeout_ms=descriptor.manual_login_timeout_ms
            )
            return await self._authenticated(page)

        if await self._poll_until_target(page, descriptor.auth_timeout_ms):
            return await self._authenticated(page)

        self._transition(LoginPhase.NEEDS_INTERACTION, current_url=page.url)
        if not self.allow_manual:
            await self._capture(page, "login_unconfirmed")
            raise self._fail("invoice list not reached after submitting credentials and no manual completion is possible")
        await self._wait_for_manual_completion(
            page, reason="login_unconfirmed", timeout_ms=descriptor.manual_login_timeout_ms
        )
        return await self._authenticated(page)

    async def _is_present(self, page: Page, selector: str, timeout_ms: int | None = None) -> bool:
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms or self.selector_wait_ms)
        except PlaywrightTimeoutError:
            return False
        return True

    async def _settle(self, page: Page) -> None:
        try:
            await page.wait_for_load_state("domcontentloaded")
        except PlaywrightTimeoutError:
            log_event(logger=self.logger, phase="login", status="warn", message="Page did not settle after submit")

    async def _submit_username(self, page: Page, username: str) -> None:
        selectors = self.selectors
        attempt_timeout = max(self.descriptor.auth_timeout_ms // USERNAME_ATTEMPTS, 1)
        for attempt in range(1, USERNAME_ATTEMPTS + 1):
            if await self._is_present(page, selectors.username, attempt_timeout):
                break
            if await self._is_present(page, selectors.password, 1):
                log_event(logger=self.logger, phase="login", message="Username remembered by vendor; skipping")
                return
            log_event(
                logger=self.logger,
                phase="login",
                status="warn",
                message="Username field not visible yet",
                attempt=attempt,
                max_attempts=USERNAME_ATTEMPTS,
            )
        else:
            await self._capture(page, "username_missing")
            raise self._fail("username field not found")

        try:
            await page.fill(selectors.username, username)
            if selectors.continue_button and await self._is_present(page, selectors.continue_button, 1):
                await page.click(selectors.continue_button)
                await self._settle(page)
        except PlaywrightTimeoutError as exc:
            raise self._fail(f"username step timed out: {exc}") from exc

    async def _submit_password(self, page: Page, password: str) -> None:
        selectors = self.selectors
        if not await self._is_present(page, selectors.password):
            log_event(logger=self.logger, phase="login", message="Password field absent; assuming earlier step logged in")
            return
        try:
            await page.fill(selectors.password, password)
            if await self._is_present(page, selectors.submit, 1):
                await page.click(selectors.submit)
            else:
                await page.press(selectors.password, "Enter")
            await self._settle(page)
        except PlaywrightTimeoutError as exc:
            raise self._fail(f"password step timed out: {exc}") from exc

    async def _submit_second_factor(self, page: Page, credential: "Credential") -> None:
        selectors = self.selectors
        if not selectors.totp or not await self._is_present(page, selectors.totp):
            return
        if not credential.totp_enabled or not credential.totp_secret:
            log_event(
                logger=self.logger,
                phase="login",
                status="warn",
                message="Second factor requested but no TOTP secret is configured",
            )
            return

        code = await self._fresh_code(credential.totp_secret)
        try:
            await page.fill(selectors.totp, code)
            if selectors.totp_submit and await self._is_present(page, selectors.totp_submit, 1):
                await page.click(selectors.totp_submit)
            else:
                await page.press(selectors.totp, "Enter")
            await self._settle(page)
        except PlaywrightTimeoutError as exc:
            raise self._fail(f"second factor step timed out: {exc}") from exc
        log_event(logger=self.logger, phase="login", message="Submitted TOTP code")

    async def _fresh_code(self, secret: str) -> str:
        try:
            remaining = totp.seconds_remaining(self._wall_clock())
            if remaining < MIN_CODE_LIFETIME_SECONDS:
                await asyncio.sleep(remaining + 0.1)
            return totp.generate_totp(secret, self._wall_clock())
        except (totp.SecretFormatError, totp.CodeGenerationError) as exc:
            raise self._fail(f"unable to generate TOTP code: {exc}") from exc

    async def _poll_until_target(self, page: Page, timeout_ms: int) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        interval = self.poll_interval_ms / 1000
        while True:
            if self.matches_target(page.url):
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(interval, remaining))

    async def _capture(self, page: Page, label: str) -> None:
        profile_id = self.descriptor.profile_id
        await self.browser_manager.capture_screenshot(page, self.browser_manager.screenshot_path(profile_id, label))

    async def _wait_for_manual_completion(self, page: Page, *, reason: str, timeout_ms: int) -> None:
        await self._capture(page, reason)
        self._transition(
            LoginPhase.WAITING_FOR_MANUAL_COMPLETION,
            reason=reason,
            timeout_ms=timeout_ms,
            current_url=page.url,
        )
        log_event(
            logger=self.logger,
            phase="login",
            status="warn",
            message="Complete the login in the browser window; waiting for the invoice list",
            reason=reason,
            timeout_ms=timeout_ms,
        )
        if not await self._poll_until_target(page, timeout_ms):
            raise self._fail(f"timed out after {timeout_ms} ms waiting for manual login completion ({reason})")

    async def _authenticated(self, page: Page, *, reused_session: bool = False) -> LoginPhase:
        self._transition(LoginPhase.AUTHENTICATED, reused_session=reused_session, current_url=page.url)
        await self.browser_manager.persist(page.context)
        return LoginPhase.AUTHENTICATED
