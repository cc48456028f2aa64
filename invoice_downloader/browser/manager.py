from __future__ import annotations

import asyncio
import os
import platform
import shutil
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence

from playwright.async_api import Browser, BrowserContext, Dialog, Page, Playwright, async_playwright

from invoice_downloader.common.json_logger import JsonLogger, log_event

from .launch import LaunchRequest, LaunchStrategy, context_kwargs, launch_with_fallback
from .session_store import SessionLoadError, SessionState, SessionStore

__all__ = ["BrowserSessionManager", "ContextOptions", "ManagerState"]


class ManagerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class ContextOptions:
    launch_order: Sequence[str] | None = None
    headless: bool | None = None


@dataclass
class _ManagedContext:
    profile_id: str
    context: BrowserContext
    strategy: str


async def _start_playwright() -> Playwright:
    return await async_playwright().start()


async def _accept_dialog(dialog: Dialog) -> None:
    await dialog.accept()


class BrowserSessionManager:
    """Own the Playwright driver, the shared browser and one context per profile.

    Contexts are keyed by profile id so repeated ``acquire_context`` calls for the
    same profile return the live context. Session state is loaded from the
    :class:`SessionStore` before launch and written back on ``persist``/``close``.
    """

    def __init__(
        self,
        *,
        session_store: SessionStore,
        profiles_dir: Path,
        screenshots_dir: Path,
        logger: JsonLogger,
        headless: bool = True,
        timeout_ms: int = 30_000,
        launch_order: Sequence[str] = ("persistent", "cdp", "managed"),
        channel: str | None = None,
        executable_path: str | None = None,
        cdp_url: str | None = None,
        playwright_factory: Callable[[], Awaitable[Playwright]] = _start_playwright,
        strategies: Mapping[str, LaunchStrategy] | None = None,
    ) -> None:
        self.session_store = session_store
        self.profiles_dir = Path(profiles_dir)
        self.screenshots_dir = Path(screenshots_dir)
        self.logger = logger
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.launch_order = tuple(launch_order)
        self.channel = channel or None
        self.executable_path = executable_path or None
        self.cdp_url = cdp_url or None
        self._playwright_factory = playwright_factory
        self._strategies = strategies

        self.state = ManagerState.UNINITIALIZED
        self._playwright: Playwright | None = None
        self._shared_browser: Browser | None = None
        self._shared_strategy: str | None = None
        self._sessions: Dict[str, _ManagedContext] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: Any, *, logger: JsonLogger, **overrides: Any) -> "BrowserSessionManager":
        kwargs: Dict[str, Any] = {
            "session_store": SessionStore(config.profiles_dir),
            "profiles_dir": config.profiles_dir,
            "screenshots_dir": config.screenshots_dir,
            "logger": logger,
            "headless": config.browser_headless,
            "timeout_ms": config.browser_timeout_ms,
            "launch_order": config.browser_launch_order,
            "channel": config.browser_channel,
            "executable_path": config.browser_executable,
            "cdp_url": config.browser_cdp_url,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def active_profiles(self) -> List[str]:
        return list(self._sessions)

    def _find(self, context: BrowserContext) -> _ManagedContext | None:
        for entry in self._sessions.values():
            if entry.context is context:
                return entry
        return None

    def _load_state(self, profile_id: str) -> SessionState | None:
        try:
            state = self.session_store.load(profile_id)
        except SessionLoadError as exc:
            log_event(
                logger=self.logger,
                phase="session",
                status="warn",
                message="Stored session unusable; starting fresh",
                profile_id=profile_id,
                error=str(exc),
            )
            return None
        if state is None or state.is_empty:
            log_event(
                logger=self.logger,
                phase="session",
                message="No stored session; starting fresh",
                profile_id=profile_id,
            )
            return None
        log_event(
            logger=self.logger,
            phase="session",
            message="Loaded stored session",
            profile_id=profile_id,
            cookie_count=len(state.cookies),
            origin_count=len(state.origins),
        )
        return state

    async def acquire_context(self, profile_id: str, options: ContextOptions | None = None) -> BrowserContext:
        options = options or ContextOptions()
        async with self._lock:
            existing = self._sessions.get(profile_id)
            if existing is not None:
                return existing.context

            self.state = ManagerState.LAUNCHING
            try:
                if self._playwright is None:
                    self._playwright = await self._playwright_factory()

                stored = self._load_state(profile_id)
                order = tuple(options.launch_order or self.launch_order)
                request = LaunchRequest(
                    profile_id=profile_id,
                    user_data_dir=self.profiles_dir / self.session_store.token_for(profile_id),
                    headless=self.headless if options.headless is None else options.headless,
                    timeout_ms=self.timeout_ms,
                    channel=self.channel,
                    executable_path=self.executable_path,
                    cdp_url=self.cdp_url,
                    storage_state=stored.to_storage_state() if stored else None,
                )

                if self._shared_browser is not None and self._shared_strategy in order:
                    context = await self._shared_browser.new_context(**context_kwargs(request))
                    strategy = self._shared_strategy
                    log_event(
                        logger=self.logger,
                        phase="browser",
                        message="Reusing shared browser for new context",
                        profile_id=profile_id,
                        strategy=strategy,
                    )
                else:
                    result = await launch_with_fallback(
                        playwright=self._playwright,
                        request=request,
                        order=order,
                        logger=self.logger,
                        strategies=self._strategies,
                    )
                    context, strategy = result.context, result.strategy
                    if result.browser is not None:
                        self._shared_browser = result.browser
                        self._shared_strategy = result.strategy
                    if stored is not None and not result.state_preloaded:
                        await self._prime_context(context, stored, profile_id=profile_id)
            except BaseException:
                if not self._sessions:
                    await self._shutdown_driver()
                else:
                    self.state = ManagerState.READY
                raise

            self._sessions[profile_id] = _ManagedContext(profile_id=profile_id, context=context, strategy=strategy)
            self.state = ManagerState.READY
            return context

    async def _prime_context(self, context: BrowserContext, state: SessionState, *, profile_id: str) -> None:
        cookies: List[dict] = []
        for cookie in state.cookies:
            cleaned = {key: value for key, value in cookie.items() if value is not None}
            if not isinstance(cleaned.get("expires"), (int, float)):
                cleaned.pop("expires", None)
            cookies.append(cleaned)

        if cookies:
            try:
                await context.add_cookies(cookies)
            except Exception as exc:
                log_event(
                    logger=self.logger,
                    phase="session",
                    status="warn",
                    message="Unable to apply stored cookies",
                    profile_id=profile_id,
                    error=str(exc),
                )

        origins = {origin: entries for origin, entries in state.origins.items() if entries}
        if not origins:
            return

        priming_page = await context.new_page()
        try:
            for origin, entries in origins.items():
                try:
                    await priming_page.goto(origin, wait_until="domcontentloaded")
                    await priming_page.evaluate(
                        "entries => { for (const e of entries) { window.localStorage.setItem(e.name, e.value); } }",
                        entries,
                    )
                except Exception as exc:
                    log_event(
                        logger=self.logger,
                        phase="session",
                        status="warn",
                        message="Unable to restore local storage for origin",
                        profile_id=profile_id,
                        origin=origin,
                        error=str(exc),
                    )
        finally:
            await priming_page.close()

        log_event(
            logger=self.logger,
            phase="session",
            message="Primed context with stored session",
            profile_id=profile_id,
            cookie_count=len(cookies),
            origin_count=len(origins),
        )

    async def new_page(self, context: BrowserContext) -> Page:
        page = await context.new_page()
        page.set_default_timeout(self.timeout_ms)
        page.on("dialog", _accept_dialog)
        return page

    def screenshot_path(self, profile_id: str, label: str) -> Path:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        token = self.session_store.token_for(profile_id)
        return self.screenshots_dir / f"{token}_{label}_{timestamp}.png"

    async def capture_screenshot(self, page: Page, dest_path: Path) -> Path | None:
        dest_path = Path(dest_path)
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(dest_path), full_page=True)
        except Exception as exc:
            log_event(
                logger=self.logger,
                phase="screenshot",
                status="warn",
                message="Unable to capture screenshot",
                path=str(dest_path),
                error=str(exc),
            )
            return None
        log_event(logger=self.logger, phase="screenshot", message="Screenshot captured", path=str(dest_path))
        return dest_path

    async def persist(self, context: BrowserContext) -> Path | None:
        entry = self._find(context)
        if entry is None:
            log_event(
                logger=self.logger,
                phase="session",
                status="warn",
                message="Cannot persist session for an unmanaged context",
            )
            return None
        try:
            raw_state = await context.storage_state()
            path = self.session_store.save(entry.profile_id, SessionState.from_storage_state(raw_state))
        except Exception as exc:
            log_event(
                logger=self.logger,
                phase="session",
                status="warn",
                message="Unable to persist session state",
                profile_id=entry.profile_id,
                error=str(exc),
            )
            return None
        log_event(
            logger=self.logger,
            phase="session",
            message="Session state persisted",
            profile_id=entry.profile_id,
            storage_state=str(path),
        )
        return path

    async def close(self, context: BrowserContext) -> None:
        async with self._lock:
            entry = self._find(context)
            if entry is None:
                return
            await self._close_entry(entry)
            if not self._sessions:
                await self._shutdown_driver()

    async def close_all(self) -> None:
        async with self._lock:
            for entry in list(self._sessions.values()):
                await self._close_entry(entry)
            if self._playwright is not None or self._shared_browser is not None:
                await self._shutdown_driver()

    async def _close_entry(self, entry: _ManagedContext) -> None:
        context = entry.context
        await self.persist(context)
        try:
            await context.close()
        except Exception as exc:
            log_event(
                logger=self.logger,
                phase="browser",
                status="warn",
                message="Error while closing context",
                profile_id=entry.profile_id,
                error=str(exc),
            )
        self._sessions.pop(entry.profile_id, None)
        log_event(logger=self.logger, phase="browser", message="Context closed", profile_id=entry.profile_id)

    async def _shutdown_driver(self) -> None:
        self.state = ManagerState.CLOSING
        browser, self._shared_browser, self._shared_strategy = self._shared_browser, None, None
        playwright, self._playwright = self._playwright, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:
                log_event(
                    logger=self.logger,
                    phase="browser",
                    status="warn",
                    message="Error while closing shared browser",
                    error=str(exc),
                )
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as exc:
                log_event(
                    logger=self.logger,
                    phase="browser",
                    status="warn",
                    message="Error while stopping Playwright",
                    error=str(exc),
                )
        self.state = ManagerState.CLOSED

    def run_diagnostics(self) -> Dict[str, Any]:
        """Log and return host facts that usually explain a failed launch."""

        directories = {}
        for label, path in (("profiles_dir", self.profiles_dir), ("screenshots_dir", self.screenshots_dir)):
            directories[label] = {
                "path": str(path),
                "exists": path.exists(),
                "writable": path.exists() and os.access(path, os.W_OK),
            }

        executable = self.executable_path
        report: Dict[str, Any] = {
            "platform": platform.platform(),
            "python": sys.version.split()[0],
            "headless": self.headless,
            "launch_order": list(self.launch_order),
            "channel": self.channel,
            "executable_path": executable,
            "executable_exists": bool(executable and Path(executable).is_file()),
            "cdp_url_configured": bool(self.cdp_url),
            "system_browsers": {
                name: shutil.which(name)
                for name in ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser")
            },
            "directories": directories,
            "state": self.state.value,
            "active_profiles": self.active_profiles,
        }
        log_event(logger=self.logger, phase="diagnostics", message="Browser diagnostics", **report)
        return report
