from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Sequence

from playwright.async_api import Browser, BrowserContext, Playwright

from invoice_downloader.common.json_logger import JsonLogger, log_event

BROWSER_ARGS = ["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]


class BrowserLaunchError(RuntimeError):
    """Raised when every launch strategy in the chain failed."""

    def __init__(self, attempts: Sequence[tuple[str, BaseException]]):
        self.attempts = [(name, str(exc)) for name, exc in attempts]
        detail = "; ".join(f"{name}: {error}" for name, error in self.attempts) or "no strategies"
        super().__init__(f"Browser launch failed after {len(self.attempts)} attempt(s): {detail}")


@dataclass
class LaunchRequest:
    profile_id: str
    user_data_dir: Path
    headless: bool = True
    timeout_ms: int = 30_000
    channel: str | None = None
    executable_path: str | None = None
    cdp_url: str | None = None
    storage_state: Dict[str, Any] | None = None
    args: list[str] = field(default_factory=lambda: list(BROWSER_ARGS))


@dataclass
class LaunchResult:
    strategy: str
    context: BrowserContext
    browser: Browser | None = None
    # True when the storage state was handed to new_context() directly.
    state_preloaded: bool = False


LaunchStrategy = Callable[..., Awaitable[LaunchResult]]


def context_kwargs(request: LaunchRequest) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"accept_downloads": True}
    if request.storage_state is not None:
        kwargs["storage_state"] = request.storage_state
    return kwargs


async def launch_persistent(*, playwright: Playwright, request: LaunchRequest, logger: JsonLogger) -> LaunchResult:
    request.user_data_dir.mkdir(parents=True, exist_ok=True)
    launch_kwargs: Dict[str, Any] = {
        "user_data_dir": str(request.user_data_dir),
        "headless": request.headless,
        "accept_downloads": True,
        "timeout": request.timeout_ms,
        "args": list(request.args),
    }
    if request.channel:
        launch_kwargs["channel"] = request.channel
    log_event(
        logger=logger,
        phase="browser",
        message="Launching persistent profile context",
        profile_id=request.profile_id,
        user_data_dir=str(request.user_data_dir),
        channel=request.channel,
        headless=request.headless,
    )
    context = await playwright.chromium.launch_persistent_context(**launch_kwargs)
    return LaunchResult(strategy="persistent", context=context)


async def connect_system_browser(
    *, playwright: Playwright, request: LaunchRequest, logger: JsonLogger
) -> LaunchResult:
    if not request.cdp_url:
        raise RuntimeError("no system browser debug endpoint configured (BROWSER_CDP_URL)")
    log_event(
        logger=logger,
        phase="browser",
        message="Connecting to system browser over CDP",
        profile_id=request.profile_id,
        cdp_url=request.cdp_url,
    )
    browser = await playwright.chromium.connect_over_cdp(request.cdp_url, timeout=request.timeout_ms)
    context = await browser.new_context(**context_kwargs(request))
    return LaunchResult(strategy="cdp", context=context, browser=browser, state_preloaded=True)


async def launch_managed(*, playwright: Playwright, request: LaunchRequest, logger: JsonLogger) -> LaunchResult:
    chrome_exec = (request.executable_path or "").strip() or None
    launch_kwargs: Dict[str, Any] = {
        "headless": request.headless,
        "timeout": request.timeout_ms,
        "args": list(request.args),
    }

    if chrome_exec and Path(chrome_exec).is_file():
        launch_kwargs["executable_path"] = chrome_exec
        log_event(
            logger=logger,
            phase="browser",
            message="Launching Playwright with local Chrome executable",
            executable_path=chrome_exec,
            headless=request.headless,
        )
    elif chrome_exec:
        log_event(
            logger=logger,
            phase="browser",
            status="warn",
            message="Configured local Chrome executable missing; falling back to bundled Chromium",
            executable_path=chrome_exec,
            headless=request.headless,
        )
    elif request.channel:
        launch_kwargs["channel"] = request.channel
        log_event(
            logger=logger,
            phase="browser",
            message="Launching Playwright with browser channel",
            channel=request.channel,
            headless=request.headless,
        )
    else:
        log_event(
            logger=logger,
            phase="browser",
            message="Launching Playwright with bundled Chromium",
            headless=request.headless,
        )

    try:
        browser = await playwright.chromium.launch(**launch_kwargs)
    except Exception as exc:
        if launch_kwargs.pop("executable_path", None) is None and launch_kwargs.pop("channel", None) is None:
            raise
        log_event(
            logger=logger,
            phase="browser",
            status="warn",
            message="Local Chrome launch failed; retrying with bundled Chromium",
            executable_path=chrome_exec,
            channel=request.channel,
            headless=request.headless,
            error=str(exc),
        )
        browser = await playwright.chromium.launch(**launch_kwargs)

    context = await browser.new_context(**context_kwargs(request))
    return LaunchResult(strategy="managed", context=context, browser=browser, state_preloaded=True)


STRATEGIES: Mapping[str, LaunchStrategy] = {
    "persistent": launch_persistent,
    "cdp": connect_system_browser,
    "managed": launch_managed,
}


async def launch_with_fallback(
    *,
    playwright: Playwright,
    request: LaunchRequest,
    order: Sequence[str],
    logger: JsonLogger,
    strategies: Mapping[str, LaunchStrategy] | None = None,
) -> LaunchResult:
    """Try each strategy in ``order``; the first that yields a context wins."""

    available = strategies or STRATEGIES
    attempts: list[tuple[str, BaseException]] = []
    for name in order:
        strategy = available.get(name)
        if strategy is None:
            attempts.append((name, KeyError(f"unknown launch strategy {name!r}")))
            continue
        try:
            result = await strategy(playwright=playwright, request=request, logger=logger)
        except Exception as exc:
            attempts.append((name, exc))
            log_event(
                logger=logger,
                phase="browser",
                status="warn",
                message="Launch strategy failed; trying next",
                profile_id=request.profile_id,
                strategy=name,
                error=str(exc),
            )
            continue
        log_event(
            logger=logger,
            phase="browser",
            message="Browser ready",
            profile_id=request.profile_id,
            strategy=name,
            failed_strategies=[attempt_name for attempt_name, _ in attempts],
        )
        return result

    error = BrowserLaunchError(attempts)
    log_event(
        logger=logger,
        phase="browser",
        status="error",
        message="All launch strategies failed",
        profile_id=request.profile_id,
        attempts=error.attempts,
    )
    raise error
