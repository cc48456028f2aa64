import asyncio
import json
from pathlib import Path

import pytest

from _fakes import FakeContext, FakePlaywright, FakeSite, logged_events, make_logger, make_manager
from invoice_downloader.browser.launch import (
    BrowserLaunchError,
    LaunchRequest,
    LaunchResult,
    launch_persistent,
    launch_with_fallback,
)
from invoice_downloader.browser.manager import ContextOptions, ManagerState
from invoice_downloader.browser.session_store import SessionState


def _stored_state() -> SessionState:
    return SessionState.from_storage_state(
        {
            "cookies": [
                {"name": "session-id", "value": "262-1", "domain": ".amazon.de", "path": "/", "expires": None}
            ],
            "origins": [],
        }
    )


@pytest.mark.asyncio
async def test_fallback_chain_uses_first_working_strategy(tmp_path: Path) -> None:
    playwright = FakePlaywright(fail=("persistent",))
    logger = make_logger()
    request = LaunchRequest(profile_id="amazon", user_data_dir=tmp_path / "amazon", cdp_url="http://127.0.0.1:9222")

    result = await launch_with_fallback(
        playwright=playwright, request=request, order=("persistent", "cdp", "managed"), logger=logger
    )

    assert result.strategy == "cdp"
    assert result.browser is playwright.chromium.browsers[0]
    assert [name for name, _ in playwright.chromium.calls] == ["persistent", "cdp"]
    assert any("Launch strategy failed" in line for line in logged_events(logger))


@pytest.mark.asyncio
async def test_cdp_without_endpoint_falls_through_to_managed(tmp_path: Path) -> None:
    playwright = FakePlaywright()
    request = LaunchRequest(profile_id="amazon", user_data_dir=tmp_path / "amazon")

    result = await launch_with_fallback(
        playwright=playwright, request=request, order=("cdp", "managed"), logger=make_logger()
    )

    assert result.strategy == "managed"
    assert [name for name, _ in playwright.chromium.calls] == ["managed"]


@pytest.mark.asyncio
async def test_all_strategies_failing_reports_every_attempt(tmp_path: Path) -> None:
    playwright = FakePlaywright(fail=("persistent", "cdp", "managed"))
    request = LaunchRequest(profile_id="amazon", user_data_dir=tmp_path / "amazon", cdp_url="http://127.0.0.1:9222")

    with pytest.raises(BrowserLaunchError) as excinfo:
        await launch_with_fallback(
            playwright=playwright, request=request, order=("persistent", "cdp", "managed"), logger=make_logger()
        )

    assert [name for name, _ in excinfo.value.attempts] == ["persistent", "cdp", "managed"]
    assert "profile directory is locked" in str(excinfo.value)


@pytest.mark.asyncio
async def test_acquire_context_is_idempotent_per_profile(tmp_path: Path) -> None:
    playwright = FakePlaywright()
    manager = make_manager(tmp_path, playwright)

    first = await manager.acquire_context("amazon")
    second = await manager.acquire_context("amazon")

    assert first is second
    assert len(playwright.chromium.calls) == 1
    assert manager.state is ManagerState.READY
    _, kwargs = playwright.chromium.calls[0]
    assert kwargs["user_data_dir"] == str(tmp_path / "profiles" / "amazon")
    assert kwargs["args"] == ["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]


@pytest.mark.asyncio
async def test_persistent_context_is_primed_with_stored_cookies(tmp_path: Path) -> None:
    playwright = FakePlaywright()
    manager = make_manager(tmp_path, playwright)
    manager.session_store.save("amazon", _stored_state())

    context = await manager.acquire_context("amazon")

    assert context.added_cookies == [{"name": "session-id", "value": "262-1", "domain": ".amazon.de", "path": "/"}]


@pytest.mark.asyncio
async def test_managed_context_receives_storage_state_directly(tmp_path: Path) -> None:
    playwright = FakePlaywright()
    manager = make_manager(tmp_path, playwright, launch_order=("managed",))
    manager.session_store.save("amazon", _stored_state())

    context = await manager.acquire_context("amazon")

    assert context.options["storage_state"]["cookies"][0]["name"] == "session-id"
    assert context.options["accept_downloads"] is True
    assert context.added_cookies == []


@pytest.mark.asyncio
async def test_corrupt_session_file_starts_fresh(tmp_path: Path) -> None:
    playwright = FakePlaywright()
    logger = make_logger()
    manager = make_manager(tmp_path, playwright, logger=logger)
    path = manager.session_store.path_for("amazon")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{broken", encoding="utf-8")

    context = await manager.acquire_context("amazon")

    assert context.added_cookies == []
    assert any("Stored session unusable" in line for line in logged_events(logger))


@pytest.mark.asyncio
async def test_shared_browser_is_reused_for_second_profile(tmp_path: Path) -> None:
    playwright = FakePlaywright()
    manager = make_manager(tmp_path, playwright, launch_order=("managed",))

    first = await manager.acquire_context("amazon")
    second = await manager.acquire_context("amazon-business")

    assert first is not second
    assert len(playwright.chromium.browsers) == 1
    assert playwright.chromium.browsers[0].contexts == [first, second]


@pytest.mark.asyncio
async def test_close_flushes_state_and_stops_driver_once_empty(tmp_path: Path) -> None:
    playwright = FakePlaywright()
    manager = make_manager(tmp_path, playwright, launch_order=("managed",))
    context = await manager.acquire_context("amazon")
    context.cookies = [{"name": "session-id", "value": "fresh", "domain": ".amazon.de", "path": "/"}]

    await manager.close(context)
    await manager.close(context)

    assert context.closed is True
    assert playwright.chromium.browsers[0].closed is True
    assert playwright.stopped is True
    assert manager.state is ManagerState.CLOSED
    saved = json.loads(manager.session_store.path_for("amazon").read_text(encoding="utf-8"))
    assert saved["cookies"][0]["value"] == "fresh"


@pytest.mark.asyncio
async def test_closed_manager_can_launch_again(tmp_path: Path) -> None:
    playwright = FakePlaywright()
    manager = make_manager(tmp_path, playwright)
    context = await manager.acquire_context("amazon")
    await manager.close_all()

    again = await manager.acquire_context("amazon")

    assert again is not context
    assert playwright.starts == 2
    assert manager.state is ManagerState.READY


@pytest.mark.asyncio
async def test_launch_failure_leaves_manager_closed(tmp_path: Path) -> None:
    playwright = FakePlaywright(fail=("persistent",))
    manager = make_manager(tmp_path, playwright)

    with pytest.raises(BrowserLaunchError):
        await manager.acquire_context("amazon", ContextOptions(launch_order=("persistent",)))

    assert manager.state is ManagerState.CLOSED
    assert playwright.stopped is True


@pytest.mark.asyncio
async def test_new_page_registers_dialog_handler_and_timeout(tmp_path: Path) -> None:
    manager = make_manager(tmp_path, FakePlaywright())
    context = await manager.acquire_context("amazon")

    page = await manager.new_page(context)

    assert "dialog" in page.handlers
    assert page.default_timeout == 1_000


@pytest.mark.asyncio
async def test_capture_screenshot_is_best_effort(tmp_path: Path) -> None:
    manager = make_manager(tmp_path, FakePlaywright())
    context = await manager.acquire_context("amazon")
    page = await manager.new_page(context)

    saved = await manager.capture_screenshot(page, manager.screenshot_path("amazon", "captcha"))

    assert saved is not None and saved.exists()

    async def _broken_screenshot(path: str, full_page: bool = False) -> None:
        raise RuntimeError("Target page, context or browser has been closed")

    page.screenshot = _broken_screenshot
    assert await manager.capture_screenshot(page, tmp_path / "screenshots" / "late.png") is None


def test_run_diagnostics_reports_directories(tmp_path: Path) -> None:
    (tmp_path / "profiles").mkdir()
    manager = make_manager(tmp_path, FakePlaywright(FakeSite()))

    report = manager.run_diagnostics()

    assert report["directories"]["profiles_dir"]["exists"] is True
    assert report["directories"]["screenshots_dir"]["exists"] is False
    assert report["launch_order"] == ["persistent"]
    assert report["cdp_url_configured"] is False


@pytest.mark.asyncio
async def test_close_waits_for_concurrent_acquire_and_keeps_driver(tmp_path: Path) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(**_: object) -> LaunchResult:
        started.set()
        await release.wait()
        return LaunchResult(strategy="slow", context=FakeContext(FakeSite()))

    playwright = FakePlaywright()
    manager = make_manager(tmp_path, playwright, strategies={"persistent": launch_persistent, "slow": slow})
    first = await manager.acquire_context("a")

    acquiring = asyncio.create_task(manager.acquire_context("b", ContextOptions(launch_order=("slow",))))
    await started.wait()
    closing = asyncio.create_task(manager.close(first))
    await asyncio.sleep(0)
    release.set()
    second = await acquiring
    await closing

    assert first.closed is True
    assert second.closed is False
    assert manager.active_profiles == ["b"]
    assert playwright.stopped is False
    assert playwright.starts == 1
    assert manager.state is ManagerState.READY

    await manager.close_all()
    assert playwright.stopped is True
    assert manager.state is ManagerState.CLOSED
