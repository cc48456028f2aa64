"""Playwright browser lifecycle: launch strategies, contexts and stored sessions."""

from typing import Any

__all__ = ["BrowserSessionManager", "SessionStore", "BrowserLaunchError"]


def __getattr__(name: str) -> Any:
    if name == "BrowserSessionManager":
        from .manager import BrowserSessionManager as _BrowserSessionManager

        return _BrowserSessionManager
    if name == "SessionStore":
        from .session_store import SessionStore as _SessionStore

        return _SessionStore
    if name == "BrowserLaunchError":
        from .launch import BrowserLaunchError as _BrowserLaunchError

        return _BrowserLaunchError
    raise AttributeError(name)
