from __future__ import annotations

import os
from pathlib import Path

from playwright.async_api import Browser


CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-sync",
    "--metrics-recording-only",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-features=site-per-process",
    # Avoid renderer crashes when /dev/shm is tiny.
    "--disable-dev-shm-usage",
]


def find_chromium_executable() -> str | None:
    """System Chromium if one is installed, else None (Playwright then uses its bundled build)."""
    env_path = os.getenv("CHROMIUM_PATH")
    if env_path and Path(env_path).exists():
        return env_path

    candidates = [
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    ]
    for path in candidates:
        if Path(path).exists():
            return path
    return None


def is_browser_infra_error(exc: BaseException) -> bool:
    """True when the failure is the browser falling over, not the script's assertion."""
    name = type(exc).__name__
    msg = str(exc or "").lower()

    if name == "TargetClosedError":
        return True
    if "target page, context or browser has been closed" in msg:
        return True
    if "browser has been closed" in msg:
        return True

    # Renderer crashes are resource pressure on the host.
    if "page crashed" in msg or "target crashed" in msg:
        return True

    # Playwright driver transport died (Chromium crash, OOM, shm).
    if "connection closed while reading from the driver" in msg:
        return True
    if "connection closed while writing to the driver" in msg:
        return True
    if "pipe closed by peer" in msg:
        return True
    if "executable doesn't exist" in msg:
        return True

    return False


async def launch_chromium(p) -> Browser:
    kwargs = {"headless": True, "args": list(CHROMIUM_ARGS)}
    chromium_path = find_chromium_executable()
    if chromium_path:
        kwargs["executable_path"] = chromium_path
    return await p.chromium.launch(**kwargs)
