import asyncio
import os
import shutil
from pathlib import Path
from typing import Optional

from .console import debug_print

# ============================================================
# CONSTANTS
# ============================================================
GROK_HOME_URL = "https://grok.com/"
TEMP_CREDENTIAL_COOKIES = ("x-anonuserid", "x-challenge", "x-signature")
# Kept below the pool's extraction bound so browser launch and page load fit inside it.
COOKIE_POLL_TIMEOUT_SECONDS = 6.0

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]

# ============================================================
# HELPERS
# ============================================================


def find_chrome_executable(config: Optional[dict] = None) -> Optional[str]:
    configured = (
        str((config or {}).get("chrome_path") or "").strip()
        or str(os.environ.get("CHROME_PATH") or "").strip()
    )
    if configured and Path(configured).exists():
        return configured

    candidates = [
        Path(os.environ.get("PROGRAMFILES", r"C:\Program Files"))
        / "Google"
        / "Chrome"
        / "Application"
        / "chrome.exe",
        Path(os.environ.get("PROGRAMFILES(X86)", r"C:\Program Files (x86)"))
        / "Google"
        / "Chrome"
        / "Application"
        / "chrome.exe",
        Path("/usr/bin/chromium"),
    ]
    for candidate in candidates:
        if candidate.exists():
            return str(candidate)

    for name in ("google-chrome", "chrome", "chromium", "chromium-browser"):
        resolved = shutil.which(name)
        if resolved:
            return resolved

    return None


def build_temp_credential(cookies: list) -> Optional[str]:
    """Join the anonymous-session cookies into one credential, or None if any is missing."""
    found = {}
    for cookie in cookies or []:
        name = str(cookie.get("name") or "")
        if name.lower() in TEMP_CREDENTIAL_COOKIES and cookie.get("value"):
            found[name.lower()] = f"{name}={cookie.get('value')}"
    if not all(name in found for name in TEMP_CREDENTIAL_COOKIES):
        return None
    return ";".join(found[name] for name in TEMP_CREDENTIAL_COOKIES)


async def poll_page_for_temp_credential(  # noqa: ANN001
    context,
    *,
    timeout_seconds: float = COOKIE_POLL_TIMEOUT_SECONDS,
    poll_interval_seconds: float = 0.5,
) -> Optional[str]:
    """
    Poll a browser context's cookies until the three anonymous-session cookies appear.

    Gives up after ``timeout_seconds`` so a stalled page never blocks the pool.
    """
    waited = 0.0
    while True:
        try:
            cookies = await context.cookies()
        except Exception as e:
            debug_print(f"  ⚠️ Failed to read browser cookies: {e}")
            cookies = []
        credential = build_temp_credential(cookies)
        if credential:
            return credential
        if waited >= timeout_seconds:
            return None
        await asyncio.sleep(poll_interval_seconds)
        waited += poll_interval_seconds


async def _extract_with_chrome(config: dict, timeout_seconds: float) -> Optional[str]:
    try:
        from playwright.async_api import async_playwright
    except Exception:
        return None

    chrome_path = find_chrome_executable(config)

    async with async_playwright() as p:
        browser = await p.chromium.launch(
            headless=True,
            executable_path=chrome_path or None,
            args=BROWSER_ARGS,
        )
        try:
            context = await browser.new_context()
            page = await context.new_page()
            await page.goto(GROK_HOME_URL, wait_until="domcontentloaded")
            return await poll_page_for_temp_credential(context, timeout_seconds=timeout_seconds)
        finally:
            await browser.close()


async def _extract_with_camoufox(config: dict, timeout_seconds: float) -> Optional[str]:
    try:
        from camoufox.async_api import AsyncCamoufox
    except Exception:
        return None

    headless = bool(config.get("camoufox_headless", True))
    async with AsyncCamoufox(headless=headless) as browser:
        context = await browser.new_context()
        page = await context.new_page()
        await page.goto(GROK_HOME_URL, wait_until="domcontentloaded")
        return await poll_page_for_temp_credential(context, timeout_seconds=timeout_seconds)


async def extract_temp_credential(
    config: Optional[dict] = None, *, timeout_seconds: float = COOKIE_POLL_TIMEOUT_SECONDS
) -> Optional[str]:
    """
    Open grok.com in a fresh headless browser and return the anonymous-session
    credential (``x-anonuserid=..;x-challenge=..;x-signature=..``), or None.
    """
    config = config or {}
    debug_print("🌐 Starting short-lived credential extraction...")
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds
    try:
        credential = await _extract_with_chrome(config, timeout_seconds)
    except Exception as e:
        debug_print(f"⚠️ Chrome credential extraction failed: {e}")
        credential = None

    remaining = deadline - loop.time()
    if not credential and remaining > 0:
        try:
            credential = await _extract_with_camoufox(config, remaining)
        except Exception as e:
            debug_print(f"⚠️ Camoufox credential extraction failed: {e}")
            credential = None

    if credential:
        debug_print(f"✅ Short-lived credential captured! ({len(credential)} chars)")
    else:
        debug_print("❌ Short-lived credential extraction produced nothing")
    return credential
