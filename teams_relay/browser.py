"""
teams_relay/browser.py — Playwright driver used by the auth orchestrator.

One BrowserSession wraps one Chromium process, one context and one page.
The orchestrator decides *when* to launch and close it; this module only
knows *how* to drive Teams:

  - restore a SessionSnapshot into a fresh context
  - navigate, read the URL, look for DOM markers
  - pre-fill the sign-in e-mail (password / MFA stay manual)
  - run a search through the Teams UI and capture the Substrate response
  - export the live context back into a SessionSnapshot
"""
import asyncio
import logging
import sys
from typing import Iterable, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Locator,
    Page,
    Playwright,
    async_playwright,
)

from teams_relay import config
from teams_relay.models import SessionSnapshot

log = logging.getLogger("teams_relay.browser")

VIEWPORT = {"width": 1280, "height": 800}

SEARCH_API_URL = "substrate.office.com/searchservice/api/v2/query"

SEARCH_INPUT_SELECTORS = [
    '[data-tid="searchInputField"]',
    '[data-tid="app-search-input"]',
    'input[data-tid*="search"]',
    'input[placeholder*="Search" i]',
    'input[aria-label*="Search" i]',
    'input[type="search"]',
    '[data-tid="search-box"]',
    '[role="search"] input',
]

SEARCH_TRIGGER_SELECTORS = [
    '[data-tid="search-button"]',
    '[data-tid="app-bar-search"]',
    'button[aria-label*="Search" i]',
    '[aria-label*="Search" i][role="button"]',
]

_EMAIL_INPUT   = 'input[type="email"]'
_SUBMIT_BUTTON = "#idSIButton9"


class BrowserSession:
    """A running Chromium with a single Teams page."""

    def __init__(self, playwright: Playwright, browser: Browser, context: BrowserContext, page: Page) -> None:
        self._playwright = playwright
        self._browser    = browser
        self.context     = context
        self.page        = page
        self._closed     = False

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    @classmethod
    async def launch(cls, headless: bool, snapshot: Optional[SessionSnapshot] = None) -> "BrowserSession":
        """Start Chromium; restore `snapshot` into the new context when given."""
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=headless)
            if snapshot is not None:
                log.info("Restoring saved browser session (%d cookies)", len(snapshot.cookies))
                context = await browser.new_context(storage_state=snapshot.to_storage_state(), viewport=VIEWPORT)
            else:
                log.info("No usable saved session — starting a fresh browser context.")
                context = await browser.new_context(viewport=VIEWPORT)
            page = await context.new_page()
        except BaseException:
            await playwright.stop()
            raise
        return cls(playwright, browser, context, page)

    async def close(self) -> None:
        """Close everything. Safe to call twice; never raises a Playwright error."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._browser.close()
        except PlaywrightError as exc:
            log.debug("Browser close failed: %s", exc)
        finally:
            await self._playwright.stop()

    # ─── Page checks ──────────────────────────────────────────────────────────

    async def goto(self, url: str) -> None:
        await self.page.goto(url, wait_until="domcontentloaded")

    def current_url(self) -> str:
        return self.page.url

    async def has_any_of(self, selectors: Iterable[str]) -> bool:
        for selector in selectors:
            try:
                if await self.page.locator(selector).count() > 0:
                    return True
            except PlaywrightError:
                continue
        return False

    async def wait(self, seconds: float) -> None:
        await self.page.wait_for_timeout(seconds * 1000)

    # ─── Session export / reset ───────────────────────────────────────────────

    async def export_snapshot(self) -> SessionSnapshot:
        state = await self.context.storage_state()
        return SessionSnapshot.model_validate(state)

    async def clear_cookies(self) -> None:
        await self.context.clear_cookies()

    # ─── Sign-in page ─────────────────────────────────────────────────────────

    async def prefill_email(self, email: str) -> bool:
        """Type `email` on the Microsoft sign-in page and press Next."""
        try:
            await self.page.wait_for_selector(_EMAIL_INPUT, timeout=10_000)
            await self.page.fill(_EMAIL_INPUT, email)
            await self.page.click(_SUBMIT_BUTTON)
        except PlaywrightError as exc:
            log.debug("E-mail pre-fill skipped: %s", exc)
            return False
        log.info("Pre-filled sign-in e-mail — finish password / MFA in the browser window.")
        return True

    # ─── Search through the UI ────────────────────────────────────────────────

    async def _find_visible(self, selectors: Iterable[str]) -> Optional[Locator]:
        for selector in selectors:
            locator = self.page.locator(selector).first
            try:
                if await locator.count() > 0 and await locator.is_visible():
                    return locator
            except PlaywrightError:
                continue
        return None

    async def _open_search(self) -> Locator:
        await self.page.wait_for_load_state("domcontentloaded")
        await self.wait(config.NAVIGATION_SETTLE_DELAY)

        search_input = await self._find_visible(SEARCH_INPUT_SELECTORS)
        if search_input:
            return search_input

        modifier = "Meta" if sys.platform == "darwin" else "Control"
        for shortcut in (f"{modifier}+e", f"{modifier}+f", "F3"):
            await self.page.keyboard.press(shortcut)
            await self.wait(1.0)
            search_input = await self._find_visible(SEARCH_INPUT_SELECTORS)
            if search_input:
                return search_input
            await self.page.keyboard.press("Escape")

        trigger = await self._find_visible(SEARCH_TRIGGER_SELECTORS)
        if trigger:
            await trigger.click()
            await self.wait(1.0)
            search_input = await self._find_visible(SEARCH_INPUT_SELECTORS)
            if search_input:
                return search_input

        raise PlaywrightError("Could not find the Teams search box. The Teams UI may have changed.")

    async def search(self, query: str, timeout: float = config.SEARCH_RESULT_TIMEOUT) -> dict:
        """
        Type `query` into the Teams search box and return the JSON body of the
        Substrate v2 query the web client fires in response.

        Raises playwright TimeoutError if no such response arrives in time.
        """
        search_input = await self._open_search()
        await search_input.fill(query, timeout=5_000)

        async with self.page.expect_response(
            lambda response: SEARCH_API_URL in response.url and response.request.method == "POST",
            timeout=timeout * 1000,
        ) as response_info:
            await self.page.keyboard.press("Enter")

        response = await response_info.value
        if not response.ok:
            raise PlaywrightError(f"Teams search request failed with HTTP {response.status}")
        data = await response.json()
        log.info("Captured search response from the Teams web client")
        return data if isinstance(data, dict) else {}


async def close_quietly(session: Optional[BrowserSession]) -> None:
    """close() bounded by a timeout, for cleanup paths."""
    if session is None:
        return
    try:
        await asyncio.wait_for(session.close(), timeout=15)
    except asyncio.TimeoutError:
        log.warning("Browser did not close within 15s; abandoning it.")
