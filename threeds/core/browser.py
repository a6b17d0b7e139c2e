"""Playwright browser harness hosting 3DS frames as headless pages."""

import asyncio
import itertools
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from .config import get_settings
from .frames import FramePurpose, FrameRef, MessageHandler
from .logging import get_logger

logger = get_logger(__name__)

RELAY_BINDING = "__threeDSRelay"

# Forwards every window message (3DS Method and challenge pages post to
# their parent, which is the page itself here) to the Python binding.
RELAY_SCRIPT = """
window.addEventListener('message', function (event) {
    try {
        window.%s(event.data);
    } catch (e) {}
}, false);
""" % RELAY_BINDING

BROWSER_INFO_SCRIPT = """
() => ({
    userAgent: navigator.userAgent,
    language: navigator.language,
    screenWidth: window.screen.width,
    screenHeight: window.screen.height,
    colorDepth: window.screen.colorDepth,
    timezoneOffset: new Date().getTimezoneOffset(),
    javaEnabled: false
})
"""


class PlaywrightFrameHost:
    """Frame host backed by one Playwright browser context per attempt."""

    def __init__(self, context: BrowserContext, navigation_timeout: Optional[int] = None):
        self.context = context
        self.navigation_timeout = navigation_timeout or get_settings().frame_navigation_timeout
        self._pages: Dict[str, Page] = {}
        self._refs: Dict[str, FrameRef] = {}
        self._handler: Optional[MessageHandler] = None
        self._relay_installed = False
        self._relay_lock = asyncio.Lock()
        self._counter = itertools.count(1)

    @property
    def frame_count(self) -> int:
        return len(self._refs)

    def open_frames(self) -> List[FrameRef]:
        return list(self._refs.values())

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._handler = handler

    async def _ensure_relay(self) -> None:
        async with self._relay_lock:
            if self._relay_installed:
                return
            await self.context.expose_binding(RELAY_BINDING, self._relay)
            await self.context.add_init_script(RELAY_SCRIPT)
            self._relay_installed = True

    async def _relay(self, source: Dict[str, Any], data: Any) -> None:
        page = source.get("page")
        ref = self._ref_for_page(page)
        if self._handler is None:
            logger.warning("Frame message dropped, no handler registered")
            return
        await self._handler(data, ref)

    def _ref_for_page(self, page: Optional[Page]) -> Optional[FrameRef]:
        for frame_id, candidate in self._pages.items():
            if candidate is page:
                return self._refs.get(frame_id)
        return None

    async def open(self, purpose: FramePurpose, url: str) -> FrameRef:
        await self._ensure_relay()

        for existing in [ref for ref in self._refs.values() if ref.purpose == purpose]:
            await self.close(existing)

        ref = FrameRef(frame_id=f"{purpose.value}-{next(self._counter)}", purpose=purpose, url=url)
        page = await self.context.new_page()
        self._pages[ref.frame_id] = page
        self._refs[ref.frame_id] = ref

        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout)
            logger.info("Frame loaded", frame_id=ref.frame_id, purpose=purpose.value)
        except PlaywrightError as e:
            # The frame stays registered; the fallback timer covers a silent page
            logger.warning("Frame navigation failed", frame_id=ref.frame_id, url=url, error=str(e))

        return ref

    async def close(self, ref: FrameRef) -> None:
        page = self._pages.pop(ref.frame_id, None)
        self._refs.pop(ref.frame_id, None)
        if page is None:
            return
        try:
            await page.close()
        except PlaywrightError as e:
            logger.debug("Frame page already closed", frame_id=ref.frame_id, error=str(e))
        logger.debug("Frame closed", frame_id=ref.frame_id)

    async def close_all(self) -> None:
        for ref in list(self._refs.values()):
            await self.close(ref)

    async def dispose(self) -> None:
        """Close every frame and the browser context."""
        await self.close_all()
        await self.context.close()


class BrowserManager:
    """Manages Playwright browser lifecycle."""

    def __init__(self):
        """Initialize browser manager."""
        self.settings = get_settings()
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self._start_lock = asyncio.Lock()

    async def start(self) -> None:
        """Start Playwright and launch browser."""
        async with self._start_lock:
            if self.browser:
                logger.warning("Browser already started")
                return

            logger.info("Starting Playwright browser", headless=self.settings.headless)

            self.playwright = await async_playwright().start()
            self.browser = await self.playwright.chromium.launch(
                headless=self.settings.headless,
                timeout=self.settings.browser_launch_timeout,
                args=[
                    '--no-sandbox',
                    '--disable-setuid-sandbox',
                    '--disable-dev-shm-usage',
                ]
            )

            logger.info("Browser started successfully")

    async def stop(self) -> None:
        """Stop browser and cleanup resources."""
        if not self.browser:
            logger.warning("Browser not running")
            return

        logger.info("Stopping browser")

        await self.browser.close()
        self.browser = None

        if self.playwright:
            await self.playwright.stop()
            self.playwright = None

        logger.info("Browser stopped")

    async def new_context(self) -> BrowserContext:
        """
        Create an isolated browser context for one attempt.

        Raises:
            RuntimeError: If browser not started
        """
        if not self.browser:
            raise RuntimeError("Browser not started. Call start() first.")

        context = await self.browser.new_context(
            viewport={'width': 1280, 'height': 720},
            java_script_enabled=True,
            accept_downloads=False,
        )
        context.set_default_navigation_timeout(self.settings.frame_navigation_timeout)
        return context

    async def new_frame_host(self) -> PlaywrightFrameHost:
        context = await self.new_context()
        return PlaywrightFrameHost(context, navigation_timeout=self.settings.frame_navigation_timeout)

    async def read_browser_info(self) -> Dict[str, Any]:
        """Read the real browser profile for the fallback fingerprint."""
        context = await self.new_context()
        try:
            page = await context.new_page()
            return await page.evaluate(BROWSER_INFO_SCRIPT)
        finally:
            await context.close()


# Global instance with thread safety
_browser_manager: Optional[BrowserManager] = None
_browser_lock = threading.Lock()


def get_browser_manager() -> BrowserManager:
    """Get or create the global BrowserManager instance (thread-safe)."""
    global _browser_manager

    if _browser_manager is None:
        with _browser_lock:
            if _browser_manager is None:
                _browser_manager = BrowserManager()

    return _browser_manager


@asynccontextmanager
async def managed_browser():
    """
    Context manager for browser lifecycle.

    Usage:
        async with managed_browser() as browser:
            frame_host = await browser.new_frame_host()
    """
    browser = get_browser_manager()
    try:
        await browser.start()
        yield browser
    finally:
        await browser.stop()
