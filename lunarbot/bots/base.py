"""Automation contract every storefront adapter implements, plus the browser session they share."""
import base64
import logging
import random
import time
from typing import Any, Optional, Protocol, runtime_checkable

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)

from lunarbot.errors import BotInitializationError
from lunarbot.models import BotConfig, BotResult, CheckoutInfo, ProxyConfig

logger = logging.getLogger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
]

VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1680, "height": 1050},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
]

LOCALES = ["nl-NL", "nl-BE", "en-US", "en-GB"]

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]


@runtime_checkable
class StoreBot(Protocol):
    """Operations every storefront adapter exposes.

    Every operation returns a BotResult instead of raising. ``cleanup`` must be
    safe to call at any point, including after a failed ``initialize``.
    """

    store_type: str

    async def initialize(self) -> BotResult: ...

    async def login(self, username: str, password: str) -> BotResult: ...

    async def search_products(self, query: str) -> BotResult: ...

    async def get_product_details(self, url: str) -> BotResult: ...

    async def add_to_cart(self, product_id: str, quantity: int = 1) -> BotResult: ...

    async def proceed_to_checkout(self) -> BotResult: ...

    async def fill_checkout_info(self, info: CheckoutInfo) -> BotResult: ...

    async def complete_purchase(self) -> BotResult: ...

    async def is_logged_in(self) -> bool: ...

    async def cleanup(self) -> None: ...

    def status(self) -> dict[str, Any]: ...


class BrowserSession:
    """One isolated Chromium browser, context and page.

    Adapters own a session each, so no two bots ever share browser state.
    """

    def __init__(self, bot_config: BotConfig, proxy: Optional[ProxyConfig] = None):
        self.config = bot_config
        self.proxy = proxy
        self._playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self.last_activity: Optional[float] = None
        self.user_agent = bot_config.user_agent or random.choice(USER_AGENTS)
        self.viewport = bot_config.viewport or random.choice(VIEWPORTS)
        self.locale = random.choice(LOCALES)

    @property
    def is_open(self) -> bool:
        return self._page is not None and not self._page.is_closed()

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Bot not initialized")
        return self._page

    def touch(self, *_: Any) -> None:
        self.last_activity = time.time()

    async def open(self) -> None:
        """Launch the browser. Raises BotInitializationError and releases everything on failure."""
        launch_options: dict[str, Any] = {
            "headless": self.config.headless,
            "args": LAUNCH_ARGS,
        }
        if self.proxy:
            launch_options["proxy"] = {
                "server": self.proxy.server,
                "username": self.proxy.username,
                "password": self.proxy.password,
            }

        try:
            self._playwright = await async_playwright().start()
            self.browser = await self._playwright.chromium.launch(**launch_options)
            self.context = await self.browser.new_context(
                user_agent=self.user_agent,
                viewport=self.viewport,
                locale=self.locale,
                timezone_id="Europe/Brussels",
            )
            self.context.set_default_timeout(self.config.timeout)
            self._page = await self.context.new_page()
            self._page.on("request", self.touch)
            self._page.on("response", self.touch)
            self._page.on("load", self.touch)
            self.touch()
            logger.info(
                f"Browser session opened (headless={self.config.headless}, "
                f"proxy={self.proxy.key if self.proxy else 'none'}, locale={self.locale})"
            )
        except Exception as e:
            await self.close()
            raise BotInitializationError(f"Failed to launch browser: {e}") from e

    async def close(self) -> None:
        """Release page, context, browser and driver. Never raises."""
        for name, resource in (
            ("page", self._page),
            ("context", self.context),
            ("browser", self.browser),
        ):
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                logger.debug(f"Error closing {name}: {e}")
        self._page = None
        self.context = None
        self.browser = None
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"Error stopping playwright: {e}")
            self._playwright = None

    async def goto(self, url: str) -> None:
        self.touch()
        await self.page.goto(url, wait_until="domcontentloaded", timeout=self.config.timeout)

    async def screenshot(self) -> Optional[str]:
        """Base64 PNG of the current page, or None when no page is available."""
        if not self.is_open:
            return None
        try:
            png = await self.page.screenshot(full_page=False)
            return base64.b64encode(png).decode("ascii")
        except Exception as e:
            logger.debug(f"Screenshot failed: {e}")
            return None

    async def is_visible(self, selector: str) -> bool:
        try:
            element = await self.page.query_selector(selector)
            return element is not None and await element.is_visible()
        except Exception:
            return False

    async def wait_for(self, selector: str, timeout: Optional[int] = None) -> bool:
        try:
            await self.page.wait_for_selector(selector, timeout=timeout or self.config.timeout)
            return True
        except Exception:
            return False
