"""bol.com storefront adapter."""
import logging
from typing import Any, Optional
from urllib.parse import quote_plus

from lunarbot.bots.base import BrowserSession
from lunarbot.bots.retry import human_click, human_delay, human_type
from lunarbot.errors import BotInitializationError
from lunarbot.models import BotConfig, BotResult, CheckoutInfo, ProxyConfig
from lunarbot.parse.page_state import extract_order_reference, is_captcha_page, is_login_page
from lunarbot.parse.product_page import parse_product_page, parse_search_results

logger = logging.getLogger(__name__)

BASE_URL = "https://www.bol.com"

SELECTORS = {
    "search_item": ".product-item, .product-tile, .search-result-item",
    "search_name": ".product-title, .product-name, h3, h4",
    "search_price": ".promo-price, .price, .product-price",
    "search_stock": ".stock, .availability, .product-delivery",
    "product_page": ".pdp-header, .product-details, .product-info, h1",
    "product_name": ".pdp-header__title, .product-title, .product-name, h1",
    "product_price": ".promo-price, .price-block__price, .price, .pdp-price",
    "product_sku": "[data-sku], .product-sku, .ean",
    "product_image": ".pdp-media img, .product-image img, .product-gallery img",
    "buy_button": ".buy-block__cta, [data-test='add-to-cart'], .add-to-cart, .btn-add-to-cart",
    "quantity": ".quantity-select, .qty-select, select[name='quantity']",
    "cart_count": ".cart-count, .cart-quantity, [data-test='basket-count']",
    "checkout_button": "[data-test='continue-to-checkout'], .checkout-btn, .btn-checkout",
    "login_email": "input[type='email'], input[name='email'], input[name='j_username']",
    "login_password": "input[type='password'], input[name='password'], input[name='j_password']",
    "login_submit": "button[type='submit'], .login-btn, .btn-login",
    "account_marker": "[data-test='account-name'], .account-menu__name, a[href*='/account/overzicht']",
    "place_order": "[data-test='place-order'], .place-order, .complete-order, .btn-purchase",
    "order_confirmed": ".order-confirmation, .success-message, .order-complete, [data-test='order-confirmation']",
}

CHECKOUT_FIELDS = [
    ("email", "input[type='email'], input[name='email']"),
    ("first_name", "input[name='firstName'], input[name='first_name']"),
    ("last_name", "input[name='lastName'], input[name='last_name']"),
    ("address", "input[name='address'], input[name='street']"),
    ("city", "input[name='city']"),
    ("postal_code", "input[name='postalCode'], input[name='zip']"),
    ("phone", "input[name='phone'], input[type='tel']"),
]


class BolComBot:
    """Drives www.bol.com through one isolated browser session."""

    store_type = "bol.com"

    def __init__(self, bot_config: BotConfig, proxy: Optional[ProxyConfig] = None):
        self.config = bot_config
        self.proxy = proxy
        self.session = BrowserSession(bot_config, proxy)
        self._logged_in = False

    async def _pause(self, factor: float = 1.0) -> None:
        base = int(self.config.delay_between_actions * factor)
        await human_delay(base, base * 2)

    async def _failure(self, message: str, exc: Exception) -> BotResult:
        logger.warning(f"[{self.store_type}] {message}: {exc}")
        return BotResult.fail(
            message,
            error=str(exc),
            retryable=True,
            screenshot=await self.session.screenshot(),
        )

    async def initialize(self) -> BotResult:
        try:
            await self.session.open()
        except BotInitializationError as e:
            return BotResult.fail("Failed to initialize bot", error=str(e))
        return BotResult.ok("Bot initialized successfully")

    async def login(self, username: str, password: str) -> BotResult:
        try:
            await self.session.goto(f"{BASE_URL}/nl/nl/account/login/")
            await self._pause()
            page = self.session.page

            if is_captcha_page(await page.content()):
                return BotResult.fail(
                    "Login blocked by captcha",
                    screenshot=await self.session.screenshot(),
                )

            email_field = await page.query_selector(SELECTORS["login_email"])
            password_field = await page.query_selector(SELECTORS["login_password"])
            if email_field is None or password_field is None:
                raise RuntimeError("Login form not found")

            await human_type(email_field, username)
            await self._pause(0.5)
            await human_type(password_field, password)
            await self._pause(0.5)

            submit = await page.query_selector(SELECTORS["login_submit"])
            if submit is not None:
                await human_click(submit)
            else:
                await password_field.press("Enter")
            await self._pause(2)

            self._logged_in = await self.is_logged_in()
            if self._logged_in:
                return BotResult.ok("Login successful")
            return BotResult.fail(
                "Login failed - invalid credentials or captcha required",
                screenshot=await self.session.screenshot(),
            )
        except Exception as e:
            return await self._failure("Login failed", e)

    async def is_logged_in(self) -> bool:
        if not self.session.is_open:
            return False
        page = self.session.page
        if await self.session.is_visible(SELECTORS["account_marker"]):
            return True
        try:
            html = await page.content()
        except Exception as e:
            logger.debug(f"Could not read page content: {e}")
            return False
        return self._logged_in and not is_login_page(html, page.url)

    async def search_products(self, query: str) -> BotResult:
        try:
            await self.session.goto(f"{BASE_URL}/nl/nl/s/?searchtext={quote_plus(query)}")
            await self._pause()
            await self.session.wait_for(SELECTORS["search_item"])
            products = parse_search_results(
                await self.session.page.content(),
                BASE_URL,
                item_selectors=SELECTORS["search_item"],
                name_selectors=SELECTORS["search_name"],
                price_selectors=SELECTORS["search_price"],
                stock_selectors=SELECTORS["search_stock"],
            )
            return BotResult.ok(
                f"Found {len(products)} products",
                products=[p.model_dump() for p in products],
            )
        except Exception as e:
            return await self._failure("Failed to search products", e)

    async def get_product_details(self, url: str) -> BotResult:
        try:
            await self.session.goto(url)
            await self._pause()
            await self.session.wait_for(SELECTORS["product_page"])
            page = self.session.page
            product = parse_product_page(
                await page.content(),
                page.url,
                name_selectors=SELECTORS["product_name"],
                price_selectors=SELECTORS["product_price"],
                buy_selectors=SELECTORS["buy_button"],
                sku_selectors=SELECTORS["product_sku"],
                image_selectors=SELECTORS["product_image"],
            )
            if product is None:
                raise RuntimeError(f"Product details not found on {url}")
            return BotResult.ok("Product details retrieved", product=product.model_dump())
        except Exception as e:
            return await self._failure("Failed to get product details", e)

    async def add_to_cart(self, product_id: str, quantity: int = 1) -> BotResult:
        try:
            url = product_id if product_id.startswith("http") else f"{BASE_URL}/nl/nl/p/-/{product_id}/"
            await self.session.goto(url)
            await self._pause()
            page = self.session.page

            if not await self.session.is_visible(SELECTORS["buy_button"]):
                return BotResult.fail("Product is not available")

            if quantity > 1:
                quantity_select = await page.query_selector(SELECTORS["quantity"])
                if quantity_select is not None:
                    await quantity_select.select_option(str(quantity))
                    await self._pause(0.5)

            button = await page.query_selector(SELECTORS["buy_button"])
            if button is None:
                raise RuntimeError("Add-to-cart button disappeared")
            await human_click(button)
            await self._pause(2)

            count_node = await page.query_selector(SELECTORS["cart_count"])
            if count_node is not None:
                count_text = (await count_node.text_content() or "").strip()
                if count_text.isdigit() and int(count_text) > 0:
                    return BotResult.ok("Product added to cart successfully", cart_count=int(count_text))
            return BotResult.ok("Product added to cart (verification pending)")
        except Exception as e:
            return await self._failure("Failed to add product to cart", e)

    async def proceed_to_checkout(self) -> BotResult:
        try:
            await self.session.goto(f"{BASE_URL}/nl/nl/basket/")
            await self._pause()
            button = await self.session.page.query_selector(SELECTORS["checkout_button"])
            if button is None:
                raise RuntimeError("Checkout button not found")
            await human_click(button)
            await self._pause(2)
            if is_login_page(await self.session.page.content(), self.session.page.url):
                return BotResult.fail("Checkout requires login")
            return BotResult.ok("Proceeded to checkout")
        except Exception as e:
            return await self._failure("Failed to proceed to checkout", e)

    async def fill_checkout_info(self, info: CheckoutInfo) -> BotResult:
        try:
            page = self.session.page
            values: dict[str, Any] = info.model_dump()
            filled = []
            for field, selector in CHECKOUT_FIELDS:
                value = values.get(field)
                if not value:
                    continue
                element = await page.query_selector(selector)
                if element is None:
                    continue
                await element.fill("")
                await human_type(element, str(value))
                await self._pause(0.5)
                filled.append(field)
            return BotResult.ok("Checkout information filled", fields=filled)
        except Exception as e:
            return await self._failure("Failed to fill checkout information", e)

    async def complete_purchase(self) -> BotResult:
        try:
            page = self.session.page
            button = await page.query_selector(SELECTORS["place_order"])
            if button is None:
                raise RuntimeError("Place-order button not found")
            await human_click(button)
            await self._pause(5)

            confirmed = await self.session.wait_for(SELECTORS["order_confirmed"])
            order_reference = extract_order_reference(await page.content())
            if confirmed or order_reference:
                return BotResult.ok(
                    "Purchase completed successfully",
                    order_reference=order_reference,
                )
            return BotResult.ok("Purchase completed (verification pending)", order_reference=None)
        except Exception as e:
            return await self._failure("Failed to complete purchase", e)

    async def cleanup(self) -> None:
        self._logged_in = False
        await self.session.close()

    def status(self) -> dict[str, Any]:
        return {
            "store_type": self.store_type,
            "is_running": self.session.is_open,
            "last_activity": self.session.last_activity,
            "proxy": self.proxy.key if self.proxy else None,
            "logged_in": self._logged_in,
        }
