"""Live product scraping for the monitoring loop."""
import asyncio
import logging
from collections import defaultdict
from typing import Mapping, Optional, Protocol

from lunarbot.bots.base import StoreBot
from lunarbot.bots.registry import AdapterFactory, get_adapter_factory, normalize_store_type
from lunarbot.bots.retry import RetryPolicy, with_retry
from lunarbot.config import config
from lunarbot.errors import BotInitializationError, TransientError
from lunarbot.models import BotConfig, Product, ProductInfo
from lunarbot.scrape.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class ProductScraper(Protocol):
    async def scrape(self, product: Product) -> ProductInfo: ...

    async def close(self) -> None: ...


class BrowserProductScraper:
    """
    Keeps one initialized adapter per store type.

    Access to a store's adapter is serialized (one page per adapter), page loads
    are rate limited per domain and failed loads are retried with ``with_retry``.
    These adapters are separate from the purchase bots in BotManager.
    """

    def __init__(
        self,
        bot_config: BotConfig,
        adapters: Optional[Mapping[str, AdapterFactory]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.bot_config = bot_config
        self.adapters = adapters
        self.rate_limiter = rate_limiter or RateLimiter(config.SCRAPE_RATE_PER_DOMAIN)
        self.policy = policy or RetryPolicy(
            attempts=bot_config.retry_attempts,
            retry_on=(TransientError,),
        )
        self._sessions: dict[str, StoreBot] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _adapter_for(self, store_type: str) -> StoreBot:
        adapter = self._sessions.get(store_type)
        if adapter is not None and adapter.status().get("is_running"):
            return adapter
        if adapter is not None:
            logger.warning(f"Scraper session for {store_type} died, recreating")
            await adapter.cleanup()

        factory = get_adapter_factory(store_type, self.adapters)
        adapter = factory(self.bot_config, None)
        result = await adapter.initialize()
        if not result.success:
            await adapter.cleanup()
            self._sessions.pop(store_type, None)
            raise BotInitializationError(result.error or result.message)
        self._sessions[store_type] = adapter
        return adapter

    async def scrape(self, product: Product) -> ProductInfo:
        store_type = normalize_store_type(product.store_type)
        async with self._locks[store_type]:
            adapter = await self._adapter_for(store_type)

            async def attempt() -> ProductInfo:
                await self.rate_limiter.acquire(product.url)
                result = await adapter.get_product_details(product.url)
                if not result.success or "product" not in result.data:
                    raise TransientError(result.error or result.message)
                return ProductInfo.model_validate(result.data["product"])

            return await with_retry(attempt, self.policy, name=f"scrape {product.id}")

    async def close(self) -> None:
        for store_type, adapter in list(self._sessions.items()):
            try:
                await adapter.cleanup()
            except Exception as e:
                logger.warning(f"Cleanup of scraper session {store_type} failed: {e}")
        self._sessions.clear()
