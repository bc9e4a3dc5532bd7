"""Store type -> adapter constructor registry."""
import logging
from typing import Callable, Mapping, Optional

from lunarbot.bots.base import StoreBot
from lunarbot.bots.bol_com import BolComBot
from lunarbot.models import BotConfig, ProxyConfig

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[BotConfig, Optional[ProxyConfig]], StoreBot]

ADAPTERS: dict[str, AdapterFactory] = {
    "bol.com": BolComBot,
    "bol": BolComBot,
}


def normalize_store_type(store_type: str) -> str:
    return store_type.strip().lower()


def register_adapter(store_type: str, factory: AdapterFactory) -> None:
    """Make a new storefront available to the bot manager."""
    key = normalize_store_type(store_type)
    if key in ADAPTERS:
        logger.warning(f"Replacing adapter for store type {key}")
    ADAPTERS[key] = factory


def get_adapter_factory(
    store_type: str,
    adapters: Optional[Mapping[str, AdapterFactory]] = None,
) -> AdapterFactory:
    """Look up the constructor for a store type. Raises ValueError for unknown types."""
    table = ADAPTERS if adapters is None else adapters
    factory = table.get(normalize_store_type(store_type))
    if factory is None:
        raise ValueError(f"Unknown bot type: {store_type}")
    return factory
