"""Shared fakes and fixtures."""
import asyncio
import time

import pytest

from lunarbot.auth.vault import CredentialVault
from lunarbot.models import BotResult, Product, ProductInfo, StoreAccount, Task
from lunarbot.notify.dispatcher import NotificationDispatcher
from lunarbot.store.db import Database


def timeout_result(operation: str = "add product to cart") -> BotResult:
    return BotResult.fail(
        f"Failed to {operation}",
        error="Timeout 30000ms exceeded",
        retryable=True,
    )


class FakeStoreBot:
    """In-memory adapter. Scripted failures are shared through its factory."""

    store_type = "fake"

    def __init__(self, bot_config, proxy, factory):
        self.config = bot_config
        self.proxy = proxy
        self.factory = factory
        self.running = False
        self.cleanups = 0
        self.last_activity = None

    async def _result(self, operation, default):
        self.factory.calls.append(operation)
        self.last_activity = time.time()
        hook = self.factory.hooks.get(operation)
        if hook is not None:
            await hook()
        scripted = self.factory.failures.get(operation)
        if scripted:
            return scripted.pop(0)
        return default

    async def initialize(self):
        if not self.factory.init_ok:
            return BotResult.fail("Failed to initialize bot", error="browser crashed")
        self.running = True
        self.last_activity = time.time()
        return BotResult.ok("Bot initialized successfully")

    async def login(self, username, password):
        self.factory.credentials.append((username, password))
        return await self._result("login", BotResult.ok("Login successful"))

    async def search_products(self, query):
        return await self._result(
            "search_products",
            BotResult.ok("Found 1 products", products=[self.factory.product.model_dump()]),
        )

    async def get_product_details(self, url):
        product = self.factory.product.model_copy(update={"url": url})
        return await self._result(
            "get_product_details",
            BotResult.ok("Product details retrieved", product=product.model_dump()),
        )

    async def add_to_cart(self, product_id, quantity=1):
        return await self._result("add_to_cart", BotResult.ok("Product added to cart successfully"))

    async def proceed_to_checkout(self):
        return await self._result("proceed_to_checkout", BotResult.ok("Proceeded to checkout"))

    async def fill_checkout_info(self, info):
        return await self._result("fill_checkout_info", BotResult.ok("Checkout information filled"))

    async def complete_purchase(self):
        return await self._result(
            "complete_purchase",
            BotResult.ok("Purchase completed successfully", order_reference="ORDER-1"),
        )

    async def is_logged_in(self):
        return self.running

    async def cleanup(self):
        self.running = False
        self.cleanups += 1

    def status(self):
        return {
            "store_type": self.store_type,
            "is_running": self.running,
            "last_activity": self.last_activity,
            "proxy": self.proxy.key if self.proxy else None,
        }


class FakeAdapterFactory:
    """Adapter constructor that records every bot it builds."""

    def __init__(self):
        self.created = []
        self.calls = []
        self.credentials = []
        self.failures = {}
        self.hooks = {}
        self.init_ok = True
        self.product = ProductInfo(
            name="Widget",
            price=50.0,
            availability=True,
            url="https://shop.test/p/widget",
            sku="W-1",
        )

    def __call__(self, bot_config, proxy=None):
        bot = FakeStoreBot(bot_config, proxy, self)
        self.created.append(bot)
        return bot


class RecordingChannel:
    name = "recording"

    def __init__(self):
        self.sent = []

    async def send(self, notification):
        self.sent.append(notification)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "lunarbot.db")
    asyncio.run(database.initialize())
    return database


@pytest.fixture
def vault():
    return CredentialVault("test-encryption-key", "test-salt")


@pytest.fixture
def fake_factory():
    return FakeAdapterFactory()


@pytest.fixture
def adapters(fake_factory):
    return {"fake": fake_factory}


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def dispatcher(channel):
    return NotificationDispatcher(channels=[channel])


@pytest.fixture
def fake_sleep():
    return SleepRecorder()


@pytest.fixture
def seed(db, vault):
    """Coroutine factory storing a product, an account and a queued task."""

    async def _seed(price=50.0, available=True, account_active=True, **task_fields):
        product = Product(
            id="prod-1",
            store_type="fake",
            name="Widget",
            url="https://shop.test/p/widget",
            sku="W-1",
            current_price=price,
            is_available=available,
        )
        account = StoreAccount(
            id="acct-1",
            user_id="user-1",
            store_type="fake",
            encrypted_username=vault.encrypt("alice@example.com"),
            encrypted_password=vault.encrypt("hunter2"),
            is_active=account_active,
        )
        task = Task(
            id="task-1",
            user_id="user-1",
            product_id=product.id,
            store_account_id=account.id,
            **task_fields,
        )
        await db.save_product(product)
        await db.save_store_account(account)
        await db.save_task(task)
        return product, account, task

    return _seed
