"""Data models for bots, tasks, watchlists and products."""
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.utcnow()


class BotState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"
    STOPPED = "stopped"


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


class WatchlistStatus(str, Enum):
    MONITORING = "monitoring"
    PURCHASING = "purchasing"
    PAUSED = "paused"
    PURCHASED = "purchased"
    FAILED = "failed"


class BotConfig(BaseModel):
    """Per-bot browser settings."""

    headless: bool = True
    timeout: int = Field(default=30000, description="Per-operation timeout in ms")
    retry_attempts: int = Field(default=3, ge=1)
    delay_between_actions: int = Field(default=1000, description="Base delay in ms")
    user_agent: Optional[str] = None
    viewport: Optional[dict[str, int]] = None


class ProxyConfig(BaseModel):
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def server(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"


class ProductInfo(BaseModel):
    """Live product data scraped from a storefront."""

    name: str
    price: Optional[float] = None
    availability: bool = False
    url: str = ""
    image_url: Optional[str] = None
    sku: Optional[str] = None


class CheckoutInfo(BaseModel):
    email: str
    first_name: str
    last_name: str
    address: str
    city: str
    postal_code: str
    country: str
    phone: Optional[str] = None
    payment_method: str = Field(default="ideal", description="credit_card, paypal, ideal")
    card_number: Optional[str] = None
    expiry_date: Optional[str] = None
    cvv: Optional[str] = None


class BotResult(BaseModel):
    """Uniform outcome of every adapter operation."""

    success: bool
    message: str
    error: Optional[str] = None
    screenshot: Optional[str] = Field(default=None, description="Base64 PNG")
    data: dict[str, Any] = Field(default_factory=dict)
    retryable: bool = Field(
        default=False, description="Failure came from a transient exception"
    )

    @classmethod
    def ok(cls, message: str, **data: Any) -> "BotResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(
        cls,
        message: str,
        error: Optional[str] = None,
        retryable: bool = False,
        screenshot: Optional[str] = None,
    ) -> "BotResult":
        return cls(
            success=False,
            message=message,
            error=error,
            retryable=retryable,
            screenshot=screenshot,
        )


class Task(BaseModel):
    """A purchase task record."""

    id: str
    user_id: str
    product_id: str
    store_account_id: str
    proxy_id: Optional[str] = None
    checkout_profile_id: Optional[str] = None
    watchlist_item_id: Optional[str] = None
    priority: int = 1
    quantity: int = 1
    max_price: Optional[float] = None
    complete_checkout: bool = True
    status: TaskStatus = TaskStatus.QUEUED
    error_message: Optional[str] = None
    result: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Product(BaseModel):
    """Stored product snapshot."""

    id: str
    store_type: str
    name: str
    url: str
    sku: Optional[str] = None
    current_price: Optional[float] = None
    is_available: bool = False
    is_active: bool = True
    last_checked: Optional[datetime] = None


class WatchlistItem(BaseModel):
    id: str
    user_id: str
    product_id: str
    max_price: Optional[float] = None
    quantity: int = 1
    auto_purchase: bool = False
    alert_on_stock: bool = True
    alert_on_price_drop: bool = True
    status: WatchlistStatus = WatchlistStatus.MONITORING
    last_attempt_at: Optional[datetime] = None


class StoreAccount(BaseModel):
    id: str
    user_id: str
    store_type: str
    encrypted_username: str
    encrypted_password: str
    is_active: bool = True


class Proxy(BaseModel):
    id: str
    user_id: str
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None
    is_active: bool = True

    def to_config(self) -> ProxyConfig:
        return ProxyConfig(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
        )


class CheckoutProfile(BaseModel):
    id: str
    user_id: str
    info: CheckoutInfo


class PurchaseRecord(BaseModel):
    """Append-only purchase history entry."""

    id: str
    task_id: str
    user_id: str
    product_id: str
    order_reference: Optional[str] = None
    price_paid: Optional[float] = None
    quantity: int = 1
    purchased_at: datetime = Field(default_factory=utcnow)


class ProductAlert(BaseModel):
    id: str
    product_id: str
    alert_type: str = Field(..., description="stock_change or price_change")
    old_value: Any = None
    new_value: Any = None
    message: str
    created_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    user_id: str
    type: str
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class PurchaseJob(BaseModel):
    """Payload of an execute-task job."""

    task_id: str
    user_id: str
    product_id: str
    store_account_id: str
    proxy_id: Optional[str] = None
    priority: int = 1


class MonitorJob(BaseModel):
    """Payload of a monitor-product job."""

    watchlist_item_id: str
    product_id: str
    store_type: str
    user_id: str
    max_price: Optional[float] = None
    auto_purchase: bool = False
