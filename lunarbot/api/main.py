"""FastAPI control API."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from lunarbot.config import Config, config
from lunarbot.errors import BusinessRuleError
from lunarbot.logging_conf import setup_logging
from lunarbot.models import Task, WatchlistItem
from lunarbot.runtime import Runtime
from lunarbot.store.db import new_id

logger = logging.getLogger(__name__)

app = FastAPI(title="LunarBot API", version="0.1.0")

# API Key security (if configured)
API_KEY_HEADER = APIKeyHeader(name="X-API-KEY", auto_error=False)

_runtime: Optional[Runtime] = None


def verify_api_key(api_key: str = Depends(API_KEY_HEADER)) -> bool:
    """Verify API key if configured."""
    expected_key = config.API_KEY
    if expected_key:
        if not api_key or api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API key")
    return True


def get_runtime() -> Runtime:
    if _runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not started")
    return _runtime


@app.on_event("startup")
async def startup():
    """Build the runtime and start worker pools."""
    global _runtime
    setup_logging()
    _runtime = Runtime.from_config()
    await _runtime.initialize()
    await _runtime.start()


@app.on_event("shutdown")
async def shutdown():
    global _runtime
    if _runtime is not None:
        await _runtime.stop()
        _runtime = None


class TaskCreateRequest(BaseModel):
    user_id: str
    product_id: str
    store_account_id: str
    proxy_id: Optional[str] = None
    checkout_profile_id: Optional[str] = None
    priority: int = 1
    quantity: int = Field(default=1, ge=1)
    max_price: Optional[float] = None
    complete_checkout: bool = True


class MonitoringRequest(BaseModel):
    watchlist_item_id: Optional[str] = None


class AutoPurchaseRequest(BaseModel):
    watchlist_item_id: str
    enabled: bool
    max_price: Optional[float] = None
    quantity: int = Field(default=1, ge=1)


@app.get("/health")
async def health(runtime: Runtime = Depends(get_runtime)):
    """Health check endpoint (no auth required)."""
    report = runtime.bots.health_check()
    return {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "bots": {
            "healthy": sum(1 for healthy in report.values() if healthy),
            "unhealthy": sum(1 for healthy in report.values() if not healthy),
        },
        "queues": {
            "tasks": runtime.task_queue.running,
            "monitoring": runtime.monitor_queue.running,
        },
    }


@app.get("/system/metrics")
async def system_metrics(
    runtime: Runtime = Depends(get_runtime),
    _: bool = Depends(verify_api_key),
):
    return {
        "bots": runtime.bots.system_metrics(),
        "tasks": await runtime.db.task_stats(),
        "queues": {
            "tasks": runtime.task_queue.stats(),
            "monitoring": runtime.monitoring.monitoring_stats(),
        },
    }


@app.get("/system/bots")
async def system_bots(
    runtime: Runtime = Depends(get_runtime),
    _: bool = Depends(verify_api_key),
):
    health = runtime.bots.health_check()
    return {
        "bots": [
            {**bot.to_dict(), "healthy": health.get(bot.id, False)}
            for bot in runtime.bots.list_bots()
        ]
    }


@app.post("/tasks", response_model=Task, status_code=201)
async def create_task(
    request: TaskCreateRequest,
    runtime: Runtime = Depends(get_runtime),
    _: bool = Depends(verify_api_key),
):
    if await runtime.db.get_product(request.product_id) is None:
        raise HTTPException(status_code=404, detail="Product not found")
    account = await runtime.db.get_store_account(request.store_account_id)
    if account is None or account.user_id != request.user_id:
        raise HTTPException(status_code=404, detail="Store account not found")
    if not account.is_active:
        raise HTTPException(status_code=400, detail="Store account is inactive")

    task = Task(id=new_id(), **request.model_dump())
    return await runtime.create_task(task)


@app.get("/tasks/{task_id}", response_model=Task)
async def get_task(
    task_id: str,
    runtime: Runtime = Depends(get_runtime),
    _: bool = Depends(verify_api_key),
):
    task = await runtime.db.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.post("/tasks/{task_id}/stop", response_model=Task)
async def stop_task(
    task_id: str,
    runtime: Runtime = Depends(get_runtime),
    _: bool = Depends(verify_api_key),
):
    if await runtime.db.get_task(task_id) is None:
        raise HTTPException(status_code=404, detail="Task not found")
    if not await runtime.cancel_task(task_id):
        raise HTTPException(status_code=409, detail="Task already finished")
    return await runtime.db.get_task(task_id)


@app.post("/monitoring/start")
async def start_monitoring(
    request: MonitoringRequest,
    runtime: Runtime = Depends(get_runtime),
    _: bool = Depends(verify_api_key),
):
    if request.watchlist_item_id:
        result = await runtime.monitoring.schedule_monitoring(request.watchlist_item_id)
        if not result["success"]:
            raise HTTPException(status_code=404, detail=result["message"])
        return result
    await runtime.monitoring.start_scan_loop()
    return await runtime.monitoring.schedule_all_monitoring()


@app.post("/monitoring/stop")
async def stop_monitoring(
    request: MonitoringRequest,
    runtime: Runtime = Depends(get_runtime),
    _: bool = Depends(verify_api_key),
):
    if request.watchlist_item_id:
        return await runtime.monitoring.stop_monitoring(request.watchlist_item_id)
    await runtime.monitoring.stop_scan_loop()
    return await runtime.monitoring.stop_all_monitoring()


@app.post("/watchlist/auto-purchase", response_model=WatchlistItem)
async def configure_auto_purchase(
    request: AutoPurchaseRequest,
    runtime: Runtime = Depends(get_runtime),
    _: bool = Depends(verify_api_key),
):
    try:
        return await runtime.monitoring.configure_auto_purchase(
            request.watchlist_item_id,
            enabled=request.enabled,
            max_price=request.max_price,
            quantity=request.quantity,
        )
    except BusinessRuleError as e:
        raise HTTPException(status_code=400, detail=str(e))


if __name__ == "__main__":
    import uvicorn
    Config.validate()
    uvicorn.run(app, host="0.0.0.0", port=8000)
