import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from config import get_config_section, load_config
from monitoring.logging_utils import setup_logging


logger = logging.getLogger(__name__)

config = load_config()
api_cfg = get_config_section(config, 'api')

trading_bot = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_bot():
    if trading_bot is None:
        raise HTTPException(status_code=503, detail="Trading bot not initialized")
    return trading_bot


def _on_bot_done(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is None:
        return
    logger.error("Trading bot exited: %s", error, exc_info=error)
    os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_bot
    from api.alerts import AlertNotifier
    from main import TradingBot, subscribe_alerts
    monitoring_cfg = get_config_section(config, 'monitoring')
    setup_logging(monitoring_cfg.get('log_level', 'INFO'))
    trading_bot = TradingBot(config)
    subscribe_alerts(trading_bot, AlertNotifier(monitoring_cfg))
    task = asyncio.create_task(trading_bot.start(), name='trading-bot')
    task.add_done_callback(_on_bot_done)
    try:
        yield
    finally:
        if trading_bot:
            await trading_bot.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Trailbot API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(api_cfg.get('cors_origins') or []),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {
        "service": "Trailbot",
        "version": "1.0.0",
        "status": "running" if trading_bot and trading_bot.running else "stopped",
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": _now(),
        "bot_running": trading_bot.running if trading_bot else False,
        "last_cycle_at": trading_bot.last_cycle_at if trading_bot else None,
    }


@app.get("/api/status")
async def get_status():
    bot = _require_bot()
    status = await bot.get_status()
    status["timestamp"] = _now()
    return status


@app.get("/api/balances")
async def get_balances():
    bot = _require_bot()
    return {"message": await bot.get_formatted_balances(), "timestamp": _now()}


@app.get("/api/orders")
async def get_orders():
    bot = _require_bot()
    message = await bot.get_formatted_open_orders()
    return {
        "message": message or "No open orders",
        "has_orders": message is not None,
        "tracked": [order.to_dict() for order in bot.tracked_orders.values()],
        "timestamp": _now(),
    }


@app.get("/api/signal")
async def get_signal():
    bot = _require_bot()
    payload = bot.signals.get_status()
    payload["score"] = bot.last_breakdown.to_dict() if bot.last_breakdown else None
    payload["timestamp"] = _now()
    return payload


@app.get("/api/position")
async def get_position():
    bot = _require_bot()
    payload = bot.trailing.get_status()
    payload["timestamp"] = _now()
    return payload


@app.get("/api/indicators")
async def get_indicators():
    bot = _require_bot()
    snapshot = bot.last_snapshot
    return {
        "indicators": snapshot.to_dict() if snapshot else None,
        "candles": bot.feed.status(),
        "timestamp": _now(),
    }


@app.post("/api/trading/pause")
async def pause_trading():
    bot = _require_bot()
    bot.pause_trading()
    return {"status": "paused", "isTradingPaused": bot.trading_paused, "timestamp": _now()}


@app.post("/api/trading/resume")
async def resume_trading():
    bot = _require_bot()
    bot.resume_trading()
    return {"status": "resumed", "isTradingPaused": bot.trading_paused, "timestamp": _now()}


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info",
    )
