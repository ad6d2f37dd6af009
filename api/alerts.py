import logging
from typing import Any, Dict, Optional

import aiohttp


logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


def _configured(value: Any) -> Optional[str]:
    # Treat empty or unresolved ${ENV} placeholders as disabled
    if not value or str(value).startswith("${"):
        return None
    return str(value)


class AlertNotifier:
    def __init__(self, monitoring_cfg: Optional[Dict[str, Any]] = None, session_factory=aiohttp.ClientSession):
        monitoring_cfg = monitoring_cfg or {}
        self.bot_token = _configured(monitoring_cfg.get("telegram_bot_token"))
        self.chat_id = _configured(monitoring_cfg.get("telegram_chat_id"))
        self.enabled = bool(self.bot_token and self.chat_id)
        self._session_factory = session_factory

    async def send(self, message: str, severity: str = "info") -> bool:
        if not self.enabled:
            logger.warning("[Alert] %s: %s", severity.upper(), message)
            return False

        url = f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": message, "parse_mode": "HTML"}
        try:
            async with self._session_factory() as session:
                async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=5)) as response:
                    if response.status != 200:
                        logger.error("[Alert] Telegram sendMessage failed with status %s", response.status)
                        return False
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error("[Alert] Telegram error: %s", e)
            return False
        return True

    async def buy_filled_alert(self, order_id: str, quantity: float, price: float, total: float):
        await self.send(
            "🟢 <b>BUY FILLED</b>\n"
            f"Order: {order_id}\n"
            f"Size: {quantity:.1f}\n"
            f"Price: {price:.4f}\n"
            f"Total: {total:.2f}"
        )

    async def sell_filled_alert(self, order_id: str, quantity: float, price: float,
                                entry_price: Optional[float] = None):
        lines = [
            "🔴 <b>SELL FILLED</b>",
            f"Order: {order_id}",
            f"Size: {quantity:.1f}",
            f"Price: {price:.4f}",
        ]
        if entry_price:
            lines.append(f"P/L: {(price / entry_price - 1) * 100:+.2f}%")
        await self.send("\n".join(lines))

    async def trailing_alert(self, old_stop: Optional[float], new_stop: float, price: Optional[float] = None):
        text = f"📈 <b>TRAILING STOP</b>\nStop moved {old_stop} → {new_stop:.4f}"
        if price is not None:
            text += f"\nPrice: {price:.4f}"
        await self.send(text)

    async def error_alert(self, context: str, message: str):
        await self.send(f"⚠️ <b>ERROR</b> ({context})\n{message}", severity="error")
