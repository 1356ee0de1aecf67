from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from merchantsync.config import Settings


logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"

UNMAPPED_TEMPLATE = "unmapped-products"
IMPORT_COMPLETE_TEMPLATE = "gmc-import-complete"


class Notifier(Protocol):
    async def notify(self, template_id: str, data: dict[str, Any]) -> bool:
        """Deliver a notification. Returns False when it could not be sent. Must never raise."""


def render_text(template_id: str, data: dict[str, Any]) -> str:
    if template_id == UNMAPPED_TEMPLATE:
        products = data.get("products") or []
        lines = [f"Merchant alert: {data.get('count', len(products))} unmapped product(s) detected"]
        for p in products[:20]:
            lines.append(f"- {p.get('product_id')}: {p.get('product_name') or '(no title)'}")
        if len(products) > 20:
            lines.append(f"... and {len(products) - 20} more")
        return "\n".join(lines)
    if template_id == IMPORT_COMPLETE_TEMPLATE:
        progress = data.get("progress") or {}
        return (
            "Merchant analytics import complete\n"
            f"batches: {progress.get('current_batch')}/{progress.get('total_batches')}\n"
            f"products processed: {progress.get('products_processed')}"
        )
    return f"[{template_id}] {data}"


class LogNotifier:
    """Fallback when no bot is configured: the message only goes to the log."""

    async def notify(self, template_id: str, data: dict[str, Any]) -> bool:
        logger.info("notification %s:\n%s", template_id, render_text(template_id, data))
        return True


class TelegramNotifier:
    def __init__(
        self,
        *,
        token: str,
        chat_id: int,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.chat_id = chat_id
        self._transport = transport

    async def notify(self, template_id: str, data: dict[str, Any]) -> bool:
        payload = {"chat_id": self.chat_id, "text": render_text(template_id, data)}
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                r = await client.post(f"{TELEGRAM_API}/bot{self.token}/sendMessage", json=payload, timeout=20)
                r.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("telegram notify %s failed: %s: %s", template_id, type(e).__name__, e)
            return False
        return True


def build_notifier(settings: Settings) -> Notifier:
    if settings.telegram_bot_token and settings.telegram_chat_id is not None:
        return TelegramNotifier(token=settings.telegram_bot_token, chat_id=settings.telegram_chat_id)
    return LogNotifier()
