from __future__ import annotations

import logging
from typing import Protocol

import httpx

from .models import SeriesStatus, TradingSeries, ensure_utc
from .repository import SeriesRepository

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class Notifier(Protocol):
    async def broadcast(self, text: str) -> int: ...


def render_series_message(series: TradingSeries, short_message: str, max_steps: int) -> str:
    emoji = series.bet_color.emoji if series.bet_color else "⏸️"
    lines = [f"*{series.asset.upper()} {emoji}*"]
    if series.status is SeriesStatus.ACTIVE:
        lines.append(f"Step {series.current_step}/{max_steps}")
    if series.total_invested > 0:
        lines.append(f"💰 ${series.total_invested:.2f}")

    message = "\n".join(lines) + "\n"
    message += f"\n{short_message}"

    timeline = "\n".join(
        f"{ensure_utc(event.timestamp):%H:%M:%S} {event.message}"
        for event in series.events
        if event.message and event.message.strip()
    )
    if timeline:
        message += f"\n\n{timeline}"
    return message


class TelegramNotifier:
    """Pushes rendered series timelines to subscribed Telegram users.

    Delivery is fire-and-forget: a failed send is logged and never retried.
    """

    def __init__(
        self,
        *,
        token: str,
        repository: SeriesRepository,
        api_url: str = TELEGRAM_API_URL,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._token = token
        self._repository = repository
        self._api_url = api_url.rstrip("/")
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def _post(self, url: str, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, timeout=self._timeout_seconds)
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            return await client.post(url, json=payload)

    async def notify_user(self, user_id: str, text: str) -> bool:
        url = f"{self._api_url}/bot{self._token}/sendMessage"
        try:
            response = await self._post(
                url,
                {
                    "chat_id": user_id,
                    "text": text,
                    "parse_mode": "Markdown",
                    "disable_web_page_preview": True,
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("[Telegram] Failed to notify %s: %s", user_id, exc)
            return False

        if not response.is_success:
            logger.warning("[Telegram] sendMessage to %s returned %s: %s", user_id, response.status_code, response.text)
            return False
        return True

    async def broadcast(self, text: str) -> int:
        delivered = 0
        for user_id in self._repository.subscribed_users():
            if await self.notify_user(user_id, text):
                delivered += 1
        return delivered
