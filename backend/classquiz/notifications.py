from __future__ import annotations

import html
import logging
from typing import Iterable, Mapping, Optional

import httpx

from .db import Settings, settings as default_settings

logger = logging.getLogger(__name__)

MEDALS = ["\U0001F947", "\U0001F948", "\U0001F949"]


def format_quiz_results(quiz_title: str, participant_count: int, top_three: Iterable[Mapping]) -> str:
    lines = [
        f"\U0001F3AF <b>Quiz Completed: {html.escape(quiz_title)}</b>",
        "",
        f"\U0001F465 Total Participants: {participant_count}",
        "",
        "\U0001F3C6 <b>Top 3 Winners:</b>",
    ]
    winners = list(top_three)[:3]
    if not winners:
        lines.append("No participants completed the quiz.")
    for index, winner in enumerate(winners):
        name = html.escape(str(winner.get("name") or "Anonymous"))
        lines.append(f"{MEDALS[index]} {index + 1}. {name} - {winner.get('score', 0)} points")
    return "\n".join(lines) + "\n"


class TelegramNotifier:
    """Posts quiz results to a teacher's Telegram chat.

    Every method is best-effort: failures are logged and reported as ``False``,
    never raised.
    """

    def __init__(self, settings: Settings = default_settings, client: Optional[httpx.AsyncClient] = None):
        self.bot_token = settings.TELEGRAM_BOT_TOKEN or ""
        self.base_url = f"{settings.TELEGRAM_API_BASE.rstrip('/')}/bot{self.bot_token}"
        self._client = client or httpx.AsyncClient(timeout=settings.NOTIFY_TIMEOUT)

    async def send_message(self, chat_id: str, message: str) -> bool:
        if not self.bot_token:
            logger.warning("Telegram bot token not configured. Skipping message send.")
            return False

        try:
            response = await self._client.post(
                f"{self.base_url}/sendMessage",
                json={"chat_id": chat_id, "text": message, "parse_mode": "HTML"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to send Telegram message: %s", exc)
            return False

        logger.info("Message sent to Telegram chat %s", chat_id)
        return True

    async def send_quiz_results(
        self,
        target: str,
        quiz_title: str,
        participant_count: int,
        top_three: Iterable[Mapping],
    ) -> bool:
        if not target:
            logger.warning("No Telegram ID provided. Skipping quiz results notification.")
            return False
        return await self.send_message(target, format_quiz_results(quiz_title, participant_count, top_three))

    async def aclose(self) -> None:
        await self._client.aclose()
