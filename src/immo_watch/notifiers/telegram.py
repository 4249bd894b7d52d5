"""Telegram notification service."""

import asyncio
import html
import urllib.parse
from collections.abc import Sequence
from typing import TYPE_CHECKING

from immo_watch.logging import get_logger
from immo_watch.models import JobConfig, Listing
from immo_watch.notifiers.base import NotificationAdapter, format_listing_facts
from immo_watch.utils.geo import haversine_distance

if TYPE_CHECKING:
    from aiogram import Bot
    from aiogram.types import InlineKeyboardMarkup

logger = get_logger(__name__)


def format_listing_message(listing: Listing, *, provider: str, job: JobConfig) -> str:
    """Format a listing as a Telegram message.

    Returns:
        Formatted message string with HTML markup.
    """
    lines = [f"<b>{html.escape(listing.title or 'Untitled')}</b>"]
    lines.append(f"💶 {html.escape(format_listing_facts(listing))}")
    if listing.address:
        lines.append(f"📍 {html.escape(listing.address)}")
    if listing.coordinates is not None and job.home is not None:
        meters = haversine_distance(
            listing.coordinates.lat,
            listing.coordinates.lng,
            job.home.latitude,
            job.home.longitude,
        )
        lines.append(f"🏠 {meters / 1000:.1f} km to home")
    lines.append(f"\n🔗 {html.escape(provider)} · {html.escape(job.name or job.id)}")
    return "\n".join(lines)


def _build_inline_keyboard(listing: Listing, provider: str) -> "InlineKeyboardMarkup":
    """Listing link and map button, in one row."""
    from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

    buttons: list[InlineKeyboardButton] = []
    if listing.link:
        buttons.append(InlineKeyboardButton(text=provider, url=listing.link))

    # Map button: prefer coordinates, fall back to address search
    if listing.latitude is not None and listing.longitude is not None:
        map_url = f"https://www.google.com/maps?q={listing.latitude},{listing.longitude}"
        buttons.append(InlineKeyboardButton(text="Map 📍", url=map_url))
    elif listing.address:
        query = urllib.parse.quote(listing.address)
        map_url = f"https://www.google.com/maps/search/?api=1&query={query}"
        buttons.append(InlineKeyboardButton(text="Map 📍", url=map_url))

    return InlineKeyboardMarkup(inline_keyboard=[buttons] if buttons else [])


class TelegramNotifier(NotificationAdapter):
    """Send listing notifications via Telegram."""

    name = "telegram"

    def __init__(self, *, bot_token: str, chat_id: int, delay_seconds: float = 1.0) -> None:
        """Initialize the notifier.

        Args:
            bot_token: Telegram bot token from @BotFather.
            chat_id: Chat ID to send notifications to.
            delay_seconds: Delay between messages to avoid rate limiting.
        """
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.delay_seconds = delay_seconds
        self._bot: Bot | None = None

    def _get_bot(self) -> "Bot":
        """Get or create the bot instance."""
        if self._bot is None:
            from aiogram import Bot
            from aiogram.client.default import DefaultBotProperties
            from aiogram.enums import ParseMode

            self._bot = Bot(
                token=self.bot_token,
                default=DefaultBotProperties(parse_mode=ParseMode.HTML),
            )
        return self._bot

    async def send_listing_notification(
        self, listing: Listing, *, provider: str, job: JobConfig
    ) -> bool:
        """Send one listing.

        Returns:
            True if notification was sent successfully.
        """
        message = format_listing_message(listing, provider=provider, job=job)
        try:
            bot = self._get_bot()
            await bot.send_message(
                chat_id=self.chat_id,
                text=message,
                reply_markup=_build_inline_keyboard(listing, provider),
                disable_web_page_preview=True,
            )
            logger.info("notification_sent", listing_hash=listing.hash, chat_id=self.chat_id)
            return True
        except Exception as e:
            logger.error("notification_failed", listing_hash=listing.hash, error=str(e))
            return False

    async def send(self, provider: str, listings: Sequence[Listing], job: JobConfig) -> None:
        """Send every listing; raises when none of them could be delivered."""
        results = []
        for i, listing in enumerate(listings):
            if i > 0:
                await asyncio.sleep(self.delay_seconds)
            results.append(
                await self.send_listing_notification(listing, provider=provider, job=job)
            )
        if results and not any(results):
            raise RuntimeError(f"Telegram delivery failed for all {len(results)} listings")

    async def close(self) -> None:
        """Close the bot session."""
        if self._bot is not None:
            await self._bot.session.close()
            self._bot = None
