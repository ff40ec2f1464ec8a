"""Observable list of recently deployed tokens, plus an optional Telegram notice."""

from __future__ import annotations

import inspect
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from html import escape
from typing import Any, Awaitable, Callable, Union

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, LinkPreviewOptions

import config
from launcher.models import Candidate, DeploymentOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeployedToken:
    name: str
    symbol: str
    launchpad: str
    agent: str
    chain: str
    image_url: str
    post_id: str
    post_url: str
    deployed_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Subscriber = Callable[[DeployedToken], Union[None, Awaitable[None]]]


class DeployedTokensFeed:
    """Newest-first, capped. Subscribers are called on every publish; their errors are logged."""

    def __init__(self, max_items: int | None = None) -> None:
        self.max_items = max(1, int(max_items or config.DEPLOYED_FEED_MAX))
        self._items: list[DeployedToken] = []
        self._subscribers: list[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        self._subscribers.append(fn)

        def _unsubscribe() -> None:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return _unsubscribe

    def items(self) -> list[DeployedToken]:
        return list(self._items)

    async def publish(
        self,
        candidate: Candidate,
        outcome: DeploymentOutcome,
        *,
        launchpad: str,
        agent: str,
    ) -> DeployedToken:
        item = DeployedToken(
            name=candidate.name,
            symbol=candidate.symbol,
            launchpad=launchpad,
            agent=agent,
            chain=candidate.chain,
            image_url=candidate.image_url,
            post_id=outcome.post_id,
            post_url=outcome.post_url,
            deployed_at=datetime.now(timezone.utc).isoformat(),
        )
        self._items.insert(0, item)
        del self._items[self.max_items :]
        for fn in list(self._subscribers):
            try:
                result = fn(item)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning("FEED_SUBSCRIBER_FAIL symbol=%s error=%s", item.symbol, exc)
        return item


class TelegramDeployNotifier:
    def __init__(self, bot: Any, chat_id: int | str) -> None:
        self.bot = bot
        self.chat_id = chat_id

    @staticmethod
    def format_message(item: DeployedToken) -> str:
        return (
            "\U0001F680 TOKEN POSTED\n\n"
            f"Name: {escape(item.name)}\n"
            f"Symbol: ${escape(item.symbol)}\n"
            f"Launchpad: {escape(item.launchpad)}\n"
            f"Agent: {escape(item.agent)}\n"
            f"Chain: {escape(item.chain or 'n/a')}"
        )

    async def __call__(self, item: DeployedToken) -> None:
        markup = None
        if item.post_url:
            markup = InlineKeyboardMarkup([[InlineKeyboardButton("\U0001F517 View post", url=item.post_url)]])
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=self.format_message(item),
            parse_mode="HTML",
            reply_markup=markup,
            link_preview_options=LinkPreviewOptions(is_disabled=True),
        )


def attach_telegram_notifier(feed: DeployedTokensFeed) -> Callable[[], None] | None:
    """Subscribe a Telegram notifier when enabled in config; returns the unsubscribe handle."""
    if not config.TELEGRAM_NOTIFY_ENABLED:
        return None
    if not config.TELEGRAM_BOT_TOKEN or not config.TELEGRAM_NOTIFY_CHAT_ID:
        logger.warning("TELEGRAM_NOTIFY disabled: TELEGRAM_BOT_TOKEN or TELEGRAM_NOTIFY_CHAT_ID missing")
        return None
    notifier = TelegramDeployNotifier(Bot(token=config.TELEGRAM_BOT_TOKEN), config.TELEGRAM_NOTIFY_CHAT_ID)
    logger.info("TELEGRAM_NOTIFY enabled chat_id=%s", config.TELEGRAM_NOTIFY_CHAT_ID)
    return feed.subscribe(notifier)
