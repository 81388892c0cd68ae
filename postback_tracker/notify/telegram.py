"""Telegram notifications for processed postbacks."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from postback_tracker import metrics
from postback_tracker.config import settings
from postback_tracker.errors import BestEffortFailure
from postback_tracker.notify.formatters import format_telegram_message, serialize_event
from postback_tracker.partners.registry import GlobalSettingsSnapshot, PartnerConfig
from postback_tracker.queue.payload import QueuePayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelegramCredentials:
    bot_token: str
    channel_id: str
    source: str  # "partner" or "global"


def resolve_credentials(
    partner: PartnerConfig,
    global_settings: GlobalSettingsSnapshot,
) -> Optional[TelegramCredentials]:
    """
    Pick the bot token and channel to use.

    Partner credentials win when the partner enables individual delivery and
    both values are set; otherwise the global ones, if globally enabled.
    """
    if (
        partner.partner_telegram_enabled
        and partner.partner_telegram_bot_token
        and partner.partner_telegram_channel_id
    ):
        return TelegramCredentials(
            bot_token=partner.partner_telegram_bot_token,
            channel_id=partner.partner_telegram_channel_id,
            source="partner",
        )

    if not global_settings.telegram_globally_enabled:
        return None
    if not global_settings.telegram_bot_token or not global_settings.telegram_channel_id:
        return None
    return TelegramCredentials(
        bot_token=global_settings.telegram_bot_token,
        channel_id=global_settings.telegram_channel_id,
        source="global",
    )


def passes_whitelist(event: QueuePayload, partner: PartnerConfig) -> bool:
    """Case-insensitive keyword match against the serialized event."""
    if not partner.telegram_whitelist_enabled or not partner.telegram_whitelist_keywords:
        return True
    content = serialize_event(event).lower()
    return any(keyword.lower() in content for keyword in partner.telegram_whitelist_keywords)


class TelegramNotifier:
    """Best-effort Telegram Bot API client."""

    def __init__(
        self,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = (api_base or settings.telegram_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def notify(
        self,
        event: QueuePayload,
        partner: PartnerConfig,
        global_settings: GlobalSettingsSnapshot,
    ) -> bool:
        """
        Send a notification for a processed postback.

        Never raises; failures are logged with the response code.

        Returns:
            True if a message was delivered
        """
        if not partner.telegram_enabled:
            return False

        credentials = resolve_credentials(partner, global_settings)
        if credentials is None:
            logger.debug("Telegram not configured for partner %s", partner.id)
            return False

        if not passes_whitelist(event, partner):
            logger.debug("Postback for partner %s suppressed by keyword whitelist", partner.id)
            return False

        try:
            await self._send(credentials, format_telegram_message(event))
        except BestEffortFailure as e:
            logger.warning("Telegram notification failed for partner %s. %s", partner.id, e)
            metrics.record_notification("telegram", success=False)
            return False

        metrics.record_notification("telegram", success=True)
        if partner.logging_enabled:
            logger.info(
                "Telegram notification sent for partner %s via %s credentials",
                partner.id,
                credentials.source,
            )
        return True

    async def _send(self, credentials: TelegramCredentials, text: str) -> None:
        """POST sendMessage; transport errors and non-200 responses raise BestEffortFailure."""
        url = f"{self.api_base}/bot{credentials.bot_token}/sendMessage"
        try:
            client = await self._get_client()
            response = await client.post(url, json={"chat_id": credentials.channel_id, "text": text})
        except httpx.HTTPError as e:
            raise BestEffortFailure(f"Transport error: {e}") from e

        if response.status_code != 200:
            raise BestEffortFailure(f"HTTP Code: {response.status_code}")


# Global notifier instance
telegram_notifier = TelegramNotifier()
