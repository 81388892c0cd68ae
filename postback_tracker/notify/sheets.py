"""Google Sheets export for processed postbacks."""

import asyncio
import hashlib
import json
import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

import httpx
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from postback_tracker import metrics
from postback_tracker.config import settings
from postback_tracker.errors import BestEffortFailure
from postback_tracker.notify.formatters import format_sheet_row
from postback_tracker.partners.registry import GlobalSettingsSnapshot, PartnerConfig
from postback_tracker.queue.payload import QueuePayload

logger = logging.getLogger(__name__)

SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"

TokenProvider = Callable[[str], Awaitable[str]]


class ServiceAccountTokens:
    """Caches service-account credentials per credential blob."""

    def __init__(self):
        self._credentials: dict[str, service_account.Credentials] = {}

    async def __call__(self, credentials_json: str) -> str:
        cache_key = hashlib.sha256(credentials_json.encode()).hexdigest()
        credentials = self._credentials.get(cache_key)
        if credentials is None:
            info = json.loads(credentials_json)
            credentials = service_account.Credentials.from_service_account_info(
                info, scopes=[SHEETS_SCOPE]
            )
            self._credentials[cache_key] = credentials

        if not credentials.valid:
            # google-auth refresh is blocking
            await asyncio.to_thread(credentials.refresh, Request())
        return credentials.token


class SheetExporter:
    """Appends one row per processed postback to the partner's sheet."""

    def __init__(
        self,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
    ):
        self.api_base = (api_base or settings.google_sheets_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self._transport = transport
        self._token_provider = token_provider or ServiceAccountTokens()
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

    def _append_url(self, spreadsheet_id: str, sheet_name: str) -> str:
        sheet_range = quote(f"'{sheet_name}'!A1", safe="")
        return f"{self.api_base}/spreadsheets/{quote(spreadsheet_id, safe='')}/values/{sheet_range}:append"

    async def export(
        self,
        event: QueuePayload,
        partner: PartnerConfig,
        global_settings: GlobalSettingsSnapshot,
    ) -> bool:
        """
        Append the event to the partner's spreadsheet.

        Only runs when both spreadsheet id and sheet name are configured.
        Never raises.

        Returns:
            True if the row was appended
        """
        if not partner.sheet_export_enabled:
            return False

        credentials_json = (
            partner.google_service_account_json or global_settings.google_service_account_json
        )
        if not credentials_json:
            logger.warning(
                "Sheet export skipped for partner %s: no service account credentials", partner.id
            )
            return False

        try:
            token = await asyncio.wait_for(self._token_provider(credentials_json), self.timeout)
            await self._append(partner, token, format_sheet_row(event))
        except Exception as e:
            # Credential parsing and token refresh errors land here along with BestEffortFailure
            logger.warning("Sheet export failed for partner %s. %s", partner.id, e)
            metrics.record_notification("sheets", success=False)
            return False

        metrics.record_notification("sheets", success=True)
        if partner.logging_enabled:
            logger.info("Sheet row appended for partner %s", partner.id)
        return True

    async def _append(self, partner: PartnerConfig, token: str, row: list) -> None:
        try:
            client = await self._get_client()
            response = await client.post(
                self._append_url(partner.google_spreadsheet_id, partner.google_sheet_name),
                params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
                headers={"Authorization": f"Bearer {token}"},
                json={"values": [row]},
            )
        except httpx.HTTPError as e:
            raise BestEffortFailure(f"Transport error: {e}") from e

        if response.status_code != 200:
            raise BestEffortFailure(f"HTTP Code: {response.status_code}")


# Global exporter instance
sheet_exporter = SheetExporter()
