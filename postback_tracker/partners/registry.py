"""Partner registry: typed, read-only partner configuration lookup."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postback_tracker.config import settings
from postback_tracker.db.models import AppSetting, Partner

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SumMappingRule:
    """Rewrite rule: a reported sum equal to ``from_value`` maps to ``to_value``."""

    from_value: str
    to_value: str


@dataclass(frozen=True)
class PartnerConfig:
    """Strongly-typed view of a partners row."""

    id: str
    name: str
    target_domain: Optional[str] = None
    clickid_keys: tuple[str, ...] = ()
    sum_keys: tuple[str, ...] = ()
    sum_mapping: tuple[SumMappingRule, ...] = ()
    ip_whitelist_enabled: bool = False
    allowed_ips: frozenset[str] = field(default_factory=frozenset)
    logging_enabled: bool = False

    telegram_enabled: bool = False
    telegram_whitelist_enabled: bool = False
    telegram_whitelist_keywords: tuple[str, ...] = ()
    partner_telegram_enabled: bool = False
    partner_telegram_bot_token: Optional[str] = None
    partner_telegram_channel_id: Optional[str] = None

    google_spreadsheet_id: Optional[str] = None
    google_sheet_name: Optional[str] = None
    google_service_account_json: Optional[str] = None

    @property
    def sheet_export_enabled(self) -> bool:
        return bool(self.google_spreadsheet_id and self.google_sheet_name)

    @property
    def ip_check_active(self) -> bool:
        return self.ip_whitelist_enabled and bool(self.allowed_ips)


@dataclass(frozen=True)
class GlobalSettingsSnapshot:
    """Immutable copy of the global notifier settings, loaded once per batch run."""

    telegram_bot_token: str = ""
    telegram_channel_id: str = ""
    telegram_globally_enabled: bool = False
    google_service_account_json: str = ""


def _load_json(value: Any, column: str, partner_id: str) -> Any:
    """Columns may hold decoded JSON or a raw JSON string (legacy rows)."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Partner %s has invalid JSON in %s", partner_id, column)
            return None
    return value


def _string_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item for item in value if isinstance(item, str) and item != "")


def _mapping_rules(value: Any) -> tuple[SumMappingRule, ...]:
    if not isinstance(value, list):
        return ()
    rules = []
    for item in value:
        if not isinstance(item, dict) or "from" not in item or "to" not in item:
            continue
        if item["from"] is None or item["to"] is None:
            continue
        rules.append(SumMappingRule(from_value=str(item["from"]), to_value=str(item["to"])))
    return tuple(rules)


def partner_config_from_row(row: Partner) -> PartnerConfig:
    """Decode a Partner row into a PartnerConfig.

    Empty key lists fall back to the configured defaults. Malformed JSON
    values degrade to empty lists instead of failing the request.
    """
    pid = row.id
    clickid_keys = _string_list(_load_json(row.clickid_keys, "clickid_keys", pid))
    sum_keys = _string_list(_load_json(row.sum_keys, "sum_keys", pid))

    return PartnerConfig(
        id=pid,
        name=row.name,
        target_domain=row.target_domain,
        clickid_keys=clickid_keys or tuple(settings.default_clickid_keys),
        sum_keys=sum_keys or tuple(settings.default_sum_keys),
        sum_mapping=_mapping_rules(_load_json(row.sum_mapping, "sum_mapping", pid)),
        ip_whitelist_enabled=bool(row.ip_whitelist_enabled),
        allowed_ips=frozenset(
            ip.strip() for ip in _string_list(_load_json(row.allowed_ips, "allowed_ips", pid))
        ),
        logging_enabled=bool(row.logging_enabled),
        telegram_enabled=bool(row.telegram_enabled),
        telegram_whitelist_enabled=bool(row.telegram_whitelist_enabled),
        telegram_whitelist_keywords=_string_list(
            _load_json(row.telegram_whitelist_keywords, "telegram_whitelist_keywords", pid)
        ),
        partner_telegram_enabled=bool(row.partner_telegram_enabled),
        partner_telegram_bot_token=row.partner_telegram_bot_token or None,
        partner_telegram_channel_id=row.partner_telegram_channel_id or None,
        google_spreadsheet_id=row.google_spreadsheet_id or None,
        google_sheet_name=row.google_sheet_name or None,
        google_service_account_json=row.google_service_account_json or None,
    )


class PartnerRegistry:
    """Read-only access to partner configuration."""

    async def get(self, db: AsyncSession, partner_id: str) -> Optional[PartnerConfig]:
        """Look up a partner by id; None when unknown."""
        result = await db.execute(select(Partner).where(Partner.id == partner_id))
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return partner_config_from_row(row)

    async def load_global_settings(self, db: AsyncSession) -> GlobalSettingsSnapshot:
        """
        Build the global settings snapshot.

        Values from the app_settings table win; missing keys fall back to
        the environment defaults.
        """
        result = await db.execute(select(AppSetting.setting_key, AppSetting.setting_value))
        stored = {key: value for key, value in result.all() if value is not None}

        enabled_raw = stored.get("telegram_globally_enabled")
        if enabled_raw is None:
            globally_enabled = settings.telegram_globally_enabled
        else:
            globally_enabled = enabled_raw.strip().lower() in _TRUTHY

        return GlobalSettingsSnapshot(
            telegram_bot_token=stored.get("telegram_bot_token", settings.telegram_bot_token),
            telegram_channel_id=stored.get("telegram_channel_id", settings.telegram_channel_id),
            telegram_globally_enabled=globally_enabled,
            google_service_account_json=stored.get(
                "google_service_account_json", settings.google_service_account_json
            ),
        )


# Global registry instance
partner_registry = PartnerRegistry()
