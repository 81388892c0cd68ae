"""Queue entry payload (persisted as JSON in postback_queue.data)."""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(moment: datetime) -> str:
    """Second-precision capture time, e.g. '2025-09-01 12:30:05'."""
    return moment.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT)


class QueuePayload(BaseModel):
    """Snapshot of one inbound postback."""

    partner_id: str
    timestamp: str
    click_id: Optional[str] = None
    url: str = ""
    client_ip: str = ""
    user_agent: str = ""
    method: str = "GET"
    sum: Optional[float] = None
    sum_mapping: float = 0.0
    extra_params: dict[str, Union[str, list[str], Any]] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def check_timestamp(cls, value: str) -> str:
        parse_timestamp(value)
        return value

    @property
    def captured_at(self) -> datetime:
        return parse_timestamp(self.timestamp)
