"""Field extraction from raw postback parameters.

Partners name their click-id and conversion-value parameters differently
(``clickid``, ``cid``, ``sub1`` ...). Each partner carries ordered key lists
and a sum mapping table; one generic routine evaluates them.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union

from postback_tracker.partners.registry import PartnerConfig, SumMappingRule

ParamValue = Union[str, list[str]]
Params = Mapping[str, ParamValue]

# Plain decimal / scientific notation; rejects "1_000", "nan", "inf", "0x10"
_DECIMAL_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


@dataclass
class ExtractedFields:
    """Structured fields derived from one postback."""

    click_id: Optional[str] = None
    sum: Optional[float] = None
    mapped_sum: float = 0.0
    extra_params: dict[str, ParamValue] = field(default_factory=dict)


def parse_decimal(value: object) -> Optional[float]:
    """
    Parse a finite decimal number.

    Returns:
        The float value, or None when the input is not a finite decimal.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not _DECIMAL_RE.match(text):
        return None
    try:
        number = float(text)
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def first_value(value: ParamValue) -> Optional[str]:
    """Reduce a parameter value to one string; arrays use their first element."""
    if isinstance(value, list):
        return str(value[0]) if value else None
    if value is None:
        return None
    return str(value)


def _first_present(
    keys: Sequence[str], query: Params, body: Params
) -> tuple[bool, Optional[str]]:
    """Find the first listed key present in query, then body.

    Returns (found, value). Key order decides precedence, not parameter order.
    """
    for key in keys:
        if key in query:
            return True, first_value(query[key])
        if key in body:
            return True, first_value(body[key])
    return False, None


def map_sum(sum_value: Optional[float], rules: Sequence[SumMappingRule]) -> float:
    """Apply the first rule whose ``from`` equals the sum; no match maps to 0."""
    if sum_value is None:
        return 0.0
    for rule in rules:
        from_value = parse_decimal(rule.from_value)
        to_value = parse_decimal(rule.to_value)
        if from_value is None or to_value is None:
            continue
        if from_value == sum_value:
            return to_value
    return 0.0


def extract_fields(
    partner: PartnerConfig,
    query: Params,
    body: Params,
    partner_id_key: str = "pid",
) -> ExtractedFields:
    """
    Extract click id, sum, mapped sum and residual parameters.

    Pure function of its inputs; numeric parse failures mean "absent".

    Args:
        partner: Partner configuration (key lists and mapping rules)
        query: Query-string parameters
        body: Body parameters (form or JSON object)
        partner_id_key: Name of the partner id parameter

    Returns:
        ExtractedFields
    """
    found, raw_click = _first_present(partner.clickid_keys, query, body)
    click_id = raw_click.strip() if found and raw_click is not None else None

    # The first present sum key decides, even when its value does not parse
    found, raw_sum = _first_present(partner.sum_keys, query, body)
    sum_value = parse_decimal(raw_sum) if found else None

    reserved = {partner_id_key, *partner.clickid_keys, *partner.sum_keys}
    extra_params: dict[str, ParamValue] = {}
    for source in (query, body):
        for key, value in source.items():
            if key not in reserved:
                extra_params[key] = value

    return ExtractedFields(
        click_id=click_id,
        sum=sum_value,
        mapped_sum=map_sum(sum_value, partner.sum_mapping),
        extra_params=extra_params,
    )
