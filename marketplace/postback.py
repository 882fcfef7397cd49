"""
Offerwall postback normalization.

Offer networks report conversions with their own parameter names. Every
alias we accept lives in FIELD_ALIASES; the first non-empty value wins.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

FIELD_ALIASES = {
    "provider": ("provider", "network"),
    "user_id": ("user_id", "uid", "user", "playerid", "userid"),
    "project_id": ("subid", "sub_id", "sub", "s2", "aff_sub2", "project_id"),
    "transaction_id": ("transaction_id", "tx", "conv_id", "click_id", "id"),
    "payout": ("payout", "amount", "reward", "revenue"),
}

DEFAULT_PROVIDER = "unknown"

# Request controls, never part of the conversion record
CONTROL_PARAMS = ("token", "format")


@dataclass
class Postback:
    provider: str
    user_id: Optional[str]
    project_id: Optional[str]
    transaction_id: Optional[str]
    payout: float
    raw_params: Dict[str, str] = field(default_factory=dict)

    @property
    def missing_fields(self):
        return [name for name in ("user_id", "transaction_id") if not getattr(self, name)]


def first_non_empty(params: Mapping[str, object], names) -> Optional[str]:
    for name in names:
        value = params.get(name)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def parse_payout(raw) -> float:
    """Unparseable or non-finite payouts count as a zero-value conversion."""
    if raw is None:
        return 0.0
    try:
        value = float(str(raw).strip())
    except ValueError:
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return value


def merge_params(query: Mapping[str, object], body: Mapping[str, object]) -> Dict[str, str]:
    """Body values take precedence over query string values."""
    merged = {}
    for source in (query or {}, body or {}):
        for key, value in source.items():
            if value is None or isinstance(value, (dict, list)):
                continue
            merged[str(key)] = str(value)
    return merged


def normalize_postback(params: Mapping[str, object]) -> Postback:
    return Postback(
        provider=first_non_empty(params, FIELD_ALIASES["provider"]) or DEFAULT_PROVIDER,
        user_id=first_non_empty(params, FIELD_ALIASES["user_id"]),
        project_id=first_non_empty(params, FIELD_ALIASES["project_id"]),
        transaction_id=first_non_empty(params, FIELD_ALIASES["transaction_id"]),
        payout=parse_payout(first_non_empty(params, FIELD_ALIASES["payout"])),
        raw_params={str(k): str(v) for k, v in params.items() if k not in CONTROL_PARAMS},
    )
