"""
Feature flags for the override engine
Resolve loosely typed script/query arguments into an immutable flag set
"""

import math
import re
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


# External argument name -> FeatureFlags field
ARG_NAMES = {
    'loadbalance': 'load_balance',
    'landing': 'landing',
    'ipv6': 'ipv6',
    'full': 'full_config',
    'keepalive': 'keep_alive',
    'fakeip': 'fake_ip',
    'quic': 'quic',
    'regex': 'regex_filter',
}

THRESHOLD_ARG = 'threshold'

_LEADING_INT = re.compile(r'\s*([+-]?\d+)')


def parse_bool(value: Any) -> bool:
    """Only real booleans and the strings "true"/"1" count as true"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == 'true' or value == '1'
    return False


def parse_number(value: Any, default: int = 0) -> int:
    """Parse a leading integer ("3", "3 nodes"); anything else gives default"""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else default
    match = _LEADING_INT.match(str(value))
    if not match:
        return default
    return int(match.group(1))


class FeatureFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    load_balance: bool = False
    landing: bool = False
    ipv6: bool = False
    full_config: bool = False
    keep_alive: bool = False
    fake_ip: bool = False
    quic: bool = False
    regex_filter: bool = False
    country_threshold: int = Field(default=0, ge=0)

    @classmethod
    def from_args(cls, args: Optional[Mapping[str, Any]] = None) -> 'FeatureFlags':
        """Build flags from raw arguments such as query parameters

        Unknown keys are ignored, missing keys keep their defaults, and an
        unparseable or negative threshold falls back to 0.
        """
        args = args or {}
        values: Dict[str, Any] = {
            field: parse_bool(args.get(arg)) for arg, field in ARG_NAMES.items()
        }
        values['country_threshold'] = max(parse_number(args.get(THRESHOLD_ARG), 0), 0)
        return cls(**values)
