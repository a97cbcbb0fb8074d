"""Deployment settings for the odds and settlement services.

All knobs are externally supplied through environment variables (a ``.env``
file is honoured via ``python-dotenv``).  :meth:`EngineSettings.from_env`
is the only place that reads them; services receive an ``EngineSettings``
instance at construction and never touch ``os.environ`` themselves.

Per-sport overrides use the sport code as a suffix, e.g.
``MAX_EVENTS_NBA=10`` or ``ODDS_DRIFT_TOLERANCE_NFL=15``.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from backend.core.cashout import DEFAULT_FLOOR_PCT
from backend.core.sport_config import SPORTS, get_sport_config

logger = logging.getLogger(__name__)

#: Up to five provider credentials, tried in this order.
_CREDENTIAL_VARS: Tuple[str, ...] = (
    "ODDS_API_KEY",
    "ODDS_API_KEY_2",
    "ODDS_API_KEY_3",
    "ODDS_API_KEY_4",
    "ODDS_API_KEY_5",
)


class VerificationFallback(str, enum.Enum):
    """What to do when live odds cannot be verified before a financial action.

    ``ACCEPT_ASSERTED``: proceed with the odds the user asserted (placement)
    or the odds locked in at placement (sale).

    ``REJECT``: refuse the action with :class:`~backend.core.errors.EventNotFound`.
    """

    ACCEPT_ASSERTED = "accept_asserted"
    REJECT = "reject"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _per_sport_ints(env: Mapping[str, str], prefix: str) -> Dict[str, int]:
    overrides: Dict[str, int] = {}
    for sport in SPORTS:
        name = f"{prefix}_{sport}"
        if env.get(name):
            overrides[sport] = _env_int(env, name, 0)
    return overrides


def _per_sport_floats(env: Mapping[str, str], prefix: str) -> Dict[str, float]:
    overrides: Dict[str, float] = {}
    for sport in SPORTS:
        name = f"{prefix}_{sport}"
        if env.get(name):
            overrides[sport] = _env_float(env, name, 0.0)
    return overrides


@dataclass(frozen=True)
class EngineSettings:
    """Immutable bundle of every deployment knob.

    Tests construct this directly; production code calls :meth:`from_env`.
    """

    odds_api_keys: Tuple[str, ...] = ()
    odds_api_base_url: str = "https://api.the-odds-api.com/v4"
    odds_api_regions: str = "us"
    odds_api_markets: str = "h2h"
    provider_timeout_seconds: float = 10.0

    cache_duration: timedelta = timedelta(minutes=60)
    lookahead: timedelta = timedelta(days=14)
    default_max_events: Optional[int] = None
    max_events_overrides: Mapping[str, int] = field(default_factory=dict)

    drift_tolerance: int = 10
    drift_tolerance_overrides: Mapping[str, int] = field(default_factory=dict)
    betting_cutoff: timedelta = timedelta(0)
    verification_fallback: VerificationFallback = VerificationFallback.ACCEPT_ASSERTED
    cash_out_floor_pct: float = DEFAULT_FLOOR_PCT

    settlement_grace: timedelta = timedelta(hours=2)
    settlement_grace_overrides: Mapping[str, timedelta] = field(default_factory=dict)
    results_days_from: int = 3
    settlement_workers: int = 1

    starting_balance: float = 1000.0

    # ------------------------------------------------------------------
    # Per-sport lookups
    # ------------------------------------------------------------------

    def max_events_for(self, sport: str) -> int:
        cfg = get_sport_config(sport)
        if cfg.sport_id in self.max_events_overrides:
            return self.max_events_overrides[cfg.sport_id]
        if self.default_max_events is not None:
            return self.default_max_events
        return cfg.max_events

    def drift_tolerance_for(self, sport: str) -> int:
        cfg = get_sport_config(sport)
        return self.drift_tolerance_overrides.get(cfg.sport_id, self.drift_tolerance)

    def settlement_grace_for(self, sport: str) -> timedelta:
        cfg = get_sport_config(sport)
        return self.settlement_grace_overrides.get(cfg.sport_id, self.settlement_grace)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Build settings from environment variables (see module docstring)."""
        if env is None:
            load_dotenv()
            env = os.environ

        keys = tuple(
            env[name].strip() for name in _CREDENTIAL_VARS if env.get(name, "").strip()
        )
        if not keys:
            logger.warning("No odds API credentials configured (ODDS_API_KEY unset)")

        raw_policy = env.get("VERIFICATION_FALLBACK", VerificationFallback.ACCEPT_ASSERTED.value)
        try:
            policy = VerificationFallback(raw_policy.strip().lower())
        except ValueError:
            logger.warning(
                "Unknown VERIFICATION_FALLBACK=%r, using %s",
                raw_policy, VerificationFallback.ACCEPT_ASSERTED.value,
            )
            policy = VerificationFallback.ACCEPT_ASSERTED

        grace_overrides = {
            sport: timedelta(hours=hours)
            for sport, hours in _per_sport_floats(env, "SETTLEMENT_GRACE_HOURS").items()
        }

        return cls(
            odds_api_keys=keys,
            odds_api_base_url=env.get("ODDS_API_BASE_URL", cls.odds_api_base_url).rstrip("/"),
            odds_api_regions=env.get("ODDS_API_REGIONS", cls.odds_api_regions),
            odds_api_markets=env.get("ODDS_API_MARKETS", cls.odds_api_markets),
            provider_timeout_seconds=_env_float(env, "ODDS_API_TIMEOUT_SECONDS", 10.0),
            cache_duration=timedelta(minutes=_env_float(env, "ODDS_CACHE_MINUTES", 60.0)),
            lookahead=timedelta(days=_env_int(env, "ODDS_LOOKAHEAD_DAYS", 14)),
            default_max_events=_env_int(env, "MAX_EVENTS_PER_SPORT", 0) or None,
            max_events_overrides=_per_sport_ints(env, "MAX_EVENTS"),
            drift_tolerance=_env_int(env, "ODDS_DRIFT_TOLERANCE", 10),
            drift_tolerance_overrides=_per_sport_ints(env, "ODDS_DRIFT_TOLERANCE"),
            betting_cutoff=timedelta(minutes=_env_float(env, "BETTING_CUTOFF_MINUTES", 0.0)),
            verification_fallback=policy,
            cash_out_floor_pct=_env_float(env, "CASH_OUT_FLOOR_PCT", DEFAULT_FLOOR_PCT),
            settlement_grace=timedelta(hours=_env_float(env, "SETTLEMENT_GRACE_HOURS", 2.0)),
            settlement_grace_overrides=grace_overrides,
            results_days_from=min(max(_env_int(env, "RESULTS_DAYS_FROM", 3), 1), 3),
            settlement_workers=max(_env_int(env, "SETTLEMENT_WORKERS", 1), 1),
            starting_balance=_env_float(env, "STARTING_BALANCE", 1000.0),
        )
