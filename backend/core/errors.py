"""Typed errors raised by the odds and settlement services.

Every error carries a stable ``code`` (used as the ``error`` field of HTTP
responses) and a ``retryable`` flag: retryable errors are transient upstream
conditions, the rest need changed input from the user.  ``to_dict`` exposes
the structured payload the routing layer returns.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class BettingError(Exception):
    """Base class for all domain errors."""

    code: str = "betting_error"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, "retryable": self.retryable}


# ---------------------------------------------------------------------------
# Upstream provider
# ---------------------------------------------------------------------------

class AllCredentialsExhausted(BettingError):
    """Every configured provider credential failed for one request."""

    code = "all_credentials_exhausted"
    retryable = True

    def __init__(
        self,
        sport_key: str,
        failures: Optional[List[Any]] = None,
        last_error: Optional[BaseException] = None,
    ):
        self.sport_key = sport_key
        self.failures = list(failures or [])
        self.last_error = last_error
        super().__init__(
            f"All {len(self.failures)} odds API credential(s) failed for "
            f"{sport_key}: {last_error}"
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["credentials_tried"] = len(self.failures)
        return payload


class EventNotFound(BettingError):
    """No upstream or cached event matched the requested event."""

    code = "event_not_found"
    retryable = True

    def __init__(self, sport: str, event: str):
        self.sport = sport
        self.event = event
        super().__init__(f"Could not verify odds for {event} ({sport})")


# ---------------------------------------------------------------------------
# Placement / sale
# ---------------------------------------------------------------------------

class OddsDrifted(BettingError):
    """Asserted odds differ from live odds by more than the drift tolerance."""

    code = "odds_drifted"

    def __init__(self, asserted_odds: int, live_odds: int, tolerance: int):
        self.asserted_odds = asserted_odds
        self.live_odds = live_odds
        self.tolerance = tolerance
        super().__init__(
            f"Odds changed from {asserted_odds:+d} to {live_odds:+d} "
            f"(tolerance {tolerance}). Please confirm the new price."
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(asserted_odds=self.asserted_odds, live_odds=self.live_odds)
        return payload


class InsufficientBalance(BettingError):
    code = "insufficient_balance"

    def __init__(self, balance: float, stake: float):
        self.balance = balance
        self.stake = stake
        super().__init__(f"Insufficient balance: {balance:.2f} available, {stake:.2f} requested")


class BettingCutoffReached(BettingError):
    """The event has started, or is inside the configured cutoff window."""

    code = "betting_cutoff_reached"


class BetNotEligible(BettingError):
    """The bet is not pending, or its game has already started."""

    code = "bet_not_eligible"


class InvalidWager(BettingError):
    code = "invalid_wager"


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class BetNotFound(BettingError):
    code = "bet_not_found"


class UserNotFound(BettingError):
    code = "user_not_found"


class UnknownSport(BettingError):
    code = "unknown_sport"

    def __init__(self, sport: str):
        self.sport = sport
        super().__init__(f"Unsupported sport: {sport!r}")
