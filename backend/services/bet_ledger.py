"""
Authoritative record of bets and the balance mutations coupled to them.

State machine::

    pending ──► won | lost | sold | cancelled      (all terminal)

Every transition is a conditional ``UPDATE … WHERE status = 'pending'``
executed in the same transaction as the matching balance change, so a bet
leaves ``pending`` at most once and its balance effect is applied at most
once, even when two requests (or two settlement passes) race.

Balance mutations for a user are additionally serialised through a per-user
lock and a ``SELECT … FOR UPDATE`` row lock, so the "stake <= balance" check
and the debit happen as one unit.

Operations:
  place_bet()      verify odds, check balance, insert bet + debit stake
  get_sell_quote() price an early exit without mutating anything
  sell_bet()       credit fair value, transition to ``sold``
  settle_*()       transitions driven only by the settlement resolver
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from backend.core.cashout import CashOutQuote, price_cash_out
from backend.core.errors import (
    BetNotEligible,
    BetNotFound,
    BettingCutoffReached,
    EventNotFound,
    InsufficientBalance,
    InvalidWager,
    OddsDrifted,
    UserNotFound,
)
from backend.core.odds_math import is_valid_american, profit_on_win, round_money
from backend.core.settings import EngineSettings, VerificationFallback
from backend.core.sport_config import get_sport_config
from backend.models import (
    BET_CANCELLED,
    BET_LOST,
    BET_PENDING,
    BET_SOLD,
    BET_WON,
    Bet,
    SessionLocal,
    User,
    session_scope,
    utcnow,
)
from backend.services.verification import OddsVerificationService, VerifiedOdds

logger = logging.getLogger(__name__)

#: Odds source recorded when verification was unavailable and the fallback
#: policy allowed the action to proceed.
SOURCE_UNVERIFIED = "unverified"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class BetView:
    """Detached copy of a ``bets`` row."""

    id: int
    user_id: int
    event: str
    participant: str
    stake: float
    odds: int
    sport: str
    commence_time: datetime
    status: str
    created_at: Optional[datetime]
    status_changed_at: Optional[datetime] = None
    final_amount: Optional[float] = None
    profit_loss: Optional[float] = None

    @property
    def potential_payout(self) -> float:
        return round_money(self.stake + profit_on_win(self.stake, self.odds))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event,
            "participant": self.participant,
            "stake": self.stake,
            "odds": self.odds,
            "sport": self.sport,
            "commence_time": self.commence_time.isoformat(),
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "status_changed_at": self.status_changed_at.isoformat() if self.status_changed_at else None,
            "final_amount": self.final_amount,
            "profit_loss": self.profit_loss,
            "potential_payout": self.potential_payout,
        }


def _to_view(bet: Bet) -> BetView:
    return BetView(
        id=bet.id,
        user_id=bet.user_id,
        event=bet.event,
        participant=bet.participant,
        stake=bet.stake,
        odds=bet.odds,
        sport=bet.sport,
        commence_time=bet.commence_time,
        status=bet.status,
        created_at=bet.created_at,
        status_changed_at=bet.status_changed_at,
        final_amount=bet.final_amount,
        profit_loss=bet.profit_loss,
    )


@dataclass
class PlacementResult:
    bet_id: int
    new_balance: float
    odds: int
    live_odds: Optional[int]
    odds_source: str                 # provider | cache | unverified


@dataclass
class SellQuote:
    bet_id: int
    quote: CashOutQuote
    odds_source: str                 # provider | cache | unverified

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bet_id": self.bet_id,
            "stake": self.quote.stake,
            "original_odds": self.quote.original_odds,
            "current_odds": self.quote.current_odds,
            "potential_payout": self.quote.potential_payout,
            "win_probability": round(self.quote.win_probability, 4),
            "sell_value": self.quote.sell_value,
            "profit_loss": self.quote.profit_loss,
            "floor_applied": self.quote.floor_applied,
            "odds_movement": self.quote.odds_movement,
            "odds_source": self.odds_source,
        }


@dataclass
class SaleResult:
    sell_quote: SellQuote
    new_balance: float

    def to_dict(self) -> Dict[str, Any]:
        payload = self.sell_quote.to_dict()
        payload["new_balance"] = self.new_balance
        return payload


@dataclass
class SettlementBatch:
    """Pending bets on one event, processed together in a resolution pass."""

    sport: str
    event: str
    commence_time: datetime
    bets: List[BetView] = field(default_factory=list)


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class BetLedger:
    """Bet records and their coupled balance changes."""

    def __init__(
        self,
        verifier: OddsVerificationService,
        settings: EngineSettings,
        session_factory=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.verifier = verifier
        self.settings = settings
        self.session_factory = session_factory or SessionLocal
        self.clock = clock
        self._user_locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()

    @contextmanager
    def _user_lock(self, user_id: int):
        with self._registry_lock:
            lock = self._user_locks[user_id]
        with lock:
            yield

    @staticmethod
    def _locked_user(db, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).with_for_update().one_or_none()
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, user_id: int) -> float:
        with session_scope(self.session_factory) as db:
            balance = db.query(User.balance).filter(User.id == user_id).scalar()
        if balance is None:
            raise UserNotFound(f"User {user_id} not found")
        return balance

    def list_bets(self, user_id: int) -> List[BetView]:
        """Betting history, newest first."""
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(Bet)
                .filter(Bet.user_id == user_id)
                .order_by(Bet.created_at.desc(), Bet.id.desc())
                .all()
            )
            return [_to_view(row) for row in rows]

    def get_bet(self, bet_id: int, user_id: Optional[int] = None) -> BetView:
        with session_scope(self.session_factory) as db:
            query = db.query(Bet).filter(Bet.id == bet_id)
            if user_id is not None:
                query = query.filter(Bet.user_id == user_id)
            bet = query.one_or_none()
            if bet is None:
                raise BetNotFound(f"Bet {bet_id} not found")
            return _to_view(bet)

    # ------------------------------------------------------------------
    # Verification policy
    # ------------------------------------------------------------------

    def _verified_price(
        self, sport: str, event: str, participant: str, commence_time: datetime
    ) -> Tuple[Optional[int], Optional[VerifiedOdds]]:
        live = self.verifier.get_live_odds(sport, event, commence_time)
        if live is None:
            return None, None
        price = live.price_for(participant)
        if price is None:
            logger.warning("Participant %r not priced in %s", participant, live.event)
            return None, None
        return price, live

    def _unverified(self, sport: str, event: str, action: str) -> None:
        """Apply the configured fallback when live odds are unavailable."""
        if self.settings.verification_fallback is VerificationFallback.REJECT:
            raise EventNotFound(sport, event)
        logger.warning(
            "Odds verification unavailable for %s (%s); %s proceeds under %s policy",
            event, sport, action, self.settings.verification_fallback.value,
        )

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    def place_bet(
        self,
        user_id: int,
        event: str,
        participant: str,
        stake: float,
        asserted_odds: int,
        sport: str,
        commence_time: datetime,
    ) -> PlacementResult:
        """
        Place a verified bet and debit the stake.

        Raises:
            InvalidWager:         Bad stake, odds, event or participant.
            BettingCutoffReached: Event started (or inside the cutoff window).
            OddsDrifted:          Live price moved beyond the drift tolerance.
            EventNotFound:        Odds unverifiable under the ``reject`` policy.
            InsufficientBalance:  Stake exceeds the current balance.
        """
        cfg = get_sport_config(sport)
        if not event or not event.strip() or not participant or not participant.strip():
            raise InvalidWager("event and participant are required")
        if not is_valid_american(asserted_odds):
            raise InvalidWager(f"{asserted_odds!r} is not valid American odds")
        stake = round_money(float(stake))
        if stake <= 0:
            raise InvalidWager("Stake must be greater than zero")

        commence_time = _as_naive_utc(commence_time)
        self._check_cutoff(commence_time)

        live_price, live = self._verified_price(cfg.sport_id, event, participant, commence_time)
        if live_price is None:
            self._unverified(cfg.sport_id, event, "placement")
            odds_source = SOURCE_UNVERIFIED
        else:
            tolerance = self.settings.drift_tolerance_for(cfg.sport_id)
            if abs(int(asserted_odds) - live_price) > tolerance:
                logger.info(
                    "Odds drifted for %s on %s: asserted %+d, live %+d",
                    participant, event, asserted_odds, live_price,
                )
                raise OddsDrifted(int(asserted_odds), live_price, tolerance)
            odds_source = live.source
            if live.commence_time != commence_time:
                commence_time = live.commence_time
                self._check_cutoff(commence_time)

        now = self.clock()
        with self._user_lock(user_id), session_scope(self.session_factory) as db:
            user = self._locked_user(db, user_id)
            if stake > user.balance:
                raise InsufficientBalance(user.balance, stake)

            bet = Bet(
                user_id=user_id,
                event=event.strip(),
                participant=participant.strip(),
                stake=stake,
                odds=int(asserted_odds),
                sport=cfg.sport_id,
                commence_time=commence_time,
                status=BET_PENDING,
                created_at=now,
            )
            db.add(bet)
            user.balance = round_money(user.balance - stake)
            db.flush()
            bet_id = bet.id
            new_balance = user.balance

        logger.info(
            "Bet %d placed: user %d, %.2f on %s (%+d) in %s [odds %s]",
            bet_id, user_id, stake, participant, asserted_odds, event, odds_source,
        )
        return PlacementResult(
            bet_id=bet_id,
            new_balance=new_balance,
            odds=int(asserted_odds),
            live_odds=live_price,
            odds_source=odds_source,
        )

    def _check_cutoff(self, commence_time: datetime) -> None:
        if commence_time - self.settings.betting_cutoff <= self.clock():
            raise BettingCutoffReached("Betting is closed for this event")

    # ------------------------------------------------------------------
    # Sale
    # ------------------------------------------------------------------

    def _sellable_bet(self, bet_id: int, user_id: int) -> BetView:
        bet = self.get_bet(bet_id, user_id)
        if bet.status != BET_PENDING:
            raise BetNotEligible(f"Bet {bet_id} is {bet.status}; only pending bets can be sold")
        if bet.commence_time <= self.clock():
            raise BetNotEligible("Cannot sell a bet after the game has started")
        return bet

    def _quote(self, bet: BetView) -> SellQuote:
        current, live = self._verified_price(
            bet.sport, bet.event, bet.participant, bet.commence_time
        )
        if current is None:
            self._unverified(bet.sport, bet.event, "sale")
            current, source = bet.odds, SOURCE_UNVERIFIED
        else:
            source = live.source
        quote = price_cash_out(bet.stake, bet.odds, current, self.settings.cash_out_floor_pct)
        return SellQuote(bet_id=bet.id, quote=quote, odds_source=source)

    def get_sell_quote(self, bet_id: int, user_id: int) -> SellQuote:
        """Price an early exit without mutating any state."""
        return self._quote(self._sellable_bet(bet_id, user_id))

    def sell_bet(self, bet_id: int, user_id: int) -> SaleResult:
        """
        Cash out a pending bet at its fair value.

        Raises:
            BetNotFound:   No such bet for this user.
            BetNotEligible: Not pending, already sold, or game started.
        """
        sell_quote = self._quote(self._sellable_bet(bet_id, user_id))
        quote = sell_quote.quote
        now = self.clock()

        with self._user_lock(user_id), session_scope(self.session_factory) as db:
            updated = (
                db.query(Bet)
                .filter(
                    Bet.id == bet_id,
                    Bet.user_id == user_id,
                    Bet.status == BET_PENDING,
                    Bet.commence_time > now,
                )
                .update(
                    {
                        Bet.status: BET_SOLD,
                        Bet.final_amount: quote.sell_value,
                        Bet.profit_loss: quote.profit_loss,
                        Bet.status_changed_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise BetNotEligible(f"Bet {bet_id} is no longer pending")
            user = self._locked_user(db, user_id)
            user.balance = round_money(user.balance + quote.sell_value)
            new_balance = user.balance

        logger.info(
            "Bet %d sold: %.2f (P&L %+.2f), odds %+d -> %+d [%s]",
            bet_id, quote.sell_value, quote.profit_loss,
            quote.original_odds, quote.current_odds, sell_quote.odds_source,
        )
        return SaleResult(sell_quote=sell_quote, new_balance=new_balance)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def pending_batches(self, now: Optional[datetime] = None) -> List[SettlementBatch]:
        """Pending bets grouped by event, for events past their settlement grace."""
        now = now or self.clock()
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(Bet)
                .filter(Bet.status == BET_PENDING, Bet.commence_time < now)
                .order_by(Bet.commence_time.asc(), Bet.id.asc())
                .all()
            )
            bets = [_to_view(row) for row in rows]

        batches: Dict[Tuple[str, str, datetime], SettlementBatch] = {}
        for bet in bets:
            if bet.commence_time >= now - self.settings.settlement_grace_for(bet.sport):
                continue
            key = (bet.sport, bet.event, bet.commence_time)
            if key not in batches:
                batches[key] = SettlementBatch(bet.sport, bet.event, bet.commence_time)
            batches[key].bets.append(bet)
        return list(batches.values())

    def _transition(self, bet_id: int, values: Dict, credit: Optional[float] = None) -> bool:
        """Move one pending bet to a terminal status; False if it already left pending."""
        with session_scope(self.session_factory) as db:
            user_id = db.query(Bet.user_id).filter(Bet.id == bet_id).scalar()
            if user_id is None:
                raise BetNotFound(f"Bet {bet_id} not found")

        with self._user_lock(user_id), session_scope(self.session_factory) as db:
            updated = (
                db.query(Bet)
                .filter(Bet.id == bet_id, Bet.status == BET_PENDING)
                .update({**values, Bet.status_changed_at: self.clock()}, synchronize_session=False)
            )
            if updated != 1:
                return False
            if credit:
                user = self._locked_user(db, user_id)
                user.balance = round_money(user.balance + credit)
        return True

    def settle_won(self, bet: BetView) -> bool:
        """Credit stake + winnings and mark ``won``."""
        payout = round_money(profit_on_win(bet.stake, bet.odds))
        total = round_money(bet.stake + payout)
        return self._transition(
            bet.id,
            {Bet.status: BET_WON, Bet.final_amount: total, Bet.profit_loss: payout},
            credit=total,
        )

    def settle_lost(self, bet: BetView) -> bool:
        """Mark ``lost``; the stake was already debited at placement."""
        return self._transition(
            bet.id,
            {Bet.status: BET_LOST, Bet.final_amount: 0.0, Bet.profit_loss: -bet.stake},
        )

    def settle_cancelled(self, bet: BetView) -> bool:
        """Refund the stake and mark ``cancelled``."""
        return self._transition(
            bet.id,
            {Bet.status: BET_CANCELLED, Bet.final_amount: bet.stake, Bet.profit_loss: 0.0},
            credit=bet.stake,
        )
