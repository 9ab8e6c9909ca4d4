# engine.py
"""
Crypto Crash Round Engine

Responsibilities:
- Strict State Machine (PENDING -> CRASHED, once per round)
- Provably fair round creation (seed -> hash commitment -> crash point)
- Linear multiplier clock: 1 + elapsed_seconds * growth_rate
- Admission of bets / cashouts against the live round
- Crash finalization exactly once, after in-flight commits drain

Concurrency:
All in-memory round state is guarded by one asyncio.Lock which is never
held across ledger or price I/O by request handlers. The clock tick and
request admission share one transition function (_advance), so whoever
observes the crash point first flips the status, and everyone after
sees CRASHED.
"""

from __future__ import annotations

import os
import time
import asyncio
import logging
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Tuple

from sqlalchemy.exc import SQLAlchemyError

from crypto_crash.db import Bet, Cashout, Ledger, RoundStatus
from crypto_crash.events import EventBus, MULTIPLIER_UPDATE, ROUND_CRASH, ROUND_START
from crypto_crash.exceptions import (
    AlreadyCashedOut,
    DuplicateBet,
    NoActiveRound,
    NoBetThisRound,
    RoundAlreadyCrashed,
    RoundNotAcceptingBets,
    RoundStillRunning,
)
from crypto_crash.utils import (
    format_multiplier,
    generate_crash_point,
    generate_seed,
    quantize_multiplier,
    round_hash,
)

logger = logging.getLogger("crypto_crash.engine")

ONE = Decimal("1")

# =========================
# CONFIGURATION
# =========================

@dataclass(frozen=True)
class GameConfig:
    # --- GAMEPLAY SPEED ---
    # Multiplier = 1 + elapsed_seconds * GROWTH_RATE
    # 0.1 -> 1.00 to 2.00 in 10 seconds
    growth_rate: Decimal = Decimal("0.1")
    tick_interval: float = 0.1

    # Pause between a crash and the next round
    round_pause: float = 10.0

    # --- BETTING ---
    max_bet_usd: Decimal = Decimal("1000000")
    supported_currencies: Tuple[str, ...] = ("btc", "eth")

    @classmethod
    def from_env(cls) -> "GameConfig":
        currencies = os.getenv("SUPPORTED_CURRENCIES", "btc,eth")
        return cls(
            growth_rate=Decimal(os.getenv("GROWTH_RATE", "0.1")),
            tick_interval=float(os.getenv("TICK_INTERVAL_SEC", "0.1")),
            round_pause=float(os.getenv("ROUND_PAUSE_SEC", "10")),
            max_bet_usd=Decimal(os.getenv("MAX_BET_USD", "1000000")),
            supported_currencies=tuple(c.strip().lower() for c in currencies.split(",") if c.strip()),
        )

# =========================
# CLOCK
# =========================

class Clock(Protocol):
    def now(self) -> float:
        """Monotonic seconds."""

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

# =========================
# ACTIVE ROUND (in-memory mirror)
# =========================

@dataclass
class ActiveRound:
    round_id: int
    seed: str
    hash: str
    crash_point: Decimal
    started_at: float            # clock.now() at start
    start_time: datetime         # wall clock, persisted

    status: RoundStatus = RoundStatus.PENDING
    end_time: Optional[datetime] = None
    bets: Dict[str, Bet] = field(default_factory=dict)
    cashouts: Dict[str, Cashout] = field(default_factory=dict)

    finalized: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_pending(self) -> bool:
        return self.status is RoundStatus.PENDING

    def record_bet(self, bet: Bet) -> None:
        self.bets[bet.player_id] = bet

    def record_cashout(self, cashout: Cashout) -> None:
        self.cashouts[cashout.player_id] = cashout


@dataclass(frozen=True)
class Admission:
    """A request cleared to commit against `round`."""
    round: ActiveRound
    multiplier: Decimal
    bet: Optional[Bet] = None

# =========================
# ENGINE CLASS
# =========================

class CrashGameEngine:
    """
    Owns the single active round.
    Only this object assigns round ids and flips round status.
    """

    def __init__(
        self,
        ledger: Ledger,
        bus: EventBus,
        config: Optional[GameConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._ledger = ledger
        self._bus = bus
        self._config = config or GameConfig()
        self._clock = clock or SystemClock()

        self._lock = asyncio.Lock()
        self._round: Optional[ActiveRound] = None
        self._next_round_id: Optional[int] = None
        self._clock_task: Optional[asyncio.Task] = None

        # requests admitted but not yet committed / rolled back
        self._inflight = 0
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def config(self) -> GameConfig:
        return self._config

    @property
    def current_round(self) -> Optional[ActiveRound]:
        return self._round

    @property
    def next_round_id(self) -> Optional[int]:
        return self._next_round_id

    # =====================================================
    # MATH
    # =====================================================

    def _raw_multiplier(self, rnd: ActiveRound, now: float) -> Decimal:
        elapsed = max(0.0, now - rnd.started_at)
        return ONE + Decimal(str(elapsed)) * self._config.growth_rate

    def _live_multiplier(self, rnd: ActiveRound, now: float) -> Decimal:
        return quantize_multiplier(self._raw_multiplier(rnd, now))

    # =====================================================
    # TRANSITION (lock must be held)
    # =====================================================

    def _advance(self, now: float) -> None:
        """
        The only place a round leaves PENDING. Called by the clock and
        by request admission alike.
        """
        rnd = self._round
        if rnd is None or not rnd.is_pending:
            return

        if self._raw_multiplier(rnd, now) >= rnd.crash_point:
            rnd.status = RoundStatus.CRASHED
            rnd.end_time = datetime.now(timezone.utc)
            logger.info(f"Round {rnd.round_id} crashed at {format_multiplier(rnd.crash_point)}")

    # =====================================================
    # LIFECYCLE
    # =====================================================

    async def resume(self) -> int:
        """
        Continue numbering after the highest persisted round.

        Rounds still pending in the ledger were left by a previous
        process; they are closed as crashed so their seeds are revealed.
        """
        if self._round is None:
            orphaned = await self._ledger.close_orphaned_rounds(datetime.now(timezone.utc))
            if orphaned:
                logger.warning(f"Closed rounds left pending by a previous run: {orphaned}")

        last = await self._ledger.max_round_id()
        self._next_round_id = last + 1
        logger.info(f"Round sequence resumes at {self._next_round_id}")
        return self._next_round_id

    async def start_round(self, run_clock: bool = True) -> ActiveRound:
        """
        State: (none)/CRASHED -> PENDING.

        Raises:
            RoundStillRunning: previous round not finalized yet.
            LedgerUnavailable: the round could not be recorded.
        """
        if self._next_round_id is None:
            await self.resume()

        async with self._lock:
            current = self._round
            if current is not None and not current.done.is_set():
                raise RoundStillRunning(current.round_id)

            round_id = self._next_round_id
            seed = generate_seed()
            commitment = round_hash(seed, round_id)
            crash_point = generate_crash_point(seed, round_id)
            start_time = datetime.now(timezone.utc)

            # Unrecorded rounds never run
            await self._ledger.create_round(round_id, seed, commitment, crash_point, start_time)

            rnd = ActiveRound(
                round_id=round_id,
                seed=seed,
                hash=commitment,
                crash_point=crash_point,
                started_at=self._clock.now(),
                start_time=start_time,
            )
            self._round = rnd
            self._next_round_id = round_id + 1

        logger.info(f"Round {round_id} started, hash {commitment}")
        self._bus.publish(ROUND_START, roundId=round_id, hash=commitment)

        if run_clock:
            self._clock_task = asyncio.create_task(self.run_clock(), name=f"round-{round_id}-clock")
        return rnd

    async def tick(self) -> bool:
        """
        One clock step. Publishes the multiplier while pending.

        Returns:
            True once the round has crashed (clock must stop).
        """
        async with self._lock:
            rnd = self._round
            if rnd is None:
                return True

            now = self._clock.now()
            self._advance(now)

            if rnd.is_pending:
                multiplier = self._live_multiplier(rnd, now)
                self._bus.publish(MULTIPLIER_UPDATE, roundId=rnd.round_id, multiplier=float(multiplier))
                return False

        await self._finalize(rnd)
        return True

    async def run_clock(self) -> None:
        while not await self.tick():
            await self._clock.sleep(self._config.tick_interval)

    async def _finalize(self, rnd: ActiveRound) -> None:
        if rnd.finalized:
            return
        rnd.finalized = True

        try:
            # anything admitted before the flip commits or rolls back first
            await self._drained.wait()
            recorded = await self._ledger.finalize_round(rnd.round_id, rnd.crash_point, rnd.end_time)
            if not recorded:
                logger.warning(f"Round {rnd.round_id} was already finalized in the ledger")
        except SQLAlchemyError:
            logger.exception(f"Failed to record crash of round {rnd.round_id}")
        finally:
            self._bus.publish(
                ROUND_CRASH,
                roundId=rnd.round_id,
                crashPoint=float(rnd.crash_point),
                seed=rnd.seed,
            )
            rnd.done.set()

    async def wait_for_crash(self) -> ActiveRound:
        rnd = self._round
        if rnd is None:
            raise NoActiveRound()
        await rnd.done.wait()
        return rnd

    async def stop(self) -> None:
        """Cancel the clock timer. Safe to call more than once."""
        task, self._clock_task = self._clock_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def snapshot(self) -> Dict[str, Any]:
        """Read-only view for transports. Seed and crash point only after the crash."""
        async with self._lock:
            rnd = self._round
            if rnd is None:
                return {"status": "offline", "roundId": None, "multiplier": 1.0}

            now = self._clock.now()
            self._advance(now)
            crashed = not rnd.is_pending
            multiplier = rnd.crash_point if crashed else self._live_multiplier(rnd, now)

            return {
                "status": rnd.status.value,
                "roundId": rnd.round_id,
                "hash": rnd.hash,
                "multiplier": float(multiplier),
                "bets": len(rnd.bets),
                "cashouts": len(rnd.cashouts),
                "crashPoint": float(rnd.crash_point) if crashed else None,
                "seed": rnd.seed if crashed else None,
            }

    # =====================================================
    # ADMISSION
    # =====================================================

    def _check_bet(self, player_id: str) -> Tuple[ActiveRound, Decimal]:
        now = self._clock.now()
        self._advance(now)
        rnd = self._round
        if rnd is None or not rnd.is_pending:
            raise RoundNotAcceptingBets(rnd.round_id if rnd else None)
        if player_id in rnd.bets:
            raise DuplicateBet(player_id, rnd.round_id)
        return rnd, self._live_multiplier(rnd, now)

    def _check_cashout(self, player_id: str) -> Tuple[ActiveRound, Bet, Decimal]:
        rnd = self._round
        if rnd is None:
            raise NoActiveRound()
        now = self._clock.now()
        self._advance(now)
        if not rnd.is_pending:
            raise RoundAlreadyCrashed(rnd.round_id)
        bet = rnd.bets.get(player_id)
        if bet is None:
            raise NoBetThisRound(player_id, rnd.round_id)
        if player_id in rnd.cashouts:
            raise AlreadyCashedOut(player_id, rnd.round_id)
        return rnd, bet, self._live_multiplier(rnd, now)

    async def precheck_bet(self, player_id: str) -> ActiveRound:
        """Fast-fail before any I/O. Not a reservation."""
        async with self._lock:
            rnd, _ = self._check_bet(player_id)
            return rnd

    async def precheck_cashout(self, player_id: str) -> Tuple[ActiveRound, Bet]:
        async with self._lock:
            rnd, bet, _ = self._check_cashout(player_id)
            return rnd, bet

    def _enter(self) -> None:
        self._inflight += 1
        self._drained.clear()

    def _leave(self) -> None:
        self._inflight -= 1
        if self._inflight == 0:
            self._drained.set()

    @contextlib.asynccontextmanager
    async def admit_bet(self, player_id: str) -> AsyncIterator[Admission]:
        async with self._lock:
            rnd, multiplier = self._check_bet(player_id)
            self._enter()
        try:
            yield Admission(rnd, multiplier)
        finally:
            self._leave()

    @contextlib.asynccontextmanager
    async def admit_cashout(self, player_id: str, round_id: Optional[int] = None) -> AsyncIterator[Admission]:
        """
        The multiplier is captured here, under the lock, after _advance:
        it is therefore strictly below the crash point.

        With round_id, the cashout is bound to that round; if a newer
        round has replaced it, that round has crashed.
        """
        async with self._lock:
            if round_id is not None and (self._round is None or self._round.round_id != round_id):
                raise RoundAlreadyCrashed(round_id)
            rnd, bet, multiplier = self._check_cashout(player_id)
            self._enter()
        try:
            yield Admission(rnd, multiplier, bet)
        finally:
            self._leave()
