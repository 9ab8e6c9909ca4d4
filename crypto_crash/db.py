# db.py
"""
Ledger Store – SQLAlchemy (asyncio)

Responsibilities:
- Async database engine & session lifecycle
- Player, balance, round, bet, cashout and transaction persistence
- Atomic bet / cashout commits (round append + balance delta + audit row)
- Uniqueness per (round, player) enforced by the database itself

Balance updates are a single conditional statement:
    UPDATE balances SET amount = round(amount + :delta, 10)
    WHERE player_id = :p AND currency = :c AND round(amount + :delta, 10) >= 0
Zero affected rows means the delta would overdraw, and the enclosing
transaction is rolled back before anything becomes visible.
"""

from __future__ import annotations

import os
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    ForeignKeyConstraint,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    event,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from crypto_crash.exceptions import (
    AlreadyCashedOut,
    DuplicateBet,
    InsufficientBalance,
    LedgerUnavailable,
    NoBetThisRound,
)
from crypto_crash.utils import generate_transaction_hash

logger = logging.getLogger("crypto_crash.db")

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./crypto_crash.db"
)

DB_ECHO = bool(os.getenv("DB_ECHO", False))


def _parse_balances(raw: str) -> Dict[str, Decimal]:
    # "btc=0.01,eth=0.5"
    balances: Dict[str, Decimal] = {}
    for part in filter(None, (p.strip() for p in raw.split(","))):
        currency, _, amount = part.partition("=")
        balances[currency.strip().lower()] = Decimal(amount.strip() or "0")
    return balances


# Balances granted to a player the first time they are seen
STARTING_BALANCES = _parse_balances(os.getenv("STARTING_BALANCES", "btc=0,eth=0"))

# Crypto amounts keep 10 places; bet amounts are quantized to 8 so
# amount x multiplier (2 places) is stored exactly.
CRYPTO_SCALE = 10
CRYPTO = Numeric(28, CRYPTO_SCALE)
USD = Numeric(18, 2)


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS
# =====================================================

class RoundStatus(str, enum.Enum):
    PENDING = "pending"
    CRASHED = "crashed"


class TransactionType(str, enum.Enum):
    BET = "bet"
    CASHOUT = "cashout"


# =====================================================
# MODELS
# =====================================================

class Player(Base):
    __tablename__ = "players"

    player_id: Mapped[str] = mapped_column(
        String(50),
        primary_key=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    balances: Mapped[list["Balance"]] = relationship(
        back_populates="player",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class Balance(Base):
    __tablename__ = "balances"
    __table_args__ = (
        UniqueConstraint("player_id", "currency", name="uq_balance_player_currency"),
        CheckConstraint("amount >= 0", name="ck_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    player_id: Mapped[str] = mapped_column(
        ForeignKey("players.player_id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    amount: Mapped[Decimal] = mapped_column(CRYPTO, nullable=False, default=Decimal("0"))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    player: Mapped[Player] = relationship(back_populates="balances")


class GameRound(Base):
    __tablename__ = "rounds"

    round_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=False,
    )

    seed: Mapped[str] = mapped_column(String(128), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    crash_point: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[RoundStatus] = mapped_column(
        Enum(RoundStatus, name="round_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RoundStatus.PENDING,
    )

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    bets: Mapped[list["BetRecord"]] = relationship(
        back_populates="round",
        order_by="BetRecord.id",
        lazy="selectin",
    )

    cashouts: Mapped[list["CashoutRecord"]] = relationship(
        back_populates="round",
        order_by="CashoutRecord.id",
        lazy="selectin",
    )


class BetRecord(Base):
    __tablename__ = "bets"
    __table_args__ = (
        UniqueConstraint("round_id", "player_id", name="uq_bet_round_player"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_id: Mapped[int] = mapped_column(ForeignKey("rounds.round_id"), index=True, nullable=False)
    player_id: Mapped[str] = mapped_column(ForeignKey("players.player_id"), nullable=False)

    usd_amount: Mapped[Decimal] = mapped_column(USD, nullable=False)
    crypto_amount: Mapped[Decimal] = mapped_column(CRYPTO, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    price_at_time: Mapped[Decimal] = mapped_column(CRYPTO, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    round: Mapped[GameRound] = relationship(back_populates="bets")


class CashoutRecord(Base):
    """
    Only for players present in `bets` of the same round: the composite
    foreign key makes cashouts a subset of bets.
    """

    __tablename__ = "cashouts"
    __table_args__ = (
        UniqueConstraint("round_id", "player_id", name="uq_cashout_round_player"),
        ForeignKeyConstraint(
            ["round_id", "player_id"],
            ["bets.round_id", "bets.player_id"],
            name="fk_cashout_bet",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_id: Mapped[int] = mapped_column(ForeignKey("rounds.round_id"), index=True, nullable=False)
    player_id: Mapped[str] = mapped_column(String(50), nullable=False)

    multiplier: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    crypto_payout: Mapped[Decimal] = mapped_column(CRYPTO, nullable=False)
    usd_payout: Mapped[Decimal] = mapped_column(USD, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    round: Mapped[GameRound] = relationship(back_populates="cashouts")


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    One row per balance-affecting event, linked to its round.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    player_id: Mapped[str] = mapped_column(
        ForeignKey("players.player_id"),
        index=True,
        nullable=False,
    )

    round_id: Mapped[int] = mapped_column(
        ForeignKey("rounds.round_id"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )

    usd_amount: Mapped[Decimal] = mapped_column(USD, nullable=False)
    crypto_amount: Mapped[Decimal] = mapped_column(CRYPTO, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    price_at_time: Mapped[Decimal] = mapped_column(CRYPTO, nullable=False)

    transaction_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


# =====================================================
# DOMAIN RECORDS (immutable once accepted)
# =====================================================

@dataclass(frozen=True)
class Bet:
    player_id: str
    usd_amount: Decimal
    crypto_amount: Decimal
    currency: str
    price_at_time: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playerId": self.player_id,
            "usdAmount": float(self.usd_amount),
            "cryptoAmount": float(self.crypto_amount),
            "currency": self.currency,
            "priceAtTime": float(self.price_at_time),
        }


@dataclass(frozen=True)
class Cashout:
    player_id: str
    multiplier: Decimal
    crypto_payout: Decimal
    usd_payout: Decimal
    currency: str
    price_at_time: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playerId": self.player_id,
            "multiplier": float(self.multiplier),
            "cryptoPayout": float(self.crypto_payout),
            "usdPayout": float(self.usd_payout),
        }


# =====================================================
# REPOSITORY HELPERS
# =====================================================

async def get_or_create_player(
    session: AsyncSession,
    player_id: str,
    starting_balances: Optional[Dict[str, Decimal]] = None,
) -> Player:
    """
    Fetches a player or creates one with the starting balances.
    Runs in its own transaction.
    """
    result = await session.execute(
        select(Player).where(Player.player_id == player_id)
    )
    player = result.scalar_one_or_none()

    if player:
        return player

    balances = STARTING_BALANCES if starting_balances is None else starting_balances
    new_player = Player(
        player_id=player_id,
        balances=[Balance(currency=c, amount=a) for c, a in balances.items()],
    )
    session.add(new_player)

    try:
        await session.commit()
        return new_player
    except IntegrityError:
        # Handle race condition where player was created in parallel
        await session.rollback()
        return await get_or_create_player(session, player_id, starting_balances)


async def apply_balance_delta(
    session: AsyncSession,
    player_id: str,
    currency: str,
    delta: Decimal,
) -> None:
    """
    Atomic signed balance change inside the caller's transaction.

    Raises:
        InsufficientBalance: the row is missing or the delta would
            take the balance below zero. Nothing is written.
    """
    # rounded to the column scale: SQLite binds Numeric as float
    new_amount = func.round(Balance.amount + delta, CRYPTO_SCALE)
    result = await session.execute(
        update(Balance)
        .where(
            Balance.player_id == player_id,
            Balance.currency == currency,
            new_amount >= 0,
        )
        .values(amount=new_amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientBalance(player_id, currency)


def _audit_row(
    player_id: str,
    round_id: int,
    tx_type: TransactionType,
    usd_amount: Decimal,
    crypto_amount: Decimal,
    currency: str,
    price: Decimal,
) -> Transaction:
    return Transaction(
        player_id=player_id,
        round_id=round_id,
        type=tx_type,
        usd_amount=usd_amount,
        crypto_amount=crypto_amount,
        currency=currency,
        price_at_time=price,
        transaction_hash=generate_transaction_hash(player_id, round_id, tx_type.value),
    )


# =====================================================
# LEDGER
# =====================================================

class Ledger:
    """
    Owns the async engine and sessionmaker. Every public method runs
    in its own session; commit_* methods are all-or-nothing.
    """

    def __init__(self, url: str = DATABASE_URL, echo: bool = DB_ECHO) -> None:
        self.url = url
        self.engine = create_async_engine(
            url,
            echo=echo,
            # SSL is critical for Postgres in production
            connect_args={"ssl": "require"} if "postgresql" in url else {},
        )
        if url.startswith("sqlite"):
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        self.sessions = async_sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
        )

    # ---------------- lifecycle ----------------

    async def init(self) -> None:
        """
        Creates all tables. Safe to run on every startup.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    # ---------------- rounds ----------------

    async def max_round_id(self) -> int:
        try:
            async with self.sessions() as session:
                result = await session.execute(select(func.max(GameRound.round_id)))
                return result.scalar_one_or_none() or 0
        except SQLAlchemyError as e:
            raise LedgerUnavailable(f"Could not read round sequence: {e}") from e

    async def create_round(
        self,
        round_id: int,
        seed: str,
        hash: str,
        crash_point: Decimal,
        start_time: datetime,
    ) -> None:
        try:
            async with self.sessions() as session, session.begin():
                session.add(GameRound(
                    round_id=round_id,
                    seed=seed,
                    hash=hash,
                    crash_point=crash_point,
                    status=RoundStatus.PENDING,
                    start_time=start_time,
                ))
        except SQLAlchemyError as e:
            raise LedgerUnavailable(f"Could not record round {round_id}: {e}") from e

    async def finalize_round(
        self,
        round_id: int,
        crash_point: Decimal,
        end_time: datetime,
    ) -> bool:
        """
        pending -> crashed, at most once. Returns False if the round
        was already crashed (or missing).
        """
        async with self.sessions() as session, session.begin():
            result = await session.execute(
                update(GameRound)
                .where(
                    GameRound.round_id == round_id,
                    GameRound.status == RoundStatus.PENDING,
                )
                .values(
                    status=RoundStatus.CRASHED,
                    crash_point=crash_point,
                    end_time=end_time,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def close_orphaned_rounds(self, end_time: datetime) -> List[int]:
        """
        pending -> crashed for every round no live engine owns.
        Returns the closed round ids.
        """
        try:
            async with self.sessions() as session, session.begin():
                result = await session.execute(
                    select(GameRound.round_id)
                    .where(GameRound.status == RoundStatus.PENDING)
                    .order_by(GameRound.round_id)
                )
                round_ids = list(result.scalars())
                if round_ids:
                    await session.execute(
                        update(GameRound)
                        .where(GameRound.round_id.in_(round_ids))
                        .values(status=RoundStatus.CRASHED, end_time=end_time)
                        .execution_options(synchronize_session=False)
                    )
                return round_ids
        except SQLAlchemyError as e:
            raise LedgerUnavailable(f"Could not close pending rounds: {e}") from e

    async def get_round(self, round_id: int) -> Optional[GameRound]:
        async with self.sessions() as session:
            return await session.get(GameRound, round_id)

    async def recent_rounds(self, limit: int = 10) -> List[GameRound]:
        async with self.sessions() as session:
            result = await session.execute(
                select(GameRound)
                .where(GameRound.status == RoundStatus.CRASHED)
                .order_by(GameRound.round_id.desc())
                .limit(limit)
            )
            return list(result.scalars())

    # ---------------- players ----------------

    async def ensure_player(self, player_id: str) -> Player:
        async with self.sessions() as session:
            return await get_or_create_player(session, player_id)

    async def seed_player(self, player_id: str, balances: Dict[str, Decimal]) -> Dict[str, Decimal]:
        """
        Create a player (if needed) and set the given balances.
        Demo / admin funding; not part of the game flow.
        """
        async with self.sessions() as session:
            await get_or_create_player(session, player_id, starting_balances={})

        async with self.sessions() as session, session.begin():
            for currency, amount in balances.items():
                result = await session.execute(
                    update(Balance)
                    .where(Balance.player_id == player_id, Balance.currency == currency)
                    .values(amount=amount)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.add(Balance(player_id=player_id, currency=currency, amount=amount))
        logger.info(f"Seeded player {player_id} with {balances}")
        return await self.get_player_balances(player_id) or {}

    async def get_player_balances(self, player_id: str) -> Optional[Dict[str, Decimal]]:
        async with self.sessions() as session:
            player = await session.get(Player, player_id)
            if player is None:
                return None
            return {b.currency: b.amount for b in player.balances}

    async def transactions_for(self, player_id: str) -> List[Transaction]:
        async with self.sessions() as session:
            result = await session.execute(
                select(Transaction)
                .where(Transaction.player_id == player_id)
                .order_by(Transaction.id)
            )
            return list(result.scalars())

    # ---------------- atomic commits ----------------

    async def commit_bet(self, round_id: int, bet: Bet) -> None:
        """
        Single transaction:
        1. Insert bet        (unique round/player -> DuplicateBet)
        2. Debit balance     (would overdraw      -> InsufficientBalance)
        3. Append audit row
        """
        async with self.sessions() as session, session.begin():
            session.add(BetRecord(
                round_id=round_id,
                player_id=bet.player_id,
                usd_amount=bet.usd_amount,
                crypto_amount=bet.crypto_amount,
                currency=bet.currency,
                price_at_time=bet.price_at_time,
            ))
            try:
                await session.flush()
            except IntegrityError as e:
                raise DuplicateBet(bet.player_id, round_id) from e

            await apply_balance_delta(session, bet.player_id, bet.currency, -bet.crypto_amount)

            session.add(_audit_row(
                bet.player_id,
                round_id,
                TransactionType.BET,
                bet.usd_amount,
                bet.crypto_amount,
                bet.currency,
                bet.price_at_time,
            ))

    async def commit_cashout(self, round_id: int, cashout: Cashout) -> None:
        """
        Single transaction:
        1. Insert cashout    (unique round/player -> AlreadyCashedOut,
                              no matching bet     -> NoBetThisRound)
        2. Credit balance
        3. Append audit row
        """
        async with self.sessions() as session, session.begin():
            session.add(CashoutRecord(
                round_id=round_id,
                player_id=cashout.player_id,
                multiplier=cashout.multiplier,
                crypto_payout=cashout.crypto_payout,
                usd_payout=cashout.usd_payout,
            ))
            try:
                await session.flush()
            except IntegrityError as e:
                if "foreign key" in str(e.orig).lower():
                    raise NoBetThisRound(cashout.player_id, round_id) from e
                raise AlreadyCashedOut(cashout.player_id, round_id) from e

            await apply_balance_delta(session, cashout.player_id, cashout.currency, cashout.crypto_payout)

            session.add(_audit_row(
                cashout.player_id,
                round_id,
                TransactionType.CASHOUT,
                cashout.usd_payout,
                cashout.crypto_payout,
                cashout.currency,
                cashout.price_at_time,
            ))


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def balances_with_defaults(
    balances: Optional[Dict[str, Decimal]],
    currencies: Iterable[str],
) -> Dict[str, Decimal]:
    """Every supported currency present, missing ones as zero."""
    balances = balances or {}
    return {c: balances.get(c, Decimal("0")) for c in currencies}
