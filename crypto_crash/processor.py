# processor.py
"""
Bet / Cashout Processor

placeBet:  validate -> engine pre-check -> price -> admit -> commit
cashout:   validate -> engine pre-check -> price -> admit -> commit

Each commit is one ledger transaction (round append + balance delta +
audit row). The in-memory checks only fail fast; the database unique
constraints on (round, player) decide concurrent duplicates.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, Tuple

from crypto_crash.db import Bet, Cashout, Ledger, balances_with_defaults
from crypto_crash.engine import CrashGameEngine, GameConfig
from crypto_crash.events import EventBus, PLAYER_CASHOUT
from crypto_crash.exceptions import (
    InsufficientBalance,
    InvalidInput,
    PriceUnavailable,
    StateError,
)
from crypto_crash.prices import crypto_to_usd, usd_to_crypto
from crypto_crash.utils import (
    format_crypto,
    format_multiplier,
    quantize_crypto,
    quantize_usd,
    safe_decimal,
    validate_player_id,
)

logger = logging.getLogger("crypto_crash.processor")


class PriceSource(Protocol):
    async def get_price(self, currency: str) -> Decimal:
        ...


class BetProcessor:
    def __init__(
        self,
        engine: CrashGameEngine,
        ledger: Ledger,
        oracle: PriceSource,
        bus: EventBus,
        config: Optional[GameConfig] = None,
    ) -> None:
        self._engine = engine
        self._ledger = ledger
        self._oracle = oracle
        self._bus = bus
        self._config = config or engine.config

    # =====================================================
    # INPUT CHECKS
    # =====================================================

    def _validate_amount(self, usd_amount: Any) -> Decimal:
        if isinstance(usd_amount, bool):
            raise InvalidInput("USD amount must be a positive number")
        amount = safe_decimal(usd_amount, default="NaN")
        if not amount.is_finite() or amount <= 0:
            raise InvalidInput("USD amount must be a positive number")
        if amount > self._config.max_bet_usd:
            raise InvalidInput(f"USD amount must not exceed {self._config.max_bet_usd:,}")
        # stored in cents
        amount = quantize_usd(amount)
        if amount <= 0:
            raise InvalidInput("USD amount must be at least 0.01")
        return amount

    def _validate_currency(self, currency: Any) -> str:
        code = currency.lower() if isinstance(currency, str) else ""
        if code not in self._config.supported_currencies:
            options = ", ".join(self._config.supported_currencies)
            raise InvalidInput(f"Currency must be one of: {options}")
        return code

    # =====================================================
    # BET
    # =====================================================

    async def place_bet(self, player_id: str, usd_amount: Any, currency: str) -> Tuple[Bet, Decimal]:
        """
        Returns:
            (recorded Bet, live multiplier at acceptance)

        Raises:
            InvalidInput, RoundNotAcceptingBets, DuplicateBet,
            PriceUnavailable, InsufficientBalance
        """
        validate_player_id(player_id)
        amount = self._validate_amount(usd_amount)
        currency = self._validate_currency(currency)

        await self._engine.precheck_bet(player_id)

        price = await self._oracle.get_price(currency)
        crypto_amount = quantize_crypto(usd_to_crypto(amount, price))
        if crypto_amount <= 0:
            raise InvalidInput(f"USD amount {amount} is below the smallest {currency} unit")

        bet = Bet(
            player_id=player_id,
            usd_amount=amount,
            crypto_amount=crypto_amount,
            currency=currency,
            price_at_time=price,
        )

        async with self._engine.admit_bet(player_id) as admission:
            rnd = admission.round
            await self._ledger.ensure_player(player_id)
            try:
                await self._ledger.commit_bet(rnd.round_id, bet)
            except (StateError, InsufficientBalance) as e:
                logger.info(f"Bet rejected for {player_id} in round {rnd.round_id}: {e}")
                raise
            rnd.record_bet(bet)

        logger.info(
            f"Bet accepted: {player_id} {format_crypto(crypto_amount, currency)} "
            f"(${amount}) in round {rnd.round_id}"
        )
        return bet, admission.multiplier

    # =====================================================
    # CASHOUT
    # =====================================================

    async def cashout(self, player_id: str) -> Cashout:
        """
        Pays bet.crypto_amount x live multiplier, priced in USD at the
        current quote.

        Raises:
            InvalidInput, NoActiveRound, RoundAlreadyCrashed,
            NoBetThisRound, AlreadyCashedOut
        """
        validate_player_id(player_id)

        checked, bet = await self._engine.precheck_cashout(player_id)
        price = await self._cashout_price(bet)

        async with self._engine.admit_cashout(player_id, checked.round_id) as admission:
            rnd = admission.round
            bet = admission.bet
            multiplier = admission.multiplier
            crypto_payout = bet.crypto_amount * multiplier

            cashout = Cashout(
                player_id=player_id,
                multiplier=multiplier,
                crypto_payout=crypto_payout,
                usd_payout=quantize_usd(crypto_to_usd(crypto_payout, price)),
                currency=bet.currency,
                price_at_time=price,
            )
            try:
                await self._ledger.commit_cashout(rnd.round_id, cashout)
            except StateError as e:
                logger.info(f"Cashout rejected for {player_id} in round {rnd.round_id}: {e}")
                raise
            rnd.record_cashout(cashout)

        logger.info(
            f"Cashout: {player_id} at {format_multiplier(multiplier)} -> "
            f"{format_crypto(crypto_payout, bet.currency)} in round {rnd.round_id}"
        )
        self._bus.publish(PLAYER_CASHOUT, **cashout.to_dict())
        return cashout

    async def _cashout_price(self, bet: Bet) -> Decimal:
        try:
            return await self._oracle.get_price(bet.currency)
        except PriceUnavailable as e:
            # the payout itself is in crypto; only the USD figure needs a quote
            logger.warning(f"{e}; pricing cashout at bet price {bet.price_at_time}")
            return bet.price_at_time

    # =====================================================
    # BALANCE
    # =====================================================

    async def get_balance(self, player_id: str) -> Optional[Dict[str, Any]]:
        validate_player_id(player_id)
        balances = await self._ledger.get_player_balances(player_id)
        if balances is None:
            return None

        balances = balances_with_defaults(balances, self._config.supported_currencies)
        usd_equivalent: Dict[str, Optional[float]] = {}
        for currency, amount in balances.items():
            try:
                price = await self._oracle.get_price(currency)
            except PriceUnavailable:
                usd_equivalent[currency] = None
                continue
            usd_equivalent[currency] = float(quantize_usd(crypto_to_usd(amount, price)))

        return {
            "playerId": player_id,
            "balances": {c: float(a) for c, a in balances.items()},
            "usdEquivalent": usd_equivalent,
        }
