# exceptions.py
"""
Error taxonomy for the crash game.

Categories:
- Input errors      -> malformed identifiers / amounts, never retried
- State errors      -> round lifecycle / uniqueness conflicts
- Resource errors   -> balance too low for the requested debit
- Dependency errors -> price quote unavailable after cache exhaustion
- Integrity errors  -> ledger unreachable, fatal to the round scheduler
"""

from __future__ import annotations


class CrashGameError(Exception):
    """Base error for every engine, processor and ledger failure."""


# =========================
# INPUT
# =========================

class InvalidInput(CrashGameError, ValueError):
    """Malformed player id, amount, currency or seed."""


# =========================
# STATE
# =========================

class StateError(CrashGameError):
    """Action performed in an invalid round state."""


class NoActiveRound(StateError):
    def __init__(self, message: str = "No active round") -> None:
        super().__init__(message)


class RoundNotAcceptingBets(StateError):
    def __init__(self, round_id: int | None = None) -> None:
        self.round_id = round_id
        if round_id is None:
            super().__init__("No active round is accepting bets")
        else:
            super().__init__(f"Round {round_id} is not accepting bets")


class RoundAlreadyCrashed(StateError):
    def __init__(self, round_id: int) -> None:
        self.round_id = round_id
        super().__init__(f"Round {round_id} has already crashed")


class RoundStillRunning(StateError):
    def __init__(self, round_id: int) -> None:
        self.round_id = round_id
        super().__init__(f"Round {round_id} is still pending")


class DuplicateBet(StateError):
    def __init__(self, player_id: str, round_id: int) -> None:
        self.player_id = player_id
        self.round_id = round_id
        super().__init__(f"Player {player_id} already placed a bet in round {round_id}")


class NoBetThisRound(StateError):
    def __init__(self, player_id: str, round_id: int) -> None:
        self.player_id = player_id
        self.round_id = round_id
        super().__init__(f"Player {player_id} has no bet in round {round_id}")


class AlreadyCashedOut(StateError):
    def __init__(self, player_id: str, round_id: int) -> None:
        self.player_id = player_id
        self.round_id = round_id
        super().__init__(f"Player {player_id} already cashed out in round {round_id}")


# =========================
# RESOURCE / DEPENDENCY / INTEGRITY
# =========================

class InsufficientBalance(CrashGameError):
    def __init__(self, player_id: str, currency: str) -> None:
        self.player_id = player_id
        self.currency = currency
        super().__init__(f"Insufficient {currency} balance for player {player_id}")


class PriceUnavailable(CrashGameError):
    def __init__(self, currency: str, reason: str = "") -> None:
        self.currency = currency
        detail = f": {reason}" if reason else ""
        super().__init__(f"No price available for {currency}{detail}")


class LedgerUnavailable(CrashGameError):
    """The ledger store could not record a round; the scheduler must halt."""
