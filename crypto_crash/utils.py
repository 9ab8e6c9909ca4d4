# utils.py
"""
Utility functions for the Crypto Crash game

Includes:
- Provably fair crash point generation & verification
- Seed / identifier generation
- Decimal helpers and number formatting

The crash point of a round is a pure function of (seed, round_id):
    digest = SHA256(seed + str(round_id))
    value  = int(first 8 hex chars) % 10000
    crash  = max(1, value / 10000 * 100), rounded to 2 decimals
The digest itself is published as the round's commitment hash before
the round runs; the seed is revealed after the crash.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Union

from crypto_crash.exceptions import InvalidInput

logger = logging.getLogger("crypto_crash.utils")

# =========================
# CONSTANTS
# =========================

HASH_PREFIX_LENGTH = 8      # hex chars -> 32 bits
CRASH_RANGE = 10000
MAX_CRASH = Decimal("100")
MIN_CRASH = Decimal("1")

TWO_PLACES = Decimal("0.01")
CRYPTO_PLACES = Decimal("0.00000001")

PLAYER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
PLAYER_ID_MAX_LENGTH = 50

NumberType = Union[float, Decimal, int, str]

# =========================
# RANDOM & PROVABLY FAIR
# =========================

def generate_seed(length: int = 32) -> str:
    """
    Generate a cryptographically secure round seed (hex).
    Kept secret until the round crashes.
    """
    return secrets.token_hex(length)


def hash_sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _check_round_inputs(seed: str, round_id: int) -> None:
    if not isinstance(seed, str) or not seed.strip():
        raise InvalidInput("Seed must be a non-empty string")
    # bool is an int subclass, reject it explicitly
    if isinstance(round_id, bool) or not isinstance(round_id, int) or round_id < 1:
        raise InvalidInput("Round ID must be a positive integer")


def round_hash(seed: str, round_id: int) -> str:
    """
    Commitment published at round start: SHA256(seed + round_id).
    """
    _check_round_inputs(seed, round_id)
    return hash_sha256(f"{seed}{round_id}")


def generate_crash_point(seed: str, round_id: int) -> Decimal:
    """
    Deterministic crash multiplier for a round.

    Args:
        seed: The round's secret seed.
        round_id: The round's sequence number (>= 1).

    Returns:
        Decimal in [1.00, 100.00] with two decimal places.

    Raises:
        InvalidInput: empty seed or non-positive round id.
    """
    digest = round_hash(seed, round_id)
    value = int(digest[:HASH_PREFIX_LENGTH], 16) % CRASH_RANGE

    crash_point = Decimal(value) / Decimal(CRASH_RANGE) * MAX_CRASH
    crash_point = max(crash_point, MIN_CRASH)
    return crash_point.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def verify_round(seed: str, round_id: int, expected_hash: str) -> bool:
    """
    Check a revealed seed against the hash published at round start.

    Returns:
        True if SHA256(seed + round_id) equals expected_hash.
    """
    try:
        calculated = round_hash(seed, round_id)
    except InvalidInput:
        return False
    # constant time compare
    return hmac.compare_digest(calculated, expected_hash)


def verify_crash_point(seed: str, round_id: int, crash_point: NumberType) -> bool:
    """Recompute the crash point from a revealed seed and compare."""
    try:
        expected = generate_crash_point(seed, round_id)
    except InvalidInput:
        return False
    return expected == safe_decimal(crash_point, default="0")


def generate_transaction_hash(*parts: object) -> str:
    """Audit hash for a ledger transaction; a random nonce keeps it unique."""
    payload = "-".join(str(p) for p in parts)
    return hash_sha256(f"{payload}-{secrets.token_hex(8)}")


# =========================
# VALIDATION
# =========================

def validate_player_id(player_id: str) -> str:
    if not isinstance(player_id, str) or not player_id.strip():
        raise InvalidInput("Player ID must be a non-empty string")
    if len(player_id) > PLAYER_ID_MAX_LENGTH:
        raise InvalidInput(f"Player ID must not exceed {PLAYER_ID_MAX_LENGTH} characters")
    if not PLAYER_ID_PATTERN.match(player_id):
        raise InvalidInput("Player ID must contain only letters, numbers, underscores, or hyphens")
    return player_id


# =========================
# DECIMAL HELPERS
# =========================

def safe_decimal(value: NumberType, default: str = "0.00") -> Decimal:
    """
    Safely convert input to Decimal.
    Floats go through str() so 0.1 stays 0.1.
    """
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        logger.warning(f"Failed to convert {value} to Decimal, using default {default}")
        return Decimal(default)


def quantize_multiplier(value: Decimal) -> Decimal:
    """Multipliers are always shown and paid rounded down to 2 decimals."""
    return value.quantize(TWO_PLACES, rounding=ROUND_DOWN)


def quantize_crypto(value: Decimal) -> Decimal:
    return value.quantize(CRYPTO_PLACES, rounding=ROUND_DOWN)


def quantize_usd(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


# =========================
# FORMATTING
# =========================

def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        val = float(mult)
        return f"x{val:.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


def format_crypto(amount: NumberType, currency: str) -> str:
    try:
        val = Decimal(str(amount))
        return f"{val:.8f} {currency.upper()}"
    except (InvalidOperation, TypeError, ValueError):
        logger.warning(f"Invalid crypto amount format input: {amount}")
        return f"0.00000000 {currency.upper()}"
