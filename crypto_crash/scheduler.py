# scheduler.py
"""
Round Scheduler

    resume -> [ start round -> wait for crash -> pause ] -> repeat

A LedgerUnavailable while creating a round halts the loop.
"""

from __future__ import annotations

import logging
from typing import Optional

from crypto_crash.engine import Clock, CrashGameEngine, GameConfig, SystemClock
from crypto_crash.exceptions import LedgerUnavailable

logger = logging.getLogger("crypto_crash.scheduler")


class RoundScheduler:
    def __init__(
        self,
        engine: CrashGameEngine,
        config: Optional[GameConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._engine = engine
        self._config = config or engine.config
        self._clock = clock or SystemClock()
        self._running = False
        self.rounds_started = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, max_rounds: Optional[int] = None) -> None:
        """
        Drive rounds until stop() or, when given, max_rounds have run.
        """
        self._running = True
        try:
            await self._engine.resume()

            while self._running:
                try:
                    rnd = await self._engine.start_round()
                except LedgerUnavailable:
                    logger.critical("Ledger unavailable, halting round scheduler", exc_info=True)
                    raise
                self.rounds_started += 1

                await self._engine.wait_for_crash()
                logger.info(
                    f"Round {rnd.round_id} finished; next round in {self._config.round_pause:.1f}s"
                )

                if max_rounds is not None and self.rounds_started >= max_rounds:
                    break
                await self._clock.sleep(self._config.round_pause)
        finally:
            self._running = False
            await self._engine.stop()

    def stop(self) -> None:
        """Finish the current round, then leave the loop."""
        self._running = False
