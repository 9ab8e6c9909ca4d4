# app.py
"""
Crypto Crash – HTTP / WebSocket Entry Point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- Error taxonomy -> HTTP status mapping
- Lifecycle event streaming over WebSocket
- Round scheduler lifecycle (started / stopped with the app)

Integration:
- Uses engine.py (round state machine, clock)
- Uses processor.py (atomic bets / cashouts)
- Uses db.py (ledger), prices.py (CoinGecko oracle)

Run with: uvicorn crypto_crash.app:app
"""

from __future__ import annotations

import json
import asyncio
import logging
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from crypto_crash.db import GameRound, Ledger, RoundStatus
from crypto_crash.engine import Clock, CrashGameEngine, GameConfig
from crypto_crash.events import EventBus
from crypto_crash.exceptions import (
    CrashGameError,
    InsufficientBalance,
    InvalidInput,
    LedgerUnavailable,
    PriceUnavailable,
    RoundStillRunning,
    StateError,
)
from crypto_crash.prices import PriceOracle
from crypto_crash.processor import BetProcessor, PriceSource
from crypto_crash.scheduler import RoundScheduler
from crypto_crash.utils import verify_crash_point, verify_round

# =====================================================
# LOGGING
# =====================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("crypto_crash.app")

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

def _player_id_field():
    return Field(..., alias="playerId", min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")


class BetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    player_id: str = _player_id_field()
    usd_amount: float = Field(..., alias="usdAmount", gt=0)  # Decimal internally
    currency: str = Field(..., min_length=1, max_length=8)


class CashoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    player_id: str = _player_id_field()


def _round_summary(rnd: GameRound) -> Dict[str, Any]:
    crashed = rnd.status is RoundStatus.CRASHED
    return {
        "roundId": rnd.round_id,
        "status": rnd.status.value,
        "hash": rnd.hash,
        # revealed only after the crash
        "seed": rnd.seed if crashed else None,
        "crashPoint": float(rnd.crash_point) if crashed else None,
        "startTime": rnd.start_time.isoformat() if rnd.start_time else None,
        "endTime": rnd.end_time.isoformat() if rnd.end_time else None,
        "bets": len(rnd.bets),
        "cashouts": len(rnd.cashouts),
    }

# =====================================================
# ERROR HANDLERS
# =====================================================

def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(_, exc: InvalidInput):
        return _error(422, exc)

    @app.exception_handler(StateError)
    async def state_error_handler(_, exc: StateError):
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(InsufficientBalance)
    async def balance_error_handler(_, exc: InsufficientBalance):
        return _error(status.HTTP_402_PAYMENT_REQUIRED, exc)

    @app.exception_handler(PriceUnavailable)
    async def price_error_handler(_, exc: PriceUnavailable):
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

    @app.exception_handler(LedgerUnavailable)
    async def ledger_error_handler(_, exc: LedgerUnavailable):
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

# =====================================================
# DEPENDENCIES
# =====================================================

def get_processor(request: Request) -> BetProcessor:
    return request.app.state.processor


def get_engine(request: Request) -> CrashGameEngine:
    return request.app.state.engine


def get_ledger(request: Request) -> Ledger:
    return request.app.state.ledger

# =====================================================
# API – GAME
# =====================================================

router = APIRouter(prefix="/api/game")


@router.post("/bet")
async def api_place_bet(
    payload: BetRequest,
    processor: BetProcessor = Depends(get_processor),
):
    bet, multiplier = await processor.place_bet(payload.player_id, payload.usd_amount, payload.currency)
    return {"bet": bet.to_dict(), "multiplier": float(multiplier)}


@router.post("/cashout")
async def api_cashout(
    payload: CashoutRequest,
    processor: BetProcessor = Depends(get_processor),
):
    cashout = await processor.cashout(payload.player_id)
    return cashout.to_dict()


@router.get("/balance/{player_id}")
async def api_balance(
    player_id: str,
    processor: BetProcessor = Depends(get_processor),
):
    balance = await processor.get_balance(player_id)
    if balance is None:
        raise HTTPException(status_code=404, detail="Player not found")
    return balance


@router.get("/state")
async def api_state(engine: CrashGameEngine = Depends(get_engine)):
    """
    Polling endpoint for clients without a socket.
    """
    return await engine.snapshot()


@router.get("/rounds")
async def api_recent_rounds(
    limit: int = Query(10, ge=1, le=100),
    ledger: Ledger = Depends(get_ledger),
):
    rounds = await ledger.recent_rounds(limit)
    return [_round_summary(r) for r in rounds]


@router.get("/rounds/{round_id}/verify")
async def api_verify_round(
    round_id: int,
    ledger: Ledger = Depends(get_ledger),
):
    """
    Reveal-and-verify: recompute hash and crash point from the seed.
    """
    rnd = await ledger.get_round(round_id)
    if rnd is None:
        raise HTTPException(status_code=404, detail="Round not found")
    if rnd.status is not RoundStatus.CRASHED:
        raise RoundStillRunning(round_id)

    hash_ok = verify_round(rnd.seed, rnd.round_id, rnd.hash)
    crash_ok = verify_crash_point(rnd.seed, rnd.round_id, rnd.crash_point)
    return {
        **_round_summary(rnd),
        "hashValid": hash_ok,
        "crashPointValid": crash_ok,
        "verified": hash_ok and crash_ok,
    }

# =====================================================
# WEBSOCKET
# =====================================================

async def _forward_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event.to_dict())


async def _handle_ws_message(websocket: WebSocket, processor: BetProcessor, raw: str) -> None:
    try:
        message = json.loads(raw)
        if not isinstance(message, dict):
            raise InvalidInput("Message must be a JSON object")
        action = message.get("action")
        if action != "cashout":
            raise InvalidInput(f"Unknown action: {action}")
        # success is broadcast to every socket as playerCashout
        await processor.cashout(message.get("playerId"))
    except (ValueError, CrashGameError) as e:
        # json.JSONDecodeError is a ValueError
        await websocket.send_json({"type": "error", "data": {"error": type(e).__name__, "detail": str(e)}})


async def ws_endpoint(websocket: WebSocket) -> None:
    bus: EventBus = websocket.app.state.bus
    processor: BetProcessor = websocket.app.state.processor

    await websocket.accept()
    queue = bus.subscribe()
    sender = asyncio.create_task(_forward_events(websocket, queue))
    logger.info("Client connected")
    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_ws_message(websocket, processor, raw)
    except WebSocketDisconnect:
        logger.info("Client disconnected")
    finally:
        bus.unsubscribe(queue)
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await sender

# =====================================================
# APP FACTORY
# =====================================================

def _log_scheduler_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.critical(f"Round scheduler stopped: {exc}")


def create_app(
    ledger: Optional[Ledger] = None,
    oracle: Optional[PriceSource] = None,
    config: Optional[GameConfig] = None,
    clock: Optional[Clock] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    config = config or GameConfig.from_env()
    ledger = ledger or Ledger()
    owns_oracle = oracle is None
    oracle = oracle or PriceOracle()

    bus = EventBus()
    engine = CrashGameEngine(ledger, bus, config, clock)
    processor = BetProcessor(engine, ledger, oracle, bus, config)
    scheduler = RoundScheduler(engine, config, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manages startup and shutdown events.
        """
        logger.info("Startup: Initializing Database...")
        await ledger.init()

        task = None
        if run_scheduler:
            logger.info("Startup: Launching round scheduler...")
            task = asyncio.create_task(scheduler.run(), name="round-scheduler")
            task.add_done_callback(_log_scheduler_exit)

        yield

        logger.info("Shutdown: Cleaning up...")
        scheduler.stop()
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, CrashGameError):
                await task
        await engine.stop()
        if owns_oracle:
            await oracle.aclose()
        await ledger.dispose()

    app = FastAPI(
        title="Crypto Crash API",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.ledger = ledger
    app.state.bus = bus
    app.state.engine = engine
    app.state.processor = processor
    app.state.scheduler = scheduler

    register_error_handlers(app)
    app.include_router(router)
    app.add_api_websocket_route("/ws", ws_endpoint)
    return app


app = create_app()
