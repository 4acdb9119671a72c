"""
Keep Custody — HTTP API.

FastAPI application exposing one keep:
- Status and event log (read-only)
- Digest helper for off-line signers
- Signed-request submission
- Ledger balance and metadata lookups
- Event-chain integrity verification

Keep errors are returned as 4xx JSON bodies carrying the error's stable
`code`; nothing is retried server-side. `main()` (the `keep-api` script)
serves the app with uvicorn on the configured host and port.
"""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from keep_custody.config import settings
from keep_custody.errors import KeepError, NotAuthorized, ReentrancyRejected
from keep_custody.protocol.encoding import ZERO_ADDRESS
from keep_custody.protocol.schema import Address, Operation, Signature

logger = logging.getLogger(__name__)


# ── Pydantic request models ────────────────────────────────────


class DigestRequest(BaseModel):
    operation: Operation
    nonce: int | None = Field(default=None, ge=0)


class ExecuteRequest(BaseModel):
    operation: Operation
    signatures: list[Signature]
    caller: Address = ZERO_ADDRESS


class ApiState:
    """Mutable application state injected at startup."""

    def __init__(self) -> None:
        self.keep: Any = None
        self.startup_time: datetime = datetime.now(timezone.utc)


state = ApiState()


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & shutdown lifecycle — bootstrap the keep if none was injected."""
    if state.keep is None:
        from keep_custody.orchestrator import bootstrap

        state.keep = bootstrap(settings)
    logger.info("Keep API serving %s", state.keep.address)

    yield

    fetcher = state.keep.uri_fetcher if state.keep is not None else None
    if fetcher is not None and hasattr(fetcher, "close"):
        fetcher.close()
    logger.info("Keep API shut down")


app = FastAPI(
    title="Keep Custody",
    description="Quorum-signed execution for a group-custody keep",
    version="0.1.0",
    lifespan=lifespan,
)


_STATUS_BY_ERROR: dict[type[KeepError], int] = {
    NotAuthorized: 403,
    ReentrancyRejected: 409,
}


@app.exception_handler(KeepError)
async def keep_error_handler(request: Request, exc: KeepError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 400
    )
    logger.warning("Request rejected: %s %s (%s)", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=status_code, content={"error": exc.code, "message": exc.message})


def _keep() -> Any:
    if state.keep is None:
        raise HTTPException(status_code=503, detail="Keep not initialized")
    return state.keep


# ── Routes: health & status ────────────────────────────────────


@app.get("/health")
async def health():
    uptime = (datetime.now(timezone.utc) - state.startup_time).total_seconds()
    return {
        "status": "ok",
        "keep_loaded": state.keep is not None,
        "uptime_seconds": round(uptime, 1),
    }


@app.get("/api/keep")
async def api_keep():
    """API: keep authorization state."""
    return _keep().status().model_dump(mode="json")


@app.get("/api/keep/events")
async def api_keep_events(limit: int = 50):
    """API: most recent events, newest first."""
    keep = _keep()
    return {
        "events": [e.model_dump(mode="json") for e in keep.events(limit=limit)],
        "total": keep.ledger.get_event_count(),
    }


# ── Routes: signing & execution ────────────────────────────────


@app.post("/api/keep/digest")
async def api_keep_digest(request: DigestRequest):
    """API: digest a signer must sign for an operation (default: current nonce)."""
    keep = _keep()
    nonce = keep.nonce if request.nonce is None else request.nonce
    return {"digest": "0x" + keep.digest(request.operation, nonce).hex(), "nonce": nonce}


@app.post("/api/keep/execute")
async def api_keep_execute(request: ExecuteRequest):
    """API: submit a quorum-signed operation."""
    keep = _keep()
    keep.execute(request.caller, request.operation, request.signatures)
    return {"executed": True, "nonce": keep.nonce}


# ── Routes: ledger ─────────────────────────────────────────────


@app.get("/api/keep/balances/{account}/{token_id}")
async def api_keep_balance(account: str, token_id: int):
    keep = _keep()
    try:
        balance = keep.balance_of(account, token_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"account": account.lower(), "token_id": token_id, "balance": balance}


@app.get("/api/keep/uri/{token_id}")
async def api_keep_uri(token_id: int):
    return {"token_id": token_id, "uri": _keep().uri(token_id)}


@app.get("/api/ledger/verify")
async def api_ledger_verify():
    """API: recompute the event hash chain."""
    is_valid, verified, message = _keep().ledger.verify_chain()
    return {"valid": is_valid, "entries_verified": verified, "message": message}


# ── Entry point ────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    """Serve the API with uvicorn on the configured host and port."""
    parser = argparse.ArgumentParser(description="Keep custody HTTP API")
    parser.add_argument("--host", default=settings.api_host, help="Interface to bind")
    parser.add_argument("--port", type=int, default=settings.api_port, help="Port to listen on")
    args = parser.parse_args(argv)

    from keep_custody.orchestrator import configure_logging

    configure_logging(settings)
    logger.info("Starting Keep API on http://%s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
