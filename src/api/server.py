"""
SETTLEMENT RAIL - FastAPI Server

Caller-facing HTTP surface for the settlement orchestrator.

Endpoints:
- GET  /health             - Liveness and configuration summary
- POST /settlements        - Route and execute a settlement (Idempotency-Key header)
- GET  /rails/rank         - Current rail ranking with score breakdown
- GET  /ledger/usage       - Today's per-rail usage against daily limits
- GET  /ledger/queue       - Overflow queue contents
- POST /ledger/queue/drain - Re-route queued amounts for a currency
- POST /audit/verify       - Verify audit hash chains
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from audit import AuditConfigurationError, AuditLog
from ledger import LedgerError, LockTimeoutError
from rails import ConfigurationError, SettlementConfig
from settlement import IdempotencyConflictError, SettlementOrchestrator, StepResult, summarize

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class SettlementRequest(BaseModel):
    """Request to settle an amount."""
    amount: int = Field(..., gt=0, description="Amount in currency minor units")
    currency: str = Field(..., min_length=3, max_length=8, description="Currency code, e.g. USD or USDT")
    destination: Optional[str] = Field(None, description="Override for the rail's configured destination")


class DrainRequest(BaseModel):
    currency: str = Field(..., min_length=3, max_length=8)
    destination: Optional[str] = None


class AuditVerifyRequest(BaseModel):
    """Verify one day file, or every file when day is omitted."""
    day: Optional[date] = None


class StepResultModel(BaseModel):
    status: str
    rail: str
    amount: int
    reason: Optional[str] = None
    transaction_id: Optional[str] = None
    queue_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class SettlementResponse(BaseModel):
    results: List[StepResultModel]
    summary: Dict[str, Any]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    rails: List[str]
    gateways: List[str]
    audit_secret_configured: bool
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(
        self,
        config: Optional[SettlementConfig] = None,
        orchestrator: Optional[SettlementOrchestrator] = None,
    ):
        self.config = config or SettlementConfig.from_env()
        self.orchestrator = orchestrator or SettlementOrchestrator.from_config(self.config)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("settlement_rail_starting", version=VERSION)
    if app_state is None:
        app_state = AppState()
    yield
    logger.info("settlement_rail_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Settlement Rail",
        description="""
# Multi-Rail Settlement Routing

Splits settlements across bank wire, card payout, e-wallet and crypto rails
within their daily limits. Every decision is journaled to a hash-chained,
HMAC-signed audit log.
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def _results_response(results: List[StepResult]) -> SettlementResponse:
    return SettlementResponse(
        results=[StepResultModel(**r.to_dict()) for r in results],
        summary=summarize(results),
    )


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        rails=[r.value for r in state.config.policies],
        gateways=[r.value for r in state.orchestrator.dispatcher.rails],
        audit_secret_configured=state.config.audit_hmac_secret is not None,
        uptime_seconds=uptime,
    )


@app.post("/settlements", response_model=SettlementResponse, tags=["Settlement"])
def create_settlement(
    request: SettlementRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Route and execute a settlement.

    The response always covers the full amount: each step is IN_TRANSIT or
    queued with a reason. Repeating a request with the same Idempotency-Key
    returns the original steps without dispatching again.
    """
    try:
        results = state.orchestrator.route_and_execute(
            request.amount,
            request.currency,
            destination=request.destination,
            idempotency_key=idempotency_key,
        )
    except IdempotencyConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except LockTimeoutError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (AuditConfigurationError, ConfigurationError) as e:
        raise HTTPException(status_code=500, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _results_response(results)


@app.get("/rails/rank", tags=["Rails"])
def rank_rails(
    amount: int,
    currency: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Rank rails for an amount, with the per-component score breakdown."""
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be positive")
    optimizer = state.orchestrator.optimizer
    return {
        "amount": amount,
        "currency": currency.upper(),
        "ranking": [r.value for r in optimizer.rank(amount, currency)],
        "scores": optimizer.scores(amount, currency),
    }


@app.get("/ledger/usage", tags=["Ledger"])
def ledger_usage(
    day: Optional[date] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Per-rail usage for a day (default today) against the daily limits."""
    ledger = state.orchestrator.ledger
    day_key = day.isoformat() if day else ledger.today()
    rails = {}
    try:
        usage = ledger.usage_snapshot(day_key)
        for rail, policy in state.config.policies.items():
            rails[rail.value] = {
                "used": usage.get(rail.value, 0),
                "daily_limit": policy.daily_limit,
                # Net of capacity reserved by in-flight runs
                "remaining": ledger.remaining_capacity(rail, policy.daily_limit, day_key),
                "currency": policy.currency,
            }
    except LockTimeoutError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"day": day_key, "rails": rails}


@app.get("/ledger/queue", tags=["Ledger"])
def ledger_queue(
    currency: Optional[str] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Overflow queue contents, optionally filtered by currency."""
    try:
        items = state.orchestrator.ledger.list_queued(currency=currency)
    except LockTimeoutError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "total": sum(i.amount for i in items),
        "count": len(items),
        "items": [i.to_dict() for i in items],
    }


@app.post("/ledger/queue/drain", response_model=SettlementResponse, tags=["Ledger"])
def drain_queue(
    request: DrainRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Re-route everything queued in a currency."""
    try:
        results = state.orchestrator.drain_queue(request.currency, destination=request.destination)
    except LockTimeoutError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (AuditConfigurationError, LedgerError) as e:
        raise HTTPException(status_code=500, detail=str(e))
    return _results_response(results)


@app.post("/audit/verify", tags=["Audit"])
def verify_audit(
    request: AuditVerifyRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Verify audit hash chains.

    Integrity failures are reported, never repaired.
    """
    try:
        secret = state.config.require_audit_secret()
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))

    audit: AuditLog = state.orchestrator.audit
    if request.day:
        results = {f"{request.day.isoformat()}.jsonl": AuditLog.verify_chain(audit.file_for(request.day), secret)}
    else:
        results = AuditLog.verify_directory(audit.base_dir, secret)

    return {
        "ok": all(r.ok for r in results.values()),
        "files": {name: r.to_dict() for name, r in results.items()},
    }


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
