"""
Credit Ledger - FastAPI Server

Thin HTTP adapter over the billing services.

Endpoints:
- GET  /health - Liveness
- POST /usage/call-ended - Charge a finished call to its payer
- POST /webhooks/payment - Signed payment notification (credits once per order)
- GET  /balances/{entity_type}/{entity_id} - Current balance
- POST /balances/{entity_type}/{entity_id}/adjustments - Operator top-up or correction
- GET  /transactions/{entity_type}/{entity_id} - Ledger rows, newest first
- GET  /events/{entity_type}/{entity_id} - Billable events, newest first
- GET  /reconcile/{entity_type}/{entity_id} - Balance vs. ledger audit
- POST /reconcile/events - Settle events stuck in pending_credit_check
- GET  /payments/unresolved - Failed or unfinalized payment confirmations
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import json
import os
import structlog

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..billing import (
    BalanceStore,
    BillableEventService,
    CostCalculator,
    Ledger,
    PaymentConfirmationProcessor,
)
from ..config import LedgerConfig
from ..errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from ..integrations import (
    EntityDirectory,
    InMemoryEntityDirectory,
    parse_payment_notification,
    verify_signature,
)
from ..persistence.database import Database
from ..persistence.models import EntityType

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class CallEndedRequest(BaseModel):
    """A finished call to be billed."""
    interview_id: str = Field(..., min_length=1, description="Interview the call belongs to")
    duration_seconds: float = Field(..., ge=0, description="Call duration in seconds")
    call_id: Optional[str] = Field(None, description="Caller reference stored on the event")


class AdjustmentRequest(BaseModel):
    """Manual balance adjustment."""
    amount: Decimal = Field(..., description="Signed amount; negative debits")
    description: str = Field(..., min_length=1)


class SweepRequest(BaseModel):
    """Reconciliation sweep over pending billable events."""
    older_than_seconds: Optional[int] = Field(None, ge=0)
    limit: int = Field(default=500, ge=1, le=5000)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Services shared by all requests."""

    def __init__(self, config: LedgerConfig, directory: Optional[EntityDirectory] = None):
        self.config = config
        self.db = Database(config.database_url)
        self.db.initialize()

        self.balance_store = BalanceStore(self.db, initial_grant=config.initial_grant)
        self.ledger = Ledger(self.db)
        self.events = BillableEventService(
            self.db,
            self.balance_store,
            CostCalculator(config.unit_seconds, config.rate_per_unit),
            pending_grace_seconds=config.pending_event_grace_seconds,
        )
        self.payments = PaymentConfirmationProcessor(self.db, self.balance_store)
        self.directory = directory or InMemoryEntityDirectory()
        self.start_time = datetime.now(timezone.utc)

    def close(self) -> None:
        self.db.close()


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    config = app.state.config or LedgerConfig.from_env()
    logger.info("credit_ledger_starting", version=__version__)
    if not config.webhook_secret:
        logger.warning("payment_webhook_secret_not_configured")

    app.state.ledger = AppState(config, app.state.directory)
    yield
    app.state.ledger.close()
    logger.info("credit_ledger_stopping")


def create_app(
    config: Optional[LedgerConfig] = None,
    directory: Optional[EntityDirectory] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Credit Ledger",
        description="Usage-metered credit balances with idempotent payment crediting.",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.config = config
    application.state.directory = directory
    application.state.ledger = None

    cors_origins = config.cors_origins if config else os.environ.get("CORS_ORIGINS", "*").split(",")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(LedgerError, _ledger_error_handler)
    application.include_router(router)
    return application


_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    StorageError: 500,
}


async def _ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = _STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = request.app.state.ledger
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.config.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


router = APIRouter()


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(status="healthy", version=__version__, uptime_seconds=uptime)


@router.post("/usage/call-ended", tags=["Usage"])
async def call_ended(
    request: CallEndedRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Bill a finished call.

    The payer is resolved from the interview; cost is derived from the
    duration. Insufficient credits still record the event, unpaid.
    """
    payer = await state.directory.get_entity_role(request.interview_id)
    event = await state.events.create_billable_event(
        payer.entity_id,
        payer.entity_type,
        request.duration_seconds,
        reference=request.call_id or request.interview_id,
    )
    return event.to_dict()


@router.post("/webhooks/payment", tags=["Payments"])
async def payment_webhook(request: Request, state: AppState = Depends(get_state)):
    """
    Payment notification from the gateway.

    Non-2xx responses make the sender retry; duplicate deliveries are
    answered 200 without crediting again.
    """
    secret = state.config.webhook_secret
    if not secret:
        logger.error("payment_webhook_secret_not_configured")
        return JSONResponse(status_code=500, content={"detail": "Webhook secret not configured"})

    raw_body = await request.body()
    if not verify_signature(raw_body, request.headers.get("X-Signature"), secret):
        logger.warning("payment_webhook_invalid_signature")
        return JSONResponse(status_code=400, content={"detail": "Invalid signature"})

    try:
        payload = json.loads(raw_body)
    except ValueError:
        return JSONResponse(status_code=400, content={"detail": "Invalid JSON payload"})

    try:
        notification = parse_payment_notification(payload)
    except ValidationError as e:
        logger.warning("payment_webhook_malformed", error=str(e))
        return JSONResponse(status_code=400, content={"detail": str(e)})

    if notification is None:
        event_name = payload.get("meta", {}).get("event_name")
        logger.info("payment_webhook_ignored", event_name=event_name)
        return {"received": True, "processed": False, "event_name": event_name}

    try:
        result = await state.payments.process_confirmation(
            notification.provider_order_id,
            notification.entity_id,
            notification.idempotency_id,
            notification.amount,
            entity_type=notification.entity_type,
            raw_payload=notification.raw_payload,
        )
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"detail": str(e)})
    except LedgerError as e:
        # Sender retries; the duplicate check stops a second credit
        return JSONResponse(
            status_code=500,
            content={"detail": f"Failed to credit order {notification.provider_order_id}: {e}"},
        )

    return {"received": True, "processed": True, **result.to_dict()}


@router.get("/balances/{entity_type}/{entity_id}", tags=["Balances"])
async def get_balance(
    entity_type: EntityType,
    entity_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Current balance. The initial grant is applied on first access."""
    balance = await state.balance_store.get_balance(entity_id, entity_type)
    return {"entity_type": entity_type.value, "entity_id": entity_id, "balance": str(balance)}


@router.post("/balances/{entity_type}/{entity_id}/adjustments", tags=["Balances"])
async def adjust_balance(
    entity_type: EntityType,
    entity_id: str,
    request: AdjustmentRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Apply a manual adjustment."""
    balance = await state.balance_store.apply_manual_adjustment(
        entity_id, entity_type, request.amount, request.description
    )
    return {"entity_type": entity_type.value, "entity_id": entity_id, "balance": str(balance)}


@router.get("/transactions/{entity_type}/{entity_id}", tags=["Ledger"])
async def list_transactions(
    entity_type: EntityType,
    entity_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> List[Dict[str, Any]]:
    """Ledger transactions, newest first."""
    transactions = await state.ledger.list_transactions(entity_id, limit, entity_type)
    return [t.to_dict() for t in transactions]


@router.get("/events/{entity_type}/{entity_id}", tags=["Usage"])
async def list_events(
    entity_type: EntityType,
    entity_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> List[Dict[str, Any]]:
    """Billable events, newest first."""
    events = await state.events.list_events(entity_id, limit, entity_type)
    return [e.to_dict() for e in events]


@router.get("/reconcile/{entity_type}/{entity_id}", tags=["Ledger"])
async def reconcile_entity(
    entity_type: EntityType,
    entity_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Compare the stored balance with the ledger."""
    report = await state.ledger.reconcile(entity_id, entity_type)
    return report.to_dict()


@router.post("/reconcile/events", tags=["Usage"])
async def reconcile_events(
    request: SweepRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Settle billable events left in pending_credit_check."""
    result = await state.events.reconcile_pending_events(request.older_than_seconds, request.limit)
    return result.to_dict()


@router.get("/payments/unresolved", tags=["Payments"])
async def unresolved_payments(
    limit: int = Query(default=500, ge=1, le=5000),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> List[Dict[str, Any]]:
    """Payment confirmations that need an operator."""
    confirmations = await state.payments.list_unresolved(limit)
    return [c.to_dict() for c in confirmations]


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "credit_ledger.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
