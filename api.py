# Juice API v1.0.0
# FastAPI. Webhooks in, balances and requests out, operator actions, cron.
# Thin adapter: every route calls one pipeline operation and maps the
# ledger error taxonomy onto HTTP status codes.

import hmac
import json
import logging
import os
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from cashouts import get_cashout_pipeline
from db import get_database
from disputes import get_dispute_log
from errors import (
    AlreadyTerminal,
    DuplicateExternalRef,
    ExecutionFailure,
    ExecutionTimeout,
    InsufficientBalance,
    InvalidTransition,
    LedgerError,
    NotFound,
    RetryExhausted,
    ValidationError,
)
from executor import ExecutionResult
from ledger import MAX_AMOUNT_CENTS, get_ledger, to_cents
from notifications import PaymentNotification, get_notification_handler
from runner import get_runner
from settlement import get_settlement_pipeline
from spends import get_spend_pipeline

log = logging.getLogger("juice.api")

app = FastAPI(title="Juice", version="1.0.0")

JUICE_ENV = os.environ.get("JUICE_ENV", "dev").lower()
AUTH_REQUIRED = JUICE_ENV not in {"dev", "development", "test"}

# Public routes: no bearer token. /cron/run checks its own secret.
PUBLIC_PATHS = {"/docs", "/openapi.json", "/healthz", "/readyz", "/cron/run"}


# ── Middleware ────────────────────────────────────────────────────────


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token auth outside dev/test. JUICE_API_TOKEN must be set there,
    and every non-public request must carry it.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED:
            return await call_next(request)

        api_token = os.environ.get("JUICE_API_TOKEN", "")
        if not api_token:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "code": "auth_config_error",
                        "message": "JUICE_API_TOKEN must be set in non-dev environments",
                    },
                },
            )

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""
        if not token or not hmac.compare_digest(token, api_token):
            return JSONResponse(
                status_code=401,
                content={"ok": False, "error": {"code": "unauthorized", "message": "Unauthorized"}},
            )

        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Structured access log, one JSON line per request."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": round((time.time() - started) * 1000, 2),
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


# ── Error envelope ────────────────────────────────────────────────────

ERROR_STATUS = [
    (ValidationError, 400),
    (InsufficientBalance, 402),
    (NotFound, 404),
    (DuplicateExternalRef, 409),
    (AlreadyTerminal, 409),
    (InvalidTransition, 409),
    (RetryExhausted, 409),
    (ExecutionTimeout, 504),
    (ExecutionFailure, 502),
]


def error_status(exc: LedgerError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


@app.exception_handler(LedgerError)
async def ledger_exception_handler(_: Request, exc: LedgerError):
    return JSONResponse(
        status_code=error_status(exc),
        content={"ok": False, "error": {"code": exc.code, "message": str(exc)}},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": exc.errors(),
            },
        },
    )


# ── Request models ────────────────────────────────────────────────────


class PaymentIn(BaseModel):
    external_ref: str = Field(min_length=1, max_length=255)
    fiat_amount_cents: int = Field(gt=0, le=MAX_AMOUNT_CENTS)
    currency: str = "USD"
    kind: str = "juice_purchase"
    user_id: str | None = None
    risk_score: int | None = Field(default=None, ge=0, le=100)
    risk_level: str | None = None
    charge_ref: str | None = None
    captured: bool = True
    project_id: int | None = None
    chain_id: int | None = None
    beneficiary_address: str | None = None
    memo: str | None = None


class ExternalRefIn(BaseModel):
    external_ref: str = Field(min_length=1, max_length=255)


class DisputeIn(BaseModel):
    external_ref: str = Field(min_length=1, max_length=255)
    reason_code: str | None = None
    dispute_id: str | None = None
    amount_cents: int | None = Field(default=None, ge=0, le=MAX_AMOUNT_CENTS)


class ExecutionResultIn(BaseModel):
    row_id: str
    success: bool
    tx_hash: str | None = None
    tokens_received: str | None = None
    error: str | None = None


class SpendIn(BaseModel):
    user_id: str = Field(min_length=1)
    project_id: int = Field(gt=0)
    beneficiary_address: str
    amount: str
    chain_id: int | None = None
    memo: str | None = Field(default=None, max_length=500)


class CashOutIn(BaseModel):
    user_id: str = Field(min_length=1)
    destination_address: str
    amount: str
    chain_id: int | None = None
    token_address: str | None = None


class CancelIn(BaseModel):
    user_id: str = Field(min_length=1)


class ResolveIn(BaseModel):
    resolution: str


# ── Webhooks ──────────────────────────────────────────────────────────


@app.post("/webhooks/payment")
def api_payment(p: PaymentIn):
    """Payment succeeded at the processor. Idempotent on external_ref."""
    result = get_notification_handler().handle_payment(PaymentNotification(**p.model_dump()))
    return {"ok": True, **result}


@app.post("/webhooks/payment/captured")
def api_payment_captured(p: ExternalRefIn):
    return {"ok": True, **get_notification_handler().handle_captured(p.external_ref)}


@app.post("/webhooks/dispute")
def api_dispute(d: DisputeIn):
    """Chargeback opened. Freezes the payment before it credits or settles."""
    result = get_notification_handler().handle_dispute(
        d.external_ref, reason_code=d.reason_code, dispute_id=d.dispute_id,
        amount_cents=d.amount_cents,
    )
    return {"ok": True, **result}


@app.post("/webhooks/refund")
def api_refund(p: ExternalRefIn):
    return {"ok": True, **get_notification_handler().handle_refund(p.external_ref)}


@app.post("/webhooks/execution-result")
def api_execution_result(r: ExecutionResultIn):
    result = get_notification_handler().handle_execution_result(
        ExecutionResult(**r.model_dump())
    )
    return {"ok": True, **result}


# ── User endpoints ────────────────────────────────────────────────────


@app.get("/balance/{user_id}")
def api_balance(user_id: str):
    return {"ok": True, "balance": get_ledger().snapshot(user_id).to_dict()}


@app.get("/transactions/{user_id}")
def api_transactions(user_id: str, limit: int = 50, offset: int = 0):
    """Purchases, spends and cash-outs, newest first."""
    return {"ok": True, "transactions": get_ledger().get_transactions(user_id, limit, offset)}


@app.post("/spend")
def api_spend(s: SpendIn):
    pipeline = get_spend_pipeline()
    row = pipeline.request(
        s.user_id, s.project_id, s.beneficiary_address, to_cents(s.amount),
        chain_id=s.chain_id, memo=s.memo,
    )
    return {"ok": True, "spend": pipeline.present(row)}


@app.get("/spend/{spend_id}")
def api_get_spend(spend_id: str):
    pipeline = get_spend_pipeline()
    return {"ok": True, "spend": pipeline.present(pipeline.get(spend_id))}


@app.post("/cashout")
def api_cashout(c: CashOutIn):
    pipeline = get_cashout_pipeline()
    row = pipeline.request(
        c.user_id, c.destination_address, to_cents(c.amount),
        chain_id=c.chain_id, token_address=c.token_address,
    )
    return {"ok": True, "cash_out": pipeline.present(row)}


@app.get("/cashout/{cash_out_id}")
def api_get_cashout(cash_out_id: str):
    pipeline = get_cashout_pipeline()
    return {"ok": True, "cash_out": pipeline.present(pipeline.get(cash_out_id))}


@app.post("/cashout/{cash_out_id}/cancel")
def api_cancel_cashout(cash_out_id: str, c: CancelIn):
    pipeline = get_cashout_pipeline()
    row = pipeline.cancel(cash_out_id, c.user_id)
    return {"ok": True, "cash_out": pipeline.present(row)}


@app.get("/projects/{project_id}/pending")
def api_project_pending(project_id: int, chain_id: int):
    """Fiat paid to a project that has not settled on-chain yet."""
    return {"ok": True, **get_settlement_pipeline().project_pending_balance(project_id, chain_id)}


@app.get("/fiat/pending/{user_id}")
def api_user_pending_fiat(user_id: str):
    return {"ok": True, "payments": get_settlement_pipeline().user_pending_payments(user_id)}


# ── Operator endpoints ────────────────────────────────────────────────


def _execution_pipeline(kind: str):
    pipelines = {
        "spend": get_spend_pipeline,
        "cashout": get_cashout_pipeline,
        "fiat": get_settlement_pipeline,
    }
    if kind not in pipelines:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline {kind}")
    return pipelines[kind]()


@app.post("/admin/spend/{spend_id}/refund")
def api_refund_spend(spend_id: str):
    return {"ok": True, "spend": get_spend_pipeline().refund(spend_id)}


@app.post("/admin/cashout/{cash_out_id}/refund")
def api_refund_cashout(cash_out_id: str):
    return {"ok": True, "cash_out": get_cashout_pipeline().refund(cash_out_id)}


@app.post("/admin/{kind}/{row_id}/retry")
def api_retry(kind: str, row_id: str):
    """Retry one failed row now. 409 once its retries are exhausted."""
    return {"ok": True, "row": _execution_pipeline(kind).retry_now(row_id)}


@app.get("/admin/exhausted")
def api_exhausted(limit: int = 100):
    return {
        "ok": True,
        "spends": get_spend_pipeline().list_exhausted(limit),
        "cash_outs": get_cashout_pipeline().list_exhausted(limit),
        "fiat_payments": get_settlement_pipeline().list_exhausted(limit),
        "stalled": {
            "spends": get_spend_pipeline().list_stalled(limit),
            "cash_outs": get_cashout_pipeline().list_stalled(limit),
            "fiat_payments": get_settlement_pipeline().list_stalled(limit),
        },
    }


@app.get("/admin/disputes")
def api_disputes(unresolved: bool = False, limit: int = 100):
    return {"ok": True, "disputes": get_dispute_log().list(unresolved_only=unresolved, limit=limit)}


@app.post("/admin/disputes/{dispute_id}/resolve")
def api_resolve_dispute(dispute_id: str, r: ResolveIn):
    return {"ok": True, "dispute": get_dispute_log().resolve(dispute_id, r.resolution)}


# ── Cron ──────────────────────────────────────────────────────────────


@app.post("/cron/run")
def api_cron_run(request: Request, job: Optional[str] = None):
    """External cron hook. Authenticated by X-Cron-Secret."""
    secret = os.environ.get("JUICE_CRON_SECRET", "")
    if not secret:
        raise HTTPException(status_code=503, detail="JUICE_CRON_SECRET not configured")
    supplied = request.headers.get("X-Cron-Secret", "")
    if not hmac.compare_digest(supplied, secret):
        raise HTTPException(status_code=401, detail="Invalid cron secret")

    runner = get_runner()
    if job is not None and job not in runner.jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job {job}")
    results = runner.trigger(job)
    return {"ok": True, "results": {name: r.to_dict() for name, r in results.items()}}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": JUICE_ENV}


@app.get("/readyz")
def readyz():
    if AUTH_REQUIRED and not os.environ.get("JUICE_API_TOKEN", ""):
        raise HTTPException(
            status_code=503, detail="API token not configured for non-dev environment"
        )
    db = get_database()
    with db.connection() as tx:
        tx.fetchone("SELECT COUNT(*) AS n FROM juice_balances")
    return {"ok": True, "status": "ready", "backend": db.backend}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("JUICE_PORT", "8000")))
