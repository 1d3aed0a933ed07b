"""FastAPI endpoints for gateway payment callbacks."""

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from offertory.api.errors import AppError, error_response
from offertory.config import get_settings
from offertory.services import get_db
from offertory.services.signature import SignatureVerifier
from offertory.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

_settings = get_settings()

app = FastAPI(
    title=_settings.api_title,
    description="Contribution and entitlement engine",
    version=_settings.api_version,
)


def get_verifier() -> SignatureVerifier:
    """Signature verifier built from the configured gateway secret."""
    return SignatureVerifier(get_settings().gateway_secret_key)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render engine errors as {"error": {"code", "message", ...}}."""
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=error_response(exc))


# Register health check endpoint
@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint for monitoring."""
    return {"status": "ok"}


@app.post("/api/payments/callback")
async def payment_callback(
    request: Request,
    db: Session = Depends(get_db),  # noqa: B008
    verifier: SignatureVerifier = Depends(get_verifier),  # noqa: B008
) -> dict:
    """Receive a gateway payment callback.

    The raw body is passed on untouched: the signature covers the exact bytes
    the gateway sent.

    Returns:
        {"ok": True, "outcome": ..., "record_id": ..., "status": ...}
    """
    raw_body = await request.body()
    signature = request.headers.get(get_settings().gateway_signature_header)

    reconciler = WebhookReconciler(db, verifier=verifier)
    result = await run_in_threadpool(reconciler.reconcile, raw_body, signature)

    logger.debug(
        "webhook.payment: record_id=%s outcome=%s", result.record.id, result.outcome.value
    )
    return {
        "ok": True,
        "outcome": result.outcome.value,
        "record_id": result.record.id,
        "status": result.record.status,
        "receipt_number": result.record.receipt_number,
    }


__all__ = ["app", "get_verifier"]
