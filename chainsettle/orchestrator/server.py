"""ChainSettle orchestrator service.

Main FastAPI application exposing:
- Payment requests (quote + intent + instructions)
- Client-submitted transaction references
- Intent status lookups
- Audit ledger verification
"""

from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException

from ..config import config, validate_config_for_service
from ..database import db
from ..errors import IntentNotFound, NoQuoteAvailable, ReferenceAlreadyBound
from ..logging_utils import CorrelationIdContext, get_logger, setup_logging
from ..models import (
    ChainVerification,
    IntentStatusView,
    PaymentInstructions,
    PaymentRequest,
    ReferenceSubmission,
)
from .service import Orchestrator, build_orchestrator

# Validate configuration
validate_config_for_service("orchestrator")

# Setup logging
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title="ChainSettle",
    description="Crypto payment orchestration and audit ledger",
)

_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """FastAPI dependency returning the running orchestrator."""
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not started")
    return _orchestrator


@app.on_event("startup")
async def startup():
    """Initialize database and start chain watchers on startup."""
    global _orchestrator
    logger.info("Initializing ChainSettle orchestrator...")
    await db.initialize()
    _orchestrator = build_orchestrator(db)
    await _orchestrator.start()
    logger.info("ChainSettle orchestrator initialized")


@app.on_event("shutdown")
async def shutdown():
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.stop()
        _orchestrator = None


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "chainsettle"}


@app.post("/payments", response_model=PaymentInstructions)
async def request_payment(
    request: PaymentRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    x_correlation_id: str = Header(None, alias="X-Correlation-Id"),
):
    """Quote a fiat amount and open a payment intent.

    Returns:
        Instructions telling the payer what to send and where.
    """
    with CorrelationIdContext(x_correlation_id):
        logger.info(f"Payment request: {request.fiat_amount} {request.currency} on {request.network.value}")
        try:
            return await orchestrator.request_payment(request.fiat_amount, request.currency, request.network)
        except NoQuoteAvailable as e:
            logger.error(f"No quote available: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))


@app.post("/payments/{intent_id}/reference", response_model=IntentStatusView)
async def submit_reference(
    intent_id: str,
    submission: ReferenceSubmission,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    x_correlation_id: str = Header(None, alias="X-Correlation-Id"),
):
    """Attach a payer-supplied transaction reference and validate it."""
    with CorrelationIdContext(x_correlation_id):
        try:
            return await orchestrator.submit_client_reference(intent_id, submission.reference)
        except IntentNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ReferenceAlreadyBound as e:
            logger.warning(f"Rejected reference for intent {intent_id}: {e}")
            raise HTTPException(status_code=409, detail=str(e))


@app.get("/payments/{intent_id}", response_model=IntentStatusView)
async def get_payment(intent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.get_intent_status(intent_id)
    except IntentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/audit/verify", response_model=ChainVerification)
async def verify_audit_chain(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Recompute the audit chain from genesis and report the first divergence."""
    return await orchestrator.audit.verify_ledger()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting ChainSettle on {config.orchestrator_host}:{config.orchestrator_port}")
    uvicorn.run(
        app,
        host=config.orchestrator_host,
        port=config.orchestrator_port,
        log_level=config.log_level.lower(),
    )
