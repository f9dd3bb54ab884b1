"""Local payment terminal (TPE) emulator.

Receives the orchestrator's signed notifications, rejects bad signatures and
prints each event. Point TPE_NOTIFY_URL at http://localhost:8081/notify.
"""

import sys
from pathlib import Path

from fastapi import FastAPI, Header, HTTPException, Request

sys.path.insert(0, str(Path(__file__).parent.parent))

from chainsettle.config import config
from chainsettle.logging_utils import get_logger, setup_logging
from chainsettle.orchestrator.notifications import verify_webhook_signature

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

app = FastAPI(title="TPE emulator")


@app.post("/notify")
async def receive_notification(
    request: Request,
    x_webhook_signature: str = Header(None, alias="X-Webhook-Signature"),
):
    raw_payload = await request.body()
    if not x_webhook_signature or not verify_webhook_signature(
        raw_payload, x_webhook_signature, config.webhook_secret
    ):
        logger.error("Rejected notification with missing or invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = await request.json()
    print(f"[TPE] {event['event']}: {event['amount'] / 100:.2f} at {event['timestamp']}")
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8081, log_level=config.log_level.lower())
