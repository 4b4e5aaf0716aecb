import time
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from dotenv import load_dotenv
from pydantic import ValidationError
import redis
from starlette.concurrency import run_in_threadpool

from pipeline.harness import utc_now
from pipeline.state import RawEmail
from pipeline.stages.ingest import classify, route_email
from tools.bus import ChannelBus, customer_channels
from tools.idempotency import Idem
from tools.llm import LLMClient
from tools.log_setup import configure_logging

REQUIRED_EMAIL_FIELDS = ("sender", "subject", "body")

load_dotenv()

configure_logging("gateway")

# Gateway app; the pipeline itself runs under the supervisor
app = FastAPI(
    title="Sales Pipeline Ingestion Gateway",
    description="Pushes inbound email into a customer's sales pipeline",
    version="1.0.0"
)

# Shared clients
bus = ChannelBus()
idem = Idem(client=bus.r, prefix="gateway")
llm = LLMClient()


@app.post("/webhooks/email/{customer_id}")
async def ingest_email(customer_id: str, req: Request):
    """
    Webhook endpoint for pushing an email into a customer's pipeline.

    Expected payload:
    {
        "sender": "Jane Doe <jane@acme.com>",
        "subject": "Quote request",
        "body": "We need 50 units of Widget A delivered to Austin, TX by March 3rd.",
        "message_id": "optional-unique-id",
        "type": "optional: inquiry | lead"
    }
    """
    try:
        payload: Dict[str, Any] = await req.json()
    except ValueError as e:
        logger.warning(f"Unreadable email webhook for {customer_id}: {e}")
        return JSONResponse(status_code=400, content={"status": "error", "message": "Body must be valid JSON"})
    if not isinstance(payload, dict):
        return JSONResponse(status_code=400, content={"status": "error", "message": "Body must be a JSON object"})

    logger.info(f"Received email webhook for {customer_id}: {payload.get('subject', 'No Subject')}")

    missing = [field for field in REQUIRED_EMAIL_FIELDS if not payload.get(field)]
    if missing:
        return JSONResponse(
            status_code=400,
            content={"status": "error", "message": "Missing required email fields", "missing": missing}
        )

    # Webhook retries carry the same message id
    message_id = payload.get("message_id")
    idem_key = f"{customer_id}:{message_id}" if message_id else None
    if idem_key and not idem.check_and_set(idem_key):
        logger.warning(f"Duplicate email ignored: {message_id}")
        return JSONResponse(
            status_code=200,
            content={"status": "duplicate_ignored", "message": "Email already queued"}
        )

    # The claim is released unless the email is actually queued
    queued = False
    try:
        email_type = payload.get("type")
        if email_type not in ("inquiry", "lead"):
            email_type = await run_in_threadpool(classify, llm, payload["subject"], payload["body"])

        email = RawEmail(
            customer_id=customer_id,
            message_id=message_id,
            sender=payload["sender"],
            subject=payload["subject"],
            body=payload["body"],
            type=email_type,
            received_at=utc_now(),
        )
        channel = route_email(bus, customer_id, email)
        queued = True
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})
    except redis.RedisError as e:
        logger.error(f"Publishing email for {customer_id} failed: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "error", "message": "Message broker unavailable"}
        )
    finally:
        if idem_key and not queued:
            idem.clear_key(idem_key)

    logger.info(f"{email_type.upper()} email queued on {channel}")
    return JSONResponse(
        status_code=202,
        content={"status": "queued", "type": email_type, "channel": channel}
    )


@app.get("/health")
def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "redis": "connected" if bus.ping() else "disconnected",
            "llm": "mock" if llm.mock else "live"
        }
    }


@app.get("/customers/{customer_id}/channels")
def get_channels(customer_id: str):
    """Channel names of one customer's pipeline."""
    return {"customer_id": customer_id, "channels": customer_channels(customer_id)}


# Anything not handled above becomes a 500
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Sales Pipeline Ingestion Gateway")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
