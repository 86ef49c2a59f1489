"""Evolution API webhook receiver.

Security:
- Message text, JIDs and names exist only in memory and in the archive
- Logs contain NO PII (safe_log_context only)

Response contract with the gateway:
- 200 for processed events and for events dropped as invalid (unknown
  session, malformed payload): redelivery would not help
- 500 when the archive could not store an event, so the gateway redelivers
  (ingestion is idempotent)
"""

from __future__ import annotations

import hmac
import os
from typing import Any

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from wharchive.api.deps import get_engine
from wharchive.domain.errors import ValidationError
from wharchive.engine import Engine
from wharchive.observability.correlation import get_correlation_id
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import safe_log_context
from wharchive.whatsapp.evolution_adapter import InvalidPayloadError, events_from_webhook

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)


def _secret_ok(provided: str | None) -> bool:
    """Check the shared webhook secret (fail-closed outside local dev)."""
    expected = os.environ.get("EVOLUTION_WEBHOOK_SECRET", "")
    if not expected:
        if os.environ.get("APP_ENV", "") == "local":
            logger.warning(
                "EVOLUTION_WEBHOOK_SECRET not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
            )
            return True
        logger.error(
            "EVOLUTION_WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        return False
    if provided and hmac.compare_digest(provided, expected):
        return True
    logger.warning(
        "evolution webhook secret mismatch",
        extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
    )
    return False


def _process(engine: Engine, payload: Any) -> dict[str, int]:
    """Convert and ingest one envelope. Storage errors propagate."""
    counts = {"processed": 0, "dropped": 0}
    try:
        events = events_from_webhook(payload)
    except InvalidPayloadError as e:
        logger.warning(
            "invalid evolution payload shape",
            extra={"extra_fields": safe_log_context(reason=str(e))},
        )
        counts["dropped"] += 1
        return counts

    for event in events:
        try:
            result = engine.pipeline.handle_event(event)
        except ValidationError as e:
            logger.warning(
                "evolution event dropped",
                extra={
                    "extra_fields": safe_log_context(
                        instance=event.source_id, event_type=event.type, reason=str(e)
                    )
                },
            )
            counts["dropped"] += 1
            continue
        logger.info(
            "evolution event processed",
            extra={
                "extra_fields": safe_log_context(
                    instance=event.source_id, event_type=event.type, outcome=result.outcome
                )
            },
        )
        counts["processed"] += 1
    return counts


@router.post("/evolution")
async def evolution_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
    engine: Engine = Depends(get_engine),
) -> Response:
    """Receive an Evolution API webhook.

    Returns:
        200 with processed/dropped counts.
        401 if secret validation fails.
        500 if the archive failed to store an event.
    """
    if not _secret_ok(x_webhook_secret):
        return Response(status_code=401, content="unauthorized")

    try:
        payload = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        return JSONResponse(status_code=200, content={"processed": 0, "dropped": 1})

    try:
        counts = await run_in_threadpool(_process, engine, payload)
    except Exception:
        logger.exception(
            "webhook processing failed",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        return Response(status_code=500, content="processing failed")

    return JSONResponse(status_code=200, content=counts)
