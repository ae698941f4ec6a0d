"""Inbound webhook endpoint.

POST /webhooks/{platform}
    200  accepted and applied (body: WebhookResult)
    401  signature missing or invalid, nothing processed
    500  processing failed; the platform's own redelivery policy applies
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from opentelemetry import trace

from api.dependencies import PlatformRuntime, require_platform
from sync_core.errors import IntegrationError, SignatureError
from sync_core.observability.tracing import create_webhook_span

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/{platform}")
async def receive_webhook(
    platform: str,
    request: Request,
    runtime: PlatformRuntime = Depends(require_platform),
):
    payload = await request.body()
    signature = request.headers.get(runtime.receiver.signature_header)

    with create_webhook_span(trace.get_tracer(__name__), platform, len(payload)):
        try:
            result = await runtime.receiver.handle(payload, signature)
        except SignatureError as exc:
            return JSONResponse(status_code=401, content={"error": exc.message})
        except IntegrationError as exc:
            logger.error("[%s] Webhook processing failed: %s", platform, exc.message)
            return JSONResponse(status_code=500, content={"error": exc.message})
        except Exception:
            logger.exception("[%s] Webhook processing crashed", platform)
            return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    return result.to_dict()
