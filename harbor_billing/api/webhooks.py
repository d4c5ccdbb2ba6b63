"""Processor webhook routes. No bearer auth; every delivery is signature verified."""

import json
import logging

from fastapi import APIRouter, Depends, Request
from starlette.responses import JSONResponse

from harbor_billing.api.deps import get_processor_factory, get_store
from harbor_billing.models.billing import ProcessorType
from harbor_billing.services.billing import WebhookHandler
from harbor_billing.services.processors.paypal import SIGNATURE_HEADERS
from harbor_billing.services.store import BillingStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/billing/webhooks", tags=["webhooks"])


def _signature(processor_type: ProcessorType, request: Request) -> str | None:
    if processor_type == ProcessorType.paypal:
        headers = {name: request.headers.get(name) for name in SIGNATURE_HEADERS}
        if not any(headers.values()):
            return None
        return json.dumps(headers)
    return request.headers.get("stripe-signature")


@router.post("/{processor}")
async def receive_webhook(
    processor: str,
    request: Request,
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
) -> JSONResponse:
    try:
        processor_type = ProcessorType(processor.lower())
    except ValueError:
        return JSONResponse(
            status_code=400,
            content={"code": "INVALID_WEBHOOK", "message": f"Unknown processor {processor}"},
        )
    body = await request.body()
    handler = WebhookHandler(store, processors(processor_type))
    status_code, content = handler.handle_webhook(
        processor_type.value, body, _signature(processor_type, request)
    )
    return JSONResponse(status_code=status_code, content=content)
