from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from packages.automation import WebhookRequest

from ..db import get_db
from ..logging_config import bind_request_context, get_logger
from ..services.intake import TriggerIntakeService
from ..services.sequences import load_webhook_trigger, trigger_config

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def handle_webhook(db: Session, trigger_uuid: str, webhook_request: WebhookRequest) -> JSONResponse:
    found = load_webhook_trigger(db, trigger_uuid)
    if found is None or not found[0].is_active:
        logger.info("webhook.unknown_trigger", webhook_uuid=trigger_uuid)
        return JSONResponse(status_code=404, content={"error": "Webhook not found"})

    trigger_row, sequence = found
    bind_request_context(trigger_id=str(trigger_row.id), org_id=str(sequence.org_id))
    outcome = TriggerIntakeService(db).handle_webhook(webhook_request, trigger_config(trigger_row, sequence.org_id))
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/{trigger_uuid}")
async def receive_webhook(trigger_uuid: str, request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    # The raw body is read on the loop; database and broker work runs in the threadpool.
    webhook_request = WebhookRequest(
        method=request.method,
        url=str(request.url),
        body=await request.body(),
        headers=dict(request.headers),
        client_ip=request.client.host if request.client else None,
    )
    return await run_in_threadpool(handle_webhook, db, trigger_uuid, webhook_request)
