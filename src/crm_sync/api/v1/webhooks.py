"""Provider webhook endpoint.

POST /webhooks/{provider}/{routing_token}

Responds 202 when at least one event was accepted and queued, 200 when
every event was a duplicate or ignored, 401 for an unknown routing token
or bad signature, 400 for a body that cannot be parsed.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.crm_sync.api.deps import get_services
from src.crm_sync.integrations.errors import MalformedWebhookError, WebhookRejectedError
from src.crm_sync.integrations.schemas import IngestStatus, Provider, WebhookRequest
from src.crm_sync.integrations.wiring import SyncServices

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}/{routing_token}")
async def receive_webhook(
    provider: Provider,
    routing_token: str,
    request: Request,
    services: SyncServices = Depends(get_services),
) -> JSONResponse:
    webhook = WebhookRequest(
        method=request.method,
        url=str(request.url),
        headers=dict(request.headers),
        body=await request.body(),
    )
    try:
        results = await services.intake.handle(provider, routing_token, webhook)
    except WebhookRejectedError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message)
    except MalformedWebhookError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)

    accepted = any(r.status == IngestStatus.ACCEPTED for r in results)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED if accepted else status.HTTP_200_OK,
        content={"results": [r.model_dump(mode="json") for r in results]},
    )
