"""
Payment provider webhook ingress.

- POST /api/webhooks/stripe

The raw body is read untouched (signature verification needs the exact
bytes). Status and body come from the dispatcher's acknowledgement.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from plangate.api.deps import get_services
from plangate.features.wiring import Services


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    body = await request.body()
    # dispatch() does blocking database and provider I/O
    ack = await run_in_threadpool(services.webhooks.dispatch, body, stripe_signature)
    return JSONResponse(status_code=ack.status_code, content=ack.body)
