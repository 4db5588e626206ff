from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from plangate.core.metrics import REGISTRY


router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
def metrics_endpoint():
    return PlainTextResponse(REGISTRY.render(), media_type="text/plain; version=0.0.4")
