from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from fieldbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldbill.apps.api.response import SuccessEnvelope, success_response
from fieldbill.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    service: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; no database round-trip.
    payload = HealthResponse(status="ok", service=get_settings().app_name)
    return success_response(request=request, data=payload)
