"""Gateway webhook endpoint."""

from typing import Annotated

from fastapi import APIRouter, Header, Request, status
from fastapi.concurrency import run_in_threadpool

from dues_engine.api.dependencies import Processor
from dues_engine.api.schemas import ErrorResponse, WebhookAckResponse

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookAckResponse,
    status_code=status.HTTP_200_OK,
    responses={400: {"model": ErrorResponse}},
)
async def receive_gateway_event(
    request: Request,
    processor: Processor,
    stripe_signature: Annotated[str | None, Header()] = None,
) -> WebhookAckResponse:
    """Verify and process one gateway event.

    Invalid signatures are rejected with 400 before any processing. Every
    verified event gets a 200 so the gateway stops retrying; the body says
    whether it was processed, a duplicate, ignored, held or failed.
    """
    payload = await request.body()

    result = await run_in_threadpool(processor.handle_request, payload, stripe_signature)
    return WebhookAckResponse(**result.to_dict())
