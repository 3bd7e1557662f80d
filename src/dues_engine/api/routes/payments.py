"""Payment endpoints."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Path, status
from fastapi.responses import JSONResponse

from dues_engine.api.dependencies import DbSession, Notifier, TenantId
from dues_engine.api.schemas import ErrorResponse, SettlementResponse, SettleRequest
from dues_engine.models import Payment
from dues_engine.services.settlement_service import SettlementService

router = APIRouter(prefix="/payments", tags=["payments"])

_ERROR_STATUS = {
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ALREADY_REFUNDED": status.HTTP_409_CONFLICT,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "VALIDATION_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@router.post(
    "/{payment_id}/settle",
    response_model=SettlementResponse,
    status_code=status.HTTP_200_OK,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def settle_payment(
    db: DbSession,
    tenant_id: TenantId,
    notifier: Notifier,
    payload: SettleRequest,
    payment_id: UUID = Path(...),
) -> SettlementResponse | JSONResponse:
    """Record an offline payment (cash, check, zelle) and apply it to the membership."""
    payment = db.get(Payment, payment_id)
    if payment is None or payment.organization_id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found",
        )

    result = SettlementService(db, notifier).settle_payment(
        payment_id=payment_id,
        method=payload.method,
        paid_at=payload.paid_at,
        external_reference=payload.external_reference,
    )
    if not result.success:
        return JSONResponse(
            status_code=_ERROR_STATUS.get(result.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
            content={"detail": result.error, "code": result.error_code},
        )

    db.commit()
    return SettlementResponse.model_validate(result)
