"""Billing run and reminder endpoints."""

from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from dues_engine.api.dependencies import DbSession, Notifier, OptionalTenantId, TenantId
from dues_engine.api.schemas import (
    BillingRunAllResponse,
    BillingRunRequest,
    BillingRunResponse,
    ErrorResponse,
    ReminderRunRequest,
    ReminderRunResponse,
)
from dues_engine.services.billing_runner import BillingRunner
from dues_engine.services.reminder_service import ReminderService

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post(
    "/run",
    response_model=BillingRunResponse | BillingRunAllResponse,
    status_code=status.HTTP_200_OK,
    responses={400: {"model": ErrorResponse}},
)
def run_billing(
    db: DbSession,
    tenant_id: OptionalTenantId,
    payload: BillingRunRequest | None = None,
    all_organizations: Annotated[bool, Query(alias="all")] = False,
) -> BillingRunResponse | BillingRunAllResponse:
    """Run recurring billing for one organization, or all with ``?all=true``."""
    payload = payload or BillingRunRequest()
    runner = BillingRunner(db)

    if all_organizations:
        results = runner.run_all_organizations(
            dry_run=payload.dry_run,
            billing_date=payload.billing_date,
        )
        responses = [BillingRunResponse(**r.to_dict()) for r in results.values()]
        return BillingRunAllResponse(
            success=all(r.success for r in responses),
            results=responses,
        )

    if tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required unless all=true",
        )

    result = runner.run_organization(
        organization_id=tenant_id,
        dry_run=payload.dry_run,
        billing_date=payload.billing_date,
    )
    return BillingRunResponse(**result.to_dict())


@router.post(
    "/reminders",
    response_model=ReminderRunResponse,
    status_code=status.HTTP_200_OK,
    responses={400: {"model": ErrorResponse}},
)
def send_reminders(
    db: DbSession,
    tenant_id: TenantId,
    notifier: Notifier,
    payload: ReminderRunRequest | None = None,
) -> ReminderRunResponse:
    """Send the payment reminders that are due for one organization."""
    service = ReminderService(db, notifier)
    result = service.process_organization(
        organization_id=tenant_id,
        today=payload.today if payload else None,
    )
    db.commit()
    return ReminderRunResponse(**result.to_dict())
