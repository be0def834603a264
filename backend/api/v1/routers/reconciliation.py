"""
Reconciliation Router — carrier invoice (MIS) uploads and their reports.

Carrier invoices span every seller, so these routes are admin-only.
"""

from datetime import datetime
from pathlib import Path
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.notifications import NotificationSender
from api.deps import get_lifecycle, get_notifier, get_pricing_service, get_tenant_db, require_admin
from core.exceptions import InvalidMeasurement
from db.models import InvoiceReconciliationRun
from disputes.lifecycle import DisputeLifecycleManager
from pricing.quoter import PricingService
from reconciliation.invoice import InvoiceReconciler

router = APIRouter(prefix="/api/v1/reconciliation", tags=["reconciliation"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class RunResponse(BaseModel):
    run_id: UUID
    carrier: str
    billing_month: str
    version: int
    source_filename: str | None
    status: str
    total_rows: int
    matched: int
    unmatched: int
    discrepant: int
    disputes_created: int
    skipped_existing: int
    failed_rows: int
    summary: dict | None
    created_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/runs", response_model=RunResponse, status_code=201)
async def upload_invoice(
    carrier: str = Form(...),
    billing_month: str = Form(...),
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_tenant_db),
    _admin: dict = Depends(require_admin),
    pricing: PricingService = Depends(get_pricing_service),
    lifecycle: DisputeLifecycleManager = Depends(get_lifecycle),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Reconcile one carrier invoice. Re-uploading the same month creates a new version."""
    content = await file.read()
    reconciler = InvoiceReconciler(db, pricing=pricing, lifecycle=lifecycle, notifier=notifier)
    try:
        return await reconciler.run(carrier, billing_month, content, source_filename=file.filename)
    except InvalidMeasurement as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Invoice file could not be parsed: {exc}")


@router.get("/runs", response_model=list[RunResponse])
async def list_runs(
    carrier: str | None = None,
    billing_month: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_tenant_db),
    _admin: dict = Depends(require_admin),
):
    query = select(InvoiceReconciliationRun)
    if carrier:
        query = query.where(InvoiceReconciliationRun.carrier == carrier.lower())
    if billing_month:
        query = query.where(InvoiceReconciliationRun.billing_month == billing_month)
    result = await db.execute(query.order_by(InvoiceReconciliationRun.created_at.desc()).limit(limit))
    return result.scalars().all()


async def _get_run(db: AsyncSession, run_id: UUID) -> InvoiceReconciliationRun:
    run = await db.get(InvoiceReconciliationRun, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Reconciliation run not found")
    return run


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    _admin: dict = Depends(require_admin),
):
    return await _get_run(db, run_id)


@router.get("/runs/{run_id}/report")
async def download_report(
    run_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    _admin: dict = Depends(require_admin),
):
    """The immutable per-row CSV report written when the run completed."""
    run = await _get_run(db, run_id)
    if not run.report_ref or not Path(run.report_ref).exists():
        raise HTTPException(status_code=404, detail="Report not available for this run")
    return FileResponse(run.report_ref, media_type="text/csv", filename=Path(run.report_ref).name)
